import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status

from memo_engine.api.deps import get_account_id, get_memo_service
from memo_engine.api.models import CreateJobRequest, CreateMemoRequest, JobCreateResponse, MemoListResponse, MemoResponse, MemoStatusResponse, StatusEventResponse, TranscriptResponse, UpdateMemoRequest
from memo_engine.pipeline.state import MemoStatus
from memo_engine.services.memos import AudioTooLargeError, MemoService

router = APIRouter()
logger = logging.getLogger("memo_engine.api.routes.memos")


@router.post("", response_model=MemoResponse, status_code=status.HTTP_201_CREATED)
async def create_memo(  # noqa: B008
  payload: CreateMemoRequest,
  account_id: str = Depends(get_account_id),  # noqa: B008
  service: MemoService = Depends(get_memo_service),  # noqa: B008
) -> MemoResponse:
  """Create a memo in UPLOADING after the account passes admission."""
  memo = await service.create_memo(account_id, title=payload.title, meeting_date=payload.meeting_date, participants=payload.participants, language=payload.language)
  return MemoResponse.from_record(memo)


@router.get("", response_model=MemoListResponse)
async def list_memos(  # noqa: B008
  status_filter: MemoStatus | None = Query(default=None, alias="status"),  # noqa: B008
  limit: int = Query(default=20, ge=1, le=100),  # noqa: B008
  offset: int = Query(default=0, ge=0),  # noqa: B008
  account_id: str = Depends(get_account_id),  # noqa: B008
  service: MemoService = Depends(get_memo_service),  # noqa: B008
) -> MemoListResponse:
  """List the caller's memos, newest first."""
  memos, total = await service.list_memos(account_id, status=status_filter, limit=limit, offset=offset)
  return MemoListResponse(items=[MemoResponse.from_record(memo) for memo in memos], total=total, limit=limit, offset=offset)


@router.get("/{memo_id}", response_model=MemoResponse)
async def get_memo(  # noqa: B008
  memo_id: str,
  account_id: str = Depends(get_account_id),  # noqa: B008
  service: MemoService = Depends(get_memo_service),  # noqa: B008
) -> MemoResponse:
  return MemoResponse.from_record(await service.get_memo(account_id, memo_id))


@router.patch("/{memo_id}", response_model=MemoResponse)
async def update_memo(  # noqa: B008
  memo_id: str,
  payload: UpdateMemoRequest,
  account_id: str = Depends(get_account_id),  # noqa: B008
  service: MemoService = Depends(get_memo_service),  # noqa: B008
) -> MemoResponse:
  """Update title, meeting date or participants."""
  memo = await service.update_memo(account_id, memo_id, title=payload.title, meeting_date=payload.meeting_date, participants=payload.participants)
  return MemoResponse.from_record(memo)


@router.post("/{memo_id}/audio", response_model=MemoResponse, status_code=status.HTTP_202_ACCEPTED)
async def upload_audio(  # noqa: B008
  memo_id: str,
  request: Request,
  account_id: str = Depends(get_account_id),  # noqa: B008
  service: MemoService = Depends(get_memo_service),  # noqa: B008
) -> MemoResponse:
  """Accept the raw recording body and start transcription."""
  # Reject oversize uploads from the declared length before buffering the body.
  declared_length = request.headers.get("content-length")
  max_bytes = request.app.state.runtime.settings.max_audio_bytes
  if declared_length and declared_length.isdigit() and int(declared_length) > max_bytes:
    raise AudioTooLargeError(int(declared_length), max_bytes)

  data = await request.body()
  content_type = request.headers.get("content-type") or "audio/mpeg"
  memo = await service.upload_audio(account_id, memo_id, data, content_type=content_type)
  return MemoResponse.from_record(memo)


@router.get("/{memo_id}/status", response_model=MemoStatusResponse)
async def get_memo_status(  # noqa: B008
  memo_id: str,
  account_id: str = Depends(get_account_id),  # noqa: B008
  service: MemoService = Depends(get_memo_service),  # noqa: B008
) -> MemoStatusResponse:
  """Return the pipeline status clients poll while a memo is processing."""
  return MemoStatusResponse.from_view(await service.get_status(account_id, memo_id))


@router.get("/{memo_id}/transcript", response_model=TranscriptResponse)
async def get_transcript(  # noqa: B008
  memo_id: str,
  account_id: str = Depends(get_account_id),  # noqa: B008
  service: MemoService = Depends(get_memo_service),  # noqa: B008
) -> TranscriptResponse:
  transcript = await service.get_transcript(account_id, memo_id)
  if transcript is None:
    raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Transcript not available yet")
  return TranscriptResponse.from_record(transcript)


@router.get("/{memo_id}/history", response_model=list[StatusEventResponse])
async def get_history(  # noqa: B008
  memo_id: str,
  account_id: str = Depends(get_account_id),  # noqa: B008
  service: MemoService = Depends(get_memo_service),  # noqa: B008
) -> list[StatusEventResponse]:
  return [StatusEventResponse.from_event(event) for event in await service.get_history(account_id, memo_id)]


@router.post("/{memo_id}/restart", response_model=MemoResponse)
async def restart_memo(  # noqa: B008
  memo_id: str,
  account_id: str = Depends(get_account_id),  # noqa: B008
  service: MemoService = Depends(get_memo_service),  # noqa: B008
) -> MemoResponse:
  """Reset a completed or failed memo to UPLOADING under a new processing attempt."""
  return MemoResponse.from_record(await service.restart_memo(account_id, memo_id))


@router.post("/{memo_id}/jobs", response_model=JobCreateResponse, status_code=status.HTTP_201_CREATED)
async def create_job(  # noqa: B008
  memo_id: str,
  payload: CreateJobRequest,
  account_id: str = Depends(get_account_id),  # noqa: B008
  service: MemoService = Depends(get_memo_service),  # noqa: B008
) -> JobCreateResponse:
  """Enqueue a stage job by hand; 409 when the memo is not in that stage or a job is already active."""
  await service.get_memo(account_id, memo_id)
  job_id = await service.create_job(payload.stage, memo_id)
  logger.info("Manually enqueued %s", job_id)
  return JobCreateResponse(job_id=job_id)


@router.delete("/{memo_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_memo(  # noqa: B008
  memo_id: str,
  account_id: str = Depends(get_account_id),  # noqa: B008
  service: MemoService = Depends(get_memo_service),  # noqa: B008
) -> Response:
  await service.delete_memo(account_id, memo_id)
  return Response(status_code=status.HTTP_204_NO_CONTENT)
