from fastapi import APIRouter, Depends

from memo_engine.api.deps import get_account_id, get_memo_service
from memo_engine.api.models import UsageResponse
from memo_engine.services.memos import MemoService

router = APIRouter()


@router.get("", response_model=UsageResponse)
async def get_usage(  # noqa: B008
  account_id: str = Depends(get_account_id),  # noqa: B008
  service: MemoService = Depends(get_memo_service),  # noqa: B008
) -> UsageResponse:
  """Return transcription minutes used in the current month against the account allotment."""
  return UsageResponse.from_snapshot(await service.usage(account_id))
