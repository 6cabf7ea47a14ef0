from fastapi import APIRouter, Depends, Query

from memo_engine.api.deps import get_runtime, require_operator
from memo_engine.api.models import DeadLetterResponse, JobResponse
from memo_engine.jobs.models import Stage
from memo_engine.runtime import PipelineRuntime

# Queue views span every account, so they are limited to operators.
router = APIRouter(dependencies=[Depends(require_operator)])


@router.get("/in-flight", response_model=list[JobResponse])
async def list_in_flight(  # noqa: B008
  stage: Stage | None = Query(default=None),  # noqa: B008
  runtime: PipelineRuntime = Depends(get_runtime),  # noqa: B008
) -> list[JobResponse]:
  """List queued and leased jobs, oldest first."""
  jobs = await runtime.job_store.list_in_flight(stage)
  return [JobResponse.from_record(job) for job in jobs]


@router.get("/dead-letters", response_model=list[DeadLetterResponse])
async def list_dead_letters(  # noqa: B008
  stage: Stage | None = Query(default=None),  # noqa: B008
  memo_id: str | None = Query(default=None),  # noqa: B008
  limit: int = Query(default=50, ge=1, le=500),  # noqa: B008
  runtime: PipelineRuntime = Depends(get_runtime),  # noqa: B008
) -> list[DeadLetterResponse]:
  """List archived jobs, newest first, with their full error history."""
  records = await runtime.job_store.list_dead_letters(stage=stage, memo_id=memo_id, limit=limit)
  return [DeadLetterResponse.from_record(record) for record in records]
