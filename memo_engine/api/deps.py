"""Shared FastAPI dependencies for runtime access and caller identity."""

from __future__ import annotations

from fastapi import Depends, Header, HTTPException, Request, status

from memo_engine.runtime import PipelineRuntime
from memo_engine.services.memos import MemoService


def get_runtime(request: Request) -> PipelineRuntime:
  """Return the runtime built by the lifespan (or installed by tests)."""
  runtime = getattr(request.app.state, "runtime", None)
  if runtime is None:
    raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Service is starting up")
  return runtime


def get_memo_service(runtime: PipelineRuntime = Depends(get_runtime)) -> MemoService:  # noqa: B008
  return runtime.memo_service


def get_account_id(x_account_id: str | None = Header(default=None, alias="X-Account-Id")) -> str:  # noqa: B008
  """Resolve the calling account; authentication happens at the gateway in front of this service."""
  account_id = (x_account_id or "").strip()
  if not account_id:
    raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing X-Account-Id header")
  return account_id


def require_operator(account_id: str = Depends(get_account_id), runtime: PipelineRuntime = Depends(get_runtime)) -> str:  # noqa: B008
  """Allow only accounts listed in MEMO_OPERATOR_ACCOUNTS; queue views span every account."""
  if account_id not in runtime.settings.operator_accounts:
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Operator access required")
  return account_id
