"""Memo status state machine."""

from __future__ import annotations

from enum import Enum

from memo_engine.jobs.models import Stage


class MemoStatus(str, Enum):
  UPLOADING = "UPLOADING"
  TRANSCRIBING = "TRANSCRIBING"
  GENERATING = "GENERATING"
  COMPLETED = "COMPLETED"
  FAILED = "FAILED"


TERMINAL_STATUSES: frozenset[MemoStatus] = frozenset({MemoStatus.COMPLETED, MemoStatus.FAILED})

# Edges allowed within one processing attempt. Restart is a separate operation that opens a new attempt.
ALLOWED_TRANSITIONS: dict[MemoStatus, frozenset[MemoStatus]] = {
  MemoStatus.UPLOADING: frozenset({MemoStatus.TRANSCRIBING}),
  MemoStatus.TRANSCRIBING: frozenset({MemoStatus.GENERATING, MemoStatus.FAILED}),
  MemoStatus.GENERATING: frozenset({MemoStatus.COMPLETED, MemoStatus.FAILED}),
  MemoStatus.COMPLETED: frozenset(),
  MemoStatus.FAILED: frozenset(),
}

STAGE_ACTIVE_STATUS: dict[Stage, MemoStatus] = {Stage.TRANSCRIBE: MemoStatus.TRANSCRIBING, Stage.GENERATE: MemoStatus.GENERATING}
ACTIVE_STATUS_STAGE: dict[MemoStatus, Stage] = {status: stage for stage, status in STAGE_ACTIVE_STATUS.items()}

STAGE_FAILURE_LABELS: dict[Stage, str] = {Stage.TRANSCRIBE: "Transcription failed", Stage.GENERATE: "Memo generation failed"}


class InvalidStateError(RuntimeError):
  """The memo is not in a status that permits the requested operation."""

  def __init__(self, message: str, *, memo_id: str | None = None, status: MemoStatus | None = None) -> None:
    super().__init__(message)
    self.memo_id = memo_id
    self.status = status


class InvalidTransitionError(InvalidStateError):
  def __init__(self, memo_id: str, current: MemoStatus, target: MemoStatus) -> None:
    super().__init__(f"Illegal status transition {current.value} -> {target.value} for memo {memo_id}", memo_id=memo_id, status=current)
    self.current = current
    self.target = target


def is_allowed_transition(current: MemoStatus, target: MemoStatus) -> bool:
  return target in ALLOWED_TRANSITIONS[current]


def ensure_transition(memo_id: str, current: MemoStatus, target: MemoStatus) -> None:
  if not is_allowed_transition(current, target):
    raise InvalidTransitionError(memo_id, current, target)


def can_restart(status: MemoStatus) -> bool:
  """Only a finished attempt may be restarted from UPLOADING."""
  return status in TERMINAL_STATUSES


def failure_message(stage: Stage, reason: str) -> str:
  """Error message recorded on the memo when a stage exhausts its retries."""
  return f"{STAGE_FAILURE_LABELS[stage]}: {reason}"
