"""Validated shapes for stage inputs and generated memo content."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, StrictStr, ValidationError

from memo_engine.jobs.retry import PermanentStageError

MIN_TRANSCRIPT_CHARS = 50
MAX_TRANSCRIPT_CHARS = 100_000


class ContentValidationError(PermanentStageError):
  """Generated content does not match the memo schema."""

  def __init__(self, errors: list[dict[str, Any]]) -> None:
    super().__init__("Generated memo format is invalid")
    self.errors = errors


class TranscriptValidationError(PermanentStageError):
  """Transcript cannot be turned into a memo."""


class ActionItem(BaseModel):
  task: StrictStr = Field(min_length=1)
  owner: StrictStr | None = None
  due_date: StrictStr | None = Field(default=None, alias="dueDate")
  priority: Literal["high", "medium", "low"] | None = None
  model_config = ConfigDict(populate_by_name=True, extra="ignore")


class MemoContent(BaseModel):
  """Structured memo produced by the generation stage."""

  summary: StrictStr
  key_points: list[StrictStr] = Field(alias="keyPoints")
  action_items: list[ActionItem] = Field(alias="actionItems")
  decisions: list[StrictStr]
  next_steps: list[StrictStr] | None = Field(default=None, alias="nextSteps")
  attendees: list[StrictStr] | None = None
  model_config = ConfigDict(populate_by_name=True, extra="ignore")

  def to_storage(self) -> dict[str, Any]:
    return self.model_dump(by_alias=True, exclude_none=True)


def parse_memo_content(raw: dict[str, Any]) -> MemoContent:
  """Validate a provider response; never coerce a non-conforming one."""
  try:
    return MemoContent.model_validate(raw)
  except ValidationError as exc:
    raise ContentValidationError([{key: value for key, value in error.items() if key in {"loc", "msg", "type"}} for error in exc.errors()]) from exc


def validate_transcript(text: str | None) -> str:
  if not text or not text.strip():
    raise TranscriptValidationError("Transcript is empty")
  if len(text) < MIN_TRANSCRIPT_CHARS:
    raise TranscriptValidationError(f"Transcript too short (minimum {MIN_TRANSCRIPT_CHARS} characters)")
  if len(text) > MAX_TRANSCRIPT_CHARS:
    raise TranscriptValidationError(f"Transcript too long (maximum {MAX_TRANSCRIPT_CHARS:,} characters)")
  return text
