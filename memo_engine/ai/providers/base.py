"""Provider contracts and errors for speech-to-text and memo generation."""

from __future__ import annotations

import math
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import date
from typing import Any, Protocol

from memo_engine.jobs.retry import PermanentStageError


@dataclass(frozen=True)
class TranscriptSegment:
  index: int
  start: float
  end: float
  text: str

  def to_dict(self) -> dict[str, Any]:
    return {"index": self.index, "start": self.start, "end": self.end, "text": self.text}


@dataclass(frozen=True)
class TranscriptionResult:
  text: str
  segments: tuple[TranscriptSegment, ...]
  language: str
  duration_minutes: int

  @property
  def duration_seconds(self) -> int:
    return self.duration_minutes * 60


@dataclass(frozen=True)
class GenerationMetadata:
  title: str | None = None
  meeting_date: date | None = None
  participants: tuple[str, ...] = ()


class TranscriptionProvider(Protocol):
  async def transcribe(self, audio: bytes, *, language: str) -> TranscriptionResult:
    """Transcribe audio bytes."""


class GenerationProvider(Protocol):
  async def generate(self, transcript_text: str, metadata: GenerationMetadata) -> dict[str, Any]:
    """Return the raw memo content object produced by the model."""


class ProviderError(RuntimeError):
  """A provider call failed; retried by the job policy."""


class ProviderQuotaExceededError(ProviderError, PermanentStageError):
  def __init__(self, message: str = "OpenAI API quota exceeded") -> None:
    super().__init__(message)


class PayloadTooLargeError(ProviderError, PermanentStageError):
  def __init__(self, message: str = "Audio file too large for transcription") -> None:
    super().__init__(message)


class InvalidProviderOutputError(ProviderError, PermanentStageError):
  """The provider answered, but not with something we can parse."""


def duration_minutes_from_segments(segments: Sequence[TranscriptSegment]) -> int:
  """Round the end of the last segment up to whole minutes."""
  if not segments:
    return 0
  return math.ceil(segments[-1].end / 60)
