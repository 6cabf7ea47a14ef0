"""OpenAI Whisper transcription and chat-completions memo generation."""

from __future__ import annotations

import json
import logging
from typing import Any

from openai import APIError, AsyncOpenAI

from memo_engine.ai.prompts import SYSTEM_PROMPT, build_user_prompt
from memo_engine.ai.providers.base import GenerationMetadata, InvalidProviderOutputError, PayloadTooLargeError, ProviderError, ProviderQuotaExceededError, TranscriptionResult, TranscriptSegment, duration_minutes_from_segments
from memo_engine.config import Settings


def _build_client(api_key: str | None, base_url: str | None) -> AsyncOpenAI:
  if not api_key:
    raise ValueError("OPENAI_API_KEY environment variable is required")
  return AsyncOpenAI(api_key=api_key, base_url=base_url)


def map_openai_error(exc: APIError) -> ProviderError:
  """Translate SDK errors into provider errors the retry policy understands."""
  if getattr(exc, "code", None) == "insufficient_quota":
    return ProviderQuotaExceededError()
  if getattr(exc, "status_code", None) == 413:
    return PayloadTooLargeError()
  return ProviderError(str(getattr(exc, "message", None) or exc))


class OpenAITranscriptionProvider:
  """Whisper client returning segment-level timestamps."""

  def __init__(self, *, api_key: str | None = None, base_url: str | None = None, model: str = "whisper-1", client: AsyncOpenAI | None = None) -> None:
    self.model = model
    self._client = client or _build_client(api_key, base_url)
    self._logger = logging.getLogger("memo_engine.ai.providers.openai_client")

  async def transcribe(self, audio: bytes, *, language: str) -> TranscriptionResult:
    self._logger.info("Starting transcription size=%d language=%s", len(audio), language)
    try:
      response = await self._client.audio.transcriptions.create(file=("audio.mp3", audio, "audio/mpeg"), model=self.model, language=language, response_format="verbose_json", timestamp_granularities=["segment"])
    except APIError as exc:
      self._logger.warning("Transcription request failed: %s", exc)
      raise map_openai_error(exc) from exc

    segments = tuple(TranscriptSegment(index=index, start=float(segment.start), end=float(segment.end), text=str(segment.text).strip()) for index, segment in enumerate(getattr(response, "segments", None) or []))
    result = TranscriptionResult(text=response.text, segments=segments, language=getattr(response, "language", None) or language, duration_minutes=duration_minutes_from_segments(segments))
    self._logger.info("Transcription completed chars=%d segments=%d minutes=%d", len(result.text), len(segments), result.duration_minutes)
    return result


class OpenAIMemoGenerator:
  """Chat-completions client producing memo content in JSON mode."""

  def __init__(self, *, api_key: str | None = None, base_url: str | None = None, model: str = "gpt-4o-mini", temperature: float = 0.3, client: AsyncOpenAI | None = None) -> None:
    self.model = model
    self.temperature = temperature
    self._client = client or _build_client(api_key, base_url)
    self._logger = logging.getLogger("memo_engine.ai.providers.openai_client")

  async def generate(self, transcript_text: str, metadata: GenerationMetadata) -> dict[str, Any]:
    self._logger.info("Starting memo generation transcript_chars=%d", len(transcript_text))
    try:
      response = await self._client.chat.completions.create(
        model=self.model,
        messages=[{"role": "system", "content": SYSTEM_PROMPT}, {"role": "user", "content": build_user_prompt(transcript_text, metadata)}],
        temperature=self.temperature,
        response_format={"type": "json_object"},
      )
    except APIError as exc:
      self._logger.warning("Memo generation request failed: %s", exc)
      raise map_openai_error(exc) from exc

    content = response.choices[0].message.content if response.choices else None
    if not content:
      raise ProviderError("Empty response from generation model")
    try:
      parsed = json.loads(content)
    except json.JSONDecodeError as exc:
      raise InvalidProviderOutputError("Generation model returned invalid JSON") from exc
    if not isinstance(parsed, dict):
      raise InvalidProviderOutputError("Generation model returned a non-object JSON value")
    return parsed


def build_transcription_provider(settings: Settings) -> OpenAITranscriptionProvider:
  return OpenAITranscriptionProvider(api_key=settings.openai_api_key, base_url=settings.openai_base_url, model=settings.transcription_model)


def build_generation_provider(settings: Settings) -> OpenAIMemoGenerator:
  return OpenAIMemoGenerator(api_key=settings.openai_api_key, base_url=settings.openai_base_url, model=settings.generation_model, temperature=settings.generation_temperature)
