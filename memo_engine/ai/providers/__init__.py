"""Provider implementations."""

from memo_engine.ai.providers.base import GenerationMetadata, GenerationProvider, PayloadTooLargeError, ProviderError, ProviderQuotaExceededError, TranscriptionProvider, TranscriptionResult, TranscriptSegment
from memo_engine.ai.providers.openai_client import OpenAIMemoGenerator, OpenAITranscriptionProvider, build_generation_provider, build_transcription_provider

__all__ = [
  "GenerationMetadata",
  "GenerationProvider",
  "OpenAIMemoGenerator",
  "OpenAITranscriptionProvider",
  "PayloadTooLargeError",
  "ProviderError",
  "ProviderQuotaExceededError",
  "TranscriptSegment",
  "TranscriptionProvider",
  "TranscriptionResult",
  "build_generation_provider",
  "build_transcription_provider",
]
