"""Object storage for uploaded meeting audio."""

from __future__ import annotations

import asyncio
import datetime
import os
import uuid
from dataclasses import dataclass
from typing import Protocol
from urllib.parse import urlparse, urlunparse

from google.api_core.exceptions import NotFound
from google.auth.credentials import AnonymousCredentials
from google.cloud import storage
from starlette.concurrency import run_in_threadpool

from memo_engine.config import Settings


class BlobNotFoundError(LookupError):
  def __init__(self, key: str) -> None:
    super().__init__(f"Blob {key} not found")
    self.key = key


@dataclass(frozen=True)
class StoredBlob:
  url: str
  key: str


class BlobStore(Protocol):
  async def put(self, data: bytes, *, key: str, content_type: str) -> StoredBlob:
    """Store bytes under ``key`` and return its location."""

  async def get(self, key: str) -> bytes:
    """Return the bytes stored under ``key`` or raise BlobNotFoundError."""

  async def delete(self, key: str) -> None:
    """Delete ``key``; deleting a missing blob is not an error."""


def audio_object_key(memo_id: str, *, now: datetime.datetime | None = None) -> str:
  """Return a fresh object key for one audio upload of a memo."""
  moment = now or datetime.datetime.now(datetime.UTC)
  return f"memos/{memo_id}/audio-{int(moment.timestamp() * 1000)}-{uuid.uuid4().hex[:8]}.mp3"


class GcsBlobStore(BlobStore):
  """Thin wrapper over GCS (or its emulator); SDK calls run in the threadpool."""

  def __init__(self, settings: Settings) -> None:
    self._bucket_name = settings.audio_bucket
    self._storage_host = settings.gcs_storage_host
    if self._storage_host:
      emulator_endpoint = _normalize_emulator_endpoint(self._storage_host)
      os.environ["GCS_STORAGE_EMULATOR_HOST"] = emulator_endpoint
      self._client = storage.Client(project=settings.gcp_project_id or "local-dev", credentials=AnonymousCredentials(), client_options={"api_endpoint": emulator_endpoint})
    else:
      self._client = storage.Client(project=settings.gcp_project_id)

  @property
  def bucket_name(self) -> str:
    return self._bucket_name

  async def ensure_bucket(self) -> None:
    """Create the bucket when running against the emulator."""
    if not self._storage_host:
      return
    bucket = self._client.bucket(self._bucket_name)

    def _create_if_missing() -> None:
      if not bucket.exists(client=self._client):
        self._client.create_bucket(bucket)

    await run_in_threadpool(_create_if_missing)

  async def put(self, data: bytes, *, key: str, content_type: str) -> StoredBlob:
    blob = self._client.bucket(self._bucket_name).blob(key)
    await run_in_threadpool(blob.upload_from_string, data, content_type)
    return StoredBlob(url=f"gs://{self._bucket_name}/{key}", key=key)

  async def get(self, key: str) -> bytes:
    blob = self._client.bucket(self._bucket_name).blob(key)
    try:
      return await run_in_threadpool(blob.download_as_bytes)
    except NotFound as exc:
      raise BlobNotFoundError(key) from exc

  async def delete(self, key: str) -> None:
    blob = self._client.bucket(self._bucket_name).blob(key)
    try:
      await run_in_threadpool(blob.delete)
    except NotFound:
      return


class InMemoryBlobStore(BlobStore):
  def __init__(self, *, bucket_name: str = "memo-audio") -> None:
    self._bucket_name = bucket_name
    self._blobs: dict[str, tuple[bytes, str]] = {}
    self._lock = asyncio.Lock()

  async def put(self, data: bytes, *, key: str, content_type: str) -> StoredBlob:
    async with self._lock:
      self._blobs[key] = (bytes(data), content_type)
    return StoredBlob(url=f"memory://{self._bucket_name}/{key}", key=key)

  async def get(self, key: str) -> bytes:
    stored = self._blobs.get(key)
    if stored is None:
      raise BlobNotFoundError(key)
    return stored[0]

  async def delete(self, key: str) -> None:
    async with self._lock:
      self._blobs.pop(key, None)

  def __len__(self) -> int:
    return len(self._blobs)

  def __contains__(self, key: object) -> bool:
    return key in self._blobs


def build_blob_store(settings: Settings) -> BlobStore:
  """Create the configured blob store."""
  if settings.blob_backend == "memory":
    return InMemoryBlobStore(bucket_name=settings.audio_bucket)
  return GcsBlobStore(settings)


def _normalize_emulator_endpoint(raw_endpoint: str) -> str:
  """Normalize the emulator endpoint to scheme+host+port."""
  parsed = urlparse(raw_endpoint)
  if not parsed.scheme or not parsed.netloc:
    return raw_endpoint.rstrip("/")
  return urlunparse((parsed.scheme, parsed.netloc, "", "", "", "")).rstrip("/")
