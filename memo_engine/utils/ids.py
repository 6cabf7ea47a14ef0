"""Identifier utilities."""

from __future__ import annotations

import secrets
import uuid


def generate_memo_id() -> str:
  """Return a new memo identifier."""
  return str(uuid.uuid4())


def generate_lease_token() -> str:
  """Return an opaque token identifying one lease of a job."""
  return secrets.token_urlsafe(16)


def generate_worker_id(prefix: str, slot: int) -> str:
  """Return a worker identity unique to this process and slot."""
  return f"{prefix}-{uuid.uuid4().hex[:8]}-{slot}"
