from __future__ import annotations

from datetime import timedelta

import pytest

from memo_engine.pipeline.state import InvalidStateError, InvalidTransitionError, MemoStatus
from memo_engine.storage.memory_memos_repo import InMemoryStatusLedger
from memo_engine.storage.memos_repo import MemoNotFoundError
from tests.fakes import TRANSCRIPT_TEXT, FakeClock


async def _memo_in(ledger: InMemoryStatusLedger, status: MemoStatus, *, account_id: str = "acct-1") -> str:
  memo = await ledger.create_memo(account_id=account_id, title="Weekly sync", participants=["Alice", "Bob"])
  path = [MemoStatus.TRANSCRIBING, MemoStatus.GENERATING, MemoStatus.COMPLETED]
  if status is MemoStatus.UPLOADING:
    return memo.memo_id
  await ledger.set_audio(memo.memo_id, storage_key="memos/a.mp3", url="memory://memo-audio/memos/a.mp3")
  current = MemoStatus.UPLOADING
  for target in path:
    await ledger.transition(memo.memo_id, expected=current, target=target)
    current = target
    if target is status:
      break
  return memo.memo_id


@pytest.mark.anyio
async def test_create_memo_starts_uploading_with_history(ledger: InMemoryStatusLedger) -> None:
  memo = await ledger.create_memo(account_id="acct-1", title="Kickoff", participants=("Alice",), language="de")
  assert memo.status is MemoStatus.UPLOADING
  assert memo.processing_attempt == 1
  assert memo.language == "de"

  history = await ledger.list_history(memo.memo_id)
  assert [(event.from_status, event.to_status) for event in history] == [(None, MemoStatus.UPLOADING)]


@pytest.mark.anyio
async def test_transition_is_compare_and_set(ledger: InMemoryStatusLedger) -> None:
  """Only the writer that still sees the expected status may advance the memo."""
  memo_id = await _memo_in(ledger, MemoStatus.TRANSCRIBING)

  await ledger.transition(memo_id, expected=MemoStatus.TRANSCRIBING, target=MemoStatus.GENERATING)
  with pytest.raises(InvalidStateError) as exc_info:
    await ledger.transition(memo_id, expected=MemoStatus.TRANSCRIBING, target=MemoStatus.GENERATING)
  assert exc_info.value.status is MemoStatus.GENERATING


@pytest.mark.anyio
async def test_transition_rejects_illegal_edges(ledger: InMemoryStatusLedger) -> None:
  memo_id = await _memo_in(ledger, MemoStatus.UPLOADING)
  with pytest.raises(InvalidTransitionError):
    await ledger.transition(memo_id, expected=MemoStatus.UPLOADING, target=MemoStatus.COMPLETED)
  memo = await ledger.get_memo(memo_id)
  assert memo is not None and memo.status is MemoStatus.UPLOADING


@pytest.mark.anyio
async def test_transition_rejects_stale_processing_attempt(ledger: InMemoryStatusLedger) -> None:
  memo_id = await _memo_in(ledger, MemoStatus.TRANSCRIBING)
  with pytest.raises(InvalidStateError):
    await ledger.transition(memo_id, expected=MemoStatus.TRANSCRIBING, target=MemoStatus.FAILED, processing_attempt=2, error_message="late")


@pytest.mark.anyio
async def test_failed_transition_records_error_message(ledger: InMemoryStatusLedger) -> None:
  memo_id = await _memo_in(ledger, MemoStatus.GENERATING)
  memo = await ledger.transition(memo_id, expected=MemoStatus.GENERATING, target=MemoStatus.FAILED, processing_attempt=1, error_message="Memo generation failed: boom")
  assert memo.error_message == "Memo generation failed: boom"

  history = await ledger.list_history(memo_id)
  assert history[-1].to_status is MemoStatus.FAILED
  assert history[-1].error_message == "Memo generation failed: boom"


@pytest.mark.anyio
async def test_set_audio_requires_uploading(ledger: InMemoryStatusLedger) -> None:
  memo_id = await _memo_in(ledger, MemoStatus.TRANSCRIBING)
  with pytest.raises(InvalidStateError):
    await ledger.set_audio(memo_id, storage_key="memos/b.mp3", url="memory://b")


@pytest.mark.anyio
async def test_set_audio_never_replaces_attached_audio(ledger: InMemoryStatusLedger) -> None:
  memo_id = await _memo_in(ledger, MemoStatus.UPLOADING)
  await ledger.set_audio(memo_id, storage_key="memos/a.mp3", url="memory://a", processing_attempt=1)

  with pytest.raises(InvalidStateError):
    await ledger.set_audio(memo_id, storage_key="memos/b.mp3", url="memory://b")
  with pytest.raises(InvalidStateError):
    await ledger.set_audio(memo_id, storage_key="memos/c.mp3", url="memory://c", processing_attempt=2)

  memo = await ledger.get_memo(memo_id)
  assert memo is not None and memo.audio_storage_key == "memos/a.mp3"


@pytest.mark.anyio
async def test_save_transcript_replaces_previous_one(ledger: InMemoryStatusLedger) -> None:
  memo_id = await _memo_in(ledger, MemoStatus.TRANSCRIBING)
  await ledger.save_transcript(memo_id, processing_attempt=1, text="first run " * 10, segments=[], language="en", duration_seconds=60)
  await ledger.save_transcript(memo_id, processing_attempt=1, text=TRANSCRIPT_TEXT, segments=[{"index": 0, "start": 0.0, "end": 600.0, "text": "x"}], language="en", duration_seconds=600)

  transcript = await ledger.get_transcript(memo_id)
  assert transcript is not None and transcript.text == TRANSCRIPT_TEXT
  memo = await ledger.get_memo(memo_id)
  assert memo is not None and memo.duration_seconds == 600


@pytest.mark.anyio
async def test_save_transcript_rejects_wrong_status_or_attempt(ledger: InMemoryStatusLedger) -> None:
  memo_id = await _memo_in(ledger, MemoStatus.GENERATING)
  with pytest.raises(InvalidStateError):
    await ledger.save_transcript(memo_id, processing_attempt=1, text=TRANSCRIPT_TEXT, segments=[], language="en", duration_seconds=60)

  other_id = await _memo_in(ledger, MemoStatus.TRANSCRIBING)
  with pytest.raises(InvalidStateError):
    await ledger.save_transcript(other_id, processing_attempt=3, text=TRANSCRIPT_TEXT, segments=[], language="en", duration_seconds=60)


@pytest.mark.anyio
async def test_restart_opens_new_attempt_and_clears_artifacts(ledger: InMemoryStatusLedger) -> None:
  memo_id = await _memo_in(ledger, MemoStatus.TRANSCRIBING)
  await ledger.save_transcript(memo_id, processing_attempt=1, text=TRANSCRIPT_TEXT, segments=[], language="en", duration_seconds=600)
  await ledger.transition(memo_id, expected=MemoStatus.TRANSCRIBING, target=MemoStatus.GENERATING)
  await ledger.save_content(memo_id, processing_attempt=1, content={"summary": "done"})
  await ledger.transition(memo_id, expected=MemoStatus.GENERATING, target=MemoStatus.COMPLETED)

  restarted = await ledger.restart(memo_id)
  assert restarted.status is MemoStatus.UPLOADING
  assert restarted.processing_attempt == 2
  assert restarted.content is None
  assert restarted.audio_storage_key is None
  assert await ledger.get_transcript(memo_id) is None

  history = await ledger.list_history(memo_id)
  assert (history[-1].from_status, history[-1].to_status, history[-1].processing_attempt) == (MemoStatus.COMPLETED, MemoStatus.UPLOADING, 2)


@pytest.mark.anyio
async def test_restart_requires_terminal_status(ledger: InMemoryStatusLedger) -> None:
  memo_id = await _memo_in(ledger, MemoStatus.GENERATING)
  with pytest.raises(InvalidStateError):
    await ledger.restart(memo_id)


@pytest.mark.anyio
async def test_list_memos_is_scoped_and_paginated(ledger: InMemoryStatusLedger, clock: FakeClock) -> None:
  created = []
  for index in range(3):
    memo = await ledger.create_memo(account_id="acct-1", title=f"Memo {index}")
    created.append(memo.memo_id)
    clock.advance(1)
  await ledger.create_memo(account_id="acct-2", title="Someone else")

  page, total = await ledger.list_memos("acct-1", limit=2)
  assert total == 3
  assert [memo.memo_id for memo in page] == [created[2], created[1]]

  page, total = await ledger.list_memos("acct-1", status=MemoStatus.COMPLETED)
  assert (page, total) == ([], 0)


@pytest.mark.anyio
async def test_find_stalled_uses_updated_at(ledger: InMemoryStatusLedger, clock: FakeClock) -> None:
  old_id = await _memo_in(ledger, MemoStatus.TRANSCRIBING)
  clock.advance(600)
  await _memo_in(ledger, MemoStatus.TRANSCRIBING)
  await _memo_in(ledger, MemoStatus.UPLOADING)

  stalled = await ledger.find_stalled(statuses=[MemoStatus.TRANSCRIBING, MemoStatus.GENERATING], updated_before=clock() - timedelta(seconds=60))
  assert [memo.memo_id for memo in stalled] == [old_id]


@pytest.mark.anyio
async def test_delete_memo_removes_everything(ledger: InMemoryStatusLedger) -> None:
  memo_id = await _memo_in(ledger, MemoStatus.UPLOADING)
  deleted = await ledger.delete_memo(memo_id)
  assert deleted is not None and deleted.memo_id == memo_id
  assert await ledger.get_memo(memo_id) is None
  assert await ledger.list_history(memo_id) == []
  assert await ledger.delete_memo(memo_id) is None

  with pytest.raises(MemoNotFoundError):
    await ledger.transition(memo_id, expected=MemoStatus.UPLOADING, target=MemoStatus.TRANSCRIBING)
