"""ORM models; importing the package registers every table on Base.metadata."""

from .jobs import Job, JobDeadLetter
from .memos import Memo, MemoStatusEvent, MemoTranscript
from .usage import UsageAccount, UsageCounter, UsageLog

__all__ = ["Job", "JobDeadLetter", "Memo", "MemoStatusEvent", "MemoTranscript", "UsageAccount", "UsageCounter", "UsageLog"]
