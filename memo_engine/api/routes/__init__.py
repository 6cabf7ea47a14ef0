from . import jobs, memos, usage

__all__ = ["jobs", "memos", "usage"]
