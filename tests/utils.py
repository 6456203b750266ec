from __future__ import annotations

from datetime import datetime, timezone

from pymongo.errors import PyMongoError


def utc(*args: int) -> datetime:
    """datetime(...) in UTC."""
    return datetime(*args, tzinfo=timezone.utc)


def candle_doc(doc: dict) -> dict:
    """Stored candle fields, without storage bookkeeping (_id, createdAt)."""
    return {k: v for k, v in doc.items() if k not in ("_id", "createdAt")}


class BrokenCollection:
    """Collection stand-in whose every storage call fails like an unreachable server."""

    def __init__(self, message: str = "db down"):
        self.message = message

    def _fail(self, *args, **kwargs):
        raise PyMongoError(self.message)

    find = find_one = aggregate = delete_many = update_one = _fail
