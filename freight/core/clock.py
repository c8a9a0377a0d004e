"""
Naive-UTC timestamps.

Columns are timezone-naive UTC (SQLite drops tzinfo anyway), so every
comparison in the services goes through this one helper.
"""
from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)
