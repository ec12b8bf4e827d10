from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel


class CacheEntry(BaseModel):
    """A cached JSON value as persisted in durable storage."""

    value: Any
    cached_at: datetime
    ttl_seconds: float
    stale: bool = False  # Computed on read, never persisted as True


class CachedDocument(BaseModel):
    """Body of a record used as a remote cache tier."""

    last_updated: datetime | None = None
    data: Any = None
