"""Shared rate-limit state storage.

The limiter coordinates independent gateway processes through a single small
record. Stores expose read / write / update / clear; `update` is an optimistic
read-compute-write and gives no mutual exclusion. A store backed by a
key-value service with compare-and-swap can implement the same protocol.

Persisted record (JSON):
    {
        "requestTimestamps": [1718000000000, ...],
        "lastRequestTime": 1718000000000,
        "isLimited": false,
        "retryAfter": null,
        "processId": "4242-1718000000000",
        "lastUpdated": 1718000000000
    }
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import time
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Protocol

logger = logging.getLogger(__name__)

DEFAULT_STALE_AFTER_MS = 5 * 60 * 1000


def now_ms() -> float:
    return time.time() * 1000


def default_store_path() -> Path:
    return Path(tempfile.gettempdir()) / "duckgate" / "rate-limit.json"


def default_owner_id() -> str:
    return f"{os.getpid()}-{int(now_ms())}"


@dataclass(frozen=True)
class RateLimitState:
    """Sliding-window state shared across processes. Timestamps are epoch ms."""

    window_events: tuple[float, ...] = ()
    last_request_time: float = 0.0
    limited: bool = False
    retry_after_ms: int | None = None
    owner_id: str = ""
    updated_at: float = 0.0

    def pruned(self, now: float, window_ms: float) -> RateLimitState:
        """Drop every event at or before `now - window_ms`."""
        cutoff = now - window_ms
        return replace(self, window_events=tuple(t for t in self.window_events if t > cutoff))

    def to_record(self) -> dict[str, Any]:
        return {
            "requestTimestamps": list(self.window_events),
            "lastRequestTime": self.last_request_time,
            "isLimited": self.limited,
            "retryAfter": self.retry_after_ms,
            "processId": self.owner_id,
            "lastUpdated": self.updated_at,
        }

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> RateLimitState:
        """Build state from a persisted record.

        Records in the older fixed-window format (`requestCount` and
        `windowStart`, no timestamp list) keep their spacing and limited
        fields but start with an empty window.
        """
        if "requestTimestamps" in record:
            events = tuple(sorted(float(t) for t in record.get("requestTimestamps") or []))
        else:
            if "requestCount" in record:
                logger.debug("Discarding fixed-window counters from legacy rate-limit record")
            events = ()
        return cls(
            window_events=events,
            last_request_time=float(record.get("lastRequestTime") or 0),
            limited=bool(record.get("isLimited", False)),
            retry_after_ms=record.get("retryAfter"),
            owner_id=str(record.get("processId", "")),
            updated_at=float(record.get("lastUpdated") or 0),
        )


class RateLimitStore(Protocol):
    """Key-value style storage for the shared rate-limit record."""

    def read(self) -> RateLimitState | None: ...

    def write(self, state: RateLimitState) -> None: ...

    def update(self, updater: Callable[[RateLimitState | None], RateLimitState]) -> RateLimitState: ...

    def clear(self) -> None: ...


@dataclass
class FileRateLimitStore:
    """Rate-limit record kept in a JSON file visible to every local process.

    Writes go to a temporary file that is renamed over the record, so a
    reader never sees a half-written file. Concurrent writers can still
    overwrite each other; that race is accepted.
    """

    path: Path = field(default_factory=default_store_path)
    owner_id: str = field(default_factory=default_owner_id)
    stale_after_ms: float = DEFAULT_STALE_AFTER_MS
    clock: Callable[[], float] = now_ms

    def __post_init__(self) -> None:
        self.path = Path(self.path)
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def read(self) -> RateLimitState | None:
        """Read the shared record.

        Returns None when the file is missing, empty, unreadable or stale.
        """
        try:
            data = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.debug("Failed to read rate-limit store %s: %s", self.path, e)
            return None

        if not data.strip():
            return None

        try:
            record = json.loads(data)
            state = RateLimitState.from_record(record)
        except (json.JSONDecodeError, TypeError, ValueError, AttributeError) as e:
            logger.debug("Ignoring malformed rate-limit store %s: %s", self.path, e)
            return None

        if self.clock() - state.updated_at > self.stale_after_ms:
            return None
        return state

    def write(self, state: RateLimitState) -> None:
        """Persist state, stamping it with this process's identity."""
        stamped = replace(state, owner_id=self.owner_id, updated_at=self.clock())
        tmp_name: str | None = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, prefix=".rate-limit-")
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(stamped.to_record(), f, indent=2)
            os.replace(tmp_name, self.path)
        except OSError as e:
            logger.warning("Failed to write rate-limit store %s: %s", self.path, e)
            if tmp_name is not None:
                try:
                    Path(tmp_name).unlink(missing_ok=True)
                except OSError as cleanup_error:
                    logger.debug("Could not remove %s: %s", tmp_name, cleanup_error)

    def update(self, updater: Callable[[RateLimitState | None], RateLimitState]) -> RateLimitState:
        """Read the latest record, apply `updater`, write the result."""
        updated = updater(self.read())
        self.write(updated)
        return updated

    def clear(self) -> None:
        try:
            self.path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning("Failed to clear rate-limit store %s: %s", self.path, e)


@dataclass
class MemoryRateLimitStore:
    """In-process store, for a single gateway process and for tests."""

    owner_id: str = field(default_factory=default_owner_id)
    stale_after_ms: float = DEFAULT_STALE_AFTER_MS
    clock: Callable[[], float] = now_ms
    _state: RateLimitState | None = None

    @property
    def path(self) -> str:
        return "<memory>"

    def read(self) -> RateLimitState | None:
        if self._state is None:
            return None
        if self.clock() - self._state.updated_at > self.stale_after_ms:
            return None
        return self._state

    def write(self, state: RateLimitState) -> None:
        self._state = replace(state, owner_id=self.owner_id, updated_at=self.clock())

    def update(self, updater: Callable[[RateLimitState | None], RateLimitState]) -> RateLimitState:
        updated = updater(self.read())
        self.write(updated)
        return updated

    def clear(self) -> None:
        self._state = None
