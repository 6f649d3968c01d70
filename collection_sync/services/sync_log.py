"""In-memory log of recent sync operations, newest first."""

from __future__ import annotations

import logging
import uuid
from collections import deque
from dataclasses import asdict, dataclass
from typing import Any

from collection_sync.services.datetime_service import now_iso

logger = logging.getLogger(__name__)

DEFAULT_MAX_ENTRIES = 200


@dataclass(frozen=True)
class SyncLogEntry:
    id: str
    category: str
    type: str
    target: str
    message: str
    success: bool
    timestamp: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class SyncLog:
    """Bounded ring buffer; the oldest entry is dropped once ``max_entries`` is reached."""

    def __init__(self, max_entries: int = DEFAULT_MAX_ENTRIES) -> None:
        self._entries: deque[SyncLogEntry] = deque(maxlen=max_entries)

    def add(self, type_: str, target: str, message: str, *, success: bool = True) -> SyncLogEntry:
        entry = SyncLogEntry(
            id=str(uuid.uuid4()),
            category="sync",
            type=type_,
            target=target,
            message=message,
            success=success,
            timestamp=now_iso(),
        )
        self._entries.appendleft(entry)
        if success:
            logger.info("[%s] %s: %s", type_, target, message)
        else:
            logger.warning("[%s] %s: %s", type_, target, message)
        return entry

    def entries(self) -> list[SyncLogEntry]:
        return list(self._entries)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
