"""Contracts for the external collection and item store, plus in-memory demo versions."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any, Protocol

from chunk_sync.scheduler.models import DateWindow, ErrorCategory, SyncScope

Item = dict[str, Any]


class SourceError(Exception):
    """Error raised by a collaborator that already knows its error category."""

    def __init__(self, message: str, *, category: ErrorCategory | None = None) -> None:
        super().__init__(message)
        self.category = category


class ItemSource(Protocol):
    """Paginated external collection.

    ``offset`` and ``limit`` address positions of the collection *after* ``window`` has
    been applied, so chunk boundaries computed at intake stay valid.
    """

    def fetch_range(
        self,
        *,
        scope: SyncScope,
        window: DateWindow,
        offset: int,
        limit: int,
    ) -> list[Item]: ...


class ItemSink(Protocol):
    """Idempotent item writer; duplicates from a retried chunk must be harmless."""

    def persist(self, items: list[Item], *, scope: SyncScope) -> None: ...


@dataclass(slots=True)
class SyntheticItemSource:
    """Deterministic collection of timestamped items, newest first."""

    total_items: int = 1000
    anchor: datetime = field(default_factory=lambda: datetime(2026, 1, 1, tzinfo=UTC))
    spacing: timedelta = timedelta(minutes=30)

    def item_at(self, scope: SyncScope, position: int) -> Item:
        return {
            "item_id": f"{scope.connection_id}:{position:06d}",
            "position": position,
            "received_at": self.anchor - position * self.spacing,
        }

    def fetch_range(
        self,
        *,
        scope: SyncScope,
        window: DateWindow,
        offset: int,
        limit: int,
    ) -> list[Item]:
        if offset < 0 or limit < 0:
            raise ValueError(f"offset and limit must be >= 0, got {offset}/{limit}.")
        filtered = [
            item
            for item in (self.item_at(scope, position) for position in range(self.total_items))
            if window.contains(item["received_at"])
        ]
        return filtered[offset : offset + limit]


class UpsertItemSink:
    """In-memory store keyed by ``item_id``."""

    def __init__(self) -> None:
        self._items: dict[tuple[str, str], Item] = {}
        self._lock = threading.Lock()
        self.write_calls = 0

    def persist(self, items: list[Item], *, scope: SyncScope) -> None:
        with self._lock:
            self.write_calls += 1
            for item in items:
                self._items[(scope.account_id, str(item["item_id"]))] = dict(item)

    def count(self, scope: SyncScope | None = None) -> int:
        with self._lock:
            if scope is None:
                return len(self._items)
            return sum(1 for account_id, _ in self._items if account_id == scope.account_id)

    def item_ids(self) -> set[str]:
        with self._lock:
            return {item_id for _, item_id in self._items}
