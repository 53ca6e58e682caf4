"""Replay of expenses recorded while offline.

Drafts sit in a local directory queue until an insert into the ledger is
confirmed. Each draft is processed independently: a failed receipt upload
or insert leaves that draft queued for the next run and moves on.
"""

from __future__ import annotations

import json
import logging
import os
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterator, Optional

from sqlalchemy.orm import Session

from blobs import ReceiptStorage, receipt_path_for
from config import get_settings
from database import session_scope
from errors import NotFound, PartialBatchFailure
from events import ChangeFeed
from schemas import DraftExpense, ExpenseIn
from services import ExpenseService


logger = logging.getLogger(__name__)


class DraftQueue:
    """Durable queue keyed by the client-generated draft id."""

    def __init__(self, root: Optional[Path] = None) -> None:
        self.root = root or get_settings().drafts_dir
        self.root.mkdir(parents=True, exist_ok=True)

    def _entry_path(self, draft_id: str) -> Path:
        return self.root / f"{draft_id}.json"

    def _receipt_path(self, draft_id: str) -> Path:
        return self.root / f"{draft_id}.receipt"

    def _write_atomic(self, path: Path, data: bytes) -> None:
        tmp = path.with_name(path.name + ".tmp")
        tmp.write_bytes(data)
        os.replace(tmp, path)

    def enqueue(self, draft: DraftExpense, receipt: Optional[bytes] = None) -> None:
        if "/" in draft.id or "\\" in draft.id:
            raise ValueError("Draft id must not contain path separators")
        entry_path = self._entry_path(draft.id)
        existing = self._read_envelope(entry_path) if entry_path.exists() else None
        if existing is not None:
            # re-saving a draft keeps its place in the queue
            enqueued_at = existing[0]
        else:
            enqueued_at = self._next_sequence()
        if receipt is not None:
            self._write_atomic(self._receipt_path(draft.id), receipt)
        envelope = {"enqueued_at": enqueued_at, "draft": draft.model_dump(mode="json")}
        self._write_atomic(entry_path, json.dumps(envelope).encode("utf-8"))
        logger.info(f"draft_enqueued: id={draft.id}")

    def _read_envelope(self, path: Path) -> Optional[tuple[int, DraftExpense]]:
        """Parse one entry; an unreadable entry is logged and left in place."""
        try:
            envelope = json.loads(path.read_text(encoding="utf-8"))
            return int(envelope["enqueued_at"]), DraftExpense.model_validate(
                envelope["draft"]
            )
        except (OSError, ValueError, KeyError, TypeError):
            logger.exception(f"draft_unreadable: path={path.name}")
            return None

    def _entries(self) -> list[tuple[int, DraftExpense]]:
        entries = (self._read_envelope(p) for p in self.root.glob("*.json"))
        return [entry for entry in entries if entry is not None]

    def _next_sequence(self) -> int:
        latest = max((seq for seq, _ in self._entries()), default=0)
        return max(time.time_ns(), latest + 1)

    def list_queued(self) -> list[DraftExpense]:
        entries = self._entries()
        entries.sort(key=lambda e: (e[0], e[1].id))
        return [draft for _, draft in entries]

    def receipt_bytes(self, draft_id: str) -> bytes:
        path = self._receipt_path(draft_id)
        if not path.exists():
            raise NotFound(f"Staged receipt missing for draft {draft_id}")
        return path.read_bytes()

    def dequeue(self, draft_id: str) -> None:
        self._entry_path(draft_id).unlink(missing_ok=True)
        self._receipt_path(draft_id).unlink(missing_ok=True)
        logger.info(f"draft_dequeued: id={draft_id}")

    def __len__(self) -> int:
        return len(self._entries())


class ReplayGuard:
    """Single-flight token: at most one replay run holds it at a time."""

    def __init__(self) -> None:
        self._lock = threading.Lock()

    @property
    def in_flight(self) -> bool:
        return self._lock.locked()

    @contextmanager
    def hold(self) -> Iterator[bool]:
        acquired = self._lock.acquire(blocking=False)
        try:
            yield acquired
        finally:
            if acquired:
                self._lock.release()


@dataclass
class ReplayResult:
    success_count: int = 0
    errors: list[str] = field(default_factory=list)
    skipped: bool = False

    @property
    def partial(self) -> bool:
        return bool(self.errors)

    def raise_for_errors(self) -> None:
        if self.errors:
            raise PartialBatchFailure(self.success_count, self.errors)


class SyncReconciler:
    def __init__(
        self,
        queue: DraftQueue,
        storage: ReceiptStorage,
        session_factory: Callable[[], Session],
        *,
        guard: Optional[ReplayGuard] = None,
        feed: Optional[ChangeFeed] = None,
    ) -> None:
        self.queue = queue
        self.storage = storage
        self.session_factory = session_factory
        self.guard = guard or ReplayGuard()
        self.feed = feed
        self._online = True

    def on_connectivity_change(self, online: bool) -> Optional[ReplayResult]:
        came_online = online and not self._online
        self._online = online
        if came_online:
            return self.replay(source="online")
        return None

    def replay(self, source: str = "manual") -> ReplayResult:
        if not self._online:
            logger.info(f"replay_skipped: source={source} reason=offline")
            return ReplayResult(skipped=True)
        with self.guard.hold() as acquired:
            if not acquired:
                logger.info(f"replay_skipped: source={source} reason=in_flight")
                return ReplayResult(skipped=True)
            return self._replay_all(source)

    def _replay_all(self, source: str) -> ReplayResult:
        result = ReplayResult()
        drafts = self.queue.list_queued()
        if not drafts:
            return result
        logger.info(f"replay_start: source={source} drafts={len(drafts)}")
        for draft in drafts:
            try:
                self._replay_one(draft)
            except Exception:
                logger.exception(f"replay_failed: draft={draft.id}")
                result.errors.append(draft.id)
                continue
            result.success_count += 1
        logger.info(
            f"replay_done: source={source} synced={result.success_count} "
            f"failed={len(result.errors)}"
        )
        return result

    def _replay_one(self, draft: DraftExpense) -> None:
        receipt_path = None
        if draft.receipt_name:
            data = self.queue.receipt_bytes(draft.id)
            receipt_path = self.storage.upload(
                receipt_path_for(draft.user_id, draft.receipt_name, token=draft.id),
                data,
            )

        with session_scope(self.session_factory) as session:
            ExpenseService(session, draft.household_id, self.feed).create(
                ExpenseIn(
                    id=draft.id,
                    user_id=draft.user_id,
                    category_id=draft.category_id,
                    payment_source_id=draft.payment_source_id,
                    txn_date=draft.txn_date,
                    amount=draft.amount,
                    merchant=draft.merchant,
                    notes=draft.notes,
                    receipt_path=receipt_path,
                )
            )
        self.queue.dequeue(draft.id)
