from datetime import date

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from blobs import ReceiptStorage, receipt_path_for
from database import Base
from errors import MalformedInput, PartialBatchFailure, StoreUnavailable
from models import Expense
from schemas import DraftExpense, HouseholdIn
from services import HouseholdService
from sync import DraftQueue, ReplayGuard, SyncReconciler


class FlakyStorage(ReceiptStorage):
    def __init__(self, root, failing_names):
        super().__init__(root)
        self.failing_names = set(failing_names)

    def upload(self, path, data):
        if any(path.endswith(name) for name in self.failing_names):
            raise StoreUnavailable(f"Receipt upload failed for {path}")
        return super().upload(path, data)


def _factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, expire_on_commit=False)


def _draft(draft_id, household_id, receipt_name=None, day=1):
    return DraftExpense(
        id=draft_id,
        household_id=household_id,
        user_id="u1",
        txn_date=date(2024, 3, day),
        amount=1_000,
        merchant="Shop",
        receipt_name=receipt_name,
    )


def test_replay_keeps_failed_entry_queued(tmp_path):
    factory = _factory()
    with factory() as session:
        household_id = HouseholdService(session).create(HouseholdIn(name="Home")).id

    queue = DraftQueue(tmp_path / "drafts")
    for n in (1, 2, 3):
        queue.enqueue(
            _draft(f"draft-{n}", household_id, receipt_name=f"r{n}.jpg", day=n),
            receipt=b"jpeg",
        )
    storage = FlakyStorage(tmp_path / "receipts", failing_names=["r2.jpg"])
    reconciler = SyncReconciler(queue, storage, factory)

    result = reconciler.replay()
    assert result.success_count == 2
    assert result.errors == ["draft-2"]
    assert result.partial
    assert [d.id for d in queue.list_queued()] == ["draft-2"]

    with factory() as session:
        stored = {e.id: e for e in session.scalars(select(Expense)).all()}
    assert set(stored) == {"draft-1", "draft-3"}
    assert stored["draft-1"].receipt_path == receipt_path_for(
        "u1", "r1.jpg", token="draft-1"
    )
    assert (tmp_path / "receipts" / stored["draft-1"].receipt_path).read_bytes() == (
        b"jpeg"
    )

    with pytest.raises(PartialBatchFailure) as excinfo:
        result.raise_for_errors()
    assert excinfo.value.failed_ids == ["draft-2"]


def test_replay_after_recovery_drains_queue(tmp_path):
    factory = _factory()
    with factory() as session:
        household_id = HouseholdService(session).create(HouseholdIn(name="Home")).id

    queue = DraftQueue(tmp_path / "drafts")
    queue.enqueue(_draft("draft-1", household_id, receipt_name="a.png"), receipt=b"x")
    flaky = FlakyStorage(tmp_path / "receipts", failing_names=["a.png"])
    assert SyncReconciler(queue, flaky, factory).replay().errors == ["draft-1"]

    healthy = ReceiptStorage(tmp_path / "receipts")
    result = SyncReconciler(queue, healthy, factory).replay()
    assert result.success_count == 1
    assert len(queue) == 0


def test_replay_is_idempotent_when_dequeue_is_lost(tmp_path):
    factory = _factory()
    with factory() as session:
        household_id = HouseholdService(session).create(HouseholdIn(name="Home")).id

    queue = DraftQueue(tmp_path / "drafts")
    draft = _draft("draft-1", household_id)
    queue.enqueue(draft)
    reconciler = SyncReconciler(queue, ReceiptStorage(tmp_path / "receipts"), factory)
    reconciler.replay()

    queue.enqueue(draft)
    assert reconciler.replay().success_count == 1
    with factory() as session:
        assert len(session.scalars(select(Expense)).all()) == 1


def test_queue_preserves_enqueue_order(tmp_path):
    queue = DraftQueue(tmp_path)
    for draft_id in ("c", "a", "b"):
        queue.enqueue(_draft(draft_id, 1))
    queue.enqueue(_draft("c", 1, day=9))
    assert [d.id for d in queue.list_queued()] == ["c", "a", "b"]
    assert queue.list_queued()[0].txn_date == date(2024, 3, 9)

    queue.dequeue("a")
    assert [d.id for d in queue.list_queued()] == ["c", "b"]


def test_unreadable_entry_does_not_block_replay(tmp_path, caplog):
    factory = _factory()
    with factory() as session:
        household_id = HouseholdService(session).create(HouseholdIn(name="Home")).id

    queue = DraftQueue(tmp_path / "drafts")
    queue.enqueue(_draft("draft-1", household_id))
    (tmp_path / "drafts" / "broken.json").write_text("{not json", encoding="utf-8")
    (tmp_path / "drafts" / "partial.json").write_text(
        '{"enqueued_at": 1}', encoding="utf-8"
    )

    assert [d.id for d in queue.list_queued()] == ["draft-1"]
    assert "draft_unreadable: path=broken.json" in caplog.text

    result = SyncReconciler(
        queue, ReceiptStorage(tmp_path / "receipts"), factory
    ).replay()
    assert result.success_count == 1
    assert result.errors == []
    assert len(queue) == 0
    with factory() as session:
        assert [e.id for e in session.scalars(select(Expense)).all()] == ["draft-1"]
    # left in place for inspection
    assert (tmp_path / "drafts" / "broken.json").exists()

    queue.enqueue(_draft("draft-2", household_id))
    assert [d.id for d in queue.list_queued()] == ["draft-2"]


def test_queue_rejects_path_like_ids(tmp_path):
    with pytest.raises(ValueError):
        DraftQueue(tmp_path).enqueue(_draft("../escape", 1))


def test_guard_allows_single_replay_in_flight(tmp_path):
    guard = ReplayGuard()
    reconciler = SyncReconciler(
        DraftQueue(tmp_path / "drafts"),
        ReceiptStorage(tmp_path / "receipts"),
        _factory(),
        guard=guard,
    )
    with guard.hold() as acquired:
        assert acquired
        assert guard.in_flight
        assert reconciler.replay().skipped
    assert not guard.in_flight
    assert not reconciler.replay().skipped


def test_replay_triggers_on_offline_to_online_transition(tmp_path):
    factory = _factory()
    with factory() as session:
        household_id = HouseholdService(session).create(HouseholdIn(name="Home")).id

    queue = DraftQueue(tmp_path / "drafts")
    reconciler = SyncReconciler(queue, ReceiptStorage(tmp_path / "receipts"), factory)

    assert reconciler.on_connectivity_change(False) is None
    queue.enqueue(_draft("draft-1", household_id))
    assert reconciler.replay().skipped
    assert len(queue) == 1

    result = reconciler.on_connectivity_change(True)
    assert result.success_count == 1
    assert len(queue) == 0
    # already online, no second replay
    assert reconciler.on_connectivity_change(True) is None


def test_receipt_storage_rejects_escaping_paths(tmp_path):
    storage = ReceiptStorage(tmp_path)
    with pytest.raises(MalformedInput):
        storage.upload("../outside.jpg", b"x")
    assert storage.upload("u1/ok.jpg", b"x") == "u1/ok.jpg"
    assert storage.read("u1/ok.jpg") == b"x"
