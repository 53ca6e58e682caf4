from datetime import date

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import main
from blobs import ReceiptStorage
from csrf import CSRF_HEADER
from database import Base
from sync import DraftQueue, SyncReconciler


@pytest.fixture
def client(tmp_path, monkeypatch):
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

    def override_get_db():
        db = factory()
        try:
            yield db
        finally:
            db.close()

    queue = DraftQueue(tmp_path / "drafts")
    storage = ReceiptStorage(tmp_path / "receipts")
    monkeypatch.setattr(main, "draft_queue", queue)
    monkeypatch.setattr(main, "receipt_storage", storage)
    monkeypatch.setattr(main, "reconciler", SyncReconciler(queue, storage, factory))
    main.app.dependency_overrides[main.get_db] = override_get_db
    # no context manager: the background scheduler stays off
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()


def _headers(client, household_id=None):
    params = {"household_id": household_id} if household_id is not None else {}
    token = client.get("/api/csrf-token", params=params).json()["token"]
    return {CSRF_HEADER: token}


def _household(client, payday=25):
    resp = client.post(
        "/api/households",
        json={"name": "Home", "payday_start_day": payday},
        headers=_headers(client),
    )
    assert resp.status_code == 201
    return resp.json()["id"]


def test_mutations_require_csrf_header(client):
    resp = client.post("/api/households", json={"name": "Home"})
    assert resp.status_code == 400

    household_id = _household(client)
    foreign = _headers(client, household_id + 1)
    resp = client.post(
        f"/api/households/{household_id}/categories",
        json={"name": "Food"},
        headers=foreign,
    )
    assert resp.status_code == 400


def test_budget_and_expense_flow(client):
    household_id = _household(client)
    headers = _headers(client, household_id)
    base = f"/api/households/{household_id}"

    food = client.post(
        f"{base}/categories", json={"name": "Food"}, headers=headers
    ).json()
    resp = client.put(
        f"{base}/budgets",
        params={"month": "2024-02"},
        json={"lines": [{"category_id": food["id"], "amount": 100_000}]},
        headers=headers,
    )
    assert resp.json() == {"month": "2024-02-01", "saved": 1}

    for day, amount in (("2024-02-25", 70_000), ("2024-03-24", 50_000)):
        resp = client.post(
            f"{base}/expenses",
            json={
                "user_id": "u1",
                "txn_date": day,
                "amount": amount,
                "category_id": food["id"],
            },
            headers=headers,
        )
        assert resp.status_code == 201
        assert resp.json()["month"] == "2024-02-01"

    rollup = client.get(
        f"{base}/rollups/categories", params={"month": "2024-02-01"}
    ).json()
    assert rollup["cycle"]["start"] == "2024-02-25"
    assert rollup["cycle"]["end"] == "2024-03-25"
    (row,) = rollup["categories"]
    assert row["remaining_amount"] == -20_000
    assert row["pct_used"] == 120

    listing = client.get(
        f"{base}/expenses", params={"month": "2024-02", "page": 7, "page_size": 1}
    ).json()
    assert listing["page"] == 2
    assert listing["total_pages"] == 2
    assert listing["items"][0]["txn_date"] == "2024-02-25"

    weeks = client.get(f"{base}/rollups/weekly", params={"month": "2024-02"}).json()
    assert sum(w["actual_amount"] for w in weeks) == 120_000

    trend = client.get(
        f"{base}/rollups/trend", params={"month": "2024-02", "cycles": 2}
    ).json()
    assert [t["month"] for t in trend] == ["2024-01-01", "2024-02-01"]


def test_expense_update_and_delete(client):
    household_id = _household(client)
    headers = _headers(client, household_id)
    base = f"/api/households/{household_id}"

    created = client.post(
        f"{base}/expenses",
        json={"user_id": "u1", "txn_date": "2024-03-01", "amount": 500},
        headers=headers,
    ).json()
    resp = client.patch(
        f"{base}/expenses/{created['id']}",
        json={"txn_date": "2024-03-26"},
        headers=headers,
    )
    assert resp.json()["month"] == "2024-03-01"

    resp = client.patch(
        f"{base}/expenses/{created['id']}", json={"bogus": 1}, headers=headers
    )
    assert resp.status_code == 422

    resp = client.delete(f"{base}/expenses/{created['id']}", headers=headers)
    assert resp.status_code == 204
    assert client.get(f"{base}/expenses/{created['id']}").status_code == 404


def test_unknown_household_and_bad_month(client):
    assert client.get("/api/households/999").status_code == 404

    household_id = _household(client, payday=1)
    resp = client.get(
        f"/api/households/{household_id}/budgets", params={"month": "nonsense"}
    )
    assert resp.status_code == 200
    today = date.today()
    assert resp.json()["month"][:4] in {str(today.year - 1), str(today.year)}


def test_duplicate_category_name_is_bad_request(client):
    household_id = _household(client)
    headers = _headers(client, household_id)
    url = f"/api/households/{household_id}/categories"
    assert client.post(url, json={"name": "Food"}, headers=headers).status_code == 201
    assert client.post(url, json={"name": "food"}, headers=headers).status_code == 400


def test_replay_endpoint_reports_partial_failure(client):
    household_id = _household(client)
    headers = _headers(client)

    resp = client.post(
        "/api/drafts",
        json={
            "id": "draft-1",
            "household_id": household_id,
            "user_id": "u1",
            "txn_date": "2024-03-01",
            "amount": 10,
        },
        headers=headers,
    )
    assert resp.status_code == 202
    client.post(
        "/api/drafts",
        json={
            "id": "draft-2",
            "household_id": household_id + 100,
            "user_id": "u1",
            "txn_date": "2024-03-02",
            "amount": 10,
        },
        headers=headers,
    )

    resp = client.post("/api/sync/replay", headers=headers)
    assert resp.status_code == 207
    assert resp.json()["success_count"] == 1
    assert resp.json()["errors"] == ["draft-2"]


def test_health_reports_ok(client):
    assert client.get("/api/health").json() == {"status": "ok"}


def test_receipt_download(client):
    household_id = _household(client)
    headers = _headers(client, household_id)
    base = f"/api/households/{household_id}"
    main.receipt_storage.upload("u1/abc-slip.png", b"png-bytes")

    with_receipt = client.post(
        f"{base}/expenses",
        json={
            "user_id": "u1",
            "txn_date": "2024-03-01",
            "amount": 500,
            "receipt_path": "u1/abc-slip.png",
        },
        headers=headers,
    ).json()
    resp = client.get(f"{base}/expenses/{with_receipt['id']}/receipt")
    assert resp.status_code == 200
    assert resp.content == b"png-bytes"
    assert resp.headers["content-type"] == "image/png"

    without = client.post(
        f"{base}/expenses",
        json={"user_id": "u1", "txn_date": "2024-03-01", "amount": 500},
        headers=headers,
    ).json()
    assert client.get(f"{base}/expenses/{without['id']}/receipt").status_code == 404


def test_oversized_trend_window_is_bad_request(client):
    household_id = _household(client)
    url = f"/api/households/{household_id}/rollups/trend"
    resp = client.get(url, params={"month": "2024-02", "cycles": 100_000})
    assert resp.status_code == 400
    assert client.get(url, params={"month": "2024-02"}).status_code == 200
