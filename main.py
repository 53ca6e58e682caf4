import logging
import mimetypes
from dataclasses import asdict
from typing import Optional

from fastapi import Body, Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, Response
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from blobs import ReceiptStorage
from csrf import CSRF_HEADER, generate_csrf_token, validate_csrf_token
from cycles import Cycle, CycleKey, cycle_or_default
from database import SessionLocal, ping
from errors import MalformedInput, NotFound, StoreUnavailable
from events import ChangeFeed
from models import Household, SavingsGoal, SavingsTransaction
from recurrence import RoutineStatus
from rollups import RollupService
from scheduler import SchedulerManager
from schemas import (
    BudgetUpsertIn,
    CategoryIn,
    DraftExpense,
    ExpenseIn,
    ExpenseUpdateIn,
    HouseholdIn,
    HouseholdSettingsIn,
    PaymentSourceIn,
    RoutineTaskIn,
    SavingsGoalIn,
    SavingsTransactionIn,
)
from services import (
    BudgetService,
    CategoryService,
    ExpenseService,
    HouseholdService,
    PaymentSourceService,
    RoutineService,
    SavingsService,
    get_household,
)
from store import ExpenseRow
from sync import DraftQueue, SyncReconciler


logger = logging.getLogger(__name__)

app = FastAPI(title="Household Budget")

change_feed = ChangeFeed()
draft_queue = DraftQueue()
receipt_storage = ReceiptStorage()
reconciler = SyncReconciler(
    draft_queue, receipt_storage, SessionLocal, feed=change_feed
)
scheduler_manager = SchedulerManager(reconciler)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@app.on_event("startup")
def startup_event():
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


@app.exception_handler(NotFound)
def not_found_handler(request: Request, exc: NotFound):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(ValueError)
def bad_input_handler(request: Request, exc: ValueError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(StoreUnavailable)
@app.exception_handler(OperationalError)
def store_unavailable_handler(request: Request, exc: Exception):
    logger.warning(f"store_unavailable: path={request.url.path} error={exc}")
    return JSONResponse(
        status_code=503,
        content={"detail": "Storage is temporarily unavailable, please retry"},
    )


def csrf_protect(request: Request) -> None:
    household_id = request.path_params.get("household_id")
    token = request.headers.get(CSRF_HEADER)
    if not validate_csrf_token(
        token, int(household_id) if household_id is not None else None
    ):
        raise HTTPException(status_code=400, detail="Invalid CSRF token")


def cycle_from_request(request: Request, household: Household) -> CycleKey:
    return cycle_or_default(
        request.query_params.get("month"), household.payday_start_day
    )


def int_param(request: Request, name: str, default: int) -> int:
    raw = request.query_params.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise MalformedInput(f"Invalid {name}: {raw!r}") from exc


def household_payload(household: Household) -> dict[str, object]:
    return {
        "id": household.id,
        "name": household.name,
        "payday_start_day": household.payday_start_day,
    }


def lookup_payload(item) -> dict[str, object]:
    return {"id": item.id, "name": item.name, "active": item.active}


def cycle_payload(cycle: Cycle) -> dict[str, object]:
    return {
        "month": str(cycle.key),
        "start": cycle.start.isoformat(),
        "end": cycle.end.isoformat(),
        "last_day": cycle.last_day.isoformat(),
    }


def expense_payload(row: ExpenseRow) -> dict[str, object]:
    return {
        "id": row.id,
        "user_id": row.user_id,
        "month": row.month.isoformat(),
        "txn_date": row.txn_date.isoformat(),
        "amount": row.amount,
        "merchant": row.merchant,
        "notes": row.notes,
        "category_id": row.category_id,
        "category": row.category_name,
        "payment_source_id": row.payment_source_id,
        "payment_source": row.payment_source_name,
        "receipt_path": row.receipt_path,
        "created_at": row.created_at.isoformat(),
    }


def goal_payload(goal: SavingsGoal) -> dict[str, object]:
    return {
        "id": goal.id,
        "name": goal.name,
        "target_amount": goal.target_amount,
        "target_date": goal.target_date.isoformat() if goal.target_date else None,
        "notes": goal.notes,
        "active": goal.active,
    }


def savings_txn_payload(txn: SavingsTransaction) -> dict[str, object]:
    return {
        "id": txn.id,
        "goal_id": txn.goal_id,
        "user_id": txn.user_id,
        "txn_date": txn.txn_date.isoformat(),
        "amount": txn.amount,
        "notes": txn.notes,
    }


@app.get("/api/health")
def api_health(db: Session = Depends(get_db)):
    ping(db)
    return {"status": "ok"}


@app.get("/api/csrf-token")
def api_csrf_token(household_id: Optional[int] = None):
    return {"token": generate_csrf_token(household_id)}


@app.post("/api/households", status_code=201, dependencies=[Depends(csrf_protect)])
def create_household(data: HouseholdIn, db: Session = Depends(get_db)):
    return household_payload(HouseholdService(db).create(data))


@app.get("/api/households/{household_id}")
def api_household(household_id: int, db: Session = Depends(get_db)):
    return household_payload(HouseholdService(db).get(household_id))


@app.put(
    "/api/households/{household_id}/settings", dependencies=[Depends(csrf_protect)]
)
def update_household_settings(
    household_id: int, data: HouseholdSettingsIn, db: Session = Depends(get_db)
):
    return household_payload(HouseholdService(db).update_settings(household_id, data))


def _lookup_routes(prefix: str, service_cls, schema) -> None:
    base = f"/api/households/{{household_id}}/{prefix}"

    def list_items(
        household_id: int,
        include_inactive: bool = False,
        db: Session = Depends(get_db),
    ):
        get_household(db, household_id)
        items = service_cls(db, household_id).list_all(include_inactive)
        return [lookup_payload(item) for item in items]

    def create_item(household_id: int, data: schema, db: Session = Depends(get_db)):
        get_household(db, household_id)
        return lookup_payload(service_cls(db, household_id).create(data))

    def rename_item(
        household_id: int,
        item_id: int,
        name: str = Body(..., embed=True),
        db: Session = Depends(get_db),
    ):
        return lookup_payload(service_cls(db, household_id).rename(item_id, name))

    def deactivate_item(household_id: int, item_id: int, db: Session = Depends(get_db)):
        service_cls(db, household_id).deactivate(item_id)
        return {"ok": True}

    def activate_item(household_id: int, item_id: int, db: Session = Depends(get_db)):
        service_cls(db, household_id).activate(item_id)
        return {"ok": True}

    csrf = [Depends(csrf_protect)]
    app.add_api_route(base, list_items, methods=["GET"])
    app.add_api_route(
        base, create_item, methods=["POST"], status_code=201, dependencies=csrf
    )
    app.add_api_route(
        f"{base}/{{item_id}}/rename", rename_item, methods=["POST"], dependencies=csrf
    )
    app.add_api_route(
        f"{base}/{{item_id}}/deactivate",
        deactivate_item,
        methods=["POST"],
        dependencies=csrf,
    )
    app.add_api_route(
        f"{base}/{{item_id}}/activate",
        activate_item,
        methods=["POST"],
        dependencies=csrf,
    )


_lookup_routes("categories", CategoryService, CategoryIn)
_lookup_routes("payment-sources", PaymentSourceService, PaymentSourceIn)


@app.get("/api/households/{household_id}/budgets")
def api_budgets(household_id: int, request: Request, db: Session = Depends(get_db)):
    household = get_household(db, household_id)
    key = cycle_from_request(request, household)
    return {
        "month": str(key),
        "lines": BudgetService(db, household_id).lines_for_cycle(key),
    }


@app.put("/api/households/{household_id}/budgets", dependencies=[Depends(csrf_protect)])
def upsert_budgets(
    household_id: int,
    request: Request,
    data: BudgetUpsertIn,
    db: Session = Depends(get_db),
):
    household = get_household(db, household_id)
    key = cycle_from_request(request, household)
    count = BudgetService(db, household_id, change_feed).upsert_cycle(key, data.lines)
    return {"month": str(key), "saved": count}


@app.get("/api/households/{household_id}/expenses")
def api_expenses(household_id: int, request: Request, db: Session = Depends(get_db)):
    household = get_household(db, household_id)
    key = cycle_from_request(request, household)
    page = int_param(request, "page", 1)
    page_size = int_param(request, "page_size", 0) or None
    result = ExpenseService(db, household_id).page(key, page, page_size)
    return {
        "month": str(key),
        "items": [expense_payload(row) for row in result.items],
        "page": result.page,
        "page_size": result.page_size,
        "total_count": result.total_count,
        "total_pages": result.total_pages,
        "has_prev": result.has_prev,
        "has_next": result.has_next,
    }


@app.post(
    "/api/households/{household_id}/expenses",
    status_code=201,
    dependencies=[Depends(csrf_protect)],
)
def create_expense(household_id: int, data: ExpenseIn, db: Session = Depends(get_db)):
    expense = ExpenseService(db, household_id, change_feed).create(data)
    return expense_payload(ExpenseRow.from_model(expense))


@app.get("/api/households/{household_id}/expenses/{expense_id}")
def api_expense(household_id: int, expense_id: str, db: Session = Depends(get_db)):
    expense = ExpenseService(db, household_id).get(expense_id)
    return expense_payload(ExpenseRow.from_model(expense))


@app.get("/api/households/{household_id}/expenses/{expense_id}/receipt")
def api_expense_receipt(
    household_id: int, expense_id: str, db: Session = Depends(get_db)
):
    expense = ExpenseService(db, household_id).get(expense_id)
    if not expense.receipt_path:
        raise NotFound("Expense has no receipt")
    data = receipt_storage.read(expense.receipt_path)
    media_type = mimetypes.guess_type(expense.receipt_path)[0]
    return Response(content=data, media_type=media_type or "application/octet-stream")


@app.patch(
    "/api/households/{household_id}/expenses/{expense_id}",
    dependencies=[Depends(csrf_protect)],
)
def update_expense(
    household_id: int,
    expense_id: str,
    data: ExpenseUpdateIn,
    db: Session = Depends(get_db),
):
    expense = ExpenseService(db, household_id, change_feed).update(expense_id, data)
    return expense_payload(ExpenseRow.from_model(expense))


@app.delete(
    "/api/households/{household_id}/expenses/{expense_id}",
    status_code=204,
    dependencies=[Depends(csrf_protect)],
)
def delete_expense(household_id: int, expense_id: str, db: Session = Depends(get_db)):
    ExpenseService(db, household_id, change_feed).delete(expense_id)


@app.get("/api/households/{household_id}/rollups/summary")
def api_summary(household_id: int, request: Request, db: Session = Depends(get_db)):
    household = get_household(db, household_id)
    key = cycle_from_request(request, household)
    summary = RollupService(db, household_id).summary(key)
    return {
        "household": household_payload(household),
        "cycle": cycle_payload(summary.cycle),
        "categories": [asdict(row) for row in summary.categories],
        "totals": asdict(summary.totals),
        "recent": [expense_payload(row) for row in summary.recent],
    }


@app.get("/api/households/{household_id}/rollups/categories")
def api_category_rollup(
    household_id: int, request: Request, db: Session = Depends(get_db)
):
    household = get_household(db, household_id)
    key = cycle_from_request(request, household)
    rollups = RollupService(db, household_id)
    rows = rollups.category_rollup(key)
    return {
        "cycle": cycle_payload(rollups.cycle(key)),
        "categories": [asdict(row) for row in rows],
        "totals": asdict(rollups.totals(key)),
    }


@app.get("/api/households/{household_id}/rollups/weekly")
def api_weekly(household_id: int, request: Request, db: Session = Depends(get_db)):
    household = get_household(db, household_id)
    key = cycle_from_request(request, household)
    buckets = RollupService(db, household_id).weekly_breakdown(key)
    return [
        {
            "week_no": b.week_no,
            "week_start": b.start.isoformat(),
            "week_end": b.last_day.isoformat(),
            "actual_amount": b.actual_amount,
        }
        for b in buckets
    ]


@app.get("/api/households/{household_id}/rollups/merchants")
def api_merchants(household_id: int, request: Request, db: Session = Depends(get_db)):
    household = get_household(db, household_id)
    key = cycle_from_request(request, household)
    limit = int_param(request, "limit", 0) or None
    rows = RollupService(db, household_id).top_merchants(key, limit)
    return [asdict(row) for row in rows]


@app.get("/api/households/{household_id}/rollups/sources")
def api_sources(household_id: int, request: Request, db: Session = Depends(get_db)):
    household = get_household(db, household_id)
    key = cycle_from_request(request, household)
    return [
        asdict(row) for row in RollupService(db, household_id).payment_source_share(key)
    ]


@app.get("/api/households/{household_id}/rollups/trend")
def api_trend(household_id: int, request: Request, db: Session = Depends(get_db)):
    household = get_household(db, household_id)
    key = cycle_from_request(request, household)
    cycles = int_param(request, "cycles", 0) or None
    points = RollupService(db, household_id).trend(key, cycles)
    return [
        {
            "month": str(p.cycle),
            "budget_amount": p.budget_amount,
            "actual_amount": p.actual_amount,
        }
        for p in points
    ]


@app.get("/api/households/{household_id}/savings/goals")
def api_goals(
    household_id: int, include_inactive: bool = False, db: Session = Depends(get_db)
):
    get_household(db, household_id)
    goals = SavingsService(db, household_id).list_goals(include_inactive)
    return [goal_payload(goal) for goal in goals]


@app.post(
    "/api/households/{household_id}/savings/goals",
    status_code=201,
    dependencies=[Depends(csrf_protect)],
)
def create_goal(household_id: int, data: SavingsGoalIn, db: Session = Depends(get_db)):
    get_household(db, household_id)
    return goal_payload(SavingsService(db, household_id).create_goal(data))


@app.put(
    "/api/households/{household_id}/savings/goals/{goal_id}",
    dependencies=[Depends(csrf_protect)],
)
def update_goal(
    household_id: int,
    goal_id: int,
    data: SavingsGoalIn,
    db: Session = Depends(get_db),
):
    return goal_payload(SavingsService(db, household_id).update_goal(goal_id, data))


@app.post(
    "/api/households/{household_id}/savings/goals/{goal_id}/deactivate",
    dependencies=[Depends(csrf_protect)],
)
def deactivate_goal(household_id: int, goal_id: int, db: Session = Depends(get_db)):
    SavingsService(db, household_id).deactivate_goal(goal_id)
    return {"ok": True}


@app.get("/api/households/{household_id}/savings/goals/{goal_id}/transactions")
def api_goal_transactions(
    household_id: int, goal_id: int, db: Session = Depends(get_db)
):
    txns = SavingsService(db, household_id).list_transactions(goal_id)
    return [savings_txn_payload(txn) for txn in txns]


@app.post(
    "/api/households/{household_id}/savings/transactions",
    status_code=201,
    dependencies=[Depends(csrf_protect)],
)
def create_savings_transaction(
    household_id: int, data: SavingsTransactionIn, db: Session = Depends(get_db)
):
    txn = SavingsService(db, household_id).add_transaction(data)
    return savings_txn_payload(txn)


@app.get("/api/households/{household_id}/savings/rollup")
def api_savings_rollup(household_id: int, db: Session = Depends(get_db)):
    get_household(db, household_id)
    service = SavingsService(db, household_id)
    return {
        "goals": [asdict(goal) for goal in service.rollup()],
        "total_saved": service.total_saved(),
    }


@app.get("/api/households/{household_id}/routines")
def api_routines(household_id: int, request: Request, db: Session = Depends(get_db)):
    get_household(db, household_id)
    status_param = request.query_params.get("status")
    status = None
    if status_param:
        try:
            status = RoutineStatus(status_param)
        except ValueError:
            status = None
    rows = RoutineService(db, household_id).list_computed(
        status=status, query=request.query_params.get("q")
    )
    return [asdict(row) for row in rows]


@app.post(
    "/api/households/{household_id}/routines",
    status_code=201,
    dependencies=[Depends(csrf_protect)],
)
def create_routine(
    household_id: int, data: RoutineTaskIn, db: Session = Depends(get_db)
):
    get_household(db, household_id)
    task = RoutineService(db, household_id).create(data)
    return {"id": task.id}


@app.put(
    "/api/households/{household_id}/routines/{task_id}",
    dependencies=[Depends(csrf_protect)],
)
def update_routine(
    household_id: int,
    task_id: int,
    data: RoutineTaskIn,
    db: Session = Depends(get_db),
):
    task = RoutineService(db, household_id).update(task_id, data)
    return {"id": task.id}


@app.post(
    "/api/households/{household_id}/routines/{task_id}/done",
    dependencies=[Depends(csrf_protect)],
)
def complete_routine(household_id: int, task_id: int, db: Session = Depends(get_db)):
    task = RoutineService(db, household_id).mark_done(task_id)
    return {"id": task.id, "last_date": task.last_date.isoformat()}


@app.delete(
    "/api/households/{household_id}/routines/{task_id}",
    status_code=204,
    dependencies=[Depends(csrf_protect)],
)
def delete_routine(household_id: int, task_id: int, db: Session = Depends(get_db)):
    RoutineService(db, household_id).delete(task_id)


@app.post("/api/drafts", status_code=202, dependencies=[Depends(csrf_protect)])
def enqueue_draft(draft: DraftExpense):
    if draft.receipt_name:
        raise MalformedInput("Drafts with receipts must be queued by the local client")
    draft_queue.enqueue(draft)
    return {"id": draft.id, "queued": len(draft_queue)}


@app.post("/api/sync/replay", dependencies=[Depends(csrf_protect)])
def api_replay():
    result = reconciler.replay(source="api")
    payload = {
        "success_count": result.success_count,
        "errors": result.errors,
        "skipped": result.skipped,
    }
    return JSONResponse(status_code=207 if result.partial else 200, content=payload)


@app.post("/api/sync/connectivity", dependencies=[Depends(csrf_protect)])
def api_connectivity(online: bool = Body(..., embed=True)):
    result = reconciler.on_connectivity_change(online)
    if result is None:
        return {"online": online, "replayed": False}
    return {
        "online": online,
        "replayed": not result.skipped,
        "success_count": result.success_count,
        "errors": result.errors,
    }


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
