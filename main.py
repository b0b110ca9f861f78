import logging
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, Response

from config import get_settings
from database import Base, build_engine, build_session_factory
from fx_rates import FxRateService
from periods import TimeRange
from remote import InProcessChangeFeed, RemoteStoreError, SqlTransactionStore
from schemas import ChangeEvent, TransactionIn, TransactionPatch
from services import TransactionEngine


logger = logging.getLogger(__name__)


def build_transaction_engine() -> TransactionEngine:
    settings = get_settings()
    db_engine = build_engine(settings.database_url)
    if settings.database_url.startswith("sqlite"):
        Base.metadata.create_all(db_engine)
    factory = build_session_factory(db_engine)
    feed = InProcessChangeFeed()
    store = SqlTransactionStore(factory, change_feed=feed)
    return TransactionEngine(store, channel=feed, fx=FxRateService(factory))


def create_app(engine: Optional[TransactionEngine] = None) -> FastAPI:
    settings = get_settings()
    logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO))

    app = FastAPI(title="Ledger Cache")
    app.state.engine = engine or build_transaction_engine()

    @app.on_event("startup")
    async def startup_event():
        await app.state.engine.start()

    @app.on_event("shutdown")
    async def shutdown_event():
        await app.state.engine.shutdown()

    register_routes(app)
    return app


def get_engine(request: Request) -> TransactionEngine:
    return request.app.state.engine


def _raise_for(exc: Exception) -> None:
    if isinstance(exc, RemoteStoreError):
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    if "not found" in str(exc).lower():
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    raise HTTPException(status_code=400, detail=str(exc)) from exc


def _time_range(value: str) -> TimeRange:
    try:
        return TimeRange(value)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"Unsupported time range: {value}") from exc


def register_routes(app: FastAPI) -> None:
    @app.get("/api/transactions/{year}/{month}")
    async def month_view(
        year: int, month: int, engine: TransactionEngine = Depends(get_engine)
    ):
        if not 1 <= month <= 12:
            raise HTTPException(status_code=400, detail="Month must be between 1 and 12")
        return await engine.month_transactions(year, month)

    @app.get("/api/transactions/{year}")
    async def year_view(year: int, engine: TransactionEngine = Depends(get_engine)):
        return await engine.year_transactions(year)

    @app.get("/api/months/{year}/{month}/summary")
    async def month_summary(
        year: int, month: int, engine: TransactionEngine = Depends(get_engine)
    ):
        if not 1 <= month <= 12:
            raise HTTPException(status_code=400, detail="Month must be between 1 and 12")
        return await engine.month_summary(year, month)

    @app.get("/api/months/{year}/{month}/categories")
    async def month_categories(
        year: int, month: int, engine: TransactionEngine = Depends(get_engine)
    ):
        return await engine.month_breakdown(year, month)

    @app.get("/api/transaction/{transaction_id}")
    async def get_transaction(
        transaction_id: str, engine: TransactionEngine = Depends(get_engine)
    ):
        txn = await engine.get_transaction(transaction_id)
        if txn is None:
            raise HTTPException(status_code=404, detail="Transaction not found")
        return txn

    @app.post("/api/transactions", status_code=201)
    async def create_transaction(
        data: TransactionIn, engine: TransactionEngine = Depends(get_engine)
    ):
        try:
            return await engine.add_transaction(data)
        except (ValueError, RemoteStoreError) as exc:
            _raise_for(exc)

    @app.post("/api/transactions/import")
    async def import_transactions(
        items: list[TransactionIn], engine: TransactionEngine = Depends(get_engine)
    ):
        return await engine.import_transactions(items)

    @app.patch("/api/transactions/{transaction_id}")
    async def update_transaction(
        transaction_id: str,
        changes: TransactionPatch,
        engine: TransactionEngine = Depends(get_engine),
    ):
        try:
            return await engine.update_transaction(transaction_id, changes)
        except (ValueError, RemoteStoreError) as exc:
            _raise_for(exc)

    @app.delete("/api/transactions/{transaction_id}", status_code=204)
    async def delete_transaction(
        transaction_id: str, engine: TransactionEngine = Depends(get_engine)
    ):
        try:
            await engine.delete_transaction(transaction_id)
        except (ValueError, RemoteStoreError) as exc:
            _raise_for(exc)
        return Response(status_code=204)

    @app.get("/api/balance-history")
    async def balance_history(
        time_range: str = Query("1y", alias="range"),
        include_hidden: bool = False,
        engine: TransactionEngine = Depends(get_engine),
    ):
        return await engine.balance_history(_time_range(time_range), include_hidden)

    @app.get("/api/category-history")
    async def category_history(
        category: str,
        sub_category: Optional[str] = None,
        time_range: str = Query("1y", alias="range"),
        engine: TransactionEngine = Depends(get_engine),
    ):
        return await engine.category_history(_time_range(time_range), category, sub_category)

    @app.get("/api/overall-totals")
    async def overall_totals(engine: TransactionEngine = Depends(get_engine)):
        return await engine.overall_totals()

    @app.post("/api/changes", status_code=202)
    async def change_notification(
        event: ChangeEvent, engine: TransactionEngine = Depends(get_engine)
    ):
        engine.bus.handle_realtime_update(event)
        return {"status": "accepted"}

    @app.get("/api/cache/status")
    async def cache_status(engine: TransactionEngine = Depends(get_engine)):
        return engine.cache_status()

    @app.post("/api/fx/retry-missing")
    async def retry_missing_rates(
        currency: Optional[str] = None, engine: TransactionEngine = Depends(get_engine)
    ):
        if engine.fx is None:
            raise HTTPException(status_code=400, detail="Currency conversion is disabled")
        resolved = await engine.fx.retry_missing_rates(currency)
        return {"resolved": resolved}


app = create_app()
