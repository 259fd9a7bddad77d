"""
lorawatch HTTP API
==================
Read-only view of the tracker for dashboards, plus two push entry points:

  GET  /health
  GET  /api/v1/nodes
  GET  /api/v1/nodes/{node_id}
  GET  /api/v1/nodes/{node_id}/summary   mean/min/max/trend of one field
  GET  /api/v1/nodes/{node_id}/daily     per-day, per-week or per-month means of one field
  POST /api/v1/ingest                    write a payload (writable stores)
  POST /api/v1/hooks/row-change          database webhook (e.g. Supabase)
"""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Optional

from fastapi import FastAPI, HTTPException, Query
from pydantic import BaseModel, ConfigDict, Field

from . import __version__
from .analytics import DEFAULT_FIELD, period_means, summarize_field
from .config import DEFAULT_HISTORY_LIMIT, TrackerConfig
from .coordinator import RefreshCoordinator
from .errors import FetchError, WriteError
from .store import NodeHistory, create_store, fetch_node_history, row_from_record, utc_now

logger = logging.getLogger("lorawatch.api")


# ─── Schemas ─────────────────────────────────────────────────────────────────────
class TelemetryPayload(BaseModel):
    """A node transmission. Any measurement fields are accepted alongside node_id."""
    model_config = ConfigDict(extra="allow")

    node_id: str = Field(..., min_length=1)


class RowChangeEvent(BaseModel):
    """Database webhook body: {type, table, record, old_record}."""
    type: str = "INSERT"
    table: Optional[str] = None
    record: Optional[dict] = None
    old_record: Optional[dict] = None


# ─── App factory ─────────────────────────────────────────────────────────────────
def create_app(config: Optional[TrackerConfig] = None, store=None) -> FastAPI:
    config = (config or TrackerConfig.from_env()).validate()
    owns_store = store is None
    if owns_store:
        store = create_store(config)
    coordinator = RefreshCoordinator(config, store)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await coordinator.start()
        try:
            yield
        finally:
            await coordinator.stop()
            if owns_store:
                if hasattr(store, "aclose"):
                    await store.aclose()
                elif hasattr(store, "close"):
                    store.close()

    app = FastAPI(
        title="lorawatch",
        description="Latest reading and online/offline status for LoRa sensor nodes.",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.config = config
    app.state.store = store
    app.state.coordinator = coordinator

    def _require_node(node_id: str) -> None:
        if node_id not in config.known_nodes:
            raise HTTPException(status_code=404, detail=f"Node '{node_id}' not found")

    async def _history(node_id: str, days: float) -> NodeHistory:
        end = utc_now()
        try:
            return await fetch_node_history(
                store, node_id, end - timedelta(days=days), end, limit=DEFAULT_HISTORY_LIMIT
            )
        except FetchError as e:
            logger.warning(f"[API] History fetch failed for {node_id}: {e}")
            raise HTTPException(status_code=503, detail=f"Row store unavailable: {e}")

    @app.get("/health")
    async def health():
        snapshot = coordinator.snapshot()
        error = coordinator.last_fetch_error
        return {
            "status": "degraded" if error else "ok",
            "running": coordinator.running,
            "version": coordinator.version,
            "last_refresh_at": coordinator.last_refresh_at.isoformat() if coordinator.last_refresh_at else None,
            "last_fetch_error": str(error) if error else None,
            "dropped_rows": coordinator.dropped_rows,
            "nodes_total": len(snapshot),
            "nodes_online": sum(1 for s in snapshot.values() if s.online),
        }

    @app.get("/api/v1/nodes")
    async def list_nodes():
        snapshot = coordinator.snapshot()
        return {
            "version": coordinator.version,
            "staleness_threshold_seconds": config.staleness_threshold.total_seconds(),
            "nodes": [snapshot[node_id].to_dict() for node_id in config.known_nodes],
        }

    @app.get("/api/v1/nodes/{node_id}")
    async def get_node(node_id: str):
        _require_node(node_id)
        return coordinator.node_state(node_id).to_dict()

    @app.get("/api/v1/nodes/{node_id}/summary")
    async def get_node_summary(
        node_id: str,
        field: str = Query(DEFAULT_FIELD, min_length=1),
        days: float = Query(7.0, gt=0, le=366),
    ):
        _require_node(node_id)
        history = await _history(node_id, days)
        return {
            "node_id": node_id,
            "days": days,
            "truncated": history.truncated,
            "summary": summarize_field(history.readings, field),
        }

    @app.get("/api/v1/nodes/{node_id}/daily")
    async def get_node_daily(
        node_id: str,
        field: str = Query(DEFAULT_FIELD, min_length=1),
        days: float = Query(7.0, gt=0, le=366),
        period: str = Query("day", pattern="^(day|week|month)$"),
    ):
        _require_node(node_id)
        history = await _history(node_id, days)
        return {
            "node_id": node_id,
            "field": field,
            "period": period,
            "truncated": history.truncated,
            "days": period_means(history.readings, field, period=period),
        }

    @app.post("/api/v1/ingest")
    async def ingest(payload: TelemetryPayload):
        insert_payload = getattr(store, "insert_payload", None)
        if insert_payload is None:
            raise HTTPException(status_code=409, detail="Row store is read-only")

        try:
            row = await insert_payload(payload.model_dump())
        except WriteError as e:
            logger.warning(f"[API] Insert failed for '{payload.node_id}': {e}")
            raise HTTPException(status_code=503, detail=f"Row store unavailable: {e}")

        # The store pushed the row to the coordinator; resolve it before answering.
        # The row is stored either way; a failed queued re-fetch is retried by the poll.
        try:
            await coordinator.flush_push()
        except FetchError as e:
            logger.warning(f"[API] Stored row {row.id} but the queued re-fetch failed: {e}")

        state = coordinator.node_state(payload.node_id)
        if state is None:
            logger.warning(f"[API] Stored row {row.id} from unconfigured node '{payload.node_id}'")
        return {
            "status": "stored",
            "row_id": row.id,
            "tracked": state is not None,
            "node": state.to_dict() if state else None,
        }

    @app.post("/api/v1/hooks/row-change", status_code=202)
    async def row_change(event: RowChangeEvent):
        if event.table and event.table != config.table:
            return {"status": "ignored", "reason": f"table '{event.table}' is not tracked"}
        if event.type.upper() == "DELETE":
            return {"status": "ignored", "reason": "deletes do not affect the latest reading"}

        if event.record:
            coordinator.notify(row_from_record(event.record))
            return {"status": "queued", "row_id": event.record.get("id")}
        coordinator.notify(None)
        return {"status": "queued", "refetch": True}

    return app
