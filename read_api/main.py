"""
Read API
HTTP access to stored OPC UA values. Raw values are scaled with the catalog's
factor and precision unless `scale=false`; timestamps are rendered in the
configured display time zone.
"""
import logging
import sys
from datetime import datetime, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo

import uvicorn
from fastapi import FastAPI, HTTPException, Query, Request

from common.catalog import Catalog, load_catalog
from common.config import Settings, get_settings
from common.errors import StoreError
from common.logging_setup import configure_logging
from common.models import StoredRow
from common.store import TimescaleStore

logger = logging.getLogger(__name__)

RECENT_WINDOW = timedelta(minutes=5)


def format_timestamp(value: datetime, tz: ZoneInfo) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    local = value.astimezone(tz)
    return local.strftime("%d/%m/%Y %H:%M:%S") + f".{local.microsecond // 1000:03d}"


def parse_local_time(raw: str, tz: ZoneInfo) -> datetime:
    """Parse an ISO-like timestamp; naive values are taken as display-zone local time."""
    parsed = datetime.fromisoformat(raw.strip().replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=tz)
    return parsed


def format_row(row: StoredRow, catalog: Catalog, tz: ZoneInfo, scale: bool = True) -> Optional[dict]:
    meta = catalog.get(row.node_id)
    if meta is None:
        logger.warning(f"Metadata not found for nodeId: {row.node_id}")
        return None
    return {
        "id": meta.id,
        "name": meta.name,
        "nodeId": meta.node_id,
        "dataType": meta.data_type,
        "unit": meta.unit,
        "description": meta.description,
        "category": meta.category,
        "phase": meta.phase,
        "label": meta.label,
        "timestamp": format_timestamp(row.time, tz),
        "value": meta.scale(row.value) if scale else row.value,
    }


def create_app(store, catalog: Catalog, settings: Settings) -> FastAPI:
    app = FastAPI(title="OPC UA Historian Read API")
    app.state.store = store
    app.state.catalog = catalog
    app.state.settings = settings
    app.state.tz = ZoneInfo(settings.display_timezone)

    def _now() -> datetime:
        return datetime.now(timezone.utc)

    def _read_one(request: Request, node_id: str, scale: bool) -> dict:
        state = request.app.state
        try:
            rows = state.store.latest(state.settings.measurement, _now() - RECENT_WINDOW, node_id=node_id)
        except StoreError as e:
            logger.error(f"Error in read-one: {e}")
            raise HTTPException(status_code=500, detail=str(e))
        result = None
        for row in rows:
            formatted = format_row(row, state.catalog, state.tz, scale)
            if formatted:
                result = formatted
        if result is None:
            raise HTTPException(status_code=404, detail=f"No data found for nodeId {node_id}")
        return result

    def _read_all(request: Request, scale: bool) -> list:
        state = request.app.state
        try:
            rows = state.store.latest(state.settings.measurement, _now() - RECENT_WINDOW)
        except StoreError as e:
            logger.error(f"Error in read-all: {e}")
            raise HTTPException(status_code=500, detail=str(e))
        rows = sorted(rows, key=lambda r: r.time, reverse=True)
        results = [f for f in (format_row(r, state.catalog, state.tz, scale) for r in rows) if f]
        if not results:
            raise HTTPException(status_code=404, detail="No data found")
        return results

    def _read_range(request: Request, node_id: str, start: Optional[str], end: Optional[str], scale: bool) -> list:
        state = request.app.state
        if not start or not end:
            raise HTTPException(status_code=400, detail="start and end are required")
        try:
            start_at = parse_local_time(start, state.tz)
            end_at = parse_local_time(end, state.tz)
        except ValueError:
            raise HTTPException(status_code=400, detail="start and end must be ISO timestamps")
        if start_at > end_at:
            raise HTTPException(status_code=400, detail="start must not be after end")
        if node_id not in state.catalog:
            raise HTTPException(status_code=404, detail="Metadata not found for nodeId")
        try:
            rows = state.store.query(state.settings.measurement, {"nodeId": node_id}, start_at, end_at)
        except StoreError as e:
            logger.error(f"Error in read-range: {e}")
            raise HTTPException(status_code=500, detail=str(e))
        return [f for f in (format_row(r, state.catalog, state.tz, scale) for r in rows) if f]

    @app.get("/health")
    def health():
        return {"status": "ok"}

    @app.get("/db-status")
    def db_status(request: Request):
        online = request.app.state.store.ping()
        return {"status": "online" if online else "failed"}

    @app.get("/read-one/{node_id}")
    def read_one(request: Request, node_id: str, scale: bool = True):
        return _read_one(request, node_id, scale)

    @app.get("/read-one-raw/{node_id}")
    def read_one_raw(request: Request, node_id: str):
        return _read_one(request, node_id, False)

    @app.get("/read-all")
    def read_all(request: Request, scale: bool = True):
        return _read_all(request, scale)

    @app.get("/read-all-raw")
    def read_all_raw(request: Request):
        return _read_all(request, False)

    @app.get("/read-range/{node_id}")
    def read_range(request: Request, node_id: str, start: Optional[str] = Query(None),
                   end: Optional[str] = Query(None), scale: bool = True):
        return _read_range(request, node_id, start, end, scale)

    @app.get("/read-range-raw/{node_id}")
    def read_range_raw(request: Request, node_id: str, start: Optional[str] = Query(None),
                       end: Optional[str] = Query(None)):
        return _read_range(request, node_id, start, end, False)

    return app


def main() -> int:
    settings = get_settings()
    configure_logging("read-api", settings.log_level, settings.log_dir)
    store = TimescaleStore(settings.dsn, settings.db_table)
    app = create_app(store, load_catalog(settings.catalog_file), settings)
    uvicorn.run(app, host=settings.api_host, port=settings.read_api_port)
    return 0


if __name__ == "__main__":
    sys.exit(main())
