"""
DeriveStreet Ingestion - Main FastAPI Application
Entry point for the cache-fronted upstream gateway and backfill triggers
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import date
from typing import Optional

from fastapi import FastAPI, Depends, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel
import uvicorn

from config.settings import settings
from config.database import init_db
from core.database.history_service import HistoryService
from ingestion.analysis.client import LLMAnalysisClient
from ingestion.backfill import (
    BackfillConfig, BackfillOrchestrator, BackfillRequest, CancellationToken,
    GapScanner, ProgressStreamer, parse_ingestion_type
)
from ingestion.cache import CacheConfig, CacheMaintenanceTask, CachedGateway, ResponseCache
from ingestion.errors import GapScanError, GatewayError, IngestionError, PersistenceError
from ingestion.fetchers import RefreshingCredentialProvider, UpstreamGateway

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Long-lived components shared by all requests."""
    gateway: UpstreamGateway
    analysis: LLMAnalysisClient
    cache: ResponseCache
    cached_gateway: CachedGateway
    history: HistoryService
    orchestrator: BackfillOrchestrator
    maintenance: CacheMaintenanceTask


def build_services(session_factory=None) -> Services:
    """Wire the pipeline from settings."""

    async def fetch_api_key() -> Optional[str]:
        return settings.upstream_api_key

    credentials = RefreshingCredentialProvider(
        fetch_api_key,
        max_age=settings.credential_max_age_seconds,
        fallback_token=settings.upstream_api_key
    )
    gateway = UpstreamGateway(credentials=credentials)
    analysis = LLMAnalysisClient()
    history = HistoryService(session_factory)
    cache = ResponseCache(session_factory, CacheConfig.from_settings(settings))
    orchestrator = BackfillOrchestrator(
        gateway,
        analysis,
        history,
        scanner=GapScanner.from_settings(history, settings),
        config=BackfillConfig.from_settings(settings)
    )
    return Services(
        gateway=gateway,
        analysis=analysis,
        cache=cache,
        cached_gateway=CachedGateway(gateway, cache),
        history=history,
        orchestrator=orchestrator,
        maintenance=CacheMaintenanceTask(cache)
    )


_services: Optional[Services] = None


def get_services() -> Services:
    """Dependency returning the shared services"""
    global _services
    if _services is None:
        _services = build_services()
    return _services


# Initialize FastAPI app
app = FastAPI(
    title=settings.app_name,
    description="Social-data ingestion gateway, response cache and history backfill",
    version="1.0.0",
    debug=settings.debug
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
async def startup_event():
    """Initialize application on startup"""
    init_db()
    get_services().maintenance.start()
    logger.info(f"{settings.app_name} started successfully")


@app.on_event("shutdown")
async def shutdown_event():
    """Release background tasks and HTTP sessions"""
    services = get_services()
    await services.maintenance.stop()
    await services.gateway.stop()
    await services.analysis.stop()
    logger.info(f"{settings.app_name} stopped")


class BackfillBody(BaseModel):
    """Backfill trigger payload"""
    symbol: str
    startDate: date
    endDate: date
    forceHourly: bool = False
    type: Optional[str] = "all"
    force: bool = False
    nowHour: Optional[int] = None
    cursor: Optional[str] = None

    def to_request(self) -> BackfillRequest:
        return BackfillRequest(
            symbol=self.symbol,
            start_date=self.startDate,
            end_date=self.endDate,
            ingestion_type=parse_ingestion_type(self.type),
            force=self.force,
            force_hourly=self.forceHourly,
            now_hour=self.nowHour,
            cursor=self.cursor
        )


@app.get("/health")
async def health_check(services: Services = Depends(get_services)):
    """Health check endpoint for monitoring"""
    return {
        "status": "healthy",
        "app": settings.app_name,
        "version": "1.0.0",
        "upstream": services.gateway.get_metrics(),
        "analysis": services.analysis.get_metrics(),
        "cache": services.cache.get_stats()
    }


@app.get("/health/upstream")
async def upstream_health(services: Services = Depends(get_services)):
    """Probe the upstream provider with a cheap symbols call"""
    result = await services.gateway.health_check()
    return JSONResponse(result, status_code=200 if result["status"] == "ok" else 503)


@app.api_route("/api/upstream", methods=["GET", "POST"])
async def upstream_query(request: Request, services: Services = Depends(get_services)):
    """Cache-fronted upstream query; the action is taken from the query string"""
    params = dict(request.query_params)
    action = params.pop("action", None)

    body = None
    if request.method == "POST":
        raw = await request.body()
        if raw:
            try:
                body = json.loads(raw)
            except ValueError:
                return JSONResponse({"error": "Invalid JSON body"}, status_code=400)

    try:
        result = await services.cached_gateway.query(action, params, body)
    except GatewayError as e:
        logger.warning(f"Upstream {action} failed: {e}")
        return JSONResponse(e.to_dict(), status_code=e.status_code)

    return JSONResponse(
        content=result.payload,
        status_code=result.status,
        headers={"X-Cache": result.cache_status.value}
    )


def _to_backfill_request(body: BackfillBody):
    try:
        return body.to_request(), None
    except ValueError as e:
        return None, JSONResponse({"error": str(e)}, status_code=400)


@app.post("/api/backfill")
async def run_backfill(body: BackfillBody, services: Services = Depends(get_services)):
    """Run one bounded backfill invocation and return its summary"""
    backfill_request, error = _to_backfill_request(body)
    if error is not None:
        return error

    try:
        job = await services.orchestrator.run(backfill_request)
    except GapScanError as e:
        logger.error(f"Backfill scan failed for {backfill_request.symbol}: {e}")
        return JSONResponse({"error": str(e)}, status_code=500)

    return job.to_dict()


@app.post("/api/backfill/stream")
async def stream_backfill(body: BackfillBody, request: Request,
                          services: Services = Depends(get_services)):
    """Run a backfill and stream its progress as newline-delimited JSON"""
    backfill_request, error = _to_backfill_request(body)
    if error is not None:
        return error

    token = CancellationToken(request.is_disconnected)
    streamer = ProgressStreamer(services.orchestrator)

    async def events():
        try:
            async for event in streamer.stream(backfill_request, token):
                yield event.to_json_line()
        except IngestionError as e:
            logger.error(f"Backfill stream for {backfill_request.symbol} aborted: {e}")
            yield json.dumps({"type": "error", "fatal": True, "error": str(e)}) + "\n"

    return StreamingResponse(events(), media_type="application/x-ndjson")


@app.post("/api/admin/cache/sweep")
async def sweep_cache(services: Services = Depends(get_services)):
    """Remove expired cache entries"""
    deleted = await asyncio.to_thread(services.cache.sweep)
    return {"deleted": deleted}


@app.delete("/api/admin/cache")
async def clear_cache(services: Services = Depends(get_services)):
    """Drop every cached response"""
    deleted = await asyncio.to_thread(services.cache.clear)
    return {"deleted": deleted}


@app.delete("/api/admin/cache/{symbol}")
async def invalidate_symbol_cache(symbol: str, services: Services = Depends(get_services)):
    """Drop every cached response for a symbol"""
    deleted = await asyncio.to_thread(services.cache.invalidate_symbol, symbol)
    return {"symbol": symbol.upper(), "deleted": deleted}


@app.get("/api/admin/cache/stats")
async def cache_stats(services: Services = Depends(get_services)):
    return services.cache.get_stats()


@app.post("/api/admin/history/sanitize")
async def sanitize_history(dry_run: bool = True, services: Services = Depends(get_services)):
    """Strip non-ASCII characters from stored narrative and emotion payloads"""
    results = await asyncio.to_thread(services.history.sanitize_payloads, None, dry_run)
    return {"dry_run": dry_run, "tables": results}


@app.post("/api/admin/history/cleanup")
async def cleanup_history(days_to_keep: int = 90, services: Services = Depends(get_services)):
    """Delete narrative and emotion history older than the retention window"""
    try:
        deleted = await asyncio.to_thread(services.history.cleanup_old_records, days_to_keep)
    except PersistenceError as e:
        logger.error(f"History cleanup failed: {e}")
        return JSONResponse({"error": str(e)}, status_code=500)
    return {"days_to_keep": days_to_keep, "deleted": deleted}


if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug
    )
