"""Read-only API routers — /rsi, /oversold, /breakouts, /status endpoints.

No business logic. Delegates to the analytics service set at startup.
"""

import logging
from typing import Optional

from fastapi import APIRouter, HTTPException, Query

from signalcheck.errors import FatalAccessError

logger = logging.getLogger("signalcheck.api")
router = APIRouter()

# ── Shared state (set during app startup) ────────────────────────────────

_service = None    # Set via configure_routers()
_scheduler = None  # Set via configure_routers()


def configure_routers(service, scheduler=None) -> None:
    """Inject dependencies from the application startup.

    Args:
        service: An ``AnalyticsService`` (or duck-type for tests).
        scheduler: Optional ``RefreshScheduler`` reported by ``/status``.
    """
    global _service, _scheduler  # noqa: PLW0603
    _service = service
    _scheduler = scheduler


def _require_service():
    if _service is None:
        raise HTTPException(status_code=503, detail="Analytics service not configured")
    return _service


def _symbols(raw: Optional[str]) -> Optional[list[str]]:
    if not raw:
        return None
    return [s.strip().upper() for s in raw.split(",") if s.strip()]


def _banned(exc: FatalAccessError) -> HTTPException:
    logger.error("Exchange access revoked: %s", exc)
    return HTTPException(status_code=503, detail=str(exc))


# ── Endpoints ────────────────────────────────────────────────────────────


@router.get("/rsi")
async def get_rsi(
    symbols: Optional[str] = Query(None, description="Comma-separated pairs"),
    refresh: bool = Query(False),
):
    """Latest RSI reading per symbol (symbols that failed are absent)."""
    service = _require_service()
    try:
        readings = await service.fetch_multiple_rsi(_symbols(symbols), refresh=refresh)
    except FatalAccessError as exc:
        raise _banned(exc) from exc
    return [r.to_dict() for r in readings]


@router.get("/oversold")
async def get_oversold(
    symbols: Optional[str] = Query(None, description="Comma-separated pairs"),
    days: Optional[int] = Query(None, ge=1, le=30),
    threshold: Optional[float] = Query(None, ge=0, le=100),
    refresh: bool = Query(False),
):
    """Oversold events, newest first."""
    service = _require_service()
    try:
        events = await service.fetch_oversold_history(
            _symbols(symbols), days=days, threshold=threshold, refresh=refresh
        )
    except FatalAccessError as exc:
        raise _banned(exc) from exc
    return [e.to_dict() for e in events]


@router.get("/breakouts")
async def get_breakouts(
    symbols: Optional[str] = Query(None, description="Comma-separated pairs"),
    days: Optional[int] = Query(None, ge=1, le=30),
    refresh: bool = Query(False),
):
    """Breakout signals with re-entry plus breakouts still awaiting one."""
    service = _require_service()
    try:
        result = await service.fetch_breakouts(_symbols(symbols), days=days, refresh=refresh)
    except FatalAccessError as exc:
        raise _banned(exc) from exc
    return result.to_dict()


@router.get("/status")
async def get_status():
    """Last refresh time per operation and scheduler job state."""
    service = _require_service()
    jobs = {}
    if _scheduler is not None:
        jobs = {
            name: {
                "interval_seconds": job.interval_seconds,
                "runs": job.runs,
                "failures": job.failures,
                "last_error": job.last_error,
                "next_run": job.next_run.isoformat() if job.next_run else None,
            }
            for name, job in _scheduler.jobs.items()
        }
    return {
        "symbols": list(service.symbols),
        "last_refresh": {k: v.isoformat() for k, v in service.last_refresh.items()},
        "scheduler_running": bool(_scheduler and _scheduler.running),
        "jobs": jobs,
    }
