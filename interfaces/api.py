"""
REST API (read-only) for bot status.

Contract:
- Read-only endpoints only (GET).
- Expose health, running statistics, tracked positions and recent journal entries.
- No trading control endpoints.
- Never leak secrets (api keys, tokens).
"""
from __future__ import annotations

import contextlib
import datetime
from typing import Any, Dict, Optional

import uvicorn
from fastapi import FastAPI, Query
from fastapi.responses import JSONResponse

from core.state import RunningStatistics
from execution.position_tracker import PositionTracker
from monitoring.logger import get_journal

# keys to redact in any returned payloads
_SENSITIVE_KEYS = {k.lower() for k in ("api_key", "apiKey", "api_secret", "secret", "password", "token", "bot_token")}


def _redact(obj: Any) -> Any:
    """Recursively redact sensitive keys from dict-like objects."""
    if isinstance(obj, dict):
        return {
            k: ("<REDACTED>" if isinstance(k, str) and k.lower() in _SENSITIVE_KEYS else _redact(v))
            for k, v in obj.items()
        }
    if isinstance(obj, list):
        return [_redact(v) for v in obj]
    return obj


def _utc_iso() -> str:
    return datetime.datetime.now(datetime.timezone.utc).isoformat()


def create_app(
    tracker: PositionTracker,
    statistics: RunningStatistics,
    dry_run: bool = False,
    started_at: Optional[datetime.datetime] = None,
) -> FastAPI:
    """Build the status API over the live tracker and statistics objects."""
    app = FastAPI(title="Spread Signal Trader Status API", version="1.0.0")
    started_at = started_at or datetime.datetime.now(datetime.timezone.utc)

    @app.get("/health")
    async def health():
        return {
            "ok": True,
            "time": _utc_iso(),
            "started_at": started_at.isoformat(),
            "dry_run": dry_run,
            "monitoring": tracker.is_monitoring,
        }

    @app.get("/statistics")
    async def get_statistics():
        payload: Dict[str, Any] = statistics.snapshot().to_dict()
        payload["open_positions"] = tracker.get_open_positions_count()
        return JSONResponse(_redact(payload))

    @app.get("/positions")
    async def get_positions():
        return JSONResponse(_redact([p.to_dict() for p in tracker.get_open_positions()]))

    @app.get("/logs/recent")
    async def recent_logs(limit: int = Query(50, ge=1, le=500)):
        return JSONResponse(_redact(get_journal().get_recent(limit)))

    @app.post("/{full_path:path}")
    async def deny_all_post(full_path: str):
        return JSONResponse({"detail": "read-only API"}, status_code=405)

    return app


class EmbeddedServer(uvicorn.Server):
    """uvicorn server run inside the bot's event loop; signal handling stays with the bot."""

    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self):
        yield


def create_server(app: FastAPI, host: str = "127.0.0.1", port: int = 8000) -> EmbeddedServer:
    config = uvicorn.Config(app, host=host, port=port, log_level="warning", lifespan="off")
    return EmbeddedServer(config)
