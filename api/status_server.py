from datetime import datetime, timezone
from typing import TYPE_CHECKING

from fastapi import FastAPI, HTTPException, Query

if TYPE_CHECKING:
    from main import TradingSystem


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def create_app(system: "TradingSystem") -> FastAPI:
    """Read-only status API over a running trading system."""
    app = FastAPI(title="Candle Signal Engine", version="1.0.0")

    @app.get("/health")
    async def health():
        snapshot = system.orchestrator.last_snapshot
        return {
            "status": "healthy",
            "timestamp": _now(),
            "system_running": system.running,
            "symbol": system.orchestrator.symbol,
            "candles": system.window.count(),
            "last_price": snapshot.close if snapshot else None,
        }

    @app.get("/api/users")
    async def get_users():
        users = system.orchestrator.users_summary()
        return {"users": users, "count": len(users), "timestamp": _now()}

    @app.get("/api/signals/{user_id}")
    async def get_signals(user_id: str):
        if user_id not in system.orchestrator.users:
            raise HTTPException(status_code=404, detail=f"unknown user '{user_id}'")
        signals = await system.signal_manager.get_active_signals(user_id)
        return {
            "signals": [s.to_dict() for s in signals],
            "count": len(signals),
            "timestamp": _now(),
        }

    @app.get("/api/history")
    async def get_history(limit: int = Query(50, ge=1, le=500)):
        signals = await system.signal_manager.history(limit=limit)
        return {
            "signals": [s.to_dict() for s in signals],
            "count": len(signals),
            "timestamp": _now(),
        }

    @app.get("/api/statistics")
    async def get_statistics():
        stats = await system.signal_manager.statistics()
        return {"statistics": stats, "timestamp": _now()}

    return app
