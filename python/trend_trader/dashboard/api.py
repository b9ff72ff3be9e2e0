"""FastAPI diagnostics for a running trend-trader.

Serves:
- REST endpoints for the current status, stats and settled orders
- WebSocket for status updates
"""

import asyncio
import logging
from typing import Optional, List

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

logger = logging.getLogger(__name__)


# ============================================================================
# Models
# ============================================================================

class OrderView(BaseModel):
    id: str
    product_id: str
    side: str
    price: float
    size: float
    settled: bool
    status: str
    done_reason: Optional[str] = None
    filled_size: float = 0.0
    time_in_force: str = "GTC"
    cancel_after: Optional[str] = None


class StatusView(BaseModel):
    reference_average: Optional[float] = None
    last_trade_price: Optional[float] = None
    phase: str
    signal_strength: int
    holding: bool
    opened_order: Optional[OrderView] = None
    settled_orders: List[OrderView] = []


class StatsView(BaseModel):
    mode: str
    is_running: bool
    cycles_started: int
    records_accepted: int
    triggers_fired: int
    orders_settled: int
    machine_restarts: int
    feed_stats: dict


# ============================================================================
# App
# ============================================================================

def create_app(orchestrator, update_interval: float = 1.0) -> FastAPI:
    """Build the diagnostics app bound to an orchestrator."""
    app = FastAPI(
        title="Trend Trader Diagnostics",
        description="Status of the trading state machine and signal engine",
        version="0.1.0",
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/api/status", response_model=StatusView)
    async def get_status():
        """Current phase, prices and signal strength."""
        return orchestrator.get_status()

    @app.get("/api/stats", response_model=StatsView)
    async def get_stats():
        return orchestrator.get_stats()

    @app.get("/api/orders")
    async def get_orders(limit: int = 50):
        """Settled orders from the journal, newest first."""
        product_id = orchestrator.config.product.product_id
        return {"orders": orchestrator.store.get_orders(product_id, limit=limit)}

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        await websocket.accept()
        try:
            while True:
                status = StatusView(**orchestrator.get_status())
                await websocket.send_json(status.model_dump())
                await asyncio.sleep(update_interval)
        except WebSocketDisconnect:
            logger.info("Diagnostics client disconnected")

    return app


async def serve_dashboard(app: FastAPI, host: str = "127.0.0.1", port: int = 8080) -> None:
    """Serve the app on the running event loop."""
    import uvicorn
    server = uvicorn.Server(uvicorn.Config(app, host=host, port=port, log_level="info"))
    await server.serve()
