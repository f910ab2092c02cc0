from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from fastapi import FastAPI, HTTPException, Query
from fastapi.responses import JSONResponse
from loguru import logger
from pydantic import BaseModel, Field

from .errors import ConfigError, InvalidTransition
from .orchestrator import Orchestrator


class ConfigUpdatePayload(BaseModel):
    scan_interval_minutes: int | None = Field(default=None, ge=1, le=1440)
    execution_delay_seconds: float | None = Field(default=None, ge=0, le=3600)
    minimum_confidence: float | None = Field(default=None, ge=0, le=100)
    risk_levels_enabled: list[str] | None = None
    max_position_size_percent: float | None = None
    max_daily_trades: int | None = None
    max_daily_amount: float | None = None
    stop_loss_percent: float | None = None
    take_profit_percent: float | None = None
    max_portfolio_drawdown: float | None = None
    trading_hours_only: bool | None = None
    avoid_high_volatility: bool | None = None
    minimum_liquidity: float | None = None
    diversification_target: int | None = None
    cash_reserve_percent: float | None = None
    rebalancing_enabled: bool | None = None
    stop_loss_enabled: bool | None = None
    take_profit_enabled: bool | None = None
    multi_level_take_profit: bool | None = None
    trailing_stop_enabled: bool | None = None
    trailing_stop_percent: float | None = None
    oco_enabled: bool | None = None


class ReasonPayload(BaseModel):
    reason: str = Field(default="", max_length=200)


def create_app(orchestrator: Orchestrator) -> FastAPI:
    app = FastAPI(title="Trade Autopilot API", version="1.0.0")

    def _guarded(action, *args: Any) -> dict[str, Any]:
        try:
            return action(*args)
        except InvalidTransition as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc

    @app.on_event("shutdown")
    def on_shutdown() -> None:
        logger.info("API shutting down")
        orchestrator.shutdown()

    @app.get("/status")
    def get_status() -> dict[str, Any]:
        return orchestrator.status()

    @app.get("/quota")
    def get_quota() -> dict[str, Any]:
        return orchestrator.quota_info()

    @app.get("/queue")
    def get_queue() -> dict[str, Any]:
        return orchestrator.queue_listing()

    @app.get("/decisions")
    def get_decisions(limit: int = Query(default=50, ge=1, le=500)) -> list[dict[str, Any]]:
        return [d.to_dict() for d in orchestrator.decisions(limit)]

    @app.get("/orders")
    def get_orders() -> dict[str, Any]:
        return orchestrator.orders_listing()

    @app.get("/performance")
    def get_performance() -> dict[str, Any]:
        return orchestrator.performance()

    @app.get("/config")
    def get_config() -> dict[str, Any]:
        return orchestrator.config.to_dict()

    @app.post("/config")
    def post_config(payload: ConfigUpdatePayload) -> dict[str, Any]:
        try:
            config = orchestrator.update_config(**payload.model_dump(exclude_none=True))
        except ConfigError as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc
        return config.to_dict()

    @app.post("/start")
    def post_start() -> dict[str, Any]:
        return _guarded(orchestrator.start)

    @app.post("/stop")
    def post_stop() -> dict[str, Any]:
        return _guarded(orchestrator.stop)

    @app.post("/pause")
    def post_pause() -> dict[str, Any]:
        return _guarded(orchestrator.pause)

    @app.post("/resume")
    def post_resume() -> dict[str, Any]:
        return _guarded(orchestrator.resume)

    @app.post("/emergency-stop")
    def post_emergency_stop(payload: ReasonPayload | None = None) -> dict[str, Any]:
        reason = payload.reason if payload and payload.reason else "manual emergency stop"
        return _guarded(orchestrator.emergency_stop, reason)

    @app.post("/clear-error")
    def post_clear_error() -> dict[str, Any]:
        return orchestrator.clear_error()

    @app.post("/scan")
    def post_scan() -> dict[str, Any]:
        return orchestrator.run_scan().to_dict()

    @app.post("/orders/{order_id}/cancel")
    def post_cancel_order(order_id: str) -> dict[str, Any]:
        if not orchestrator.cancel_order(order_id):
            raise HTTPException(status_code=404, detail="Order not found or no longer active")
        return {"cancelled": True, "order_id": order_id}

    @app.post("/queue/{trade_id}/cancel")
    def post_cancel_trade(trade_id: str) -> dict[str, Any]:
        if not orchestrator.cancel_trade(trade_id):
            raise HTTPException(status_code=404, detail="Trade not found or no longer pending")
        return {"cancelled": True, "trade_id": trade_id}

    @app.get("/healthz")
    def healthz() -> JSONResponse:
        return JSONResponse({"ok": True, "time": datetime.now(timezone.utc).isoformat()})

    return app
