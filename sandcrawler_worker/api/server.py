"""
Worker HTTP ingress

Minimal FastAPI app used with the HTTP transport: the orchestrator POSTs
orders here and receives replies on its callback URL.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Annotated, Any

from fastapi import Body, Depends, FastAPI, HTTPException, Request
from pydantic import BaseModel

from sandcrawler_worker import __version__
from sandcrawler_worker.core.exceptions import OrderValidationError
from sandcrawler_worker.core.http_gateway import HttpGateway
from sandcrawler_worker.executor.worker import ScrapeWorker

logger = logging.getLogger(__name__)


# =============================================================================
# Response Models
# =============================================================================


class OrderAccepted(BaseModel):
    status: str = "accepted"
    call_id: str


class StatusResponse(BaseModel):
    runner_name: str
    accepting_orders: bool
    in_flight: int
    queued: int
    max_pages: int
    orders_handled: int


# =============================================================================
# Dependencies
# =============================================================================


def get_gateway(request: Request) -> HttpGateway:
    gateway: HttpGateway = request.app.state.gateway
    return gateway


def get_worker(request: Request) -> ScrapeWorker:
    worker: ScrapeWorker = request.app.state.worker
    return worker


GatewayDep = Annotated[HttpGateway, Depends(get_gateway)]
WorkerDep = Annotated[ScrapeWorker, Depends(get_worker)]


# =============================================================================
# FastAPI App
# =============================================================================


def create_app(gateway: HttpGateway, worker: ScrapeWorker) -> FastAPI:
    """Build the ingress app around a gateway and the worker draining it."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("[Ingress] Worker API starting...")
        yield
        logger.info("[Ingress] Worker API shutting down...")

    app = FastAPI(
        title="Sandcrawler Worker",
        description="Order ingress for a sandcrawler scrape worker",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.gateway = gateway
    app.state.worker = worker

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        return {"status": "healthy", "version": __version__}

    @app.post("/orders", status_code=202, response_model=OrderAccepted)
    async def submit_order(
        payload: Annotated[Any, Body()],
        gateway: GatewayDep,
        worker: WorkerDep,
    ):
        """Queue a scrape order; its reply is delivered to the callback URL."""
        if worker.is_stopping:
            raise HTTPException(status_code=503, detail="Worker is shutting down")

        try:
            message = gateway.accept(payload)
        except OrderValidationError as e:
            logger.warning(f"[Ingress] Rejected order: {e}", extra={"call_id": e.call_id})
            raise HTTPException(
                status_code=422,
                detail={"message": str(e), "call_id": e.call_id, "errors": e.validation_errors},
            ) from e

        return OrderAccepted(call_id=message.call_id)

    @app.get("/status", response_model=StatusResponse)
    async def get_status(gateway: GatewayDep, worker: WorkerDep):
        """Report in-flight and queued orders."""
        return StatusResponse(
            runner_name=worker.runner_name,
            accepting_orders=not worker.is_stopping,
            in_flight=worker.in_flight,
            queued=gateway.queue_size(),
            max_pages=worker.max_pages,
            orders_handled=worker.orders_handled,
        )

    return app
