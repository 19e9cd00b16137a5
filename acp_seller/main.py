"""FastAPI application entry point: the seller runtime's event receiver."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from acp_seller.config import settings
from acp_seller.routers import events
from acp_seller.services.acp_api import AcpApiClient, AcpApiError
from acp_seller.services.actions import get_action_sink
from acp_seller.services.controller import JobLifecycleController
from acp_seller.services.dispatcher import JobDispatcher
from acp_seller.services.local_config import resolve_api_key
from acp_seller.services.registry import FileOfferingStore, OfferingRegistry

logger = logging.getLogger(__name__)

SHUTDOWN_GRACE_SECONDS = 30.0


async def _resolve_wallet_address(api_key: str | None) -> str | None:
    """Look up the seller wallet. Failure is logged; the runtime still starts."""
    if not api_key:
        logger.info("No LITE_AGENT_API_KEY configured; seller wallet not resolved")
        return None
    try:
        async with AcpApiClient(
            settings.acp_api_url, api_key, timeout=settings.api_timeout_seconds
        ) as client:
            wallet = await client.get_wallet_address()
    except AcpApiError as e:
        logger.warning("Could not resolve seller wallet address: %s", e)
        return None
    logger.info("Seller wallet: %s", wallet)
    return wallet


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: build the pipeline on startup, drain it on shutdown."""
    api_key = resolve_api_key()
    registry = OfferingRegistry(FileOfferingStore(settings.offerings_dir))
    sink = get_action_sink(api_key)
    controller = JobLifecycleController(
        registry, sink, handler_timeout=settings.handler_timeout_seconds
    )
    dispatcher = JobDispatcher(controller, dedupe=settings.dedupe_events)

    app.state.registry = registry
    app.state.dispatcher = dispatcher
    app.state.wallet_address = await _resolve_wallet_address(api_key)

    names = registry.list_names()
    if names:
        logger.info("Available offerings in %s: %s", settings.offerings_dir, ", ".join(names))
    else:
        logger.warning("No offerings found in %s", settings.offerings_dir)
    logger.info("Seller runtime is running (action backend: %s). Waiting for jobs...", settings.action_backend)

    yield

    # Cleanup
    await dispatcher.shutdown(timeout=SHUTDOWN_GRACE_SECONDS)
    await sink.aclose()
    logger.info("Seller runtime stopped")


app = FastAPI(
    title="ACP Seller Runtime",
    description="Receives ACP job events and runs offering handlers",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(events.router)


@app.get("/health")
async def health() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "ok"}
