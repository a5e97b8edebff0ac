"""
Main FastAPI application entry point.

This module wires the chain client, the invoice store and the watcher jobs
together, registers the invoice routes and starts the observer / sweeper
schedule for the lifetime of the app.
"""

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

# Load environment variables from .env file
load_dotenv()

from citrea_pay.chain.accounts import AddressDeriver
from citrea_pay.chain.client import ChainClient, create_chain_client
from citrea_pay.chain.delegation import AuthorizationIssuer
from citrea_pay.invoices.routes import router as invoice_router
from citrea_pay.invoices.service import InvoiceService
from citrea_pay.invoices.store import InvoiceStore
from citrea_pay.settings import Settings, get_settings
from citrea_pay.watcher.observer import ChainObserver
from citrea_pay.watcher.scheduler import PeriodicTask, Scheduler
from citrea_pay.watcher.sweeper import SweepEngine

logger = logging.getLogger(__name__)

API_VERSION = "0.1.0"
SERVICE_NAME = "citrea-pay"


@dataclass
class Components:
    settings: Settings
    store: InvoiceStore
    chain_client: ChainClient
    deriver: AddressDeriver
    service: InvoiceService
    observer: ChainObserver
    sweeper: SweepEngine


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


def build_components(settings: Settings, chain_client: Optional[ChainClient] = None) -> Components:
    """Create every collaborator from validated settings.

    Raises:
        ValueError: If the configuration is invalid
    """
    settings.ensure_valid()

    store = InvoiceStore.from_url(settings.database_url)
    chain_client = chain_client or create_chain_client(
        settings.rpc_urls,
        chain_id=settings.citrea_chain_id,
        timeout=settings.rpc_timeout_seconds,
        receipt_timeout=settings.receipt_timeout_seconds,
    )
    deriver = AddressDeriver(settings.mnemonic, index_range=settings.derivation_index_range)
    issuer = AuthorizationIssuer(chain_client, settings.sweeper_contract_address)

    service = InvoiceService(settings, store, deriver, issuer, chain_client=chain_client)
    observer = ChainObserver(
        store,
        chain_client,
        native_symbol=settings.native_symbol,
        token_addresses=settings.token_addresses,
        start_block=settings.start_block,
    )
    sweeper = SweepEngine(
        store,
        chain_client,
        deriver,
        native_symbol=settings.native_symbol,
        token_addresses=settings.token_addresses,
        sweep_contract=settings.sweeper_contract_address,
        fee_bump_percent=settings.fee_bump_percent,
        max_attempts=settings.max_sweep_attempts,
    )
    logger.info(f"Treasury address: {deriver.treasury().address}")
    return Components(settings, store, chain_client, deriver, service, observer, sweeper)


def build_scheduler(components: Components) -> Scheduler:
    settings = components.settings
    return Scheduler(
        [
            PeriodicTask("chain-observer", components.observer.tick, settings.poll_interval_seconds),
            # First sweep waits a full interval, as the service did before
            PeriodicTask(
                "sweep-engine", components.sweeper.run_cycle, settings.sweep_interval_seconds, run_immediately=False
            ),
        ]
    )


def create_app(components: Optional[Components] = None, start_jobs: bool = True) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        components: Pre-built collaborators; built from the environment when omitted
        start_jobs: Run the observer / sweeper schedule during the app lifespan

    Returns:
        Configured FastAPI application instance
    """
    if components is None:
        settings = get_settings()
        configure_logging(settings.log_level)
        components = build_components(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        scheduler = build_scheduler(components) if start_jobs else None
        if scheduler is not None:
            scheduler.start()
        try:
            yield
        finally:
            if scheduler is not None:
                await scheduler.stop()

    app = FastAPI(
        title="Citrea Pay",
        description="Invoice payments detected on-chain and swept to treasury",
        version=API_VERSION,
        lifespan=lifespan,
    )
    app.state.components = components
    app.state.invoice_service = components.service

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/")
    async def root() -> JSONResponse:
        return JSONResponse(content={"message": "Citrea Pay Server is running."})

    @app.get("/health")
    async def health_check() -> JSONResponse:
        """Health check endpoint for monitoring and load balancers."""
        return JSONResponse(
            content={
                "status": "healthy",
                "service": SERVICE_NAME,
                "version": API_VERSION,
                "cursor": components.store.get_cursor(default=components.settings.start_block),
                "invoices": components.store.count(),
            }
        )

    app.include_router(invoice_router)
    return app
