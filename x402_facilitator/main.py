"""
Main FastAPI application entry point.

This module creates and configures the facilitator application: it builds
the network registry, chain adapters, engine and claims state machine from
settings, registers the payment and claims routers, and sets up middleware,
exception handlers and the health check endpoint.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Mapping, Optional

import httpx
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from x402_facilitator import __version__
from x402_facilitator.chains.base import SettlementAdapter
from x402_facilitator.chains.evm import EVMAdapter
from x402_facilitator.chains.poller import BackoffPolicy
from x402_facilitator.chains.solana import SolanaAdapter
from x402_facilitator.chains.stacks import StacksAdapter
from x402_facilitator.claims.keys import KeyCipher
from x402_facilitator.claims.routes import router as claims_router
from x402_facilitator.claims.service import ClaimsStateMachine
from x402_facilitator.config import FacilitatorSettings, SigningMaterial, load_settings
from x402_facilitator.errors import ClaimError, ConfigurationError, KeyDecryptionError
from x402_facilitator.networks.registry import ChainFamily, NetworkRegistry
from x402_facilitator.payment.engine import FacilitatorEngine
from x402_facilitator.payment.routes import router as payment_router
from x402_facilitator.persistence import FacilitatorStore, InMemoryStore
from x402_facilitator.webhooks.dispatcher import WebhookDispatcher

logger = logging.getLogger(__name__)

API_VERSION = __version__
WEBHOOK_DRAIN_TIMEOUT = 15.0  # seconds


def build_adapters(settings: FacilitatorSettings, http: httpx.AsyncClient) -> Dict[ChainFamily, SettlementAdapter]:
    """One adapter per chain family, configured from settings."""
    return {
        ChainFamily.EVM: EVMAdapter(receipt_timeout=settings.evm_receipt_timeout_seconds),
        ChainFamily.SOLANA: SolanaAdapter(
            http,
            poll_policy=BackoffPolicy.fixed(settings.solana_poll_attempts, settings.solana_poll_interval_seconds),
        ),
        ChainFamily.STACKS: StacksAdapter(
            http,
            api_key=settings.stacks_api_key,
            poll_policy=BackoffPolicy.fixed(settings.stacks_poll_attempts, settings.stacks_poll_interval_seconds),
            payout_fee=settings.stacks_payout_fee,
        ),
    }


def register_exception_handlers(app: FastAPI) -> None:
    """Map errors to structured JSON bodies."""

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        details = [
            {"loc": [str(part) for part in err.get("loc", ())], "msg": err.get("msg"), "type": err.get("type")}
            for err in exc.errors()
        ]
        return JSONResponse(status_code=400, content={"error": "invalid_request", "details": details})

    @app.exception_handler(ClaimError)
    async def claim_error_handler(request: Request, exc: ClaimError) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content={"success": False, "error": exc.code, "message": str(exc)},
        )

    @app.exception_handler(ConfigurationError)
    async def configuration_error_handler(request: Request, exc: ConfigurationError) -> JSONResponse:
        logger.error(f"Configuration error on {request.url.path}: {exc}")
        return JSONResponse(status_code=503, content={"error": "not_configured", "message": str(exc)})

    @app.exception_handler(KeyDecryptionError)
    async def key_decryption_error_handler(request: Request, exc: KeyDecryptionError) -> JSONResponse:
        logger.error(f"Refund key decryption failed on {request.url.path}: {exc}")
        return JSONResponse(status_code=500, content={"error": "key_decryption_failed"})

    @app.exception_handler(Exception)
    async def internal_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception(f"Unhandled error on {request.method} {request.url.path}")
        path = request.url.path.rstrip("/")
        if path.endswith("/verify"):
            content: Dict[str, Any] = {"isValid": False, "invalidReason": "internal_error"}
        elif path.endswith("/settle"):
            content = {"success": False, "errorReason": "internal_error"}
        else:
            content = {"error": "internal_error"}
        return JSONResponse(status_code=500, content=content)


def create_app(
    settings: Optional[FacilitatorSettings] = None,
    store: Optional[FacilitatorStore] = None,
    adapters: Optional[Mapping[ChainFamily, SettlementAdapter]] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    registry: Optional[NetworkRegistry] = None,
) -> FastAPI:
    """Create and configure the facilitator FastAPI application.

    Args:
        settings: Service settings (default: loaded from env / .env)
        store: Persistence backend (default: InMemoryStore)
        adapters: Chain adapters by family (default: built from settings)
        http_client: Shared client for Solana RPC, Stacks API and webhooks
        registry: Network registry (default: built-in chains + RPC overrides)

    Returns:
        Configured FastAPI application instance
    """
    settings = settings or load_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    http = http_client or httpx.AsyncClient()
    registry = registry or NetworkRegistry(rpc_overrides=settings.rpc_urls)
    adapters = dict(adapters) if adapters is not None else build_adapters(settings, http)
    signing = SigningMaterial.from_settings(settings)
    store = store if store is not None else InMemoryStore()
    webhooks = WebhookDispatcher(
        http,
        retry_policy=BackoffPolicy(max_attempts=settings.webhook_max_retries, base_delay=1.0, multiplier=2.0),
    )

    engine = FacilitatorEngine(
        registry=registry,
        adapters=adapters,
        signing=signing,
        facilitator_id=settings.facilitator_id,
        enabled_networks=settings.networks,
        store=store,
        webhooks=webhooks,
        webhook_url=settings.webhook_url,
        webhook_secret=settings.webhook_secret,
        settle_timeout_seconds=settings.settle_timeout_seconds,
    )
    claims = ClaimsStateMachine(
        store=store,
        registry=registry,
        adapters=adapters,
        signing=signing,
        cipher=KeyCipher(settings.key_encryption_secret) if settings.key_encryption_secret else None,
        webhooks=webhooks,
        facilitator_id=settings.facilitator_id,
        webhook_url=settings.webhook_url,
        webhook_secret=settings.webhook_secret,
        expiry_days=settings.claim_expiry_days,
        payout_timeout_seconds=settings.settle_timeout_seconds,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        background = [
            asyncio.create_task(claims.run_expiry_loop(settings.claims_sweep_interval_seconds)),
            asyncio.create_task(engine.run_nonce_prune_loop(settings.nonce_prune_interval_seconds)),
        ]
        logger.info(
            f"Facilitator {settings.facilitator_id} started: "
            f"{', '.join(c.network for c in engine.enabled_chains)} ({signing!r})"
        )
        try:
            yield
        finally:
            for task in background:
                task.cancel()
            await asyncio.gather(*background, return_exceptions=True)
            await webhooks.aclose(timeout=WEBHOOK_DRAIN_TIMEOUT)
            for adapter in adapters.values():
                await adapter.aclose()
            if http_client is None:
                await http.aclose()
            logger.info("Facilitator stopped")

    app = FastAPI(
        title="x402 Facilitator",
        description="Verifies and settles x402 payments on EVM, Solana and Stacks",
        version=API_VERSION,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.engine = engine
    app.state.claims = claims
    app.state.store = store
    app.state.webhooks = webhooks
    app.state.admin_token = settings.admin_token

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origin_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_exception_handlers(app)

    # Register health check endpoint
    @app.get("/health")
    async def health_check() -> JSONResponse:
        """Health check endpoint for monitoring and load balancers."""
        return JSONResponse(
            content={
                "status": "healthy",
                "service": settings.service_name,
                "version": API_VERSION,
            }
        )

    app.include_router(payment_router)
    app.include_router(claims_router)

    return app


# Create the application instance
app = create_app()
