"""Memorychain settlement service.

FastAPI application exposing:
- Crypto payment intents and on-chain verification
- Time-boxed coupon disclosure (reveal / claim)
- Supported currency and transaction lookups
"""

from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Optional

from fastapi import FastAPI, Header, Request
from fastapi.responses import JSONResponse

from src.config import Config, config, validate_config_for_service
from src.database import Database
from src.disclosure.authorization import SignatureAuthorizationVerifier
from src.disclosure.engine import DisclosureEngine
from src.disclosure.threshold import build_threshold_client
from src.errors import CoreError, ErrorKind
from src.logging_utils import CorrelationIdContext, get_logger, setup_logging
from src.models import (
    CreateCouponRequest,
    CreateIntentRequest,
    Currency,
    HolderProofRequest,
    RevealResponse,
    VerifyPaymentRequest,
)
from src.payments.chains import build_chain_clients
from src.payments.currencies import list_currencies
from src.payments.rates import StaticRateOracle
from src.payments.verifier import PaymentVerifier
from src.sweeper import ExpirySweeper

logger = get_logger(__name__)

ERROR_STATUS = {
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.INVALID_INPUT: 400,
    ErrorKind.INVALID_TRANSACTION: 422,
    ErrorKind.INVALID_STATE: 422,
    ErrorKind.CONFLICT: 409,
    ErrorKind.ALREADY_CLAIMED: 409,
    ErrorKind.CONTENTION: 409,
    ErrorKind.UNAUTHORIZED: 403,
    ErrorKind.EXPIRED: 410,
    ErrorKind.POLICY_EXPIRED: 410,
    ErrorKind.UNAVAILABLE: 503,
    ErrorKind.RATE_UNAVAILABLE: 503,
    ErrorKind.QUORUM_UNAVAILABLE: 503,
    ErrorKind.DISCLOSURE_UNAVAILABLE: 503,
}


@dataclass
class Services:
    """Components the HTTP layer delegates to."""

    verifier: PaymentVerifier
    engine: DisclosureEngine
    sweeper: Optional[ExpirySweeper] = None


async def build_services(cfg: Optional[Config] = None) -> Services:
    """Wire the production components from configuration.

    Raises:
        ValueError: If the configuration is incomplete.
    """
    cfg = cfg or config
    validate_config_for_service("service", cfg)

    database = Database(cfg.database_path)
    await database.initialize()

    verifier = PaymentVerifier(
        database.intents,
        build_chain_clients(cfg),
        StaticRateOracle.from_config(cfg),
        cfg,
    )
    engine = DisclosureEngine(
        database.coupons,
        build_threshold_client(cfg),
        SignatureAuthorizationVerifier(owner_lookup=database.coupons.receipt_holder),
        cfg,
    )
    return Services(verifier, engine, ExpirySweeper(verifier, engine, cfg.sweep_interval_seconds))


def create_app(services: Optional[Services] = None) -> FastAPI:
    """Create the FastAPI application.

    Args:
        services: Pre-built components. When omitted they are built from the
            global config on startup and the expiry sweeper is started.

    Returns:
        The configured application.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = services is None
        if owned:
            setup_logging(config.log_level, config.log_format)
            logger.info("Initializing Memorychain service...")
            app.state.services = await build_services()

        sweeper = app.state.services.sweeper
        if sweeper:
            await sweeper.start()
        logger.info("Memorychain service initialized")
        try:
            yield
        finally:
            if sweeper:
                await sweeper.stop()
            if owned:
                await app.state.services.verifier.close()
                await app.state.services.engine.close()

    app = FastAPI(
        title="Memorychain",
        description="Crypto payment verification and time-boxed coupon disclosure",
        lifespan=lifespan,
    )
    if services is not None:
        app.state.services = services

    @app.middleware("http")
    async def correlation_id_middleware(request: Request, call_next):
        with CorrelationIdContext(request.headers.get("X-Correlation-Id"), prefix="req") as correlation_id:
            response = await call_next(request)
        response.headers["X-Correlation-Id"] = correlation_id
        return response

    @app.exception_handler(CoreError)
    async def core_error_handler(request: Request, exc: CoreError) -> JSONResponse:
        status_code = ERROR_STATUS.get(exc.kind, 500)
        if status_code >= 500:
            logger.warning(f"{request.method} {request.url.path} failed: {exc}")
        else:
            logger.info(f"{request.method} {request.url.path} rejected: {exc}")
        return JSONResponse(status_code=status_code, content=exc.to_dict())

    def _services(request: Request) -> Services:
        return request.app.state.services

    @app.get("/health")
    async def health_check() -> dict:
        """Health check endpoint."""
        return {"status": "ok", "service": "memorychain"}

    @app.get("/currencies")
    async def get_currencies(request: Request) -> dict:
        """List supported currencies and whether each is enabled."""
        cfg = _services(request).verifier.config
        return {"currencies": [c.model_dump(mode="json") for c in list_currencies(cfg)]}

    # Payments

    @app.post("/payments", status_code=201)
    async def create_payment(
        body: CreateIntentRequest,
        request: Request,
        idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    ) -> dict:
        """Create a payment intent.

        The idempotency key may be given in the body or as an
        ``Idempotency-Key`` header; the body wins when both are present.
        """
        intent = await _services(request).verifier.create_intent(
            body.fiat_amount,
            body.currency,
            metadata=body.metadata,
            idempotency_key=body.idempotency_key or idempotency_key,
        )
        return intent.model_dump(mode="json")

    @app.get("/payments/{payment_id}")
    async def get_payment(payment_id: str, request: Request) -> dict:
        intent = await _services(request).verifier.get_intent(payment_id)
        return intent.model_dump(mode="json")

    @app.get("/payments/{payment_id}/status")
    async def get_payment_status(payment_id: str, request: Request) -> dict:
        status = await _services(request).verifier.get_payment_status(payment_id)
        return status.model_dump(mode="json")

    @app.post("/payments/{payment_id}/verify")
    async def verify_payment(payment_id: str, body: VerifyPaymentRequest, request: Request) -> dict:
        """Bind a transaction to the intent and refresh its confirmations."""
        intent = await _services(request).verifier.verify(payment_id, body.tx_hash)
        return intent.model_dump(mode="json")

    @app.get("/transactions/{currency}/{tx_hash}")
    async def get_transaction(currency: Currency, tx_hash: str, request: Request) -> dict:
        tx = await _services(request).verifier.get_transaction_details(currency, tx_hash)
        return tx.model_dump(mode="json")

    # Coupons

    @app.post("/coupons", status_code=201)
    async def create_coupon(body: CreateCouponRequest, request: Request) -> dict:
        """Encrypt a coupon code under its disclosure window."""
        coupon = await _services(request).engine.create_coupon(
            body.receipt_id,
            body.code,
            body.valid_from,
            body.valid_until,
            holder_address=body.holder_address,
            coupon_id=body.coupon_id,
        )
        return coupon.public_view()

    @app.get("/coupons/{coupon_id}")
    async def get_coupon(coupon_id: str, request: Request) -> dict:
        coupon = await _services(request).engine.get_coupon(coupon_id)
        return coupon.public_view()

    @app.post("/coupons/{coupon_id}/reveal")
    async def reveal_coupon(coupon_id: str, body: HolderProofRequest, request: Request) -> RevealResponse:
        code = await _services(request).engine.reveal(coupon_id, body.holder_proof)
        return RevealResponse(coupon_id=coupon_id, code=code)

    @app.post("/coupons/{coupon_id}/claim")
    async def claim_coupon(coupon_id: str, body: HolderProofRequest, request: Request) -> dict:
        coupon = await _services(request).engine.claim(coupon_id, body.holder_proof)
        return coupon.public_view()

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    logger.info(f"Starting Memorychain service on {config.service_host}:{config.service_port}")
    uvicorn.run(
        app,
        host=config.service_host,
        port=config.service_port,
        log_level=config.log_level.lower(),
    )
