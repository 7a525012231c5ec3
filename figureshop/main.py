"""
Figureshop Service - FastAPI application.

Turns a customer photo into an 80s action figure render, sells it through
Stripe Checkout and emails paid orders to the operator.

Components are built in create_app() and can be swapped for fakes in tests.
Run with uvicorn's factory mode (see run.py).
"""
import logging
import sys
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from fastapi import FastAPI, File, Form, Header, HTTPException, Request, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse

from .artifacts import ArtifactStore
from .checkout import CheckoutSessionBuilder, PaymentClient
from .config import Settings, get_settings
from .errors import (
    AuthenticationError,
    OrderNotFoundError,
    PersistenceError,
    UpstreamError,
    ValidationError,
)
from .generation import ImageGenerator
from .models import (
    CheckoutRequest,
    CheckoutResponse,
    Customization,
    GenerateResponse,
    HealthResponse,
    Order,
    WebhookResponse,
)
from .notifier import FulfillmentNotifier, MailTransport, SmtpTransport
from .order_store import OrderStore
from .state_machine import OrderStateMachine
from .stripe_client import StripeClient
from .webhooks import WebhookAuthenticator


def setup_logging(settings: Settings) -> logging.Logger:
    """Configure logging with file and console handlers."""
    log_level = getattr(logging, settings.log_level.upper(), logging.INFO)

    formatter = logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()

    # Console handler (always)
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    # File handler (if configured)
    if settings.log_path:
        try:
            log_path = Path(settings.log_path)
            log_path.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(log_path)
            file_handler.setLevel(log_level)
            file_handler.setFormatter(formatter)
            root_logger.addHandler(file_handler)
            root_logger.info("Logging to file: %s", log_path)
        except OSError as e:
            root_logger.error("Failed to set up file logging: %s", e)

    return logging.getLogger(__name__)


logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    *,
    store: Optional[OrderStore] = None,
    artifacts: Optional[ArtifactStore] = None,
    payments: Optional[PaymentClient] = None,
    transport: Optional[MailTransport] = None,
    generator: Optional[ImageGenerator] = None,
    configure_logging: bool = True,
) -> FastAPI:
    """
    Create the figureshop application.

    Args:
        settings: Configuration; defaults to get_settings()
        store: Order store; defaults to a file store under settings.orders_dir
        artifacts: Artifact store; defaults to settings.artifacts_dir
        payments: Checkout session client; defaults to StripeClient
        transport: Mail transport; defaults to SMTP
        generator: Image generator; defaults to the OpenAI generator
        configure_logging: Install the console/file log handlers

    Returns:
        Configured FastAPI application
    """
    settings = settings or get_settings()
    if configure_logging:
        setup_logging(settings)

    artifacts = artifacts or ArtifactStore(settings.artifacts_dir)
    store = store or OrderStore(settings.orders_dir)
    payments = payments or StripeClient(settings)
    transport = transport or SmtpTransport(settings)
    generator = generator or ImageGenerator(settings, artifacts)

    builder = CheckoutSessionBuilder(settings, store, payments, artifacts)
    authenticator = WebhookAuthenticator(
        settings.stripe_webhook_secret, settings.stripe_webhook_tolerance
    )
    notifier = FulfillmentNotifier(settings, artifacts, transport)
    state_machine = OrderStateMachine(store, notifier)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Figureshop service starting up")
        logger.info("Orders directory: %s", store.root)
        for error in settings.validate_required_config():
            logger.warning("Configuration: %s", error)
        yield
        logger.info("Figureshop service shutting down")

    app = FastAPI(
        title="Figureshop",
        description="Custom 80s action figure renders, sold and fulfilled",
        version=settings.version,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # =========================================================================
    # Health & Info
    # =========================================================================

    @app.get("/")
    async def root():
        """Root endpoint with API information"""
        return {
            "message": "Figureshop API",
            "version": settings.version,
            "endpoints": {
                "generate": "/generate-image",
                "checkout": "/create-checkout-session",
                "webhook": "/webhook",
                "orders": "/orders",
                "status": "/status",
                "health": "/health",
            },
        }

    @app.get("/health", response_model=HealthResponse)
    async def health():
        """Health check endpoint."""
        return HealthResponse(
            status="ok",
            timestamp=datetime.now().isoformat(),
            version=settings.version,
        )

    @app.get("/status")
    def status():
        """Report payment provider connectivity and local order count."""
        return {
            "stripe_connected": payments.test_connection(),
            "local_orders_count": len(store.list(limit=None)),
            "email_configured": settings.is_email_configured,
            "openai_configured": settings.is_openai_configured,
        }

    @app.get("/config")
    async def get_config():
        """Get current configuration (without sensitive data)"""
        return settings.get_config_summary()

    @app.get("/validate-config")
    async def validate_config():
        """Validate that all required configuration is present"""
        errors = settings.validate_required_config()
        if errors:
            return {"valid": False, "errors": errors}
        return {"valid": True, "message": "All required configuration is present"}

    # =========================================================================
    # Generation
    # =========================================================================

    @app.post("/generate-image", response_model=GenerateResponse)
    async def generate_image(
        photo: UploadFile = File(...),
        figure_name: str = Form(""),
        accessories: str = Form(""),
        tagline: str = Form(""),
    ):
        """Generate action figure renders from an uploaded photo."""
        data = await photo.read()
        if len(data) > settings.max_upload_bytes:
            raise HTTPException(status_code=413, detail="Photo is too large")

        try:
            customization = Customization(
                figure_name=figure_name, accessories=accessories, tagline=tagline
            )
        except ValueError as e:
            raise HTTPException(status_code=422, detail=str(e))

        try:
            result = await run_in_threadpool(generator.generate, data, customization)
        except ValidationError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except UpstreamError as e:
            logger.error("Generation failed: %s", e)
            raise HTTPException(status_code=502, detail="Generation failed")
        except PersistenceError as e:
            logger.error("Could not store generated images: %s", e)
            raise HTTPException(status_code=500, detail="Generation failed")

        return GenerateResponse(prompt=result.prompt, artifacts=result.artifacts)

    @app.get("/artifacts/{ref}")
    async def get_artifact(ref: str):
        """Serve a generated image."""
        if not artifacts.exists(ref):
            raise HTTPException(status_code=404, detail="Artifact not found")
        return FileResponse(artifacts.path(ref))

    # =========================================================================
    # Checkout
    # =========================================================================

    @app.post("/create-checkout-session", response_model=CheckoutResponse)
    def create_checkout_session(request: CheckoutRequest):
        """Create an order for the artifacts and return the Stripe redirect URL."""
        try:
            return builder.create_checkout(request.artifacts)
        except ValidationError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except PersistenceError as e:
            logger.error("Checkout aborted: %s", e)
            raise HTTPException(status_code=500, detail="Could not create order")
        except UpstreamError as e:
            raise HTTPException(status_code=502, detail=f"Payment provider error: {e}")

    @app.post("/webhook", response_model=WebhookResponse)
    async def webhook_received(
        request: Request,
        stripe_signature: Optional[str] = Header(None),
    ):
        """
        Webhook endpoint for Stripe events.

        Reads the raw body for signature verification. Anything that passes
        verification gets a 200, including events for unknown orders, so Stripe
        does not retry what a retry cannot fix.
        """
        payload = await request.body()

        try:
            event = authenticator.verify(payload, stripe_signature or "")
        except AuthenticationError as e:
            logger.warning("Rejected webhook: %s", e)
            raise HTTPException(status_code=400, detail="Invalid webhook signature")
        except ValidationError as e:
            logger.warning("Rejected webhook payload: %s", e)
            raise HTTPException(status_code=400, detail="Invalid webhook payload")

        if event.payment is None:
            logger.info("Ignoring webhook event %s (%s)", event.id, event.type)
            return WebhookResponse(outcome="ignored")

        if not event.payment.order_id:
            logger.error("Payment event %s carries no order id; needs manual reconciliation", event.id)
            return WebhookResponse(outcome="missing_order_id")

        try:
            outcome = await run_in_threadpool(state_machine.handle_payment_completed, event.payment)
        except PersistenceError as e:
            logger.error("Could not apply payment event %s: %s", event.id, e)
            raise HTTPException(status_code=500, detail="Order storage failure")

        return WebhookResponse(outcome=outcome.value)

    # =========================================================================
    # Orders
    # =========================================================================

    @app.get("/orders", response_model=List[Order])
    def list_orders(limit: int = 50):
        """List stored orders, newest first."""
        return store.list(limit=limit)

    @app.get("/orders/{order_id}", response_model=Order)
    def get_order(order_id: str):
        """Get a specific order by ID."""
        try:
            return store.load(order_id)
        except OrderNotFoundError:
            raise HTTPException(status_code=404, detail="Order not found")
        except PersistenceError as e:
            raise HTTPException(status_code=500, detail=f"Error reading order: {e}")

    return app
