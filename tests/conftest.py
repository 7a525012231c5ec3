import hashlib
import hmac
import io
import json
import smtplib
import threading
import time
from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient
from PIL import Image

from figureshop.artifacts import ArtifactStore
from figureshop.checkout import CheckoutSessionBuilder
from figureshop.config import Settings
from figureshop.errors import UpstreamError
from figureshop.generation import GenerationResult
from figureshop.main import create_app
from figureshop.models import Order
from figureshop.notifier import FulfillmentNotifier
from figureshop.order_store import OrderStore
from figureshop.state_machine import OrderStateMachine
from figureshop.stripe_client import CheckoutSession

WEBHOOK_SECRET = "whsec_test_secret"


def _png_bytes() -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", (4, 4), "red").save(buf, format="PNG")
    return buf.getvalue()


PNG_BYTES = _png_bytes()


def sign(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp=None) -> str:
    """Build a Stripe-Signature header for payload."""
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed = f"{timestamp}.".encode("utf-8") + payload
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def checkout_completed_event(
    order_id,
    email="buyer@example.com",
    event_id="evt_test_1",
    event_type="checkout.session.completed",
    payment_status="paid",
) -> dict:
    return {
        "id": event_id,
        "object": "event",
        "type": event_type,
        "data": {
            "object": {
                "id": "cs_test_1",
                "object": "checkout.session",
                "client_reference_id": order_id,
                "metadata": {"order_id": order_id},
                "payment_status": payment_status,
                "customer_details": {"email": email, "name": "Pat Buyer"},
                "collected_information": {
                    "shipping_details": {
                        "name": "Pat Buyer",
                        "address": {
                            "line1": "1 Main St",
                            "line2": None,
                            "city": "Springfield",
                            "state": "IL",
                            "postal_code": "62701",
                            "country": "US",
                        },
                    }
                },
            }
        },
    }


def encode(event: dict) -> bytes:
    return json.dumps(event).encode("utf-8")


class FakePayments:
    """In-memory stand-in for StripeClient."""

    def __init__(self):
        self.requests = []
        self.fail = False

    def create_checkout_session(self, params):
        if self.fail:
            raise UpstreamError("stripe is down")
        self.requests.append(params)
        n = len(self.requests)
        return CheckoutSession(id=f"cs_test_{n}", url=f"https://checkout.stripe.com/c/pay/cs_test_{n}")

    def test_connection(self):
        return not self.fail


class FakeTransport:
    """Records sent messages instead of talking to SMTP."""

    def __init__(self, delay: float = 0.0):
        self.messages = []
        self.fail = False
        self.delay = delay
        self._lock = threading.Lock()

    def send(self, message):
        if self.delay:
            time.sleep(self.delay)
        if self.fail:
            raise smtplib.SMTPServerDisconnected("connection lost")
        with self._lock:
            self.messages.append(message)


class FakeGenerator:
    """Saves a fixed image instead of calling OpenAI."""

    def __init__(self, artifacts: ArtifactStore):
        self.artifacts = artifacts
        self.calls = []

    def generate(self, photo, customization):
        self.calls.append((photo, customization))
        ref = self.artifacts.save(PNG_BYTES)
        return GenerationResult(prompt=f"Action figure {customization.figure_name}", artifacts=[ref])


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        orders_dir=str(tmp_path / "orders"),
        artifacts_dir=str(tmp_path / "artifacts"),
        stripe_secret_key="sk_test_123",
        stripe_webhook_secret=WEBHOOK_SECRET,
        unit_price=500,
        currency="usd",
        allowed_countries=["US", "CA"],
        public_base_url="https://figures.example.com",
        operator_email="operator@example.com",
        email_from="shop@example.com",
        openai_api_key="sk-test",
        openai_image_model="dall-e-3",
        images_per_request=1,
        log_path="",
    )


@pytest.fixture
def artifact_store(settings):
    return ArtifactStore(settings.artifacts_dir)


@pytest.fixture
def store(settings):
    return OrderStore(settings.orders_dir)


@pytest.fixture
def payments():
    return FakePayments()


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def notifier(settings, artifact_store, transport):
    return FulfillmentNotifier(settings, artifact_store, transport)


@pytest.fixture
def state_machine(store, notifier):
    return OrderStateMachine(store, notifier)


@pytest.fixture
def builder(settings, store, payments, artifact_store):
    return CheckoutSessionBuilder(settings, store, payments, artifact_store)


@pytest.fixture
def make_artifacts(artifact_store):
    def _make(count=2):
        return [artifact_store.save(PNG_BYTES) for _ in range(count)]
    return _make


@pytest.fixture
def make_order(store, make_artifacts):
    def _make(order_id="order-1", count=2):
        order = Order(
            id=order_id,
            artifacts=make_artifacts(count),
            created_at=datetime.now(timezone.utc),
        )
        return store.create(order)
    return _make


@pytest.fixture
def app(settings, store, artifact_store, payments, transport):
    return create_app(
        settings,
        store=store,
        artifacts=artifact_store,
        payments=payments,
        transport=transport,
        generator=FakeGenerator(artifact_store),
        configure_logging=False,
    )


@pytest.fixture
def client(app):
    with TestClient(app) as client:
        yield client
