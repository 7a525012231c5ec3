from datetime import datetime, timezone

import pytest

from conftest import PNG_BYTES
from figureshop.models import ShippingAddress
from figureshop.notifier import build_order_notes


@pytest.fixture
def paid_order(make_order):
    order = make_order(count=2)
    return order.mark_paid(
        "buyer@example.com",
        ShippingAddress(
            name="Pat Buyer", line1="1 Main St", line2="Apt 4", city="Springfield",
            state="IL", postal_code="62701", country="US", phone="555-0100",
        ),
        datetime.now(timezone.utc),
    )


def test_message_has_order_details_and_attachments(notifier, transport, paid_order):
    assert notifier.send_order(paid_order) is True

    message = transport.messages[0]
    assert message["To"] == "operator@example.com"
    assert message["From"] == "shop@example.com"
    assert message["Reply-To"] == "buyer@example.com"
    assert paid_order.id in message["Subject"]

    body = message.get_body(preferencelist=("plain",)).get_content()
    assert paid_order.id in body
    assert "buyer@example.com" in body
    assert "1 Main St" in body
    assert "Springfield, IL 62701" in body

    attachments = list(message.iter_attachments())
    assert [a.get_filename() for a in attachments] == paid_order.artifacts
    assert all(a.get_content_type() == "image/png" for a in attachments)
    assert attachments[0].get_content() == PNG_BYTES


def test_unpaid_order_is_not_sent(notifier, transport, make_order):
    assert notifier.send_order(make_order()) is False
    assert transport.messages == []


def test_transport_failure_reports_false(notifier, transport, paid_order):
    transport.fail = True
    assert notifier.send_order(paid_order) is False


def test_missing_artifact_file_reports_false(notifier, transport, artifact_store, paid_order):
    artifact_store.path(paid_order.artifacts[0]).unlink()

    assert notifier.send_order(paid_order) is False
    assert transport.messages == []


def test_invalid_reply_to_reports_false(notifier, transport, make_order):
    order = make_order().mark_paid(
        "b@example.com\r\nBcc: x@evil.test", None, datetime.now(timezone.utc)
    )

    assert notifier.send_order(order) is False
    assert transport.messages == []


def test_notes_without_address(make_order):
    notes = build_order_notes(make_order())
    assert "not provided" in notes
    assert "ARTIFACTS (2):" in notes
