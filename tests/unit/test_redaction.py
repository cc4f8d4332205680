"""Tests for PII detection and redaction."""

from datachoreo.compliance.redaction import (
    classify_key,
    detect_pii,
    hash_value,
    mask_card_number,
    mask_email,
    redact,
)
from datachoreo.constants import REDACTION_MASK


def test_classify_key():
    assert classify_key("customer_email") == "identity"
    assert classify_key("Shipping_Address") == "location"
    assert classify_key("api_key") == "secret"
    assert classify_key("Authorization_Token") == "secret"
    assert classify_key("amount") is None


def test_redact_masks_keys_at_any_depth_without_mutating():
    data = {
        "order": {"id": 7, "customer": {"email": "jane@example.com", "city": "Leeds"}},
        "password": "hunter2",
        "amount": 10,
    }
    result = redact(data)
    assert result.redacted
    assert result.data["order"]["customer"]["email"] == REDACTION_MASK
    assert result.data["order"]["customer"]["city"] == REDACTION_MASK
    assert result.data["password"] == REDACTION_MASK
    assert result.data["amount"] == 10
    assert data["order"]["customer"]["email"] == "jane@example.com"
    assert "order.customer.email" in result.fields


def test_redact_content_patterns_in_values():
    data = {
        "note": "reach me at jane@example.com or 555-123-4567",
        "ref": "ssn 123-45-6789",
        "pan": "card 4111 1111 1111 1111 used",
    }
    result = redact(data)
    assert "jane@example.com" not in result.data["note"]
    assert "555-123-4567" not in result.data["note"]
    assert "123-45-6789" not in result.data["ref"]
    assert "4111 1111 1111 1111" not in result.data["pan"]


def test_plain_numbers_are_not_phone_numbers():
    result = redact({"order_total": "1234567890", "status": "ok"})
    assert result.data == {"order_total": "1234567890", "status": "ok"}
    assert not result.redacted


def test_redact_lists_and_preserve_hash():
    result = redact({"rows": [{"email": "a@b.co"}, {"email": "c@d.co"}]}, preserve_hash=True)
    first, second = (row["email"] for row in result.data["rows"])
    assert first.startswith("hash_") and second.startswith("hash_")
    assert first != second
    assert first == hash_value("a@b.co")


def test_detect_pii_reports_paths():
    fields = detect_pii({"user": {"phone": "x", "ok": 1}})
    assert [(f.path, f.category) for f in fields] == [("user.phone", "identity")]


def test_masks():
    assert mask_email("jane.doe@example.com").endswith("@example.com")
    assert "jane.doe" not in mask_email("jane.doe@example.com")
    assert mask_card_number("4111111111111111").endswith("1111")
    assert "411111" not in mask_card_number("4111111111111111")
