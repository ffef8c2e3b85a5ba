"""Unit tests for webhook signature verification and payload parsing."""
import hashlib
import hmac
import json
from pathlib import Path

import pytest

from mottahub.karbon.webhook import (
    WebhookPayloadError,
    WebhookSignatureError,
    parse_payload,
    require_valid_signature,
    verify_signature,
)

FIXTURES = Path(__file__).parent.parent / "fixtures"
WORK_ITEM_UPDATED = (FIXTURES / "webhook_work_item_updated.json").read_bytes()


def sign(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


class TestSignature:
    def test_valid(self):
        assert verify_signature(WORK_ITEM_UPDATED, sign(WORK_ITEM_UPDATED, "s3cret"), "s3cret")

    def test_case_and_whitespace_insensitive(self):
        signature = " " + sign(WORK_ITEM_UPDATED, "s3cret").upper() + "\n"
        assert verify_signature(WORK_ITEM_UPDATED, signature, "s3cret")

    def test_wrong_secret(self):
        assert not verify_signature(WORK_ITEM_UPDATED, sign(WORK_ITEM_UPDATED, "other"), "s3cret")

    def test_tampered_body(self):
        signature = sign(WORK_ITEM_UPDATED, "s3cret")
        assert not verify_signature(WORK_ITEM_UPDATED + b" ", signature, "s3cret")

    def test_missing_signature(self):
        assert not verify_signature(WORK_ITEM_UPDATED, None, "s3cret")

    def test_no_secret_skips_verification(self):
        assert verify_signature(WORK_ITEM_UPDATED, None, "")

    def test_require_raises(self):
        with pytest.raises(WebhookSignatureError):
            require_valid_signature(WORK_ITEM_UPDATED, "deadbeef", "s3cret")


class TestParsePayload:
    def test_event_shape(self):
        payload = parse_payload(WORK_ITEM_UPDATED)
        assert payload.event_type == "WorkItem.Updated"
        assert payload.resource_type == "WorkItem"
        assert payload.action == "Updated"
        assert payload.resource_key == "W-1"
        assert payload.subscription_key == "SUB-1"

    def test_resource_envelope_normalized(self):
        body = json.dumps({
            "ResourceType": "Contact",
            "EventType": "Updated",
            "ResourcePermaKey": "perma-1",
            "ResourceClientKey": "C-100",
        }).encode()
        payload = parse_payload(body)
        assert payload.event_type == "Contact.Updated"
        assert payload.resource_key == "C-100"

    def test_resource_envelope_perma_key_fallback(self):
        body = json.dumps({"ResourceType": "WorkItem", "EventType": "Deleted", "ResourcePermaKey": "W-9"}).encode()
        payload = parse_payload(body)
        assert payload.action == "Deleted"
        assert payload.resource_key == "W-9"

    def test_unknown_resource_has_no_key(self):
        payload = parse_payload(json.dumps({"EventType": "Timesheet.Updated", "Data": {"TimesheetKey": "T"}}).encode())
        assert payload.resource_type == "Timesheet"
        assert payload.resource_key is None

    @pytest.mark.parametrize("body", [
        b"not json",
        b"[1, 2]",
        b'{"EventType": "WorkItem.Updated"}',
        b'{"Data": {"WorkItemKey": "W-1"}}',
        b'{"EventType": "WorkItem.Updated", "Data": "W-1"}',
    ])
    def test_invalid(self, body):
        with pytest.raises(WebhookPayloadError):
            parse_payload(body)
