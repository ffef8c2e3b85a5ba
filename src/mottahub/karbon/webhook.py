"""
Karbon webhook verification and payload parsing.

Karbon signs deliveries with HMAC-SHA256 over the raw body using the
subscription secret, hex encoded, in the X-Karbon-Signature header.
When no secret is configured verification is skipped.

Two payload shapes are accepted:

  {"EventType": "WorkItem.Updated", "EventTime": ..., "SubscriptionKey": ...,
   "Data": {"WorkItemKey": "..."}}

and the older resource-style envelope

  {"ResourceType": "WorkItem", "EventType": "Updated",
   "ResourcePermaKey": "...", "ResourceClientKey": "..."}

which is normalized into the first shape.
"""
import hashlib
import hmac
import json
import logging
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

logger = logging.getLogger(__name__)

SIGNATURE_HEADERS = ("x-karbon-signature", "x-webhook-signature")

# Resource type → key field inside Data
RESOURCE_KEYS = {
    "WorkItem": "WorkItemKey",
    "Contact": "ContactKey",
    "Organization": "OrganizationKey",
    "Note": "NoteKey",
    "ContentItem": "NoteKey",
    "Invoice": "InvoiceKey",
}


class WebhookSignatureError(Exception):
    """Signature header missing or not matching the configured secret."""


class WebhookPayloadError(Exception):
    """Body is not JSON or lacks EventType / Data."""


class WebhookPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    event_type: str = Field(alias="EventType")
    event_time: Optional[str] = Field(default=None, alias="EventTime")
    subscription_key: Optional[str] = Field(default=None, alias="SubscriptionKey")
    data: Dict[str, Any] = Field(alias="Data")

    @property
    def resource_type(self) -> str:
        return self.event_type.split(".", 1)[0]

    @property
    def action(self) -> str:
        parts = self.event_type.split(".", 1)
        return parts[1] if len(parts) > 1 else ""

    @property
    def resource_key(self) -> Optional[str]:
        key_field = RESOURCE_KEYS.get(self.resource_type)
        value = self.data.get(key_field) if key_field else None
        return str(value) if value else None


def verify_signature(body: bytes, signature: Optional[str], secret: Optional[str]) -> bool:
    """True when the hex HMAC-SHA256 of body under secret equals signature."""
    if not secret:
        logger.warning("KARBON_WEBHOOK_SECRET not configured; skipping signature verification")
        return True
    if not signature:
        return False
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(signature.strip().lower(), digest)


def require_valid_signature(body: bytes, signature: Optional[str], secret: Optional[str]) -> None:
    """
    Raises:
        WebhookSignatureError: if a secret is configured and the signature does not match.
    """
    if not verify_signature(body, signature, secret):
        raise WebhookSignatureError("Invalid webhook signature")


def _from_resource_envelope(raw: Dict[str, Any]) -> Dict[str, Any]:
    resource_type = raw["ResourceType"]
    key = raw.get("ResourceClientKey") or raw.get("ResourcePermaKey")
    return {
        "EventType": f"{resource_type}.{raw.get('EventType', '')}",
        "EventTime": raw.get("Timestamp"),
        "Data": {RESOURCE_KEYS.get(resource_type, f"{resource_type}Key"): key},
    }


def parse_payload(body: bytes) -> WebhookPayload:
    """
    Decode and validate a webhook body.

    Raises:
        WebhookPayloadError: if the body is not a JSON object with EventType and Data.
    """
    try:
        raw = json.loads(body)
    except (TypeError, ValueError) as exc:
        raise WebhookPayloadError(f"Webhook body is not valid JSON: {exc}") from exc
    if not isinstance(raw, dict):
        raise WebhookPayloadError("Webhook body must be a JSON object")

    if "ResourceType" in raw and "Data" not in raw:
        raw = _from_resource_envelope(raw)
    if not raw.get("EventType") or not isinstance(raw.get("Data"), dict):
        raise WebhookPayloadError("Webhook payload requires EventType and Data")

    try:
        return WebhookPayload.model_validate(raw)
    except ValidationError as exc:
        raise WebhookPayloadError(str(exc)) from exc
