"""Karbon webhook receiver."""
import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError

from mottahub.api.routes.sync import get_karbon_client
from mottahub.config import get_settings
from mottahub.db.engine import get_engine
from mottahub.karbon.client import KarbonClient
from mottahub.karbon.sync_service import KarbonSyncService
from mottahub.karbon.webhook import (
    SIGNATURE_HEADERS,
    WebhookPayloadError,
    WebhookSignatureError,
    parse_payload,
    require_valid_signature,
)

logger = logging.getLogger(__name__)

router = APIRouter()


def _signature(request: Request) -> Optional[str]:
    for header in SIGNATURE_HEADERS:
        value = request.headers.get(header)
        if value:
            return value
    return None


@router.post("/karbon")
async def receive_karbon_webhook(
    request: Request,
    client: KarbonClient = Depends(get_karbon_client),
    engine: Engine = Depends(get_engine),
):
    """
    Verify, parse and apply a single Karbon event.

    401 on a bad signature, 400 on an unusable payload, 503 when the local
    store is unreachable, 502 when the entity could not be fetched back
    from Karbon.
    """
    body = await request.body()
    try:
        require_valid_signature(body, _signature(request), get_settings().karbon_webhook_secret)
        payload = parse_payload(body)
        service = KarbonSyncService(client=client, engine=engine)
        result = await service.handle_webhook(payload)
    except WebhookSignatureError as exc:
        logger.warning("Rejected Karbon webhook: %s", exc)
        raise HTTPException(status_code=401, detail=str(exc))
    except WebhookPayloadError as exc:
        logger.warning("Unusable Karbon webhook payload: %s", exc)
        raise HTTPException(status_code=400, detail=str(exc))
    except OperationalError as exc:
        raise HTTPException(status_code=503, detail=f"Local store unavailable: {exc.orig}")

    if result.action == "failed":
        return JSONResponse(status_code=502, content=result.to_response())
    return result.to_response()


@router.get("/karbon")
def karbon_webhook_ping():
    """Liveness ping for webhook URL verification."""
    return {
        "status": "active",
        "webhook": "karbon",
        "timestamp": datetime.utcnow().isoformat(),
    }
