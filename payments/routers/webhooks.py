from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.concurrency import run_in_threadpool

from payments.config import Settings, get_settings
from payments.dependencies import get_webhook_processor
from payments.errors import AuthenticationError, ConflictError, ValidationError
from payments.schemas.responses import WebhookAck
from payments.services.webhooks import WebhookProcessor

router = APIRouter()


@router.post("/webhook/{gateway}", response_model=WebhookAck)
async def receive_webhook(
    gateway: str,
    request: Request,
    processor: WebhookProcessor = Depends(get_webhook_processor),
    settings: Settings = Depends(get_settings),
):
    """
    Gateway notification endpoint.

    The signature is checked over the exact request bytes. Once the event is
    stored the answer is 200, even when the status change was rejected.
    Processing runs on the threadpool; the database session is synchronous.
    """
    raw_payload = await request.body()
    header_name = settings.signature_headers.get(gateway)
    signature = request.headers.get(header_name) if header_name else None

    try:
        outcome = await run_in_threadpool(processor.handle, gateway, raw_payload, signature)
    except ValidationError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except AuthenticationError:
        raise HTTPException(status_code=401, detail="Invalid signature")
    except ConflictError as e:
        raise HTTPException(status_code=409, detail=str(e))

    return WebhookAck(status=outcome.status, event_id=outcome.event_id)
