"""Payment gateway webhook — the only way subscription state enters the system."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status

from src.api.deps import get_reconciler
from src.api.models.schemas import WebhookAck
from src.billing.reconciler import EventReconciler
from src.core.constants import SIGNATURE_HEADER
from src.core.exceptions import ConfigurationError, IntegrityError, StorageError
from src.core.logging import get_logger

log = get_logger(__name__)

router = APIRouter(prefix="/billing", tags=["billing"])


@router.post("/webhook", response_model=WebhookAck)
async def stripe_webhook(
    request: Request,
    stripe_signature: str | None = Header(default=None, alias=SIGNATURE_HEADER),
    reconciler: EventReconciler = Depends(get_reconciler),
) -> WebhookAck:
    """Verify and apply one gateway event.

    4xx tells the gateway the delivery is bad and must not be retried as-is;
    5xx makes it redeliver later.
    """
    payload = await request.body()
    try:
        result = await reconciler.handle(payload, stripe_signature)
    except IntegrityError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except StorageError as exc:
        log.error("webhook_storage_failure", error=str(exc), **exc.context)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Temporary storage failure, retry later",
        ) from exc
    except ConfigurationError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook endpoint is not configured",
        ) from exc

    return WebhookAck(
        event_id=result.event_id,
        event_type=result.event_type,
        outcome=result.outcome.value,
    )
