"""Receipt validation endpoint.

The backend is the single source of truth for entitlement. This endpoint
verifies a receipt with Apple/Google, writes the entitlement store and
returns the authority-issued dates.
"""

import logging

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse

from app.api.dependencies import get_entitlement_store, get_receipt_validator
from app.config import settings
from app.core.request_id import get_request_id
from app.middleware.auth import get_current_subscriber, require_same_subscriber
from app.middleware.rate_limit import limiter
from app.models.entitlement import ValidateReceiptRequest, ValidateReceiptResponse
from app.services.subscriptions.entitlement_store import EntitlementStore
from app.services.subscriptions.update_entitlement import validate_and_record
from app.services.subscriptions.validator import ReceiptValidator
from app.utils.exceptions import ConfigurationError, ReceiptValidationError
from app.utils.validators import to_epoch_millis, validate_subscriber_id

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/receipts", tags=["receipts"])

# Operator faults are logged in full but surfaced generically
GENERIC_SERVER_ERROR = "ServerError"


def _failure(status_code: int, error: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ValidateReceiptResponse(success=False, error=error).model_dump(exclude_none=True),
    )


@router.post("/validate", response_model=ValidateReceiptResponse)
@limiter.limit(settings.validate_rate_limit)
async def validate_receipt(
    request: Request,
    body: ValidateReceiptRequest,
    caller_id: str = Depends(get_current_subscriber),
    validator: ReceiptValidator = Depends(get_receipt_validator),
    store: EntitlementStore = Depends(get_entitlement_store),
):
    """Validate a receipt with the store and update the subscriber's entitlement.

    Returns ``{success: true, purchaseTime, expiryTime}`` (epoch ms) or
    ``{success: false, error}``.
    """
    subscriber_id = validate_subscriber_id(body.subscriberId)
    require_same_subscriber(caller_id, subscriber_id)

    logger.info(
        "Validating receipt",
        extra={
            "subscriber_id": subscriber_id,
            "product_id": body.productId,
            "platform": body.platform.value,
            "transaction_id": (body.transactionId or "")[:10],
        },
    )

    try:
        purchase, _ = await validate_and_record(
            validator,
            store,
            subscriber_id=subscriber_id,
            receipt=body.receipt,
            product_id=body.productId,
            platform=body.platform,
            declared_transaction_id=body.transactionId,
        )
    except ConfigurationError as e:
        logger.error(
            f"Validator misconfigured: {e}",
            extra={"request_id": get_request_id(), "platform": body.platform.value},
        )
        return _failure(status.HTTP_500_INTERNAL_SERVER_ERROR, GENERIC_SERVER_ERROR)
    except ReceiptValidationError as e:
        status_code = status.HTTP_503_SERVICE_UNAVAILABLE if e.retryable else status.HTTP_400_BAD_REQUEST
        return _failure(status_code, e.code)

    return ValidateReceiptResponse(
        success=True,
        purchaseTime=to_epoch_millis(purchase.purchase_time),
        expiryTime=to_epoch_millis(purchase.expiry_time),
    )
