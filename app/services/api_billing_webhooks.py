"""Billing API webhook orchestration."""

from __future__ import annotations

import logging

from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.errors import InvalidWebhookSignature
from app.models.billing import PaymentProviderType
from app.services import billing as billing_service

logger = logging.getLogger(__name__)


def _process(db: Session, provider: PaymentProviderType, body: bytes, signature: str | None) -> JSONResponse:
    try:
        result = billing_service.payment_providers.handle_webhook(db, provider, body, signature)
    except InvalidWebhookSignature as exc:
        logger.warning("Invalid %s webhook signature", provider.value)
        return JSONResponse(
            {"success": False, "error": exc.code, "message": exc.message},
            status_code=exc.status_code,
        )
    except Exception:
        db.rollback()
        logger.exception("%s webhook processing error", provider.value.title())
        raise
    logger.info("%s webhook: %s", provider.value.title(), result.get("raw_type"))
    return JSONResponse({"success": True, "data": result}, status_code=200)


def process_midtrans_webhook(*, db: Session, body: bytes) -> JSONResponse:
    return _process(db, PaymentProviderType.midtrans, body, None)


def process_stripe_webhook(*, db: Session, body: bytes, signature: str | None) -> JSONResponse:
    return _process(db, PaymentProviderType.stripe, body, signature)
