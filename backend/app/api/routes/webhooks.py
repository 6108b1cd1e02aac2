from __future__ import annotations

import logging
from typing import List, Literal, Optional

import pydantic
from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from backend.app.api.deps import get_gateway_dep
from backend.app.db import get_db
from backend.app.integrations.base import MessagingGateway
from backend.app.services import notification_service


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


class ReceiptErrorIn(BaseModel):
    title: Optional[str] = None
    message: Optional[str] = None


class DeliveryReceiptIn(BaseModel):
    id: str = Field(..., min_length=1)
    status: Literal["sent", "delivered", "read", "failed"]
    errors: List[ReceiptErrorIn] = Field(default_factory=list)

    def error_text(self) -> Optional[str]:
        parts = [f"{err.title}: {err.message}" for err in self.errors if err.title or err.message]
        return "; ".join(parts) or None


class DeliveryReceiptBatchIn(BaseModel):
    statuses: List[DeliveryReceiptIn] = Field(default_factory=list)


class DeliveryReceiptResultOut(BaseModel):
    ok: bool
    received: int
    updated: int


@router.post("/messaging", response_model=DeliveryReceiptResultOut)
async def messaging_webhook(
    request: Request,
    db: Session = Depends(get_db),
    gateway: MessagingGateway = Depends(get_gateway_dep),
):
    body = await request.body()
    verification = gateway.verify_webhook(dict(request.headers), body)
    if not verification.ok:
        raise HTTPException(status_code=401, detail=f"webhook verification failed: {verification.reason}")
    try:
        batch = DeliveryReceiptBatchIn.model_validate_json(body or b"{}")
    except pydantic.ValidationError as exc:
        raise HTTPException(status_code=422, detail=exc.errors(include_url=False)) from exc

    updated = 0
    for receipt in batch.statuses:
        updated += notification_service.update_delivery_status(
            db,
            receipt.id,
            receipt.status,
            error=receipt.error_text(),
        )
    db.commit()
    logger.info("Applied %s of %s delivery receipts", updated, len(batch.statuses))
    return DeliveryReceiptResultOut(ok=True, received=len(batch.statuses), updated=updated)
