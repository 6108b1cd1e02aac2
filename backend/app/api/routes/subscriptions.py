from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from backend.app.api.deps import (
    CurrentActor,
    get_clock,
    get_current_actor,
    require_admin,
    require_self_or_admin,
)
from backend.app.db import get_db
from backend.app.domain.clock import Clock
from backend.app.services import subscription_service


router = APIRouter(prefix="/api/subscriptions", tags=["subscriptions"])
pricing_router = APIRouter(prefix="/api/pricing", tags=["pricing"])
profile_router = APIRouter(prefix="/api/profiles", tags=["profiles"])


class SubscriptionCreateIn(BaseModel):
    pricing_id: str
    plan_type: str
    pips_purchased: int = Field(default=0, ge=0)
    user_id: Optional[str] = None


class ConfirmPaymentIn(BaseModel):
    payment_reference: Optional[str] = Field(default=None, max_length=120)


class ConsumePipsIn(BaseModel):
    amount: int


class SubscriptionAdminPatchIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    status: Optional[str] = None
    payment_status: Optional[str] = None
    payment_reference: Optional[str] = None
    amount_paid: Optional[float] = None
    pips_purchased: Optional[int] = None
    pips_used: Optional[int] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    reason: Optional[str] = Field(default=None, max_length=200)


class SubscriptionOut(BaseModel):
    id: str
    user_id: str
    pricing_id: str
    subscription_type: str
    status: str
    payment_status: str
    payment_reference: Optional[str]
    amount_paid: float
    start_date: Optional[datetime]
    end_date: Optional[datetime]
    pips_purchased: int
    pips_used: int
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class SubscriptionStatsOut(BaseModel):
    total_subscriptions: int
    active_subscriptions: int
    total_revenue: float
    monthly_subscribers: int
    per_pip_subscribers: int


class ExpireDueOut(BaseModel):
    expired: List[str]


class PricingPlanOut(BaseModel):
    id: str
    pricing_type: str
    price: float
    currency: str
    description: Optional[str]
    is_active: bool
    updated_at: datetime

    class Config:
        from_attributes = True


class PricingPlanUpdateIn(BaseModel):
    price: Optional[float] = Field(default=None, ge=0)
    description: Optional[str] = Field(default=None, max_length=400)
    is_active: Optional[bool] = None


class SubscriberProfileIn(BaseModel):
    phone_number: Optional[str] = Field(default=None, max_length=32)
    messaging_enabled: Optional[bool] = None
    phone_verified: Optional[bool] = None


class SubscriberProfileOut(BaseModel):
    user_id: str
    phone_number: Optional[str]
    phone_verified: bool
    messaging_enabled: bool

    class Config:
        from_attributes = True


# -------------------------
# Subscriptions
# -------------------------

@router.post("", response_model=SubscriptionOut, status_code=201)
def post_subscription(
    req: SubscriptionCreateIn,
    db: Session = Depends(get_db),
    actor: CurrentActor = Depends(get_current_actor),
):
    user_id = req.user_id or actor.user_id
    require_self_or_admin(actor, user_id)
    sub = subscription_service.create_subscription(
        db,
        user_id=user_id,
        pricing_id=req.pricing_id,
        plan_type=req.plan_type,
        pips_purchased=req.pips_purchased,
    )
    db.commit()
    return SubscriptionOut.model_validate(sub)


@router.get("", response_model=List[SubscriptionOut])
def get_subscriptions(
    status: Optional[str] = Query(default=None),
    user_id: Optional[str] = Query(default=None),
    db: Session = Depends(get_db),
    actor: CurrentActor = Depends(get_current_actor),
):
    if not actor.is_admin:
        user_id = actor.user_id
    subs = subscription_service.list_subscriptions(db, status=status, user_id=user_id)
    return [SubscriptionOut.model_validate(sub) for sub in subs]


@router.get("/stats", response_model=SubscriptionStatsOut, dependencies=[Depends(require_admin)])
def get_subscription_stats(db: Session = Depends(get_db)):
    return SubscriptionStatsOut(**subscription_service.subscription_stats(db))


@router.post("/expire-due", response_model=ExpireDueOut, dependencies=[Depends(require_admin)])
def post_expire_due(
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    expired = subscription_service.expire_due_subscriptions(db, now=clock.now())
    db.commit()
    return ExpireDueOut(expired=expired)


@router.get("/{subscription_id}", response_model=SubscriptionOut)
def get_subscription(
    subscription_id: str,
    db: Session = Depends(get_db),
    actor: CurrentActor = Depends(get_current_actor),
):
    sub = subscription_service.get_subscription(db, subscription_id)
    require_self_or_admin(actor, sub.user_id)
    return SubscriptionOut.model_validate(sub)


@router.post("/{subscription_id}/confirm-payment", response_model=SubscriptionOut, dependencies=[Depends(require_admin)])
def post_confirm_payment(
    subscription_id: str,
    req: ConfirmPaymentIn,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    sub = subscription_service.confirm_payment(
        db,
        subscription_id,
        payment_reference=req.payment_reference,
        now=clock.now(),
    )
    db.commit()
    return SubscriptionOut.model_validate(sub)


@router.patch("/{subscription_id}", response_model=SubscriptionOut)
def patch_subscription(
    subscription_id: str,
    req: SubscriptionAdminPatchIn,
    db: Session = Depends(get_db),
    actor: CurrentActor = Depends(require_admin),
):
    fields = req.model_dump(exclude_unset=True)
    reason = fields.pop("reason", None)
    if not fields:
        raise HTTPException(status_code=422, detail="no fields to update")
    sub = subscription_service.admin_update_subscription(
        db,
        subscription_id,
        fields=fields,
        actor=actor.user_id,
        reason=reason,
    )
    db.commit()
    return SubscriptionOut.model_validate(sub)


@router.post("/{subscription_id}/consume-pips", response_model=SubscriptionOut, dependencies=[Depends(require_admin)])
def post_consume_pips(
    subscription_id: str,
    req: ConsumePipsIn,
    db: Session = Depends(get_db),
):
    sub = subscription_service.consume_pips(db, subscription_id, req.amount)
    db.commit()
    return SubscriptionOut.model_validate(sub)


@router.post("/{subscription_id}/cancel", response_model=SubscriptionOut)
def post_cancel_subscription(
    subscription_id: str,
    db: Session = Depends(get_db),
    actor: CurrentActor = Depends(get_current_actor),
    clock: Clock = Depends(get_clock),
):
    sub = subscription_service.get_subscription(db, subscription_id)
    require_self_or_admin(actor, sub.user_id)
    sub = subscription_service.cancel_subscription(db, subscription_id, actor=actor.user_id, now=clock.now())
    db.commit()
    return SubscriptionOut.model_validate(sub)


@router.post("/{subscription_id}/expire", response_model=SubscriptionOut)
def post_expire_subscription(
    subscription_id: str,
    db: Session = Depends(get_db),
    actor: CurrentActor = Depends(require_admin),
    clock: Clock = Depends(get_clock),
):
    sub = subscription_service.expire_subscription(db, subscription_id, actor=actor.user_id, now=clock.now())
    db.commit()
    return SubscriptionOut.model_validate(sub)


# -------------------------
# Pricing
# -------------------------

@pricing_router.get("", response_model=List[PricingPlanOut])
def get_pricing(db: Session = Depends(get_db)):
    plans = subscription_service.list_pricing_plans(db)
    if not plans:
        plans = subscription_service.ensure_default_pricing_plans(db)
        db.commit()
    return [PricingPlanOut.model_validate(plan) for plan in plans]


@pricing_router.put("/{pricing_type}", response_model=PricingPlanOut)
def put_pricing(
    pricing_type: str,
    req: PricingPlanUpdateIn,
    db: Session = Depends(get_db),
    actor: CurrentActor = Depends(require_admin),
):
    subscription_service.ensure_default_pricing_plans(db)
    plan = subscription_service.update_pricing_plan(
        db,
        pricing_type,
        actor=actor.user_id,
        price=req.price,
        description=req.description,
        is_active=req.is_active,
    )
    db.commit()
    return PricingPlanOut.model_validate(plan)


# -------------------------
# Subscriber contact
# -------------------------

@profile_router.get("/{user_id}", response_model=SubscriberProfileOut)
def get_profile(
    user_id: str,
    db: Session = Depends(get_db),
    actor: CurrentActor = Depends(get_current_actor),
):
    require_self_or_admin(actor, user_id)
    profile = subscription_service.get_subscriber_profile(db, user_id)
    if not profile:
        raise HTTPException(status_code=404, detail="profile not found")
    return SubscriberProfileOut.model_validate(profile)


@profile_router.put("/{user_id}", response_model=SubscriberProfileOut)
def put_profile(
    user_id: str,
    req: SubscriberProfileIn,
    db: Session = Depends(get_db),
    actor: CurrentActor = Depends(get_current_actor),
):
    require_self_or_admin(actor, user_id)
    if req.phone_verified is not None and not actor.is_admin:
        raise HTTPException(status_code=403, detail="only admins can mark a number verified")
    profile = subscription_service.upsert_subscriber_profile(
        db,
        user_id,
        phone_number=req.phone_number,
        messaging_enabled=req.messaging_enabled,
        phone_verified=req.phone_verified,
    )
    db.commit()
    return SubscriberProfileOut.model_validate(profile)
