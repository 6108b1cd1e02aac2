# backend/app/api/deps.py
from __future__ import annotations

from dataclasses import dataclass

from fastapi import Depends, HTTPException, Request

from backend.app.domain.clock import Clock, SystemClock
from backend.app.integrations import get_gateway
from backend.app.integrations.base import MessagingGateway

ROLES = ("subscriber", "admin")


@dataclass(frozen=True)
class CurrentActor:
    user_id: str
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def get_current_actor(request: Request) -> CurrentActor:
    """
    Header-based identity dependency.

    The upstream auth provider forwards:
      - X-User-Id   (required)
      - X-User-Role (admin | subscriber; defaults to subscriber)
    """
    user_id = (request.headers.get("X-User-Id") or "").strip()
    if not user_id:
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    role = (request.headers.get("X-User-Role") or "subscriber").strip().lower()
    if role not in ROLES:
        raise HTTPException(status_code=401, detail="Invalid X-User-Role header")
    return CurrentActor(user_id=user_id, role=role)


def require_admin(actor: CurrentActor = Depends(get_current_actor)) -> CurrentActor:
    if not actor.is_admin:
        raise HTTPException(status_code=403, detail="admin role required")
    return actor


def require_self_or_admin(actor: CurrentActor, user_id: str) -> None:
    if not actor.is_admin and actor.user_id != user_id:
        raise HTTPException(status_code=403, detail="not allowed for another user")


def get_gateway_dep() -> MessagingGateway:
    return get_gateway()


def get_clock() -> Clock:
    return SystemClock()
