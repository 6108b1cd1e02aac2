from __future__ import annotations

import math
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class SignalFieldsContract(BaseModel):
    """Validated full field map for a signal."""

    model_config = ConfigDict(extra="forbid")

    trading_pair: str = Field(..., min_length=1, max_length=20)
    signal_type: Literal["buy", "sell"]
    entry_price: float
    stop_loss: float
    take_profit_1: Optional[float] = None
    take_profit_2: Optional[float] = None
    take_profit_3: Optional[float] = None
    title: str = Field(..., min_length=1, max_length=200)
    analysis: Optional[str] = None
    confidence_level: Optional[Literal["low", "medium", "high"]] = None
    status: Literal["active", "closed", "cancelled"] = "active"

    @field_validator("entry_price", "stop_loss", "take_profit_1", "take_profit_2", "take_profit_3")
    @classmethod
    def validate_price(cls, value: Optional[float]) -> Optional[float]:
        if value is None:
            return value
        if not math.isfinite(value) or value <= 0:
            raise ValueError("price must be a finite positive number")
        return value