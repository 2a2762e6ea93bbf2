"""
TradeBridge Core: Boundary Payloads

Pydantic models for the loosely-shaped JSON returned by the payment rail and
the trading platform. Nothing reaches the state machine until it has been
validated here.
"""

from datetime import datetime
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from core.exceptions import MalformedPayload

# Steam ETradeOfferState codes mapped onto platform state names
STEAM_OFFER_STATES = {
    1: "invalid",
    2: "sent",
    3: "completed",     # Steam "Accepted" means items already exchanged
    4: "declined",      # countered
    5: "expired",
    6: "canceled",
    7: "declined",
    8: "invalid_items",
    9: "pending",       # created, needs confirmation
    10: "canceled",     # canceled by second factor
    11: "held",         # in escrow
}

PlatformState = Literal[
    "pending", "sent", "accepted", "held", "completed",
    "expired", "declined", "canceled", "invalid_items", "invalid",
]


class RailReceipt(BaseModel):
    """Payment rail view of one payment reference."""
    model_config = ConfigDict(extra="ignore")

    payment_ref: str = Field(min_length=1)
    status: Literal["pending", "confirmed", "failed"]
    amount: int = Field(ge=0, description="Amount received, minor units")
    confirmations: int = Field(default=0, ge=0)
    failure_reason: Optional[str] = None

    @field_validator("status", mode="before")
    @classmethod
    def normalize_status(cls, v: Any) -> Any:
        if isinstance(v, str):
            v = v.strip().lower()
            # Solana-style commitment levels
            if v in ("processed",):
                return "pending"
            if v in ("finalized", "success"):
                return "confirmed"
            if v in ("error", "dropped"):
                return "failed"
        return v


class PlatformOffer(BaseModel):
    """Trading platform view of one trade offer."""
    model_config = ConfigDict(extra="ignore")

    offer_id: str = Field(min_length=1)
    state: PlatformState
    hold_until: Optional[datetime] = None
    message: Optional[str] = None

    @field_validator("offer_id", mode="before")
    @classmethod
    def coerce_offer_id(cls, v: Any) -> Any:
        # Steam returns tradeofferid as a numeric string, some proxies as int
        if isinstance(v, int):
            return str(v)
        return v

    @field_validator("state", mode="before")
    @classmethod
    def normalize_state(cls, v: Any) -> Any:
        if isinstance(v, int):
            return STEAM_OFFER_STATES.get(v, "invalid")
        if isinstance(v, str):
            return v.strip().lower()
        return v


def parse_rail_receipt(payload: Dict[str, Any]) -> RailReceipt:
    try:
        return RailReceipt.model_validate(payload)
    except ValidationError as exc:
        raise MalformedPayload("payment_rail", str(exc)) from exc


def parse_platform_offer(payload: Dict[str, Any]) -> PlatformOffer:
    # Steam wraps offers as {"response": {"offer": {...}}}
    if isinstance(payload, dict) and "response" in payload:
        payload = (payload.get("response") or {}).get("offer") or {}
    if isinstance(payload, dict) and "tradeofferid" in payload and "offer_id" not in payload:
        payload = {
            **payload,
            "offer_id": payload.get("tradeofferid"),
            "state": payload.get("trade_offer_state", payload.get("state")),
        }
    try:
        return PlatformOffer.model_validate(payload)
    except ValidationError as exc:
        raise MalformedPayload("trade_platform", str(exc)) from exc


class EscrowReceipt(BaseModel):
    """Escrow service answer; the service only reports finalized states."""
    model_config = ConfigDict(extra="ignore")

    escrow_id: str = Field(min_length=1)
    status: Literal["locked", "released", "refunded"]
    amount: Optional[int] = Field(default=None, ge=0)
    refund_ref: Optional[str] = None


def parse_escrow_receipt(payload: Dict[str, Any], expected_status: str) -> EscrowReceipt:
    try:
        receipt = EscrowReceipt.model_validate(payload)
    except ValidationError as exc:
        raise MalformedPayload("escrow_service", str(exc)) from exc
    if receipt.status != expected_status:
        raise MalformedPayload("escrow_service", f"expected status {expected_status}, got {receipt.status}")
    if expected_status == "refunded" and not receipt.refund_ref:
        raise MalformedPayload("escrow_service", "refund receipt without refund_ref")
    return receipt
