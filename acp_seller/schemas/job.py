"""Pydantic v2 schemas for inbound job events and outbound protocol actions."""

import enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from acp_seller.schemas.offering import TransferInstruction


class JobPhase(enum.IntEnum):
    REQUEST = 0
    NEGOTIATION = 1
    TRANSACTION = 2
    EVALUATION = 3
    COMPLETED = 4
    REJECTED = 5
    EXPIRED = 6


def _coerce_phase(v: object) -> object:
    """Accept phases as integers, numeric strings or names ("TRANSACTION")."""
    if isinstance(v, str):
        text = v.strip()
        if text.isdigit():
            return int(text)
        try:
            return JobPhase[text.upper()]
        except KeyError:
            raise ValueError(f"Unknown job phase: {v!r}") from None
    return v


class Memo(BaseModel):
    """Remote-authored note attached to a job. Read-only here."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    id: int | str | None = None
    phase: JobPhase | None = None
    next_phase: JobPhase | None = Field(None, alias="nextPhase")
    content: str | dict[str, Any] | None = None
    timestamp: float | str | None = None

    @field_validator("phase", "next_phase", mode="before")
    @classmethod
    def parse_phase(cls, v: object) -> object:
        return _coerce_phase(v)


class JobEvent(BaseModel):
    """One job as delivered by the transport. Built fresh per event."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    id: int | str
    phase: JobPhase
    client_address: str = Field("", alias="clientAddress")
    price: float = 0
    context: dict[str, Any] = Field(default_factory=dict)
    memos: list[Memo] = Field(default_factory=list)

    @field_validator("phase", mode="before")
    @classmethod
    def parse_phase(cls, v: object) -> object:
        return _coerce_phase(v)

    @field_validator("context", mode="before")
    @classmethod
    def default_context(cls, v: object) -> object:
        return {} if v is None else v

    @field_validator("memos", mode="before")
    @classmethod
    def default_memos(cls, v: object) -> object:
        return [] if v is None else v


# --- Outbound protocol actions ---


class AcceptOrReject(BaseModel):
    accept: bool
    reason: str


class PaymentRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    amount: float = Field(..., ge=0)
    token_contract_address: str = Field(..., alias="tokenContractAddress")
    token_symbol: str | None = Field(None, alias="tokenSymbol")
    # "request" = payable request; "transfer" = payable transfer (with funds)
    mode: Literal["request", "transfer"] = "request"


class Delivery(BaseModel):
    deliverable: str | dict[str, Any] | list[Any]
    transfer: TransferInstruction | None = None


# --- Event receiver responses ---


class EventReceipt(BaseModel):
    status: Literal["queued", "duplicate", "ignored"]
    job_id: int | str | None = None
