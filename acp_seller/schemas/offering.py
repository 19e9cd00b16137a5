"""Pydantic v2 schemas for offering descriptors and handler results."""

from collections.abc import Mapping
from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator


class PriceV2(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: str = Field("fixed", pattern=r"^fixed$")
    value: float = Field(..., ge=0)


class OfferingDescriptor(BaseModel):
    """Static configuration of one sellable service, read from offering.json."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    name: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)
    job_fee: float = Field(..., alias="jobFee", ge=0, strict=True)
    required_funds: bool = Field(..., alias="requiredFunds", strict=True)
    requirement: dict[str, Any] = Field(default_factory=dict)
    deliverable: str = "string"
    # Only used when registering the offering with ACP
    price_v2: PriceV2 | None = Field(None, alias="priceV2")
    sla_minutes: int | None = Field(None, alias="slaMinutes", ge=1)

    @field_validator("name", "description")
    @classmethod
    def validate_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("must not be empty")
        return v

    @field_validator("requirement", mode="before")
    @classmethod
    def default_requirement(cls, v: object) -> object:
        return {} if v is None else v


def describe_validation_error(exc: ValidationError) -> list[str]:
    """Flatten a pydantic ValidationError into one message per violated rule."""
    messages = []
    for err in exc.errors():
        loc = ".".join(str(part) for part in err["loc"]) or "offering"
        if err["type"] == "missing":
            messages.append(f'"{loc}" field is required')
        else:
            messages.append(f'"{loc}": {err["msg"]}')
    return messages


class FundsRequest(BaseModel):
    """Funds the seller asks the client to send before the job is executed."""

    model_config = ConfigDict(frozen=True)

    amount: float = Field(..., ge=0)
    token_contract_address: str = Field(
        ...,
        min_length=1,
        validation_alias=AliasChoices(
            "tokenContractAddress", "token_contract_address", "ca", "tokenAddress"
        ),
        serialization_alias="tokenContractAddress",
    )
    token_symbol: str = Field(
        ...,
        validation_alias=AliasChoices("tokenSymbol", "token_symbol", "symbol"),
        serialization_alias="tokenSymbol",
    )
    mode: Literal["request", "transfer"] = "request"

    @classmethod
    def from_handler(cls, value: object) -> "FundsRequest":
        if isinstance(value, FundsRequest):
            return value
        if isinstance(value, Mapping):
            return cls.model_validate(dict(value))
        raise TypeError(
            f"request_additional_funds must return a FundsRequest or a mapping, got {type(value).__name__}"
        )


class TransferInstruction(BaseModel):
    """Funds the seller sends back to the client as part of delivery."""

    model_config = ConfigDict(frozen=True)

    contract_address: str = Field(
        ...,
        validation_alias=AliasChoices("contractAddress", "contract_address", "ca"),
        serialization_alias="contractAddress",
    )
    amount: float = Field(..., ge=0)


class DeliverableResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    deliverable: str | dict[str, Any] | list[Any]
    transfer: TransferInstruction | None = None

    @classmethod
    def from_handler(cls, value: object) -> "DeliverableResult":
        """Normalize what an execute_job handler returned.

        A bare string is taken as the deliverable itself; a mapping must carry
        a "deliverable" key and may carry a "transfer".
        """
        if isinstance(value, DeliverableResult):
            return value
        if isinstance(value, str):
            return cls(deliverable=value)
        if isinstance(value, Mapping):
            return cls.model_validate(dict(value))
        raise TypeError(
            f"execute_job must return a DeliverableResult, a mapping or a string, got {type(value).__name__}"
        )
