"""
WhatIfInvested Coinbase Handlers - Request/Response Schemas.
Pydantic models for charge creation and exchange proxy actions.
"""
from __future__ import annotations
from decimal import Decimal
from enum import Enum
from typing import Annotated, Any, Literal, Union
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator, model_validator

MAX_CHARGE_AMOUNT = Decimal("1000000000")


class OrderSide(str, Enum):
    BUY = "buy"
    SELL = "sell"


class CreateChargeRequest(BaseModel):
    """Charge creation input."""
    amount: Decimal = Field(gt=0, le=MAX_CHARGE_AMOUNT, description="Amount in USD")
    description: str | None = Field(default=None, max_length=200)
    customer_email: str | None = Field(default=None, alias="customerEmail")
    redirect_url: str | None = Field(default=None, alias="redirectUrl")
    cancel_url: str | None = Field(default=None, alias="cancelUrl")
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    def formatted_amount(self) -> str:
        return f"{self.amount.quantize(Decimal('0.01'))}"


class PaymentLink(BaseModel):
    """Hosted payment page for a created charge."""
    id: str
    charge_id: str = Field(alias="chargeId")
    hosted_url: str = Field(alias="hostedUrl")
    created_at: str | None = Field(default=None, alias="createdAt")
    amount: float
    currency: str = "USD"
    description: str | None = None
    customer_email: str | None = Field(default=None, alias="customerEmail")
    status: str = "pending"
    model_config = ConfigDict(populate_by_name=True)

    def to_response(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


class GetCandlesAction(BaseModel):
    """Historic rates for a trading pair."""
    action: Literal["getCandles"]
    trading_pair: str = Field(alias="tradingPair", min_length=3, pattern=r"^[A-Za-z0-9]+-[A-Za-z0-9]+$")
    granularity: int = Field(gt=0)
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    def request_path(self) -> str:
        return f"/products/{self.trading_pair}/candles?granularity={self.granularity}"


class PlaceOrderAction(BaseModel):
    """Market order; buys are sized by funds, sells by size."""
    action: Literal["placeOrder"]
    side: OrderSide
    product_id: str = Field(alias="productId", min_length=3)
    type: str = Field(default="market")
    size: str | None = None
    funds: str | None = None
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    @field_validator("side", mode="before")
    @classmethod
    def normalize_side(cls, value: Any) -> Any:
        return value.lower() if isinstance(value, str) else value

    @model_validator(mode="after")
    def validate_amount_field(self) -> PlaceOrderAction:
        if self.side == OrderSide.BUY and not self.funds:
            raise ValueError("Funds are required for market buy orders.")
        if self.side == OrderSide.SELL and not self.size:
            raise ValueError("Size is required for market sell orders.")
        return self

    def order_body(self) -> dict[str, str]:
        body = {"side": self.side.value, "product_id": self.product_id, "type": self.type}
        if self.side == OrderSide.BUY:
            body["funds"] = self.funds or ""
        else:
            body["size"] = self.size or ""
        return body


ExchangeAction = Annotated[Union[GetCandlesAction, PlaceOrderAction], Field(discriminator="action")]
exchange_action_adapter: TypeAdapter[GetCandlesAction | PlaceOrderAction] = TypeAdapter(ExchangeAction)
