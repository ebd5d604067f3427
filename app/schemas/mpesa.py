from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class StkPushRequest(BaseModel):
    """Checkout request from the app. Fields are optional here: PaymentService reports
    missing ones as a 400 with a readable message instead of a 422."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    phone_number: str | None = Field(default=None, alias="phoneNumber")
    amount: float | None = None
    cart_items: list[dict[str, Any]] | None = Field(default=None, alias="cartItems")
    user_id: str | None = Field(default=None, alias="userId")


class StkPushResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool = True
    message: str = "STK Push initiated successfully"
    checkout_request_id: str = Field(alias="checkoutRequestID")
    merchant_request_id: str | None = Field(default=None, alias="merchantRequestID")


class TransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    id: str
    checkout_request_id: str = Field(alias="checkoutRequestID")
    merchant_request_id: str | None = Field(default=None, alias="merchantRequestID")
    phone_number: str = Field(alias="phoneNumber")
    amount: float
    cart_items: list[dict[str, Any]] = Field(default_factory=list, alias="cartItems")
    user_id: str = Field(alias="userId")
    status: str
    mpesa_receipt_number: str | None = Field(default=None, alias="mpesaReceiptNumber")
    transaction_date: str | None = Field(default=None, alias="transactionDate")
    actual_amount: float | None = Field(default=None, alias="actualAmount")
    failure_reason: str | None = Field(default=None, alias="failureReason")
    created_at: datetime | None = Field(default=None, alias="createdAt")
    updated_at: datetime | None = Field(default=None, alias="updatedAt")


class TransactionEnvelope(BaseModel):
    success: bool = True
    transaction: TransactionOut


class CallbackAck(BaseModel):
    ResultCode: int = 0
    ResultDesc: str = "Accepted"
