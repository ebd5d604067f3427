from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class SaleOut(BaseModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    id: str
    transaction_id: str = Field(alias="transactionId")
    mpesa_receipt_number: str | None = Field(default=None, alias="mpesaReceiptNumber")
    customer_phone: str = Field(alias="customerPhone")
    amount: float
    cart_items: list[dict[str, Any]] = Field(default_factory=list, alias="cartItems")
    transaction_date: datetime = Field(alias="transactionDate")
    status: str
    created_at: datetime | None = Field(default=None, alias="createdAt")


class SalesListResponse(BaseModel):
    success: bool = True
    sales: list[SaleOut]
    total: int


class SaleEnvelope(BaseModel):
    success: bool = True
    sale: SaleOut


class SaleStatusIn(BaseModel):
    status: str


class PurchaseOut(BaseModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    id: str
    user_id: str = Field(alias="userId")
    material_id: str | None = Field(default=None, alias="materialId")
    material_title: str | None = Field(default=None, alias="materialTitle")
    subject: str | None = None
    level: str | None = None
    year: str | None = None
    price: float | None = None
    amount: float | None = None
    download_url: str | None = Field(default=None, alias="downloadURL")
    file_size: str | None = Field(default=None, alias="fileSize")
    pages: int | None = None
    transaction_id: str = Field(alias="transactionId")
    mpesa_receipt_number: str | None = Field(default=None, alias="mpesaReceiptNumber")
    purchase_date: datetime = Field(alias="purchaseDate")


class PurchasesResponse(BaseModel):
    success: bool = True
    purchases: list[PurchaseOut]
    total: int
