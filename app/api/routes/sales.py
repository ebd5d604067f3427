from datetime import datetime

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from app.api.routes.deps import http_error
from app.db.session import get_db
from app.schemas.sales import (
    PurchaseOut,
    PurchasesResponse,
    SaleEnvelope,
    SaleOut,
    SalesListResponse,
    SaleStatusIn,
)
from app.services.auth.request_guard import require_admin_key
from app.services.payments.errors import SaleNotFoundError, ValidationError
from app.services.purchases.service import PurchaseService
from app.services.sales.service import SalesService


router = APIRouter(prefix="/api", tags=["sales"])


@router.get("/sales", response_model=SalesListResponse)
def list_sales(
    db: Session = Depends(get_db),
    start_date: datetime | None = Query(default=None, alias="startDate"),
    end_date: datetime | None = Query(default=None, alias="endDate"),
    status: str | None = None,
    limit: int = Query(50, ge=1, le=500),
) -> SalesListResponse:
    sales = SalesService(db).list_sales(start_date, end_date, status, limit)
    return SalesListResponse(
        sales=[SaleOut.model_validate(s) for s in sales],
        total=len(sales),
    )


@router.get("/sales/stats")
def sales_stats(period: str = "all", db: Session = Depends(get_db)) -> dict:
    try:
        stats = SalesService(db).stats(period)
    except ValidationError as e:
        raise http_error(e, "Invalid period")
    return {"success": True, "stats": stats}


@router.get("/sales/customer/{phone}", response_model=SalesListResponse)
def sales_for_customer(phone: str, db: Session = Depends(get_db)) -> SalesListResponse:
    sales = SalesService(db).list_for_customer(phone)
    return SalesListResponse(
        sales=[SaleOut.model_validate(s) for s in sales],
        total=len(sales),
    )


@router.get("/sales/{sale_id}", response_model=SaleEnvelope)
def get_sale(sale_id: str, db: Session = Depends(get_db)) -> SaleEnvelope:
    sale = SalesService(db).get(sale_id)
    if sale is None:
        raise http_error(SaleNotFoundError("Sale not found"), "Sale not found")
    return SaleEnvelope(sale=SaleOut.model_validate(sale))


@router.patch("/sales/{sale_id}/status", dependencies=[Depends(require_admin_key)])
def update_sale_status(sale_id: str, body: SaleStatusIn, db: Session = Depends(get_db)) -> dict:
    """Administrative override; the payment flow never calls this."""
    try:
        SalesService(db).update_status(sale_id, body.status)
    except ValidationError as e:
        raise http_error(e, "Invalid status")
    except SaleNotFoundError as e:
        raise http_error(e, "Sale not found")
    return {"success": True, "message": "Sale status updated successfully"}


@router.get("/users/{user_id}/purchases", response_model=PurchasesResponse)
def user_purchases(user_id: str, db: Session = Depends(get_db)) -> PurchasesResponse:
    purchases = PurchaseService(db).list_for_user(user_id)
    return PurchasesResponse(
        purchases=[PurchaseOut.model_validate(p) for p in purchases],
        total=len(purchases),
    )
