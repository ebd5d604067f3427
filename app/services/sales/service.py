"""
SalesService: sale rows for reporting.

Sales are written once by the callback handler; update_status is an admin
override and the only later writer.
"""
import logging
from collections import Counter
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from sqlalchemy.orm import Session

from app.models.sale import Sale
from app.models.transaction import Transaction
from app.services.payments.errors import SaleNotFoundError, ValidationError

logger = logging.getLogger(__name__)

# Daraja TransactionDate is local Kenyan time (EAT, UTC+3) formatted YYYYMMDDHHMMSS
EAT = timezone(timedelta(hours=3))

SALE_STATUSES = ("completed", "refunded", "cancelled")
STATS_PERIODS = ("today", "week", "month", "year", "all")


def parse_transaction_date(value) -> datetime | None:
    """20240115143022 -> aware UTC datetime; None if the value is missing or unparseable."""
    if value is None:
        return None
    try:
        parsed = datetime.strptime(str(value), "%Y%m%d%H%M%S")
    except ValueError:
        return None
    return parsed.replace(tzinfo=EAT).astimezone(timezone.utc)


def period_start(period: str, now: datetime) -> datetime | None:
    if period == "today":
        return now.replace(hour=0, minute=0, second=0, microsecond=0)
    if period == "week":
        return now - timedelta(days=7)
    if period == "month":
        return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    if period == "year":
        return now.replace(month=1, day=1, hour=0, minute=0, second=0, microsecond=0)
    return None


class SalesService:
    def __init__(self, db: Session):
        self.db = db

    def create_from_transaction(self, tx: Transaction) -> Sale:
        """Denormalized sale row for a completed transaction. Flushes, never commits."""
        sale = Sale(
            transaction_id=tx.id,
            mpesa_receipt_number=tx.mpesa_receipt_number,
            customer_phone=tx.phone_number,
            amount=tx.amount,
            cart_items=list(tx.cart_items or []),
            transaction_date=parse_transaction_date(tx.transaction_date) or datetime.now(timezone.utc),
            status="completed",
        )
        self.db.add(sale)
        self.db.flush()
        return sale

    def get(self, sale_id: str) -> Sale | None:
        return self.db.query(Sale).filter(Sale.id == sale_id).one_or_none()

    def count_for_transaction(self, transaction_id: str) -> int:
        return self.db.query(Sale).filter(Sale.transaction_id == transaction_id).count()

    def list_sales(
        self,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
        status: str | None = None,
        limit: int = 50,
    ) -> list[Sale]:
        q = self.db.query(Sale)
        if start_date:
            q = q.filter(Sale.transaction_date >= start_date)
        if end_date:
            q = q.filter(Sale.transaction_date <= end_date)
        if status:
            q = q.filter(Sale.status == status)
        return q.order_by(Sale.created_at.desc()).limit(limit).all()

    def list_for_customer(self, phone_number: str) -> list[Sale]:
        return (
            self.db.query(Sale)
            .filter(Sale.customer_phone == phone_number)
            .order_by(Sale.created_at.desc())
            .all()
        )

    def stats(self, period: str = "all", now: datetime | None = None) -> dict:
        if period not in STATS_PERIODS:
            raise ValidationError(f"Unknown period '{period}'")
        now = now or datetime.now(timezone.utc)
        start = period_start(period, now)

        q = self.db.query(Sale).filter(Sale.status == "completed")
        if start is not None:
            q = q.filter(Sale.transaction_date >= start)
        sales = q.all()

        total_revenue = Decimal("0")
        material_sales: Counter = Counter()
        daily: dict[str, Decimal] = {}
        for sale in sales:
            amount = Decimal(sale.amount or 0)
            total_revenue += amount
            for item in sale.cart_items or []:
                title = item.get("title")
                if title:
                    material_sales[title] += 1
            key = sale.transaction_date.date().isoformat()
            daily[key] = daily.get(key, Decimal("0")) + amount

        total_sales = len(sales)
        last_7_days = []
        for i in range(6, -1, -1):
            key = (now - timedelta(days=i)).date().isoformat()
            last_7_days.append({"date": key, "revenue": float(daily.get(key, 0))})

        return {
            "totalRevenue": float(total_revenue),
            "totalSales": total_sales,
            "averageOrderValue": float(total_revenue / total_sales) if total_sales else 0,
            "topMaterials": [
                {"title": title, "count": count} for title, count in material_sales.most_common(5)
            ],
            "dailySales": last_7_days,
            "period": period,
        }

    def update_status(self, sale_id: str, status: str) -> Sale:
        if status not in SALE_STATUSES:
            raise ValidationError(f"Status must be one of: {', '.join(SALE_STATUSES)}")
        sale = self.get(sale_id)
        if sale is None:
            raise SaleNotFoundError("Sale not found")
        old_status = sale.status
        sale.status = status
        sale.updated_at = datetime.now(timezone.utc)
        self.db.add(sale)
        self.db.commit()
        self.db.refresh(sale)
        logger.info(
            "sale_status_overridden",
            extra={"sale_id": sale.id, "status": status, "old_state": old_status},
        )
        return sale
