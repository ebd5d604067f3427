"""
In-memory cart for the checkout screen. Materials are unique digital goods, so
every material appears at most once.
"""
import re
from dataclasses import asdict, dataclass
from decimal import Decimal

KENYAN_PREFIXES = ("07", "01", "2547", "2541", "+254")
_PHONE_RE = re.compile(r"^\+?\d{10,12}$")


def is_valid_phone(phone_number: str) -> bool:
    """Superficial check: a Kenyan mobile prefix and a plausible digit count."""
    phone = (phone_number or "").strip().replace(" ", "")
    if not _PHONE_RE.match(phone):
        return False
    return phone.startswith(KENYAN_PREFIXES)


@dataclass(frozen=True)
class CartItem:
    id: str
    title: str
    price: Decimal
    subject: str | None = None
    level: str | None = None
    year: str | None = None
    downloadURL: str | None = None
    fileSize: str | None = None
    pages: int | None = None

    def snapshot(self) -> dict:
        data = asdict(self)
        data["price"] = float(self.price)
        return data


class Cart:
    def __init__(self) -> None:
        self._items: dict[str, CartItem] = {}

    def add(self, item: CartItem) -> bool:
        """Returns False if the material is already in the cart."""
        if item.id in self._items:
            return False
        self._items[item.id] = item
        return True

    def remove(self, material_id: str) -> None:
        self._items.pop(material_id, None)

    def clear(self) -> None:
        self._items.clear()

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, material_id: str) -> bool:
        return material_id in self._items

    @property
    def items(self) -> list[CartItem]:
        return list(self._items.values())

    @property
    def total(self) -> Decimal:
        return sum((item.price for item in self._items.values()), Decimal("0"))

    def snapshot(self) -> list[dict]:
        """Line items as sent to the backend and stored on the transaction."""
        return [item.snapshot() for item in self._items.values()]
