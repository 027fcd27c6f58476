"""
Read-only boundary to the menu service: menu entries (to price order lines)
and coupon verification (to compute discounts). Menu CRUD lives elsewhere.
"""
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, Optional

import httpx

from .config import HTTP_TIMEOUT, MENU_SERVICE_URL
from .errors import CatalogUnavailableError

logger = logging.getLogger(__name__)


@dataclass
class MenuEntry:
    id: str
    name: str
    sizes: Dict[str, Decimal] = field(default_factory=dict)
    is_available: bool = True

    def price_for(self, size: str) -> Optional[Decimal]:
        return self.sizes.get(size)


@dataclass
class Coupon:
    code: str
    discount_type: str  # "percentage" | "fixed"
    discount_value: Decimal
    max_discount: Optional[Decimal] = None
    min_order_amount: Decimal = Decimal("0")


class MenuCatalog:
    """Interface the order aggregate prices items against."""

    def get_menu_entry(self, menu_id: str) -> Optional[MenuEntry]:
        raise NotImplementedError

    def verify_coupon(self, code: str, branch_id: Optional[str]) -> Optional[Coupon]:
        raise NotImplementedError


def _unwrap(body):
    # menu service answers with the {success, data} envelope
    if isinstance(body, dict) and "data" in body:
        return body["data"]
    return body


def _decimal(value) -> Optional[Decimal]:
    if value is None:
        return None
    return Decimal(str(value))


class HttpMenuCatalog(MenuCatalog):
    def __init__(self, base_url: str = MENU_SERVICE_URL, client: Optional[httpx.Client] = None):
        self.base_url = base_url.rstrip("/")
        self.client = client or httpx.Client(timeout=HTTP_TIMEOUT)

    def _get(self, path: str, **params) -> Optional[dict]:
        url = f"{self.base_url}/{path}"
        try:
            resp = self.client.get(url, params=params or None)
        except httpx.RequestError as e:
            logger.error("menu service unreachable at %s: %s", url, e)
            raise CatalogUnavailableError("Menu service unavailable") from e
        if resp.status_code in (400, 404):
            return None
        if resp.status_code >= 500:
            logger.error("menu service error %s for %s", resp.status_code, url)
            raise CatalogUnavailableError(f"Menu service error {resp.status_code}")
        return _unwrap(resp.json())

    def get_menu_entry(self, menu_id: str) -> Optional[MenuEntry]:
        data = self._get(f"menu/{menu_id}")
        if not data:
            return None
        sizes = {
            s["size"]: _decimal(s.get("price"))
            for s in data.get("sizes", [])
            if s.get("size") is not None and s.get("price") is not None
        }
        return MenuEntry(
            id=str(data.get("_id") or data.get("id") or menu_id),
            name=data.get("name", ""),
            sizes=sizes,
            is_available=data.get("isAvailable", True),
        )

    def verify_coupon(self, code: str, branch_id: Optional[str]) -> Optional[Coupon]:
        params = {"code": code}
        if branch_id:
            params["branch"] = branch_id
        data = self._get("coupons/verify", **params)
        if not data:
            return None
        return Coupon(
            code=data.get("code", code).upper(),
            discount_type=data.get("discountType", "percentage"),
            discount_value=_decimal(data.get("discountValue", 0)),
            max_discount=_decimal(data.get("maxDiscount")),
            min_order_amount=_decimal(data.get("minOrderAmount") or 0),
        )

    def close(self):
        self.client.close()
