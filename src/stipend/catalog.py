"""
Static merchant directory.

The catalog is read-only: merchants and their priced items never change
while the engine runs. A JSON file named by STIPEND_CATALOG_PATH replaces
the built-in demo directory.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Protocol

from .errors import ValidationError
from .money import minor_to_float, price_to_minor


@dataclass(frozen=True)
class CatalogItem:
    item_id: str
    name: str
    category: str
    price_minor: int
    local_price_minor: int

    def to_dict(self) -> dict:
        return {
            "id": self.item_id,
            "name": self.name,
            "category": self.category,
            "price_usd": minor_to_float(self.price_minor),
            "price_kes": minor_to_float(self.local_price_minor),
        }


@dataclass(frozen=True)
class Merchant:
    merchant_id: str
    name: str
    payee: str
    items: dict[str, CatalogItem] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "id": self.merchant_id,
            "name": self.name,
            "items": [item.to_dict() for item in self.items.values()],
        }


class MerchantCatalog(Protocol):
    def get_merchant(self, merchant_id: str) -> Optional[Merchant]: ...

    def get_item(self, merchant_id: str, item_id: str) -> Optional[CatalogItem]: ...

    def merchants(self) -> list[Merchant]: ...


def _item(item_id: str, name: str, category: str, usd: str, kes: int) -> CatalogItem:
    return CatalogItem(
        item_id=item_id,
        name=name,
        category=category,
        price_minor=price_to_minor(usd),
        local_price_minor=price_to_minor(kes),
    )


def _merchant(merchant_id: str, name: str, payee: str, *items: CatalogItem) -> Merchant:
    return Merchant(
        merchant_id=merchant_id,
        name=name,
        payee=payee,
        items={item.item_id: item for item in items},
    )


DEMO_MERCHANTS = (
    _merchant(
        "merchant_kplc_001", "Kenya Power (KPLC)", "888880",
        _item("kplc_token_500", "KPLC Token 500 KES", "electricity", "3.85", 500),
        _item("kplc_token_1000", "KPLC Token 1000 KES", "electricity", "7.69", 1000),
        _item("kplc_token_2000", "KPLC Token 2000 KES", "electricity", "15.38", 2000),
    ),
    _merchant(
        "merchant_nairobi_water_001", "Nairobi Water", "444400",
        _item("water_bill_monthly", "Monthly Water Bill", "water", "6.15", 800),
    ),
    _merchant(
        "merchant_mama_janes_001", "Mama Jane's Groceries", "254712345678",
        _item("grocery_basic_weekly", "Basic Weekly Groceries", "food", "11.54", 1500),
        _item("grocery_premium_weekly", "Premium Weekly Groceries", "food", "23.08", 3000),
    ),
    _merchant(
        "merchant_greenfield_school_001", "Greenfield Academy", "254723456789",
        _item("school_lunch_monthly", "Monthly School Lunch", "education", "9.23", 1200),
        _item("school_tuition_term", "Term Tuition", "education", "115.38", 15000),
    ),
    _merchant(
        "merchant_kenyatta_pharmacy_001", "Kenyatta Pharmacy", "254734567890",
        _item("medicine_prescription_basic", "Basic Prescription", "medical", "6.15", 800),
        _item("medicine_chronic_monthly", "Chronic Medication (Monthly)", "medical", "19.23", 2500),
    ),
)


class StaticCatalog:
    """In-memory merchant directory."""

    def __init__(self, merchants=DEMO_MERCHANTS):
        self._merchants: dict[str, Merchant] = {m.merchant_id: m for m in merchants}

    @classmethod
    def from_file(cls, path: Path) -> "StaticCatalog":
        """
        Load a catalog from JSON:

            [{"id": ..., "name": ..., "payee": ...,
              "items": [{"id": ..., "name": ..., "category": ...,
                         "price_usd": "3.85", "price_kes": 500}]}]
        """
        with open(path) as f:
            raw = json.load(f)
        if not isinstance(raw, list):
            raise ValidationError(f"Catalog must be a JSON list: {path}")
        merchants = []
        for entry in raw:
            try:
                items = [
                    _item(
                        item["id"],
                        item["name"],
                        item["category"].strip().lower(),
                        str(item["price_usd"]),
                        item["price_kes"],
                    )
                    for item in entry.get("items", [])
                ]
                merchants.append(
                    _merchant(entry["id"], entry["name"], str(entry["payee"]), *items)
                )
            except (KeyError, TypeError, AttributeError, ValueError) as exc:
                raise ValidationError(f"Invalid catalog entry in {path}: {exc}") from exc
        return cls(merchants)

    def get_merchant(self, merchant_id: str) -> Optional[Merchant]:
        return self._merchants.get(merchant_id)

    def get_item(self, merchant_id: str, item_id: str) -> Optional[CatalogItem]:
        merchant = self._merchants.get(merchant_id)
        if merchant is None:
            return None
        return merchant.items.get(item_id)

    def merchants(self) -> list[Merchant]:
        return list(self._merchants.values())

