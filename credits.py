"""
Credit ledger

Remaining free-album and dollar credit per (client album, design index),
computed by scanning orders. Orders in every status count: a credit is
claimed the moment an order enters the cart, not at purchase.
"""
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel

from catalog import Catalog
from database import Document, Store
from schemas import ORDER_COLLECTION, ClientAlbum, CreditType


def lease_key(album_id: str, design_index: int) -> str:
    """Name of the lease that serializes credit allocation for one design."""
    return f"credits:{album_id}:{design_index}"


class DesignCreditUsage(BaseModel):
    design_index: int
    design_id: str
    design_name: str
    free_total: int
    free_used: int
    free_available: int
    dollar_total: Decimal
    dollar_used: Decimal
    dollar_available: Decimal


class CreditLedger:
    def __init__(self, store: Store, catalog: Catalog):
        self.store = store
        self.catalog = catalog

    def _orders_with_credit(
        self,
        album_id: str,
        design_index: int,
        credit_type: CreditType,
        exclude_order_id: Optional[str] = None,
    ) -> List[Document]:
        docs = self.store.find(
            ORDER_COLLECTION,
            {
                "client_album_id": album_id,
                "design_index": design_index,
                "credit_type": credit_type.value,
            },
        )
        if exclude_order_id:
            docs = [d for d in docs if d["id"] != str(exclude_order_id)]
        return docs

    def _design(self, album_id: str, design_index: int):
        return self.catalog.get_design(self.catalog.get_album(album_id), design_index)

    def count_used_free_credits(
        self, album_id: str, design_index: int, exclude_order_id: Optional[str] = None
    ) -> int:
        return len(self._orders_with_credit(album_id, design_index, CreditType.FREE_ALBUM, exclude_order_id))

    def get_available_free_credits(
        self, album_id: str, design_index: int, exclude_order_id: Optional[str] = None
    ) -> int:
        design = self._design(album_id, design_index)
        if design is None:
            return 0
        used = self.count_used_free_credits(album_id, design_index, exclude_order_id)
        return max(0, design.free_album_credits - used)

    def get_used_dollar_credits(
        self, album_id: str, design_index: int, exclude_order_id: Optional[str] = None
    ) -> Decimal:
        docs = self._orders_with_credit(album_id, design_index, CreditType.DOLLAR, exclude_order_id)
        return sum((Decimal(str(d.get("applied_credits") or 0)) for d in docs), Decimal("0"))

    def get_available_dollar_credits(
        self, album_id: str, design_index: int, exclude_order_id: Optional[str] = None
    ) -> Decimal:
        design = self._design(album_id, design_index)
        if design is None:
            return Decimal("0")
        used = self.get_used_dollar_credits(album_id, design_index, exclude_order_id)
        return max(Decimal("0"), design.dollar_credit - used)

    def usage_summary(self, album: ClientAlbum) -> List[DesignCreditUsage]:
        """Per-design credit usage, for designs that were granted any credit."""
        summary = []
        for index, design in enumerate(album.designs):
            if design.free_album_credits <= 0 and design.dollar_credit <= 0:
                continue
            free_used = self.count_used_free_credits(album.id, index)
            dollar_used = self.get_used_dollar_credits(album.id, index)
            summary.append(
                DesignCreditUsage(
                    design_index=index,
                    design_id=design.id,
                    design_name=design.name,
                    free_total=design.free_album_credits,
                    free_used=free_used,
                    free_available=max(0, design.free_album_credits - free_used),
                    dollar_total=design.dollar_credit,
                    dollar_used=dollar_used,
                    dollar_available=max(Decimal("0"), design.dollar_credit - dollar_used),
                )
            )
        return summary
