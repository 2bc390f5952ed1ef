# importer/repositories/product_repository.py
from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, Optional, Tuple

from importer.repositories.external_refs import ExternalRefStore
from importer.sync.transformer import META_PREFIX, TransformedProduct

logger = logging.getLogger("uvicorn.error")

KIND = "product"
REF_META = f"{META_PREFIX}reference"


def _meta_value(product: Dict[str, Any], key: str) -> Optional[str]:
    for m in product.get("meta_data") or []:
        if isinstance(m, dict) and m.get("key") == key:
            return str(m.get("value") or "")
    return None


class ProductRepository:
    def __init__(self, woo, refs: ExternalRefStore):
        self.woo = woo
        self.refs = refs

    async def find_by_external_reference(self, reference: str) -> Optional[Dict[str, Any]]:
        woo_id = await self.refs.get(KIND, reference)
        if woo_id is not None:
            product = await self.woo.get_product(woo_id)
            if product is not None:
                return product
            await self.refs.forget(KIND, reference)

        for candidate in await self.woo.find_products_by_sku(reference):
            stored = _meta_value(candidate, REF_META)
            # a same-SKU product without our meta was made by hand; adopt it
            if stored is None or stored == reference:
                await self.refs.set(KIND, reference, int(candidate["id"]))
                return candidate
        return None

    async def save(self, product: TransformedProduct, protected: Iterable[str] = ()) -> Tuple[int, bool]:
        """Create or update; returns (woo_id, created). Protected fields are only honoured on update."""
        protected = set(protected)
        existing = await self.find_by_external_reference(product.reference)

        if existing is None:
            created = await self.woo.create_product(product.to_payload())
            woo_id = int(created["id"])
            await self.refs.set(KIND, product.reference, woo_id)
            is_new = True
        else:
            woo_id = int(existing["id"])
            body = product.to_payload(exclude=protected)
            # the stored vendor reference is immutable
            body["meta_data"] = [m for m in body.get("meta_data", []) if m.get("key") != REF_META]
            await self.woo.update_product(woo_id, body)
            is_new = False

        if product.type == "variable" and product.variations:
            await self._save_variations(woo_id, product, protected if not is_new else set())
        return woo_id, is_new

    async def _save_variations(self, product_id: int, product: TransformedProduct, protected: set) -> None:
        by_sku = {
            str(v.get("sku")): int(v["id"])
            for v in await self.woo.list_variations(product_id)
            if v.get("sku")
        }
        for variation in product.variations:
            body = variation.to_payload()
            existing_id = by_sku.get(variation.sku)
            if existing_id is None:
                created = await self.woo.create_variation(product_id, body)
                if created and created.get("id") is not None:
                    await self.refs.set("variation", variation.sku, int(created["id"]))
            else:
                if "regular_price" in protected:
                    body.pop("regular_price", None)
                await self.woo.update_variation(product_id, existing_id, body)
