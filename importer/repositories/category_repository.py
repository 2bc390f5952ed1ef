# importer/repositories/category_repository.py
from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, Optional

from importer.errors import UpstreamError
from importer.models.profile import slugify
from importer.repositories.external_refs import ExternalRefStore
from importer.repositories.mapping_store import CategoryMappingStore

logger = logging.getLogger("uvicorn.error")

KIND = "category"
REF_META = "_vendor_reference"


def _term_exists_id(e: UpstreamError) -> Optional[int]:
    """WooCommerce answers a duplicate slug with code term_exists and the existing id."""
    payload = e.payload if isinstance(e.payload, dict) else {}
    if payload.get("code") != "term_exists":
        return None
    data = payload.get("data") or {}
    try:
        return int(data.get("resource_id") or data.get("term_id"))
    except (TypeError, ValueError):
        return None


def _term_id(term: Any, reference: str) -> int:
    try:
        return int(term["id"])
    except (KeyError, TypeError, ValueError):
        raise UpstreamError(f"WooCommerce returned no category id for {reference}", payload=term)


class CategoryRepository:
    def __init__(self, woo, refs: ExternalRefStore, mappings: CategoryMappingStore):
        self.woo = woo
        self.refs = refs
        self.mappings = mappings
        self._parents: Dict[str, int] = {}  # reference -> parent id set during this pass

    async def find_by_external_reference(self, reference: str) -> Optional[Dict[str, Any]]:
        woo_id = await self.refs.get(KIND, reference)
        if woo_id is None:
            return None
        term = await self.woo.get_category(woo_id)
        if term is None:
            # deleted in the store; forget so the next save recreates it
            await self.refs.forget(KIND, reference)
            return None
        return term

    async def _resolve(self, reference: Optional[str]) -> Optional[int]:
        if not reference:
            return None
        return await self.refs.get(KIND, reference)

    async def save(self, data: Dict[str, Any]) -> int:
        reference = str(data.get("reference") or "").strip()
        name = str(data.get("name") or "").strip() or reference
        parent_ref = data.get("parent_reference") or None

        existing = await self.find_by_external_reference(reference)
        parent_id = await self._resolve(parent_ref)

        if existing is not None:
            woo_id = _term_id(existing, reference)
            body: Dict[str, Any] = {"name": name}
            if parent_id:
                body["parent"] = parent_id
            await self.woo.update_category(woo_id, body)
        else:
            body = {
                "name": name,
                "slug": slugify(reference),
                "parent": parent_id or 0,
                "meta_data": [{"key": REF_META, "value": reference}],
            }
            try:
                created = await self.woo.create_category(body)
            except UpstreamError as e:
                reused = _term_exists_id(e)
                if reused is None:
                    raise
                logger.info("[CATEGORY] %s already exists as term %s; reusing", reference, reused)
                woo_id = reused
            else:
                woo_id = _term_id(created, reference)

        self._parents[reference] = parent_id or 0
        await self.refs.set(KIND, reference, woo_id)
        await self.mappings.set_auto(reference, woo_id)
        return woo_id

    async def relink_parents(self, categories: Iterable[Dict[str, Any]]) -> int:
        """
        Follow-up pass for children saved before their parent existed.
        `categories` are {reference, parent_reference} dicts. Returns the number re-linked.
        """
        relinked = 0
        for cat in categories:
            ref, parent_ref = cat.get("reference"), cat.get("parent_reference")
            if not ref or not parent_ref:
                continue
            woo_id, parent_id = await self.refs.get(KIND, ref), await self.refs.get(KIND, parent_ref)
            if not woo_id or not parent_id or self._parents.get(ref) == parent_id:
                continue
            await self.woo.update_category(woo_id, {"parent": parent_id})
            self._parents[ref] = parent_id
            relinked += 1
        return relinked
