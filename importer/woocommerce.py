#==========================================================================================
# importer/woocommerce.py
# WooCommerce REST interface: products, variations and product categories.
#==========================================================================================
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from importer.config import settings
from importer.errors import ConfigurationError, UpstreamError
from importer.http_client import HttpClient

logger = logging.getLogger("uvicorn.error")

PER_PAGE = 100


class WooClient:
    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        api_secret: str | None = None,
        http: HttpClient | None = None,
    ):
        self.base_url = (base_url if base_url is not None else settings.WC_BASE_URL).rstrip("/")
        if not self.base_url:
            raise ConfigurationError("WC_BASE_URL is not configured")
        self.auth = (
            api_key if api_key is not None else settings.WC_API_KEY,
            api_secret if api_secret is not None else settings.WC_API_SECRET,
        )
        self.http = http or HttpClient()

    def _url(self, path: str) -> str:
        return f"{self.base_url}/wp-json/wc/v3/{path.lstrip('/')}"

    async def _get(self, path: str, params: Dict[str, Any] | None = None) -> Any:
        return await self.http.get(self._url(path), params=params, auth=self.auth)

    async def _post(self, path: str, body: Dict[str, Any]) -> Any:
        return await self.http.post(self._url(path), json_body=body, auth=self.auth)

    async def _put(self, path: str, body: Dict[str, Any]) -> Any:
        return await self.http.put(self._url(path), json_body=body, auth=self.auth)

    # ---- Products ----

    async def find_products_by_sku(self, sku: str) -> List[Dict[str, Any]]:
        data = await self._get("products", {"sku": sku, "per_page": 10})
        return data if isinstance(data, list) else []

    async def get_product(self, product_id: int) -> Optional[Dict[str, Any]]:
        try:
            return await self._get(f"products/{product_id}")
        except UpstreamError as e:
            if e.upstream_status == 404:
                return None
            raise

    async def create_product(self, body: Dict[str, Any]) -> Dict[str, Any]:
        return await self._post("products", body)

    async def update_product(self, product_id: int, body: Dict[str, Any]) -> Dict[str, Any]:
        return await self._put(f"products/{product_id}", body)

    # ---- Variations ----

    async def list_variations(self, product_id: int) -> List[Dict[str, Any]]:
        out: List[Dict[str, Any]] = []
        page = 1
        while True:
            batch = await self._get(f"products/{product_id}/variations", {"per_page": PER_PAGE, "page": page})
            if not isinstance(batch, list) or not batch:
                break
            out.extend(batch)
            if len(batch) < PER_PAGE:
                break
            page += 1
        return out

    async def create_variation(self, product_id: int, body: Dict[str, Any]) -> Dict[str, Any]:
        return await self._post(f"products/{product_id}/variations", body)

    async def update_variation(self, product_id: int, variation_id: int, body: Dict[str, Any]) -> Dict[str, Any]:
        return await self._put(f"products/{product_id}/variations/{variation_id}", body)

    # ---- Categories ----

    async def get_category(self, category_id: int) -> Optional[Dict[str, Any]]:
        try:
            return await self._get(f"products/categories/{category_id}")
        except UpstreamError as e:
            if e.upstream_status == 404:
                return None
            raise

    async def create_category(self, body: Dict[str, Any]) -> Dict[str, Any]:
        return await self._post("products/categories", body)

    async def update_category(self, category_id: int, body: Dict[str, Any]) -> Dict[str, Any]:
        return await self._put(f"products/categories/{category_id}", body)
