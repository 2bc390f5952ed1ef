#==========================================================================================
# importer/factory.py
# Builds the collaborators of one sync run from persisted options and the chosen profile.
# Tests pass ready-made catalog / woo / translation backend instances.
#==========================================================================================
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from importer.config import settings
from importer.db import get_sessionmaker
from importer.errors import ProfileNotFound
from importer.http_client import HttpClient
from importer.log.persistent_logger import PersistentLogger
from importer.pricing.converter import PricingConverter, build_pricing_converter
from importer.repositories.category_repository import CategoryRepository
from importer.repositories.external_refs import ExternalRefStore
from importer.repositories.mapping_store import CategoryMappingStore
from importer.repositories.product_repository import ProductRepository
from importer.repositories.profile_repository import ProfileRepository
from importer.settings_store import ImporterConfig, ProfileConfiguration
from importer.sync.history import SyncHistory
from importer.sync.state import SyncStateStore
from importer.sync.transformer import ProductTransformer, SyncFieldConfig
from importer.translation.backends import build_translation_backend
from importer.translation.cache import TranslationCache
from importer.translation.translator import Translator
from importer.vendor.catalog_client import CatalogClient
from importer.woocommerce import WooClient

logger = logging.getLogger("uvicorn.error")


@dataclass
class SyncPipeline:
    config: ProfileConfiguration
    catalog: CatalogClient
    woo: WooClient
    translator: Translator
    pricing: PricingConverter
    categories: CategoryRepository
    products: ProductRepository
    transformer: ProductTransformer


class ServiceFactory:
    def __init__(
        self,
        session_factory=None,
        http: HttpClient | None = None,
        catalog=None,
        woo=None,
        translation_backend=None,
    ):
        self._sessions = session_factory or get_sessionmaker()
        self.http = http
        self._catalog = catalog
        self._woo = woo
        self._backend = translation_backend

    # ---- stores ----

    def config_store(self) -> ImporterConfig:
        return ImporterConfig(self._sessions)

    def profiles(self) -> ProfileRepository:
        return ProfileRepository(self._sessions)

    def mappings(self) -> CategoryMappingStore:
        return CategoryMappingStore(self._sessions)

    def refs(self) -> ExternalRefStore:
        return ExternalRefStore(self._sessions)

    def history(self) -> SyncHistory:
        return SyncHistory(self._sessions)

    def state_store(self) -> SyncStateStore:
        return SyncStateStore(self._sessions)

    def sync_log(self) -> PersistentLogger:
        return PersistentLogger(self._sessions)

    def translation_cache(self) -> TranslationCache:
        return TranslationCache(self._sessions)

    # ---- clients ----

    async def profile_configuration(self, profile_id: Optional[int] = None) -> ProfileConfiguration:
        profiles = self.profiles()
        if profile_id:
            profile = await profiles.find(profile_id)
            if profile is None:
                raise ProfileNotFound(profile_id)
        else:
            profile = await profiles.find_default()
        options = await self.config_store().get_all()
        global_mappings = await self.mappings().get_combined()
        return ProfileConfiguration(profile, options, global_mappings)

    def catalog_client(self, cfg: ProfileConfiguration) -> CatalogClient:
        if self._catalog is not None:
            return self._catalog
        return CatalogClient(cfg.get_api_key(), self.http, page_size=settings.VENDOR_PAGE_SIZE)

    def woo_client(self) -> WooClient:
        if self._woo is not None:
            return self._woo
        return WooClient(http=self.http)

    def translator(self, cfg: ProfileConfiguration) -> Translator:
        backend = self._backend or build_translation_backend(cfg.get_translation_options(), self.http)
        return Translator(backend, cfg.get_target_language(), self.translation_cache())

    async def pipeline(self, profile_id: Optional[int] = None) -> SyncPipeline:
        cfg = await self.profile_configuration(profile_id)
        woo = self.woo_client()
        refs = self.refs()
        translator = self.translator(cfg)
        pricing = build_pricing_converter(cfg)
        categories = CategoryRepository(woo, refs, self.mappings())
        transformer = ProductTransformer(
            translator,
            pricing,
            category_mapping=cfg.get_category_mappings(),
            field_config=SyncFieldConfig.from_options(
                cfg.get_sync_fields(), cfg.get_sync_protection(), cfg.get_custom_patterns()
            ),
            variation_mode=cfg.get_variation_mode(),
            category_repository=categories,
            create_missing_categories=cfg.creates_missing_categories(),
        )
        return SyncPipeline(
            config=cfg,
            catalog=self.catalog_client(cfg),
            woo=woo,
            translator=translator,
            pricing=pricing,
            categories=categories,
            products=ProductRepository(woo, refs),
            transformer=transformer,
        )
