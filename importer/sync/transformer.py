#==========================================================================================
# importer/sync/transformer.py
# One vendor product record -> WooCommerce product payload(s).
#==========================================================================================
from __future__ import annotations

import logging
import re
from typing import Any, Dict, Iterable, List, Optional

from pydantic import BaseModel, Field, ValidationInfo, field_validator

from importer.pricing.converter import PricingConverter
from importer.settings_store import now_stamp
from importer.sync.components.attributes import (
    DIMENSION_ALIASES,
    clean_attribute_value,
    collect_used_attribute_values,
    format_attribute_name,
    is_brand,
    iter_attributes,
    should_translate_value,
)
from importer.sync.components.pipe_specs import (
    build_specs_table,
    extract_ean,
    extract_pipe_attributes,
    pipe_attributes_to_woo,
)
from importer.sync.components.price import pick_price
from importer.sync.components.util import is_blank, lower_keys, ref_of
from importer.translation.translator import Translator

logger = logging.getLogger("uvicorn.error")

META_PREFIX = "_vendor_"
TEXT_SOURCES = ("name", "reference", "description", "custom", "none")
PRICE_SOURCES = ("rrp", "net", "none")

_ENABLED = (True, 1, "1", "true", "enabled", "yes", "on")
_DISABLED = (False, 0, "0", "", "false", "disabled", "none", "no", "off", None)
_TOKEN_RE = re.compile(r"\{([a-z0-9_]+)\}", re.I)

# protection key -> payload keys it guards
PROTECTABLE = {
    "name": ("name",),
    "description": ("description",),
    "short_description": ("short_description",),
    "price": ("regular_price",),
    "images": ("images",),
    "image": ("images",),
    "categories": ("categories",),
    "attributes": ("attributes",),
}


class SyncFieldConfig(BaseModel):
    """Per-field source selection, protect-on-update flags and custom patterns."""

    name: str = "name"
    description: str = "name"
    short_description: str = "specs"
    price: str = "rrp"
    images: bool = True
    categories: bool = True
    attributes: bool = True
    protection: Dict[str, bool] = Field(default_factory=dict)
    custom_patterns: Dict[str, str] = Field(default_factory=dict)

    @field_validator("name", "description", "short_description", "price", mode="before")
    @classmethod
    def _source(cls, v: Any, info: ValidationInfo) -> str:
        default = cls.model_fields[info.field_name].default
        if isinstance(v, str):
            v = v.strip().lower()
        if v in _ENABLED:
            return default
        if v in _DISABLED:
            return "none"
        allowed = PRICE_SOURCES if info.field_name == "price" else TEXT_SOURCES
        if info.field_name == "short_description":
            allowed = allowed + ("specs",)
        if v not in allowed:
            raise ValueError(f"unsupported source {v!r} for {info.field_name}")
        return v

    @field_validator("images", "categories", "attributes", mode="before")
    @classmethod
    def _toggle(cls, v: Any) -> bool:
        if isinstance(v, str):
            v = v.strip().lower()
        if v in _DISABLED:
            return False
        return True

    @field_validator("protection", mode="before")
    @classmethod
    def _flags(cls, v: Any) -> Dict[str, bool]:
        return {str(k): bool(val) and val not in _DISABLED for k, val in (v or {}).items()}

    @classmethod
    def from_options(
        cls,
        sync_fields: Dict[str, Any] | None,
        protection: Dict[str, Any] | None = None,
        custom_patterns: Dict[str, str] | None = None,
    ) -> "SyncFieldConfig":
        data = dict(sync_fields or {})
        if "image" in data and "images" not in data:
            data["images"] = data.pop("image")
        known = {k: data[k] for k in ("name", "description", "short_description", "price",
                                      "images", "categories", "attributes") if k in data}
        return cls(**known, protection=protection or {}, custom_patterns=custom_patterns or {})

    def protected_fields(self) -> set[str]:
        out: set[str] = set()
        for key, on in self.protection.items():
            if on:
                out.update(PROTECTABLE.get(key, ()))
        return out


class TransformedVariation(BaseModel):
    sku: str
    price: float = 0.0
    regular_price: str = "0"
    attributes: List[Dict[str, str]] = Field(default_factory=list)  # [{name, option}]
    manage_stock: bool = False
    stock_quantity: Optional[int] = None
    image: Optional[str] = None
    dimensions: Dict[str, str] = Field(default_factory=dict)
    weight: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "sku": self.sku,
            "regular_price": self.regular_price,
            "attributes": [dict(a) for a in self.attributes],
            "manage_stock": self.manage_stock,
        }
        if self.manage_stock and self.stock_quantity is not None:
            body["stock_quantity"] = self.stock_quantity
        if self.image:
            body["image"] = {"src": self.image}
        if self.weight:
            body["weight"] = self.weight
        if self.dimensions:
            body["dimensions"] = dict(self.dimensions)
        return body


class TransformedProduct(BaseModel):
    sku: str
    reference: str
    status: str = "draft"
    type: str = "simple"
    name: Optional[str] = None
    description: Optional[str] = None
    short_description: Optional[str] = None
    price: Optional[float] = None
    regular_price: Optional[str] = None
    images: Optional[List[Dict[str, Any]]] = None
    categories: Optional[List[int]] = None
    attributes: List[Dict[str, Any]] = Field(default_factory=list)
    variations: List[TransformedVariation] = Field(default_factory=list)
    meta_data: List[Dict[str, Any]] = Field(default_factory=list)

    def to_payload(self, exclude: Iterable[str] = ()) -> Dict[str, Any]:
        """WooCommerce REST body; None fields (source "none") and `exclude` keys are left out."""
        skip = set(exclude)
        body: Dict[str, Any] = {
            "sku": self.sku,
            "status": self.status,
            "type": self.type,
            "manage_stock": False,
            "meta_data": [dict(m) for m in self.meta_data],
        }
        optional = {
            "name": self.name,
            "description": self.description,
            "short_description": self.short_description,
            "regular_price": self.regular_price if self.type == "simple" else None,
            "images": self.images,
            "categories": [{"id": c} for c in self.categories] if self.categories is not None else None,
            "attributes": self.attributes,
        }
        for key, value in optional.items():
            if value is not None and key not in skip:
                body[key] = value
        return {k: v for k, v in body.items() if k not in skip}


def extract_reference_base(reference: str) -> str:
    """Strip a variant suffix (-parent, colour, size, short number) to group related SKUs."""
    if not reference:
        return ""
    m = re.match(r"^(.+)-parent$", reference, re.I)
    if m:
        return m.group(1)
    parts = reference.split("-")
    if len(parts) <= 1:
        return reference
    last = parts[-1].lower()
    colours = {"black", "white", "red", "blue", "green", "yellow", "orange", "purple", "pink",
               "grey", "gray", "negro", "blanco", "rojo", "azul", "verde", "amarillo"}
    sizes = {"xs", "s", "m", "l", "xl", "xxl", "xxxl", "2xl", "3xl"}
    if last in colours or last in sizes or re.fullmatch(r"\d{1,3}", last):
        return "-".join(parts[:-1])
    return reference


class ProductTransformer:
    def __init__(
        self,
        translator: Translator,
        pricing: PricingConverter,
        category_mapping: Dict[str, int] | None = None,
        field_config: SyncFieldConfig | None = None,
        variation_mode: str = "variable",
        category_repository=None,
        create_missing_categories: bool = False,
        stock: Dict[str, int] | None = None,
    ):
        self.translator = translator
        self.pricing = pricing
        self.category_mapping: Dict[str, int] = {str(k): int(v) for k, v in (category_mapping or {}).items()}
        self.fields = field_config or SyncFieldConfig()
        self.variation_mode = variation_mode if variation_mode in ("variable", "simple") else "variable"
        self.category_repository = category_repository
        self.create_missing_categories = create_missing_categories
        self.stock = stock

    # ---- helpers ----

    @staticmethod
    def _prepare(record: Dict[str, Any]) -> Dict[str, Any]:
        p = lower_keys(record)
        variants = [lower_keys(v) for v in (p.get("variants") or []) if isinstance(v, dict)]
        p["variants"] = variants
        # container record: everything lives on the variants
        if is_blank(p.get("reference")) and is_blank(p.get("name")) and variants:
            first = variants[0]
            for key in ("name", "description", "images", "attributes", "reference"):
                if is_blank(p.get(key)) and not is_blank(first.get(key)):
                    p[key] = first[key]
        return p

    async def _text(self, value: Any) -> str:
        if isinstance(value, str):
            return value
        if isinstance(value, dict) and value:
            return await self.translator.translate_multilingual(value)
        return ""

    def _convert(self, amount: float) -> tuple[float, str]:
        if amount <= 0:
            return 0.0, "0"
        converted = self.pricing.convert(amount)
        return converted, self.pricing.format_price(converted)

    async def _pattern(self, p: Dict[str, Any], field: str) -> str:
        pattern = self.fields.custom_patterns.get(field) or ""
        if not pattern:
            return ""
        values: Dict[str, str] = {}
        for token in {t.lower() for t in _TOKEN_RE.findall(pattern)}:
            if token == "price":
                source = self.fields.price if self.fields.price != "none" else "rrp"
                values[token] = self._convert(pick_price(p, source))[1]
                continue
            raw = p.get(token, "")
            values[token] = await self._text(raw) if isinstance(raw, dict) else ("" if raw is None else str(raw))
        return _TOKEN_RE.sub(lambda m: values.get(m.group(1).lower(), ""), pattern)

    async def _source_text(self, p: Dict[str, Any], field: str, source: str) -> Optional[str]:
        if source == "none":
            return None
        if source == "custom":
            return await self._pattern(p, field)
        if source == "reference":
            return str(p.get("reference") or "")
        return await self._text(p.get(source))

    async def _attr_name(self, name: str) -> str:
        formatted = format_attribute_name(name)
        translated = await self.translator.translate(formatted)
        return translated or formatted

    async def _attr_value(self, value: str) -> str:
        if not should_translate_value(value):
            return value
        translated = await self.translator.translate(value)
        return translated or value

    async def _attributes(self, attrs: Any, variation: bool = False) -> List[Dict[str, Any]]:
        out: List[Dict[str, Any]] = []
        for name, raw in iter_attributes(attrs):
            cleaned = await clean_attribute_value(raw, self._text)
            if cleaned is None:
                continue
            value = cleaned if is_brand(name) else await self._attr_value(cleaned)
            out.append({
                "name": await self._attr_name(name),
                "options": [value],
                "visible": True,
                "variation": variation,
            })
        return out

    async def _variation_attributes(self, variants: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        out: List[Dict[str, Any]] = []
        for name, raws in collect_used_attribute_values(variants).items():
            options: List[str] = []
            for raw in raws:
                cleaned = await clean_attribute_value(raw, self._text)
                if cleaned is None:
                    continue
                value = await self._attr_value(cleaned)
                if value not in options:
                    options.append(value)
            if options:
                out.append({
                    "name": await self._attr_name(name),
                    "options": options,
                    "visible": True,
                    "variation": True,
                })
        return out

    @staticmethod
    def _images(images: Any) -> List[Dict[str, Any]]:
        if isinstance(images, (str, dict)):
            images = [images]
        out: List[Dict[str, Any]] = []
        for item in images or []:
            url = ref_of(item)
            if url:
                out.append({"src": url, "position": len(out)})
        return out

    async def _categories(self, refs: Any) -> List[int]:
        ids: List[int] = []
        for item in refs or []:
            ref = ref_of(item)
            if not ref:
                continue
            woo_id = self.category_mapping.get(ref)
            if woo_id is None and self.create_missing_categories and self.category_repository is not None:
                name = lower_keys(item).get("name") if isinstance(item, dict) else None
                woo_id = await self.category_repository.save({
                    "reference": ref,
                    "name": await self._text(name) if name else ref,
                    "parent_reference": None,
                })
                if woo_id:
                    self.category_mapping[ref] = int(woo_id)
            if woo_id is None:
                logger.debug("[TRANSFORM] no category mapping for %s; skipped", ref)
                continue
            if int(woo_id) not in ids:
                ids.append(int(woo_id))
        return ids

    def _stock_for(self, v: Dict[str, Any], sku: str) -> Optional[int]:
        if self.stock is not None and sku in self.stock:
            return int(self.stock[sku])
        if v.get("stock") is not None:
            try:
                return int(float(v["stock"]))
            except (TypeError, ValueError):
                return None
        return None

    async def _variation(self, v: Dict[str, Any]) -> TransformedVariation:
        sku = str(v.get("reference") or "")
        price, regular = self._convert(pick_price(v, "net"))
        var = TransformedVariation(sku=sku, price=price, regular_price=regular)

        stock = self._stock_for(v, sku)
        if stock is not None:
            var.manage_stock = True
            var.stock_quantity = stock

        images = self._images(v.get("images"))
        if images:
            var.image = images[0]["src"]

        for name, raw in iter_attributes(v.get("attributes")):
            cleaned = await clean_attribute_value(raw, self._text)
            if cleaned is None:
                continue
            dim = DIMENSION_ALIASES.get(name.strip().lower())
            if dim == "weight":
                var.weight = cleaned
            elif dim:
                var.dimensions[dim] = cleaned
            var.attributes.append({
                "name": await self._attr_name(name),
                "option": await self._attr_value(cleaned),
            })
        return var

    def _meta(self, p: Dict[str, Any]) -> List[Dict[str, Any]]:
        reference = str(p.get("reference") or "")
        meta = [
            {"key": f"{META_PREFIX}id", "value": str(p.get("id") or "")},
            {"key": f"{META_PREFIX}reference", "value": reference},
            {"key": f"{META_PREFIX}reference_base", "value": extract_reference_base(reference)},
            {"key": f"{META_PREFIX}last_sync", "value": now_stamp()},
        ]
        ean = extract_ean(p.get("description"))
        if ean:
            meta.append({"key": f"{META_PREFIX}ean", "value": ean})
        return meta

    async def _common(self, p: Dict[str, Any]) -> Dict[str, Any]:
        """Fields shared by the variable product and every expanded simple product."""
        cfg = self.fields
        pipe_attrs = extract_pipe_attributes(p.get("description"))
        out: Dict[str, Any] = {
            "status": "publish" if p.get("active") else "draft",
            "name": await self._source_text(p, "name", cfg.name),
            "description": await self._source_text(p, "description", cfg.description),
            "pipe_attrs": pipe_attrs,
            "images": self._images(p.get("images")) if cfg.images else None,
            "categories": await self._categories(p.get("categories")) if cfg.categories else None,
        }
        if cfg.short_description == "specs":
            out["short_description"] = build_specs_table(pipe_attrs) or None
        else:
            out["short_description"] = await self._source_text(p, "short_description", cfg.short_description)
        return out

    # ---- public ----

    async def transform(self, record: Dict[str, Any]) -> TransformedProduct:
        p = self._prepare(record)
        cfg = self.fields
        common = await self._common(p)
        pipe_woo = pipe_attributes_to_woo(common.pop("pipe_attrs"))
        variants = p["variants"]
        reference = str(p.get("reference") or "")

        product = TransformedProduct(
            sku=reference,
            reference=reference,
            type="variable" if variants else "simple",
            meta_data=self._meta(p),
            **common,
        )

        if cfg.price != "none":
            product.price, product.regular_price = self._convert(pick_price(p, cfg.price))

        if variants:
            product.variations = [await self._variation(v) for v in variants]
            product.attributes = pipe_woo + await self._variation_attributes(variants)
        else:
            api_attrs = await self._attributes(p.get("attributes")) if cfg.attributes else []
            product.attributes = api_attrs + pipe_woo
        return product

    async def transform_all(self, record: Dict[str, Any]) -> List[TransformedProduct]:
        """
        In "simple" variation mode a record with variants becomes one simple product per
        variant; otherwise the single transform() result.
        """
        p = self._prepare(record)
        if not p["variants"] or self.variation_mode != "simple":
            return [await self.transform(record)]

        cfg = self.fields
        common = await self._common(p)
        pipe_woo = pipe_attributes_to_woo(common.pop("pipe_attrs"))
        parent_attrs = await self._attributes(p.get("attributes")) if cfg.attributes else []
        group = str(p.get("reference") or "")
        base_name = common.pop("name")

        out: List[TransformedProduct] = []
        for v in p["variants"]:
            sku = str(v.get("reference") or "")
            suffix_values: List[str] = []
            for _, raw in iter_attributes(v.get("attributes")):
                cleaned = await clean_attribute_value(raw, self._text)
                if cleaned:
                    suffix_values.append(cleaned)
            suffix = f" - {', '.join(suffix_values)}" if suffix_values else ""

            meta = self._meta({**p, "reference": sku, "id": v.get("id") or p.get("id")})
            meta += [
                {"key": f"{META_PREFIX}product_group", "value": group},
                {"key": f"{META_PREFIX}variant_id", "value": str(v.get("id") or "")},
            ]
            item = TransformedProduct(
                sku=sku,
                reference=sku,
                type="simple",
                name=(base_name + suffix) if base_name is not None else None,
                meta_data=meta,
                **common,
            )
            if cfg.price != "none":
                item.price, item.regular_price = self._convert(pick_price(v, cfg.price, fallback="net"))
            variant_attrs = await self._attributes(v.get("attributes")) if cfg.attributes else []
            item.attributes = parent_attrs + variant_attrs + pipe_woo
            out.append(item)
        return out

    def translatable_values(self, records: Iterable[Dict[str, Any]]) -> List[Any]:
        """Multilingual values a page will need, for Translator.prefetch()."""
        values: List[Any] = []
        for record in records:
            p = self._prepare(record)
            for key in ("name", "description"):
                if isinstance(p.get(key), dict):
                    values.append(p[key])
        return values
