#==========================================================================================
# importer/sync/orchestrator.py
# Resumable, page-at-a-time catalog import.
#
#   start()  -> creates the run (status=running) and its history row
#   tick()   -> processes at most one vendor page; the worker calls it repeatedly
#   pause()/resume()/cancel() -> operator signals, honoured between records
#
# Progress lives in sync_state (compare-and-swap on a version column), so the
# operator's signal and the tick's cursor updates never overwrite each other.
#==========================================================================================
from __future__ import annotations

import logging
import uuid
from collections import defaultdict
from typing import Any, Dict, List, Optional

from importer.config import settings
from importer.errors import (
    ConfigurationError,
    ImporterError,
    ProfileNotFound,
    SyncAlreadyRunning,
    SyncStateError,
    UpstreamError,
)
from importer.factory import ServiceFactory, SyncPipeline
from importer.models.profile import SyncProfile
from importer.sync.components.util import lower_keys
from importer.sync.state import (
    FAILED,
    COMPLETED,
    IDLE,
    PAUSED,
    PAUSING,
    RUNNING,
    STOPPED,
    STOPPING,
    TICKABLE_STATUSES,
    SyncProgress,
    stamp,
)
from importer.translation.translator import VENDOR_LANGUAGE, normalize_lang, pick_source_text

logger = logging.getLogger("uvicorn.error")

LOCK_SCOPES = ("global", "profile")
PREVIEW_LIMIT = 5


def _message(e: Exception) -> str:
    return e.message if isinstance(e, ImporterError) else str(e)


def _counters(p: SyncProgress) -> Dict[str, int]:
    return {"processed": p.processed, "created": p.created, "updated": p.updated, "failed": p.failed}


def build_filters(cfg, since: Optional[str] = None) -> Dict[str, Any]:
    """Vendor filters for a run: the profile's, plus NewerThan and the default Active=1."""
    filters = dict(cfg.get_api_filters())
    if since:
        filters["NewerThan"] = since
    if "active" not in filters:
        filters["Active"] = 1
    return filters


class SyncOrchestrator:
    def __init__(
        self,
        factory: ServiceFactory | None = None,
        lock_scope: str | None = None,
        page_size: int | None = None,
        max_pages: int | None = None,
        page_retries: int | None = None,
    ):
        self.factory = factory or ServiceFactory()
        scope = (lock_scope or settings.SYNC_LOCK_SCOPE or "global").strip().lower()
        self.lock_scope = scope if scope in LOCK_SCOPES else "global"
        self.page_size = page_size or settings.VENDOR_PAGE_SIZE
        self.max_pages = max_pages or settings.SYNC_MAX_PAGES
        self.page_retries = settings.SYNC_PAGE_RETRIES if page_retries is None else page_retries
        self.tick_lease = settings.SYNC_TICK_LEASE

        self.state = self.factory.state_store()
        self.history = self.factory.history()
        self.sync_log = self.factory.sync_log()
        self.profiles = self.factory.profiles()
        self.config = self.factory.config_store()

    # ---- keys / lookup ----

    def _key_for(self, profile_id: Optional[int]) -> str:
        if self.lock_scope == "profile":
            return f"sync:profile:{profile_id}"
        return "sync:global"

    async def _resolve_profile(self, profile_id: Optional[int]) -> SyncProfile:
        if profile_id:
            profile = await self.profiles.find(profile_id)
            if profile is None:
                raise ProfileNotFound(profile_id)
            return profile
        return await self.profiles.find_default()

    async def _key(self, profile_id: Optional[int]) -> str:
        if self.lock_scope == "global":
            return self._key_for(None)
        return self._key_for((await self._resolve_profile(profile_id)).id)

    async def _log(self, level: str, message: str, progress: SyncProgress, sku: str | None = None) -> None:
        await self.sync_log.log(
            level, message, sku=sku, batch_id=progress.sync_id or None, profile_id=progress.profile_id
        )

    # ---- lifecycle ----

    async def start(
        self,
        profile_id: Optional[int] = None,
        limit: Optional[int] = None,
        incremental: bool = False,
        resume: bool = False,
    ) -> SyncProgress:
        profile = await self._resolve_profile(profile_id)
        key = self._key_for(profile.id)
        cfg = await self.factory.profile_configuration(profile.id)

        loaded = await self.state.load(key)
        previous = loaded[1] if loaded else None
        if previous is not None and previous.is_active:
            raise SyncAlreadyRunning(previous.sync_id, previous.status)

        resumed = bool(
            resume
            and previous is not None
            and previous.status in (STOPPED, FAILED)
            and previous.profile_id == profile.id
        )
        if resumed:
            progress = previous.model_copy(update={
                "status": RUNNING,
                "error": None,
                "page_attempts": 0,
                "paused_at": None,
                "completed_at": None,
                "tick_owner": None,
                "tick_started": None,
            })
        else:
            since = cfg.get_last_sync() if incremental else None
            if incremental and not since:
                logger.info("[SYNC] no previous sync for profile %s; running a full sync", profile.id)
            test_limit = cfg.get_test_limit() if limit is None else limit
            progress = SyncProgress(
                sync_id=uuid.uuid4().hex,
                profile_id=profile.id,
                scope=self.lock_scope,
                status=RUNNING,
                sync_type="incremental" if since else "full",
                limit=max(0, int(test_limit or 0)),
                since=since,
                started_at=stamp(),
            )

        if loaded is None:
            ok = await self.state.create_if_absent(key, progress)
        else:
            ok = await self.state.compare_and_swap(key, loaded[0], progress)
        if not ok:
            current = await self.state.load(key)
            winner = current[1] if current else progress
            raise SyncAlreadyRunning(winner.sync_id, winner.status)

        if resumed:
            await self.history.resume(progress.sync_id)
            await self._log("info", f"Sync resumed at page {progress.page}, offset {progress.offset}", progress)
        else:
            await self.history.create(progress.sync_id, progress.sync_type, profile.id)
            detail = f" since {progress.since}" if progress.since else ""
            limit_note = f" (limit {progress.limit})" if progress.limit else ""
            await self._log(
                "info",
                f'Started {progress.sync_type} sync for profile "{profile.name}"{detail}{limit_note}',
                progress,
            )
        return progress

    async def status(self, profile_id: Optional[int] = None) -> SyncProgress:
        key = await self._key(profile_id)
        loaded = await self.state.load(key)
        if loaded is None:
            return SyncProgress(scope=self.lock_scope, profile_id=profile_id, status=IDLE)
        return loaded[1]

    async def pause(self, profile_id: Optional[int] = None) -> SyncProgress:
        key = await self._key(profile_id)

        def _request(p: SyncProgress):
            if p.status in (PAUSING, PAUSED):
                return None
            if p.status != RUNNING:
                raise SyncStateError(f"Cannot pause a sync that is {p.status}")
            p.status = PAUSING
            return p

        progress = await self.state.update(key, _request)
        if progress is None:
            raise SyncStateError("No sync to pause")
        logger.info("[SYNC] pause requested for %s", progress.sync_id)
        return progress

    async def resume(self, profile_id: Optional[int] = None) -> SyncProgress:
        key = await self._key(profile_id)
        was: Dict[str, str] = {}

        def _request(p: SyncProgress):
            if p.status not in (PAUSED, PAUSING):
                raise SyncStateError(f"Cannot resume a sync that is {p.status}")
            was["status"] = p.status
            p.status = RUNNING
            p.paused_at = None
            return p

        progress = await self.state.update(key, _request)
        if progress is None:
            raise SyncStateError("No sync to resume")
        if was.get("status") == PAUSED:
            await self.history.resume(progress.sync_id)
        await self._log("info", "Sync resumed by user request", progress)
        return progress

    async def cancel(self, profile_id: Optional[int] = None) -> SyncProgress:
        key = await self._key(profile_id)

        def _request(p: SyncProgress):
            if p.status == STOPPING:
                return None
            if p.status not in (RUNNING, PAUSING, PAUSED):
                raise SyncStateError(f"Cannot cancel a sync that is {p.status}")
            p.status = STOPPING
            return p

        progress = await self.state.update(key, _request)
        if progress is None:
            raise SyncStateError("No sync to cancel")
        logger.info("[SYNC] cancel requested for %s", progress.sync_id)
        if progress.paused_at is not None:
            # no tick is in flight for a paused run; finish the stop here
            return await self._finish_stopped(key, progress)
        return progress

    # ---- terminal transitions ----

    async def _finish(self, key: str, progress: SyncProgress, status: str, error: str | None = None) -> SyncProgress:
        sync_id = progress.sync_id

        def _set(p: SyncProgress):
            if p.sync_id != sync_id:
                return None
            p.status = status
            p.completed_at = stamp()
            if error is not None:
                p.error = error
            return p

        return await self.state.update(key, _set) or progress

    async def _complete(self, key: str, progress: SyncProgress) -> SyncProgress:
        done = await self._finish(key, progress, COMPLETED)
        await self.history.complete(done.sync_id, **_counters(done))
        # the run's start time: records changed while it ran are picked up next time
        last_sync = (done.started_at or stamp())[:19]
        if done.profile_id:
            await self.profiles.update_last_sync(done.profile_id, last_sync)
        await self.config.update_last_sync(last_sync)
        await self._log(
            "success",
            f"Sync finished. Total processed: {done.processed} "
            f"(created {done.created}, updated {done.updated}, failed {done.failed})",
            done,
        )
        return done

    async def _fail(self, key: str, progress: SyncProgress, reason: str) -> SyncProgress:
        done = await self._finish(key, progress, FAILED, error=reason)
        await self.history.fail(done.sync_id, reason, **_counters(done))
        await self._log("error", f"Sync failed: {reason}", done)
        return done

    async def _finish_stopped(self, key: str, progress: SyncProgress) -> SyncProgress:
        done = await self._finish(key, progress, STOPPED)
        await self.history.stop(done.sync_id, **_counters(done))
        await self._log("info", "Sync stopped by user request", done)
        return done

    async def _finish_paused(self, key: str, progress: SyncProgress) -> SyncProgress:
        sync_id = progress.sync_id

        def _set(p: SyncProgress):
            if p.sync_id != sync_id or p.status != PAUSING:
                return None
            p.status = PAUSED
            p.paused_at = stamp()
            return p

        done = await self.state.update(key, _set) or progress
        if done.status == PAUSED:
            await self.history.pause(done.sync_id)
            await self._log("info", f"Sync paused at page {done.page}, offset {done.offset}", done)
        return done

    async def _settle(self, key: str, progress: SyncProgress) -> Optional[SyncProgress]:
        """Honour a pending pause/cancel. None means the run keeps going."""
        if progress.status == STOPPING:
            return await self._finish_stopped(key, progress)
        if progress.status == PAUSING:
            return await self._finish_paused(key, progress)
        if progress.status != RUNNING:
            return progress
        return None

    # ---- tick ----

    async def _acquire_lease(self, key: str, owner: str) -> tuple[bool, Optional[SyncProgress]]:
        taken: Dict[str, bool] = {}

        def _take(p: SyncProgress):
            taken.clear()  # a lost swap is retried on a fresh read
            if p.status not in TICKABLE_STATUSES or p.lease_held(self.tick_lease):
                return None
            p.tick_owner = owner
            p.tick_started = stamp()
            taken["ok"] = True
            return p

        progress = await self.state.update(key, _take)
        return bool(taken), progress

    async def _release_lease(self, key: str, owner: str) -> None:
        def _drop(p: SyncProgress):
            if p.tick_owner != owner:
                return None
            p.tick_owner = None
            p.tick_started = None
            return p

        await self.state.update(key, _drop)

    async def tick(self, profile_id: Optional[int] = None) -> SyncProgress:
        key = await self._key(profile_id)
        owner = uuid.uuid4().hex
        leased, progress = await self._acquire_lease(key, owner)
        if progress is None:
            return SyncProgress(scope=self.lock_scope, profile_id=profile_id, status=IDLE)
        if not leased:
            if progress.status in TICKABLE_STATUSES:
                logger.info("[SYNC] %s is being worked by another tick; skipping", progress.sync_id)
            return progress
        try:
            settled = await self._settle(key, progress)
            if settled is not None:
                return settled
            try:
                return await self._process_page(key, progress)
            except Exception as e:
                logger.exception("[SYNC] tick failed for %s", progress.sync_id)
                return await self._fail(key, progress, _message(e))
        finally:
            await self._release_lease(key, owner)

    async def run_to_completion(self, profile_id: Optional[int] = None, max_ticks: int = 1000) -> SyncProgress:
        progress = await self.status(profile_id)
        for _ in range(max_ticks):
            if progress.status not in (RUNNING, PAUSING, STOPPING):
                break
            progress = await self.tick(profile_id)
        return progress

    async def _process_page(self, key: str, progress: SyncProgress) -> SyncProgress:
        if progress.limit and progress.processed >= progress.limit:
            await self._log("info", f"Limit of {progress.limit} products reached", progress)
            return await self._complete(key, progress)
        if progress.page >= self.max_pages:
            await self._log("error", f"Safety stop: max pages ({self.max_pages}) reached. Stopping.", progress)
            return await self._complete(key, progress)

        try:
            pipeline = await self.factory.pipeline(progress.profile_id)
        except (ConfigurationError, ProfileNotFound) as e:
            return await self._fail(key, progress, e.message)

        if not progress.categories_synced:
            await self._sync_categories(pipeline, progress)

            def _mark(p: SyncProgress):
                p.categories_synced = True
                return p

            progress = await self.state.update(key, _mark)
            settled = await self._settle(key, progress)
            if settled is not None:
                return settled

        page = progress.page
        try:
            filters = build_filters(pipeline.config, progress.since)
            records = await pipeline.catalog.list_products(page, self.page_size, filters)
        except UpstreamError as e:
            return await self._page_failed(key, progress, e)

        name = pipeline.config.get_profile_name()
        if not records:
            await self._log("info", f'No products returned for profile "{name}" on page {page}. Done.', progress)
            return await self._complete(key, progress)

        full_page = len(records) >= self.page_size
        pending = records[progress.offset:]
        if progress.limit:
            remaining = progress.limit - progress.processed
            if len(pending) > remaining:
                pending = pending[:remaining]
                await self._log("info", f"Limit reached. Truncating batch to {remaining} items.", progress)

        await self._log(
            "info",
            f'Processing batch for profile "{name}". Page: {page}. Products found: {len(records)}',
            progress,
        )

        if settings.SYNC_STOCK and pipeline.transformer.stock is None:
            try:
                pipeline.transformer.stock = await pipeline.catalog.get_stock()
            except UpstreamError as e:
                await self._log("warning", f"Stock feed unavailable: {e.message}", progress)

        await pipeline.translator.prefetch(pipeline.transformer.translatable_values(pending))
        protected = pipeline.transformer.fields.protected_fields()

        sync_id = progress.sync_id
        start_offset = progress.offset
        for i, record in enumerate(pending):
            outcome = await self._process_record(pipeline, record, protected, progress)

            def _advance(p: SyncProgress, _offset=start_offset + i + 1, _outcome=outcome):
                if p.sync_id != sync_id:
                    return None
                p.offset = _offset
                p.page_attempts = 0
                p.tick_started = stamp()
                p.processed += 1
                if _outcome == "created":
                    p.created += 1
                elif _outcome == "updated":
                    p.updated += 1
                else:
                    p.failed += 1
                return p

            progress = await self.state.update(key, _advance)
            await self.history.update(sync_id, **_counters(progress))
            settled = await self._settle(key, progress)
            if settled is not None:
                return settled

        if progress.limit and progress.processed >= progress.limit:
            return await self._complete(key, progress)
        if not full_page:
            return await self._complete(key, progress)

        def _next_page(p: SyncProgress):
            if p.sync_id != sync_id:
                return None
            p.page = page + 1
            p.offset = 0
            p.page_attempts = 0
            p.error = None
            return p

        progress = await self.state.update(key, _next_page)
        return await self._settle(key, progress) or progress

    async def _page_failed(self, key: str, progress: SyncProgress, e: UpstreamError) -> SyncProgress:
        attempts = progress.page_attempts + 1
        if attempts > self.page_retries:
            await self._log(
                "error", f"Batch error (page {progress.page}) after {attempts} attempts: {e.message}", progress
            )
            return await self._fail(key, progress, e.message)

        sync_id = progress.sync_id

        def _retry(p: SyncProgress):
            if p.sync_id != sync_id:
                return None
            p.page_attempts = attempts
            p.error = e.message
            return p

        await self._log(
            "warning",
            f"Page {progress.page} failed ({e.message}); retrying on the next tick "
            f"(attempt {attempts}/{self.page_retries})",
            progress,
        )
        return await self.state.update(key, _retry) or progress

    async def _process_record(
        self, pipeline: SyncPipeline, record: Dict[str, Any], protected: set, progress: SyncProgress
    ) -> str:
        low = lower_keys(record) if isinstance(record, dict) else {}
        sku = str(low.get("reference") or "").strip() or None
        try:
            products = await pipeline.transformer.transform_all(record)
            created_any = False
            for product in products:
                if not product.reference:
                    raise ValueError("record has no reference")
                _, created = await pipeline.products.save(product, protected)
                created_any = created_any or created
            return "created" if created_any else "updated"
        except Exception as e:
            # one bad record never aborts the page
            await self._log("error", f"Failed to sync product: {_message(e)}", progress, sku=sku)
            return "failed"

    # ---- categories ----

    async def _sync_categories(self, pipeline: SyncPipeline, progress: SyncProgress) -> int:
        await self._log("info", "Syncing categories before products...", progress)
        try:
            raw = await pipeline.catalog.list_all_categories(settings.VENDOR_MAX_LIST_PAGES)
        except UpstreamError as e:
            await self._log("error", f"Failed to sync categories: {e.message}", progress)
            return 0

        rows: List[Dict[str, Any]] = []
        by_lang: Dict[str, List[int]] = defaultdict(list)
        texts: Dict[int, str] = {}
        target = pipeline.translator.target_language
        for cat in raw:
            if not isinstance(cat, dict):
                continue
            low = lower_keys(cat)
            reference = str(low.get("reference") or "").strip()
            if not reference:
                continue
            parent = low.get("parentreference") or low.get("parent_reference") or low.get("parent")
            if isinstance(parent, dict):
                parent = lower_keys(parent).get("reference")
            rows.append({
                "reference": reference,
                "name": reference,
                "parent_reference": str(parent).strip() if parent else None,
            })

            value = low.get("name")
            if isinstance(value, str):
                text, lang, verbatim = value.strip(), VENDOR_LANGUAGE, False
            else:
                text, lang, verbatim = pick_source_text(value, target)
            if not text:
                continue
            if verbatim:
                rows[-1]["name"] = text
                continue
            texts[len(rows) - 1] = text
            by_lang[normalize_lang(lang or VENDOR_LANGUAGE)].append(len(rows) - 1)

        # one batch per source language
        for lang, indexes in by_lang.items():
            translated = await pipeline.translator.translate_batch([texts[i] for i in indexes], lang)
            for i, name in zip(indexes, translated):
                rows[i]["name"] = name or rows[i]["reference"]

        saved = 0
        for row in rows:
            try:
                await pipeline.categories.save(row)
                saved += 1
            except ImporterError as e:
                await self._log("warning", f"Category {row['reference']} not saved: {e.message}", progress)
        relinked = await pipeline.categories.relink_parents(rows)

        # products of this tick must see the ids created above
        pipeline.config.global_category_mappings = await self.factory.mappings().get_combined()
        pipeline.transformer.category_mapping = pipeline.config.get_category_mappings()
        await self._log(
            "info",
            f"Categories synced: {saved} categories created/updated" + (f", {relinked} re-linked" if relinked else ""),
            progress,
        )
        return saved

    # ---- preview ----

    async def preview(self, profile_id: Optional[int] = None, limit: int = PREVIEW_LIMIT) -> Dict[str, Any]:
        """Dry run over the first page: transformed payloads, nothing written to the store."""
        pipeline = await self.factory.pipeline(profile_id)
        pipeline.transformer.create_missing_categories = False
        records = await pipeline.catalog.list_products(0, self.page_size, build_filters(pipeline.config))
        sample = records[: max(1, int(limit))]
        await pipeline.translator.prefetch(pipeline.transformer.translatable_values(sample))

        items: List[Dict[str, Any]] = []
        for record in sample:
            low = lower_keys(record) if isinstance(record, dict) else {}
            try:
                products = await pipeline.transformer.transform_all(record)
                items.append({
                    "reference": low.get("reference"),
                    "ok": True,
                    "products": [p.to_payload() for p in products],
                })
            except Exception as e:
                items.append({"reference": low.get("reference"), "ok": False, "error": _message(e)})
        return {
            "profile_id": pipeline.config.get_profile_id(),
            "profile": pipeline.config.get_profile_name(),
            "fetched": len(records),
            "count": len(items),
            "items": items,
        }
