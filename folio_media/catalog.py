"""Media catalog: asset records, their variants and lifecycle transitions.

Records are kept in memory and, when a catalog directory is configured,
mirrored to one JSON file per asset::

    <catalog_dir>/assets/<asset_id>.json

Each asset has its own lock. The registry lock only guards the lock table and
the id index, so work on one asset never waits on another.

Readers (:meth:`MediaCatalog.get`, :meth:`MediaCatalog.list`,
:meth:`MediaCatalog.find_unoptimized`) only see ``active`` records. Records
that are still being assembled by an upload (``staged``) or that are half-way
through a delete (``deleting``) stay hidden.
"""

from __future__ import annotations

import contextlib
import logging
import os
import tempfile
import threading
import uuid
from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from . import geometry
from .blobstore import BlobStore
from .errors import AlreadyOptimizing, AssetNotFound, BlobDeleteFailed, DuplicateVariant
from .models import (
    AssetLifecycle,
    AssetMeta,
    MediaAsset,
    MediaCategory,
    OptimizationState,
    OptimizationSummary,
    SizeLabel,
    Variant,
    Zone,
    utcnow,
)

logger = logging.getLogger(__name__)

ASSETS_SUBDIR = "assets"

_EDITABLE_FIELDS = {"title", "description", "alt_text", "category", "tags", "is_public"}
_CLAIMABLE_STATES = {OptimizationState.NONE, OptimizationState.PENDING, OptimizationState.FAILED}
_ACTIVE_OPTIMIZATION = {OptimizationState.PENDING, OptimizationState.IN_PROGRESS}
# Formats only served to callers that announce support for them, best first.
_NEGOTIATED_FORMATS = ("avif", "webp")


class CatalogFilter(BaseModel):
    """Criteria for listing assets."""

    category: MediaCategory | None = None
    tags: list[str] = Field(default_factory=list, description="Match assets carrying any of these tags.")
    is_public: bool | None = None
    include_archived: bool = False
    mime_prefix: str | None = None
    limit: int | None = Field(default=None, ge=1)


class CategoryStats(BaseModel):
    count: int = 0
    total_size: int = 0
    average_size: float = 0.0


@dataclass(slots=True)
class ResolvedMedia:
    """Derivative chosen for a caller; ``variant`` is None when the source is served."""

    url: str
    mime_type: str
    variant: Variant | None = None


class MediaCatalog:
    """Thread-safe store of :class:`MediaAsset` records."""

    def __init__(self, blob_store: BlobStore, root: Path | None = None) -> None:
        self._blobs = blob_store
        self._root = Path(root) if root is not None else None
        self._records: dict[str, MediaAsset] = {}
        self._locks: dict[str, threading.RLock] = {}
        self._registry_lock = threading.Lock()
        if self._root is not None:
            self._load()

    # ------------- Creation -------------

    def new_id(self) -> str:
        return uuid.uuid4().hex

    def create(
        self,
        source_bytes: bytes,
        meta: AssetMeta,
        *,
        blob_path: str,
        zones: Iterable[Zone] = (),
        asset_id: str | None = None,
        publish: bool = True,
    ) -> MediaAsset:
        """Register a source blob that has already been written.

        Dimensions and MIME type come from the decoded bytes; declared values
        in ``meta`` are ignored when they disagree. The asset starts without
        variants. With ``publish=False`` it stays hidden until :meth:`publish`.
        """
        image = geometry.decode(source_bytes)
        width, height = image.size
        mime_type = geometry.mime_type_for(geometry.sniff_format(source_bytes))
        if meta.width and meta.height and (meta.width, meta.height) != (width, height):
            logger.info(
                "Declared size %sx%s for %s differs from decoded %sx%s; using decoded size",
                meta.width,
                meta.height,
                meta.original_filename,
                width,
                height,
            )

        asset_id = asset_id or self.new_id()
        now = utcnow()
        record = MediaAsset(
            id=asset_id,
            source_blob_path=blob_path,
            source_url=self._blobs.url_for(blob_path),
            original_filename=meta.original_filename,
            mime_type=mime_type,
            byte_size=len(source_bytes),
            width=width,
            height=height,
            redaction_zones=list(zones),
            lifecycle=AssetLifecycle.ACTIVE if publish else AssetLifecycle.STAGED,
            title=meta.title,
            description=meta.description,
            alt_text=meta.alt_text,
            category=meta.category,
            tags=list(meta.tags),
            is_public=meta.is_public,
            created_at=now,
            updated_at=now,
        )

        with self._hold(asset_id):
            if asset_id in self._records:
                raise ValueError(f"Media ID '{asset_id}' already exists in catalog")
            self._commit(record)
        logger.info("Registered asset %s (%s, %dx%d)", asset_id, mime_type, width, height)
        return record.model_copy(deep=True)

    def publish(self, asset_id: str) -> MediaAsset:
        with self._locked(asset_id) as record:
            if record.lifecycle is AssetLifecycle.DELETING:
                raise AssetNotFound(asset_id)
            updated = record.model_copy(update={"lifecycle": AssetLifecycle.ACTIVE}, deep=True)
            self._commit(updated)
            return updated.model_copy(deep=True)

    def discard(self, asset_id: str) -> None:
        """Drop a staged record without touching blobs (upload rollback)."""
        with self._locked(asset_id) as record:
            if record.lifecycle is not AssetLifecycle.STAGED:
                raise ValueError(f"Asset '{asset_id}' is {record.lifecycle.value}, not staged")
            self._forget(asset_id)

    # ------------- Queries -------------

    def get(self, asset_id: str) -> MediaAsset:
        record = self._records.get(asset_id)
        if record is None or record.lifecycle is not AssetLifecycle.ACTIVE:
            raise AssetNotFound(asset_id)
        return record.model_copy(deep=True)

    def list(self, filter: CatalogFilter | None = None) -> list[MediaAsset]:
        criteria = filter or CatalogFilter()
        matches = [record for record in self._snapshot() if _matches(record, criteria)]
        matches.sort(key=lambda record: record.created_at, reverse=True)
        if criteria.limit is not None:
            matches = matches[: criteria.limit]
        return [record.model_copy(deep=True) for record in matches]

    def find_unoptimized(self, filter: CatalogFilter | None = None) -> list[MediaAsset]:
        """Images that are neither optimized nor already queued or running."""
        criteria = (filter or CatalogFilter()).model_copy()
        limit = criteria.limit
        criteria.limit = None
        results = [
            record
            for record in self.list(criteria)
            if record.is_image
            and record.optimization_state is not OptimizationState.COMPLETED
            and record.optimization_state not in _ACTIVE_OPTIMIZATION
        ]
        return results[:limit] if limit is not None else results

    def resolve(
        self,
        asset_id: str,
        accept: str | Iterable[str] = (),
        size_label: str | SizeLabel | None = None,
    ) -> ResolvedMedia:
        """Pick the URL to serve for an asset given the caller's accepted types.

        Among the variants of ``size_label`` (the optimized ``original``
        re-encodes when omitted) AVIF wins, then WebP, each only when listed
        in ``accept``; otherwise the smallest remaining variant, and finally
        the source itself. ``accept`` is an ``Accept`` header or a list of
        MIME types. Views are only counted for public assets.
        """
        accepted = _accepted_types(accept)
        label = SizeLabel(size_label) if size_label is not None else SizeLabel.ORIGINAL
        with self._locked(asset_id, visible=True) as record:
            chosen = _pick_variant([v for v in record.variants if v.size_label is label], accepted)
            if record.is_public:
                self._commit(_with_view(record))
            if chosen is None:
                source_url = record.source_url or self._blobs.url_for(record.source_blob_path)
                return ResolvedMedia(url=source_url, mime_type=record.mime_type)
            return ResolvedMedia(
                url=chosen.url or self._blobs.url_for(chosen.blob_path),
                mime_type=geometry.mime_type_for(chosen.format),
                variant=chosen.model_copy(),
            )

    def storage_stats(self) -> dict[str, CategoryStats]:
        stats: dict[str, CategoryStats] = {}
        for record in self._snapshot():
            entry = stats.setdefault(record.category.value, CategoryStats())
            entry.count += 1
            entry.total_size += record.byte_size + sum(v.byte_size for v in record.variants)
        for entry in stats.values():
            entry.average_size = entry.total_size / entry.count if entry.count else 0.0
        return stats

    def __len__(self) -> int:
        return len(self._snapshot())

    def __contains__(self, asset_id: object) -> bool:
        record = self._records.get(asset_id) if isinstance(asset_id, str) else None
        return record is not None and record.lifecycle is AssetLifecycle.ACTIVE

    # ------------- Variants -------------

    def add_variant(self, asset_id: str, variant: Variant) -> MediaAsset:
        """Record a variant whose blob has already been written.

        Raises :class:`DuplicateVariant` when the ``(size_label, format)`` pair
        is taken; use :meth:`replace_variant` or :meth:`remove_variant` first.
        """
        with self._locked(asset_id, writable=True) as record:
            if record.get_variant(variant.size_label, variant.format) is not None:
                raise DuplicateVariant(
                    f"Asset '{asset_id}' already has a {variant.size_label.value}/{variant.format} variant"
                )
            updated = record.model_copy(deep=True)
            updated.variants.append(self._with_url(variant))
            self._commit(updated)
            return updated.model_copy(deep=True)

    def remove_variant(self, asset_id: str, size_label: str | SizeLabel, format: str) -> Variant | None:
        """Remove a variant entry and return it; the caller deletes its blob."""
        with self._locked(asset_id, writable=True) as record:
            existing = record.get_variant(size_label, format)
            if existing is None:
                return None
            updated = record.model_copy(deep=True)
            updated.variants = [v for v in updated.variants if v.key != existing.key]
            self._commit(updated)
            return existing.model_copy()

    def replace_variant(self, asset_id: str, variant: Variant) -> Variant | None:
        """Swap the catalog pointer for ``variant``'s key and return the old entry.

        The new blob must already exist and must live at a different path than
        the old one; the caller deletes the old blob after the swap.
        """
        with self._locked(asset_id, writable=True) as record:
            existing = record.get_variant(variant.size_label, variant.format)
            if existing is not None and existing.blob_path == variant.blob_path:
                raise ValueError(f"Replacement for {variant.key} reuses blob path {variant.blob_path}")
            updated = record.model_copy(deep=True)
            replacement = self._with_url(variant)
            if existing is None:
                updated.variants.append(replacement)
            else:
                updated.variants = [
                    replacement if v.key == existing.key else v for v in updated.variants
                ]
            self._commit(updated)
            return existing.model_copy() if existing is not None else None

    # ------------- Descriptive fields -------------

    def update_details(self, asset_id: str, **changes: Any) -> MediaAsset:
        unknown = set(changes) - _EDITABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown media field(s): {', '.join(sorted(unknown))}")
        with self._locked(asset_id, visible=True) as record:
            payload = record.model_dump()
            payload.update(changes)
            updated = MediaAsset.model_validate(payload)
            self._commit(updated)
            return updated.model_copy(deep=True)

    def record_view(self, asset_id: str) -> MediaAsset:
        with self._locked(asset_id, visible=True) as record:
            updated = _with_view(record)
            self._commit(updated)
            return updated.model_copy(deep=True)

    def record_download(self, asset_id: str) -> MediaAsset:
        with self._locked(asset_id, visible=True) as record:
            updated = record.model_copy(deep=True)
            updated.stats.downloads += 1
            updated.stats.last_accessed = utcnow()
            self._commit(updated)
            return updated.model_copy(deep=True)

    def archive(self, asset_id: str) -> MediaAsset:
        return self._set_archived(asset_id, True)

    def restore(self, asset_id: str) -> MediaAsset:
        return self._set_archived(asset_id, False)

    # ------------- Deletion -------------

    def delete(self, asset_id: str) -> bool:
        """Two-phase delete: hide the record, then purge every blob.

        If a blob cannot be removed the record stays in ``deleting`` (still
        hidden) and :class:`BlobDeleteFailed` is raised; the purge is retried
        by a later :meth:`delete` or :meth:`purge_pending_deletes`.
        """
        with self._locked(asset_id) as record:
            if record.lifecycle is AssetLifecycle.STAGED:
                raise AssetNotFound(asset_id)
            if record.lifecycle is AssetLifecycle.ACTIVE:
                marked = record.model_copy(update={"lifecycle": AssetLifecycle.DELETING}, deep=True)
                self._commit(marked)
                logger.info("Marked asset %s for deletion", asset_id)
            self._purge(asset_id)
        return True

    def purge_pending_deletes(self) -> list[str]:
        """Retry every interrupted delete; returns the ids fully purged."""
        purged: list[str] = []
        pending = [
            record.id
            for record in list(self._records.values())
            if record.lifecycle is AssetLifecycle.DELETING
        ]
        for asset_id in pending:
            try:
                with self._locked(asset_id) as record:
                    if record.lifecycle is not AssetLifecycle.DELETING:
                        continue
                    self._purge(asset_id)
            except AssetNotFound:
                continue
            except BlobDeleteFailed as exc:
                logger.warning("Purge of asset %s still failing: %s", asset_id, exc)
                continue
            purged.append(asset_id)
        return purged

    # ------------- Optimization state -------------

    def mark_pending(self, asset_id: str, owner: str) -> MediaAsset:
        """Queue an asset for optimization on behalf of ``owner`` (a job id).

        A run whose lease has expired no longer blocks admission.
        """
        with self._locked(asset_id, visible=True) as record:
            if not record.is_image:
                raise ValueError(f"Asset '{asset_id}' is not an image")
            if record.optimization_state in _ACTIVE_OPTIMIZATION:
                if not _lease_expired(record):
                    raise AlreadyOptimizing(asset_id)
                logger.warning(
                    "Taking over expired optimization lease on %s from %s", asset_id, record.lease_owner
                )
            updated = record.model_copy(
                update={
                    "optimization_state": OptimizationState.PENDING,
                    "lease_owner": owner,
                    "lease_expires_at": None,
                },
                deep=True,
            )
            self._commit(updated)
            return updated.model_copy(deep=True)

    def claim(self, asset_id: str, owner: str, lease_seconds: float) -> MediaAsset:
        """Atomically move an asset to ``inProgress`` under a lease.

        Only ``none``, ``failed`` or ``pending`` (queued by the same owner)
        assets can be claimed, plus ``inProgress`` runs whose lease expired;
        anything else raises :class:`AlreadyOptimizing`.
        """
        with self._locked(asset_id, visible=True) as record:
            state = record.optimization_state
            if state is OptimizationState.IN_PROGRESS and _lease_expired(record):
                logger.warning("Reclaiming %s from expired lease of %s", asset_id, record.lease_owner)
            elif state not in _CLAIMABLE_STATES:
                raise AlreadyOptimizing(
                    asset_id, f"Asset '{asset_id}' cannot be claimed while {state.value}"
                )
            if state is OptimizationState.PENDING and record.lease_owner not in (None, owner):
                raise AlreadyOptimizing(asset_id)
            updated = record.model_copy(
                update={
                    "optimization_state": OptimizationState.IN_PROGRESS,
                    "lease_owner": owner,
                    "lease_expires_at": utcnow() + timedelta(seconds=lease_seconds),
                },
                deep=True,
            )
            self._commit(updated)
            return updated.model_copy(deep=True)

    def renew_lease(self, asset_id: str, owner: str, lease_seconds: float) -> bool:
        """Extend an ``inProgress`` lease; False when the lease was lost."""
        with self._locked(asset_id, writable=True) as record:
            if (
                record.optimization_state is not OptimizationState.IN_PROGRESS
                or record.lease_owner != owner
            ):
                return False
            updated = record.model_copy(
                update={"lease_expires_at": utcnow() + timedelta(seconds=lease_seconds)}, deep=True
            )
            self._commit(updated)
            return True

    def finish_optimization(
        self,
        asset_id: str,
        owner: str,
        *,
        summary: OptimizationSummary | None = None,
        error: str | None = None,
    ) -> MediaAsset | None:
        """Release the lease and record the outcome. Returns None if the lease was lost."""
        with self._locked(asset_id) as record:
            if record.lease_owner != owner or record.optimization_state not in _ACTIVE_OPTIMIZATION:
                logger.warning(
                    "Asset %s no longer leased by %s (state %s); outcome dropped",
                    asset_id,
                    owner,
                    record.optimization_state.value,
                )
                return None
            now = utcnow()
            if error is None:
                outcome = summary or OptimizationSummary()
                update = {
                    "optimization_state": OptimizationState.COMPLETED,
                    "last_optimized_at": now,
                    "optimization": outcome.model_copy(update={"error": None}),
                }
            else:
                previous = record.optimization.model_copy(update={"error": error})
                update = {
                    "optimization_state": OptimizationState.FAILED,
                    "optimization": previous,
                }
            update.update({"lease_owner": None, "lease_expires_at": None})
            updated = record.model_copy(update=update, deep=True)
            self._commit(updated)
            return updated.model_copy(deep=True)

    def sweep_stale_leases(
        self, active_owners: Iterable[str] = (), now: datetime | None = None
    ) -> list[str]:
        """Fail queued or running assets whose owner is gone or whose lease expired."""
        owners = set(active_owners)
        current = now or utcnow()
        swept: list[str] = []
        for record in list(self._records.values()):
            if record.optimization_state not in _ACTIVE_OPTIMIZATION:
                continue
            with self._locked(record.id) as latest:
                if latest.optimization_state not in _ACTIVE_OPTIMIZATION:
                    continue
                expired = _lease_expired(latest, current)
                if latest.lease_owner in owners and not expired:
                    continue
                reason = "lease expired" if expired else "no active worker owns this asset"
                updated = latest.model_copy(
                    update={
                        "optimization_state": OptimizationState.FAILED,
                        "optimization": latest.optimization.model_copy(
                            update={"error": f"Optimization interrupted: {reason}"}
                        ),
                        "lease_owner": None,
                        "lease_expires_at": None,
                    },
                    deep=True,
                )
                self._commit(updated)
                swept.append(latest.id)
                logger.warning("Released stale optimization lease on %s (%s)", latest.id, reason)
        return swept

    # ------------- Internals -------------

    def _lock_for(self, asset_id: str) -> threading.RLock:
        with self._registry_lock:
            lock = self._locks.get(asset_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[asset_id] = lock
            return lock

    @contextlib.contextmanager
    def _hold(self, asset_id: str) -> Iterator[None]:
        """Acquire the asset lock, retrying if its entry was retired while waiting."""
        while True:
            lock = self._lock_for(asset_id)
            lock.acquire()
            with self._registry_lock:
                current = self._locks.get(asset_id)
            if current is lock:
                break
            lock.release()
        try:
            yield
        finally:
            lock.release()

    @contextlib.contextmanager
    def _locked(
        self, asset_id: str, *, visible: bool = False, writable: bool = False
    ) -> Iterator[MediaAsset]:
        """Hold the asset lock and yield the current record.

        ``visible`` requires an active record; ``writable`` accepts staged or
        active records but never one that is being deleted.
        """
        with self._hold(asset_id):
            record = self._records.get(asset_id)
            if record is None:
                raise AssetNotFound(asset_id)
            if visible and record.lifecycle is not AssetLifecycle.ACTIVE:
                raise AssetNotFound(asset_id)
            if writable and record.lifecycle is AssetLifecycle.DELETING:
                raise AssetNotFound(asset_id)
            yield record

    def _snapshot(self) -> list[MediaAsset]:
        return [
            record
            for record in list(self._records.values())
            if record.lifecycle is AssetLifecycle.ACTIVE
        ]

    def _with_url(self, variant: Variant) -> Variant:
        if variant.url:
            return variant.model_copy()
        return variant.model_copy(update={"url": self._blobs.url_for(variant.blob_path)})

    def _set_archived(self, asset_id: str, archived: bool) -> MediaAsset:
        with self._locked(asset_id, visible=True) as record:
            updated = record.model_copy(
                update={"archived": archived, "archived_at": utcnow() if archived else None},
                deep=True,
            )
            self._commit(updated)
            return updated.model_copy(deep=True)

    def _purge(self, asset_id: str) -> None:
        record = self._records[asset_id]
        failures: list[BlobDeleteFailed] = []
        for path in record.blob_paths:
            try:
                self._blobs.delete(path)
            except BlobDeleteFailed as exc:
                failures.append(exc)
        if failures:
            logger.warning(
                "Asset %s left in deleting state; %d blob(s) could not be removed",
                asset_id,
                len(failures),
            )
            first = failures[0]
            raise BlobDeleteFailed(first.path, f"Could not purge asset '{asset_id}': {first}")
        self._forget(asset_id)
        logger.info("Deleted asset %s and %d blob(s)", asset_id, len(record.blob_paths))

    def _commit(self, record: MediaAsset) -> None:
        record.updated_at = utcnow()
        if self._root is not None:
            write_record(self._record_path(record.id), record)
        self._records[record.id] = record

    def _forget(self, asset_id: str) -> None:
        self._records.pop(asset_id, None)
        with self._registry_lock:
            self._locks.pop(asset_id, None)
        if self._root is not None:
            with contextlib.suppress(FileNotFoundError):
                self._record_path(asset_id).unlink()

    def _record_path(self, asset_id: str) -> Path:
        assert self._root is not None
        return self._root / ASSETS_SUBDIR / f"{asset_id}.json"

    def _load(self) -> None:
        assert self._root is not None
        directory = self._root / ASSETS_SUBDIR
        if not directory.exists():
            return
        for path in sorted(directory.glob("*.json")):
            try:
                record = MediaAsset.model_validate_json(path.read_text(encoding="utf-8"))
            except (OSError, ValidationError) as exc:
                logger.warning("Skipping malformed asset record '%s': %s", path.name, exc)
                continue
            if record.lifecycle is AssetLifecycle.STAGED:
                # An upload died before publishing; its blobs must be purged.
                record.lifecycle = AssetLifecycle.DELETING
                write_record(path, record)
                logger.warning("Found interrupted upload %s; scheduled for purge", record.id)
            self._records[record.id] = record
        logger.debug("Loaded %d asset record(s) from %s", len(self._records), directory)


def _accepted_types(accept: str | Iterable[str]) -> set[str]:
    entries = accept.split(",") if isinstance(accept, str) else accept
    return {entry.split(";")[0].strip().lower() for entry in entries if entry.strip()}


def _pick_variant(candidates: list[Variant], accepted: set[str]) -> Variant | None:
    for fmt in _NEGOTIATED_FORMATS:
        if geometry.mime_type_for(fmt) in accepted:
            match = next((v for v in candidates if v.format == fmt), None)
            if match is not None:
                return match
    fallback = [v for v in candidates if v.format not in _NEGOTIATED_FORMATS]
    return min(fallback, key=lambda v: v.byte_size) if fallback else None


def _with_view(record: MediaAsset) -> MediaAsset:
    updated = record.model_copy(deep=True)
    updated.stats.views += 1
    updated.stats.last_accessed = utcnow()
    return updated


def _lease_expired(record: MediaAsset, now: datetime | None = None) -> bool:
    return (
        record.optimization_state is OptimizationState.IN_PROGRESS
        and record.lease_expires_at is not None
        and record.lease_expires_at < (now or utcnow())
    )


def _matches(record: MediaAsset, criteria: CatalogFilter) -> bool:
    if record.archived and not criteria.include_archived:
        return False
    if criteria.category is not None and record.category is not criteria.category:
        return False
    if criteria.is_public is not None and record.is_public != criteria.is_public:
        return False
    if criteria.tags and not set(criteria.tags) & set(record.tags):
        return False
    if criteria.mime_prefix and not record.mime_type.startswith(criteria.mime_prefix):
        return False
    return True


def write_record(path: Path, record: BaseModel) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=".tmp-", suffix=".json", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(record.model_dump_json(indent=2))
            handle.write("\n")
        os.replace(tmp_name, path)
    except BaseException:
        with contextlib.suppress(FileNotFoundError):
            os.unlink(tmp_name)
        raise
