"""Background batch optimization of catalog assets.

A job re-encodes a fixed set of assets into one or more formats at their
existing dimensions. Each job gets its own bounded thread pool; a failing
asset is recorded on the job and never stops the others.

Job records are kept in memory and, when a catalog directory is configured,
mirrored to ``<catalog_dir>/jobs/<job_id>.json`` so that :meth:`recover` can
settle jobs interrupted by a restart.
"""

from __future__ import annotations

import contextlib
import logging
import threading
import uuid
from collections.abc import Iterable, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from . import geometry, variants
from .blobstore import BlobStore
from .catalog import CatalogFilter, MediaCatalog, write_record
from .errors import AlreadyOptimizing, AssetNotFound, BlobDeleteFailed, JobNotFound, MediaError
from .models import (
    AssetJobStatus,
    AssetProgress,
    JobStatus,
    OptimizationJob,
    OptimizationSummary,
    SizeLabel,
    Variant,
    utcnow,
)

logger = logging.getLogger(__name__)

JOBS_SUBDIR = "jobs"
MIN_QUALITY = 60
MAX_QUALITY = 100
INTERRUPTED_ERROR = "Interrupted before completion"


@dataclass(slots=True)
class SubmitResult:
    """Outcome of a submission: the job id plus admitted and refused assets."""

    job_id: str
    admitted: list[str] = field(default_factory=list)
    rejected: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class RecoveryResult:
    interrupted_jobs: list[str] = field(default_factory=list)
    released_assets: list[str] = field(default_factory=list)


class OptimizationScheduler:
    """Owns the job table and the worker pools that process it."""

    def __init__(
        self,
        catalog: MediaCatalog,
        blob_store: BlobStore,
        *,
        root: Path | None = None,
        default_concurrency: int = 5,
        lease_seconds: float = 300.0,
    ) -> None:
        self._catalog = catalog
        self._blobs = blob_store
        self._root = Path(root) if root is not None else None
        self._default_concurrency = default_concurrency
        self._lease_seconds = lease_seconds
        self._jobs: dict[str, OptimizationJob] = {}
        self._done: dict[str, threading.Event] = {}
        self._executors: dict[str, ThreadPoolExecutor] = {}
        self._lock = threading.Lock()
        self._persist_lock = threading.Lock()
        if self._root is not None:
            self._load()

    # ------------- Submission -------------

    def submit(
        self,
        asset_ids: Iterable[str],
        formats: Sequence[str],
        quality: int,
        concurrency: int | None = None,
    ) -> SubmitResult:
        """Admit assets into a new job and start processing them.

        Unknown assets and assets already queued or running elsewhere are
        reported in ``rejected``; the rest are admitted. Invalid formats or
        quality reject the whole request.
        """
        normalized = _normalize_formats(formats)
        if not MIN_QUALITY <= int(quality) <= MAX_QUALITY:
            raise ValueError(f"Quality must be between {MIN_QUALITY} and {MAX_QUALITY}, got {quality}")
        workers = self._default_concurrency if concurrency is None else int(concurrency)
        if workers < 1:
            raise ValueError(f"Concurrency must be at least 1, got {concurrency}")

        job_id = uuid.uuid4().hex
        admitted: list[str] = []
        rejected: dict[str, str] = {}
        for asset_id in asset_ids:
            if asset_id in admitted or asset_id in rejected:
                continue
            try:
                self._catalog.mark_pending(asset_id, owner=job_id)
            except AssetNotFound:
                rejected[asset_id] = "not found"
            except (AlreadyOptimizing, ValueError) as exc:
                rejected[asset_id] = str(exc)
            else:
                admitted.append(asset_id)

        job = OptimizationJob(
            job_id=job_id,
            asset_ids=admitted,
            formats=normalized,
            quality=int(quality),
            concurrency=workers,
            per_asset_status={asset_id: AssetProgress() for asset_id in admitted},
            rejected=rejected,
        )
        with self._lock:
            self._jobs[job_id] = job
            self._done[job_id] = threading.Event()

        logger.info(
            "Job %s admitted %d asset(s), rejected %d (formats=%s, quality=%d, concurrency=%d)",
            job_id,
            len(admitted),
            len(rejected),
            ",".join(normalized),
            quality,
            workers,
        )
        if not admitted:
            self._finish_job(job_id, JobStatus.COMPLETED)
            return SubmitResult(job_id=job_id, admitted=[], rejected=rejected)

        self._start(job_id, admitted, workers)
        return SubmitResult(job_id=job_id, admitted=admitted, rejected=rejected)

    def submit_unoptimized(
        self,
        filter: CatalogFilter | None = None,
        formats: Sequence[str] | None = None,
        quality: int = 85,
        concurrency: int | None = None,
    ) -> SubmitResult:
        """Queue every image the catalog reports as not yet optimized."""
        candidates = [asset.id for asset in self._catalog.find_unoptimized(filter)]
        return self.submit(candidates, formats or ["webp"], quality, concurrency)

    # ------------- Queries -------------

    def status(self, job_id: str) -> OptimizationJob:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise JobNotFound(job_id)
            return job.model_copy(deep=True)

    def list_jobs(self, active_only: bool = False) -> list[OptimizationJob]:
        with self._lock:
            jobs = [
                job.model_copy(deep=True)
                for job in self._jobs.values()
                if not (active_only and job.is_terminal)
            ]
        jobs.sort(key=lambda job: job.created_at, reverse=True)
        return jobs

    def stats(self) -> dict[str, int]:
        counts = {status.value: 0 for status in JobStatus}
        with self._lock:
            for job in self._jobs.values():
                counts[job.status.value] += 1
        return counts

    def active_owners(self) -> set[str]:
        with self._lock:
            return {job_id for job_id, job in self._jobs.items() if not job.is_terminal}

    def wait(self, job_id: str, timeout: float | None = None) -> OptimizationJob:
        """Block until the job is terminal or ``timeout`` elapses; returns its status."""
        with self._lock:
            event = self._done.get(job_id)
        if event is None:
            raise JobNotFound(job_id)
        event.wait(timeout)
        return self.status(job_id)

    # ------------- Lifecycle -------------

    def recover(self) -> RecoveryResult:
        """Settle jobs left unfinished by a previous process and release stale leases."""
        result = RecoveryResult()
        now = utcnow()
        with self._lock:
            for job_id, job in self._jobs.items():
                if job.is_terminal or job_id in self._executors:
                    continue
                for entry in job.per_asset_status.values():
                    if entry.status.is_terminal:
                        continue
                    entry.status = AssetJobStatus.FAILED
                    entry.error = INTERRUPTED_ERROR
                    entry.completed_at = now
                result.interrupted_jobs.append(job_id)

        for job_id in result.interrupted_jobs:
            logger.warning("Job %s was interrupted; unfinished assets marked failed", job_id)
            self._finish_job(job_id, JobStatus.COMPLETED)

        result.released_assets = self._catalog.sweep_stale_leases(self.active_owners())
        return result

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            executors = list(self._executors.values())
        for executor in executors:
            executor.shutdown(wait=wait)

    # ------------- Workers -------------

    def _start(self, job_id: str, asset_ids: list[str], workers: int) -> None:
        executor = ThreadPoolExecutor(
            max_workers=min(workers, len(asset_ids)),
            thread_name_prefix=f"optimize-{job_id[:8]}",
        )
        with self._lock:
            self._executors[job_id] = executor
            self._jobs[job_id].status = JobStatus.RUNNING
        self._persist(job_id)

        try:
            for asset_id in asset_ids:
                executor.submit(self._process_asset, job_id, asset_id)
        except RuntimeError as exc:
            logger.error("Job %s could not schedule its workers: %s", job_id, exc)
            self._abort_job(job_id, f"Could not schedule workers: {exc}")

    def _process_asset(self, job_id: str, asset_id: str) -> None:
        with self._lock:
            job = self._jobs[job_id]
            formats, quality = list(job.formats), job.quality
        self._update_asset(job_id, asset_id, status=AssetJobStatus.PROCESSING, started_at=utcnow())

        try:
            summary = self._optimize(job_id, asset_id, formats, quality)
        except Exception as exc:
            error = str(exc) or exc.__class__.__name__
            if isinstance(exc, (MediaError, OSError, ValueError)):
                logger.warning("Optimization of %s in job %s failed: %s", asset_id, job_id, error)
            else:
                logger.exception("Unexpected error optimizing %s in job %s", asset_id, job_id)
            with contextlib.suppress(AssetNotFound):
                self._catalog.finish_optimization(asset_id, job_id, error=error)
            self._update_asset(
                job_id,
                asset_id,
                status=AssetJobStatus.FAILED,
                error=error,
                completed_at=utcnow(),
            )
        else:
            self._update_asset(
                job_id,
                asset_id,
                status=AssetJobStatus.COMPLETED,
                progress=100,
                optimized_size=summary.optimized_size,
                compression_ratio=summary.compression_ratio,
                completed_at=utcnow(),
            )
        finally:
            self._maybe_complete(job_id)

    def _optimize(
        self, job_id: str, asset_id: str, formats: list[str], quality: int
    ) -> OptimizationSummary:
        asset = self._catalog.claim(asset_id, job_id, self._lease_seconds)
        original_size = asset.byte_size
        self._update_asset(job_id, asset_id, original_size=original_size)

        image = geometry.decode(self._blobs.get(asset.source_blob_path))
        kept: list[int] = []
        for index, fmt in enumerate(formats):
            result = variants.reencode(image, [fmt], quality)[0]
            if not result.ok:
                raise MediaError(f"{fmt} encode failed: {result.error}")
            if result.byte_size >= original_size:
                logger.info(
                    "Discarding %s re-encode of %s (%d bytes, source %d bytes)",
                    fmt,
                    asset_id,
                    result.byte_size,
                    original_size,
                )
            else:
                self._store_variant(asset_id, result, quality)
                kept.append(result.byte_size)

            self._update_asset(
                job_id, asset_id, progress=round((index + 1) / len(formats) * 100)
            )
            if not self._catalog.renew_lease(asset_id, job_id, self._lease_seconds):
                raise MediaError(f"Lost optimization lease on asset '{asset_id}'")

        optimized_size = min(kept) if kept else original_size
        ratio = 1 - optimized_size / original_size if original_size else 0.0
        summary = OptimizationSummary(
            original_size=original_size,
            optimized_size=optimized_size,
            compression_ratio=round(ratio, 4),
            quality=quality,
        )
        if self._catalog.finish_optimization(asset_id, job_id, summary=summary) is None:
            raise MediaError(f"Lost optimization lease on asset '{asset_id}'")
        return summary

    def _store_variant(self, asset_id: str, result: variants.VariantResult, quality: int) -> None:
        fmt = result.spec.format
        path = f"{asset_id}/{SizeLabel.ORIGINAL.value}-{uuid.uuid4().hex[:8]}.{geometry.FILE_EXTENSIONS[fmt]}"
        assert result.data is not None and result.width and result.height
        self._blobs.put(result.data, path)
        variant = Variant(
            size_label=SizeLabel.ORIGINAL,
            width=result.width,
            height=result.height,
            format=fmt,
            quality=quality,
            blob_path=path,
            byte_size=result.byte_size,
        )
        try:
            previous = self._catalog.replace_variant(asset_id, variant)
        except Exception:
            with contextlib.suppress(BlobDeleteFailed):
                self._blobs.delete(path)
            raise
        if previous is not None:
            try:
                self._blobs.delete(previous.blob_path)
            except BlobDeleteFailed as exc:
                logger.warning("Replaced variant blob %s was not removed: %s", previous.blob_path, exc)

    # ------------- Job table -------------

    def _update_asset(self, job_id: str, asset_id: str, **changes: Any) -> None:
        with self._lock:
            job = self._jobs[job_id]
            entry = job.per_asset_status[asset_id]
            job.per_asset_status[asset_id] = entry.model_copy(update=changes)
        self._persist(job_id)

    def _maybe_complete(self, job_id: str) -> None:
        with self._lock:
            job = self._jobs[job_id]
            done = job.status is JobStatus.RUNNING and all(
                entry.status.is_terminal for entry in job.per_asset_status.values()
            )
        if done:
            self._finish_job(job_id, JobStatus.COMPLETED)

    def _abort_job(self, job_id: str, error: str) -> None:
        with self._lock:
            job = self._jobs[job_id]
            pending = [
                asset_id
                for asset_id, entry in job.per_asset_status.items()
                if entry.status is AssetJobStatus.PENDING
            ]
            for asset_id in pending:
                job.per_asset_status[asset_id] = job.per_asset_status[asset_id].model_copy(
                    update={"status": AssetJobStatus.FAILED, "error": error, "completed_at": utcnow()}
                )
            job.error = error
        for asset_id in pending:
            with contextlib.suppress(AssetNotFound):
                self._catalog.finish_optimization(asset_id, job_id, error=error)
        self._finish_job(job_id, JobStatus.FAILED)

    def _finish_job(self, job_id: str, status: JobStatus) -> None:
        with self._lock:
            job = self._jobs[job_id]
            if job.is_terminal:
                return
            job.status = status
            job.completed_at = utcnow()
            executor = self._executors.pop(job_id, None)
            event = self._done.setdefault(job_id, threading.Event())
            stats = job.stats
        self._persist(job_id)
        event.set()
        if executor is not None:
            executor.shutdown(wait=False)
        logger.info(
            "Job %s %s: %d completed, %d failed",
            job_id,
            status.value,
            stats.completed,
            stats.failed,
        )

    def _persist(self, job_id: str) -> None:
        if self._root is None:
            return
        with self._persist_lock:
            with self._lock:
                snapshot = self._jobs[job_id].model_copy(deep=True)
            write_record(self._root / JOBS_SUBDIR / f"{job_id}.json", snapshot)

    def _load(self) -> None:
        assert self._root is not None
        directory = self._root / JOBS_SUBDIR
        if not directory.exists():
            return
        for path in sorted(directory.glob("*.json")):
            try:
                job = OptimizationJob.model_validate_json(path.read_text(encoding="utf-8"))
            except (OSError, ValidationError) as exc:
                logger.warning("Skipping malformed job record '%s': %s", path.name, exc)
                continue
            event = threading.Event()
            if job.is_terminal:
                event.set()
            self._jobs[job.job_id] = job
            self._done[job.job_id] = event
        logger.debug("Loaded %d job record(s) from %s", len(self._jobs), directory)


def _normalize_formats(formats: Sequence[str]) -> list[str]:
    normalized: list[str] = []
    for fmt in formats:
        name = geometry.normalize_format(fmt)
        if name not in normalized:
            normalized.append(name)
    if not normalized:
        raise ValueError("At least one output format is required.")
    return normalized
