"""Wire configuration, storage, catalog, scheduler and upload pipeline together."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Sequence

from .blobstore import FileBlobStore
from .catalog import CatalogFilter, MediaCatalog
from .config import Config, load_config
from .geometry import configure_decompression_limit
from .pipeline import UploadPipeline
from .scheduler import OptimizationScheduler, SubmitResult

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RecoveryReport:
    purged_assets: list[str] = field(default_factory=list)
    interrupted_jobs: list[str] = field(default_factory=list)
    released_assets: list[str] = field(default_factory=list)

    @property
    def clean(self) -> bool:
        return not (self.purged_assets or self.interrupted_jobs or self.released_assets)

    def merge(self, other: "RecoveryReport") -> "RecoveryReport":
        return RecoveryReport(
            purged_assets=self.purged_assets + other.purged_assets,
            interrupted_jobs=self.interrupted_jobs + other.interrupted_jobs,
            released_assets=self.released_assets + other.released_assets,
        )


class MediaService:
    """One configured media store, usable as a context manager."""

    def __init__(self, config: Config) -> None:
        configure_decompression_limit(config.decompression_bomb_limit)
        self.config = config
        storage = config.storage
        self.blob_store = FileBlobStore(storage.blob_root, storage.base_url)
        self.catalog = MediaCatalog(self.blob_store, storage.catalog_dir)
        self.scheduler = OptimizationScheduler(
            self.catalog,
            self.blob_store,
            root=storage.catalog_dir,
            default_concurrency=config.optimization.default_concurrency,
            lease_seconds=config.optimization.lease_seconds,
        )
        self.pipeline = UploadPipeline.from_config(self.catalog, self.blob_store, config)
        # Nothing runs yet, so every queued or running asset on disk is orphaned.
        self.startup_recovery = self.recover()

    @classmethod
    def from_path(cls, path: str | Path) -> "MediaService":
        return cls(load_config(path))

    def optimize(
        self,
        asset_ids: Iterable[str] | None = None,
        *,
        formats: Sequence[str] | None = None,
        quality: int | None = None,
        concurrency: int | None = None,
        filter: CatalogFilter | None = None,
    ) -> SubmitResult:
        """Submit an optimization job; without ids, every unoptimized image is queued."""
        settings = self.config.optimization
        chosen_formats = list(formats) if formats else list(settings.default_formats)
        chosen_quality = settings.default_quality if quality is None else quality
        if asset_ids is None:
            return self.scheduler.submit_unoptimized(filter, chosen_formats, chosen_quality, concurrency)
        return self.scheduler.submit(list(asset_ids), chosen_formats, chosen_quality, concurrency)

    def recover(self) -> RecoveryReport:
        """Finish interrupted deletes, settle interrupted jobs and release stale leases."""
        report = RecoveryReport(purged_assets=self.catalog.purge_pending_deletes())
        outcome = self.scheduler.recover()
        report.interrupted_jobs = outcome.interrupted_jobs
        report.released_assets = outcome.released_assets
        if not report.clean:
            logger.info(
                "Recovery purged %d asset(s), settled %d job(s), released %d lease(s)",
                len(report.purged_assets),
                len(report.interrupted_jobs),
                len(report.released_assets),
            )
        return report

    def close(self, wait: bool = True) -> None:
        self.scheduler.shutdown(wait=wait)

    def __enter__(self) -> "MediaService":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()
