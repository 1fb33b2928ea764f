from __future__ import annotations

from pathlib import Path

import pytest

from folio_media.blobstore import FileBlobStore
from folio_media.catalog import MediaCatalog


@pytest.fixture()
def blob_store(tmp_path: Path) -> FileBlobStore:
    return FileBlobStore(tmp_path / "blobs", base_url="/media")


@pytest.fixture()
def catalog(blob_store: FileBlobStore, tmp_path: Path) -> MediaCatalog:
    return MediaCatalog(blob_store, tmp_path / "catalog")
