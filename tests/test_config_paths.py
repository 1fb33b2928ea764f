from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from folio_media.config import load_config
from folio_media.models import SizeLabel


def _write_project_config(root: Path) -> Path:
    config_text = (
        "project_name: External Media\n"
        "storage:\n"
        "  blob_root: data/blobs\n"
        "  base_url: /static/media\n"
        "  catalog_dir: data/catalog\n"
        "variants:\n"
        "  source_quality: 90\n"
        "  specs:\n"
        "    - label: thumbnail\n"
        "      max_width: 100\n"
        "      max_height: 100\n"
        "      format: jpg\n"
        "    - label: large\n"
        "      max_width: 1600\n"
        "      format: webp\n"
        "optimization:\n"
        "  default_formats: [WebP, ' avif ']\n"
        "  default_quality: 75\n"
    )
    cfg_path = root / "folio-media.yml"
    cfg_path.write_text(config_text, encoding="utf-8")
    return cfg_path


def test_load_config_resolves_paths_relative_to_config_directory(tmp_path: Path) -> None:
    project = tmp_path / "project"
    project.mkdir()
    _write_project_config(project)

    # Pass a directory path; loader should find folio-media.yml inside it.
    cfg = load_config(project)

    assert cfg.project_name == "External Media"
    assert cfg.storage.blob_root == (project / "data" / "blobs").resolve()
    assert cfg.storage.catalog_dir == (project / "data" / "catalog").resolve()
    # base_url is a URL prefix, never resolved against the filesystem
    assert cfg.storage.base_url == "/static/media"

    assert [spec.label for spec in cfg.variants.specs] == [SizeLabel.THUMBNAIL, SizeLabel.LARGE]
    assert cfg.variants.specs[0].format == "jpeg"
    assert cfg.variants.specs[1].max_height is None
    assert cfg.optimization.default_formats == ["webp", "avif"]
    assert cfg.optimization.default_quality == 75


def test_load_config_accepts_config_file_path(tmp_path: Path) -> None:
    project = tmp_path / "mediaproj"
    project.mkdir()
    config_file = _write_project_config(project)

    cfg = load_config(config_file)
    assert cfg.storage.blob_root == (project / "data" / "blobs").resolve()


def test_load_config_uses_defaults_when_directory_has_no_config(tmp_path: Path) -> None:
    project = tmp_path / "emptyproj"
    project.mkdir()

    cfg = load_config(project)

    # Defaults anchored to the provided directory
    assert cfg.storage.blob_root == (project / "uploads" / "media").resolve()
    assert cfg.storage.catalog_dir == (project / ".folio-media").resolve()
    assert [spec.label for spec in cfg.variants.specs] == [
        SizeLabel.THUMBNAIL,
        SizeLabel.SMALL,
        SizeLabel.MEDIUM,
        SizeLabel.LARGE,
    ]
    assert cfg.optimization.default_formats == ["webp"]
    assert cfg.decompression_bomb_limit is None


def test_load_config_missing_file_raises(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        load_config(tmp_path / "absent.yml")


def test_null_catalog_dir_keeps_records_in_memory(tmp_path: Path) -> None:
    cfg_path = tmp_path / "folio-media.yml"
    cfg_path.write_text("storage:\n  catalog_dir: null\n", encoding="utf-8")

    cfg = load_config(cfg_path)

    assert cfg.storage.catalog_dir is None


@pytest.mark.parametrize(
    "snippet",
    [
        "optimization:\n  default_quality: 40\n",
        "optimization:\n  default_formats: []\n",
        "optimization:\n  default_concurrency: 0\n",
        "variants:\n  source_quality: 0\n",
    ],
)
def test_invalid_values_are_rejected(tmp_path: Path, snippet: str) -> None:
    cfg_path = tmp_path / "folio-media.yml"
    cfg_path.write_text(snippet, encoding="utf-8")

    with pytest.raises(ValidationError):
        load_config(cfg_path)
