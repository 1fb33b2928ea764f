from __future__ import annotations

import io
import logging
import re
from pathlib import Path
from typing import Iterator

import pytest
from PIL import Image
from typer.testing import CliRunner

from folio_media.cli import app
from folio_media.config import load_config
from folio_media.models import OptimizationState
from folio_media.service import MediaService


def _write_default_config(path: Path) -> None:
    path.write_text(
        (
            "project_name: Test Media\n"
            "storage:\n"
            "  blob_root: blobs\n"
            "  base_url: /files\n"
            "  catalog_dir: catalog\n"
            "optimization:\n"
            "  default_concurrency: 2\n"
        ),
        encoding="utf-8",
    )


def _write_image(path: Path, size: tuple[int, int] = (320, 240)) -> None:
    buffer = io.BytesIO()
    Image.new("RGB", size, (90, 140, 200)).save(buffer, format="BMP")
    path.write_bytes(buffer.getvalue())


def _upload(runner: CliRunner, *extra: str) -> str:
    result = runner.invoke(app, ["upload", "photo.bmp", *extra])
    assert result.exit_code == 0, result.output
    match = re.search(r"Uploaded: ([0-9a-f]{32})", result.output)
    assert match, result.output
    return match.group(1)


@pytest.fixture(autouse=True)
def _restore_root_logging() -> Iterator[None]:
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


def test_upload_then_show_and_list() -> None:
    runner = CliRunner()
    with runner.isolated_filesystem():
        _write_default_config(Path("folio-media.yml"))
        _write_image(Path("photo.bmp"))

        asset_id = _upload(runner, "--title", "Harbour", "--tag", "sea", "--category", "gallery")

        shown = runner.invoke(app, ["show", asset_id])
        assert shown.exit_code == 0, shown.output
        assert "Harbour" in shown.output
        assert "optimization: none" in shown.output
        assert "thumbnail 150x112 jpeg" in shown.output

        listed = runner.invoke(app, ["list", "--category", "gallery"])
        assert listed.exit_code == 0, listed.output
        assert asset_id in listed.output
        assert "1 asset(s)" in listed.output

        as_json = runner.invoke(app, ["list", "--json"])
        assert '"original_filename": "photo.bmp"' in as_json.output

        service = MediaService(load_config("folio-media.yml"))
        stored = service.catalog.get(asset_id)
        assert stored.tags == ["sea"]
        assert Path("blobs", stored.source_blob_path).is_file()
        assert stored.source_url == f"/files/{stored.source_blob_path}"


def test_upload_with_crop_and_zone() -> None:
    runner = CliRunner()
    with runner.isolated_filesystem():
        _write_default_config(Path("folio-media.yml"))
        _write_image(Path("photo.bmp"))

        asset_id = _upload(runner, "--crop", "0,0,200,100", "--zone", "10,10,40,40", "--scale", "0.5")

        stored = MediaService(load_config("folio-media.yml")).catalog.get(asset_id)
        assert (stored.width, stored.height) == (200, 100)
        assert [(z.x, z.y, z.width, z.height) for z in stored.redaction_zones] == [(20, 20, 80, 80)]


def test_optimize_and_status() -> None:
    runner = CliRunner()
    with runner.isolated_filesystem():
        _write_default_config(Path("folio-media.yml"))
        _write_image(Path("photo.bmp"))
        asset_id = _upload(runner)

        optimized = runner.invoke(app, ["optimize", asset_id, "--format", "webp", "--quality", "80"])
        assert optimized.exit_code == 0, optimized.output
        assert "completed" in optimized.output
        job_match = re.search(r"Job ([0-9a-f]{32})", optimized.output)
        assert job_match, optimized.output

        status = runner.invoke(app, ["status", job_match.group(1)])
        assert status.exit_code == 0, status.output
        assert f"{asset_id}: completed 100%" in status.output

        stored = MediaService(load_config("folio-media.yml")).catalog.get(asset_id)
        assert stored.optimization_state is OptimizationState.COMPLETED
        assert stored.get_variant("original", "webp") is not None


def test_optimize_reports_rejections_with_exit_code() -> None:
    runner = CliRunner()
    with runner.isolated_filesystem():
        _write_default_config(Path("folio-media.yml"))

        result = runner.invoke(app, ["optimize", "missing-id"])
        assert result.exit_code == 1
        assert "Rejected" in result.output
        assert "not found" in result.output


def test_optimize_requires_ids_or_all() -> None:
    runner = CliRunner()
    with runner.isolated_filesystem():
        _write_default_config(Path("folio-media.yml"))
        result = runner.invoke(app, ["optimize"])
        assert result.exit_code == 2


def test_optimize_rejects_unknown_format() -> None:
    runner = CliRunner()
    with runner.isolated_filesystem():
        _write_default_config(Path("folio-media.yml"))
        _write_image(Path("photo.bmp"))
        asset_id = _upload(runner)

        result = runner.invoke(app, ["optimize", asset_id, "--format", "gif"])
        assert result.exit_code == 1
        assert "UnsupportedFormat" in result.output


def test_delete_regenerate_and_missing_assets() -> None:
    runner = CliRunner()
    with runner.isolated_filesystem():
        _write_default_config(Path("folio-media.yml"))
        _write_image(Path("photo.bmp"))
        asset_id = _upload(runner)

        regenerated = runner.invoke(app, ["regenerate", asset_id])
        assert regenerated.exit_code == 0, regenerated.output
        assert "4 variant(s)" in regenerated.output

        deleted = runner.invoke(app, ["delete", asset_id])
        assert deleted.exit_code == 0, deleted.output
        assert not [path for path in Path("blobs").rglob("*") if path.is_file()]

        listed = runner.invoke(app, ["list"])
        assert "No assets found" in listed.output

        missing = runner.invoke(app, ["show", asset_id])
        assert missing.exit_code == 1
        assert "AssetNotFound" in missing.output


def test_stats_purge_and_recover() -> None:
    runner = CliRunner()
    with runner.isolated_filesystem():
        _write_default_config(Path("folio-media.yml"))
        _write_image(Path("photo.bmp"))
        _upload(runner)

        stats = runner.invoke(app, ["stats"])
        assert stats.exit_code == 0, stats.output
        assert "other: 1 asset(s)" in stats.output

        purge = runner.invoke(app, ["purge"])
        assert "removed 0 asset(s)" in purge.output

        recover = runner.invoke(app, ["recover"])
        assert recover.exit_code == 0, recover.output
        assert "Nothing to recover" in recover.output


def test_missing_config_is_a_usage_error() -> None:
    runner = CliRunner()
    with runner.isolated_filesystem():
        result = runner.invoke(app, ["list", "--config", "absent.yml"])
        assert result.exit_code == 2


def test_invalid_log_level_is_a_usage_error() -> None:
    runner = CliRunner()
    with runner.isolated_filesystem():
        _write_default_config(Path("folio-media.yml"))
        result = runner.invoke(app, ["--log-level", "chatty", "list"])
        assert result.exit_code == 2


def test_resolve_picks_derivative_for_client() -> None:
    runner = CliRunner()
    with runner.isolated_filesystem():
        _write_default_config(Path("folio-media.yml"))
        _write_image(Path("photo.bmp"))
        asset_id = _upload(runner)
        optimized = runner.invoke(app, ["optimize", asset_id, "--format", "webp"])
        assert optimized.exit_code == 0, optimized.output

        modern = runner.invoke(app, ["resolve", asset_id, "--accept", "image/webp"])
        assert modern.exit_code == 0, modern.output
        assert re.search(rf"Serve: /files/{asset_id}/original-[0-9a-f]{{8}}\.webp", modern.output)
        assert "original variant, image/webp" in modern.output

        legacy = runner.invoke(app, ["resolve", asset_id, "--accept", "image/jpeg"])
        assert "source, image/bmp" in legacy.output

        thumb = runner.invoke(app, ["resolve", asset_id, "--size", "thumbnail"])
        assert "thumbnail variant, image/jpeg" in thumb.output

        stored = MediaService(load_config("folio-media.yml")).catalog.get(asset_id)
        assert stored.stats.views == 3
