"""CLI entrypoints for the folio media store."""

import contextlib
from pathlib import Path
from typing import Annotated, Iterator, Optional

import typer
from rich.console import Console

from .catalog import CatalogFilter
from .config import load_config
from .errors import MediaError
from .logging_config import setup_logging
from .models import (
    AssetJobStatus,
    AssetMeta,
    CropArea,
    DisplayZone,
    MediaAsset,
    MediaCategory,
    OptimizationJob,
    SizeLabel,
)
from .service import MediaService

console = Console()
app = typer.Typer(help="Folio media store: uploads, variants and batch optimization.")

ConfigPathOption = Annotated[
    str,
    typer.Option("--config", "-c", help="Path to configuration file."),
]
JsonFlag = Annotated[
    bool,
    typer.Option("--json", help="Emit machine-readable JSON instead of human formatted output."),
]

_STATUS_COLORS = {
    AssetJobStatus.PENDING: "yellow",
    AssetJobStatus.PROCESSING: "blue",
    AssetJobStatus.COMPLETED: "green",
    AssetJobStatus.FAILED: "red",
}


@app.callback()
def main(
    log_level: Annotated[
        Optional[str],
        typer.Option("--log-level", help="Logging level (defaults to FOLIO_MEDIA_LOG_LEVEL or WARNING)."),
    ] = None,
    log_json: Annotated[bool, typer.Option("--log-json", help="Write logs as JSON lines.")] = False,
) -> None:
    try:
        setup_logging(log_level, json_output=log_json)
    except ValueError as exc:
        raise typer.BadParameter(str(exc), param_hint="--log-level") from exc


@app.command()
def upload(  # noqa: PLR0913
    source: Annotated[Path, typer.Argument(help="Image file to upload.", exists=True, dir_okay=False)],
    config_path: ConfigPathOption = "folio-media.yml",
    title: Annotated[Optional[str], typer.Option("--title", "-t", help="Asset title.")] = None,
    description: Annotated[Optional[str], typer.Option("--description", help="Asset description.")] = None,
    alt_text: Annotated[Optional[str], typer.Option("--alt", help="Alternative text.")] = None,
    category: Annotated[
        MediaCategory, typer.Option("--category", help="Where the asset is used.")
    ] = MediaCategory.OTHER,
    tags: Annotated[Optional[list[str]], typer.Option("--tag", help="Tag to attach (repeatable).")] = None,
    private: Annotated[bool, typer.Option("--private", help="Hide the asset from public listings.")] = False,
    crop: Annotated[
        Optional[str], typer.Option("--crop", help="Crop rectangle in source pixels as x,y,w,h.")
    ] = None,
    zones: Annotated[
        Optional[list[str]],
        typer.Option("--zone", help="Redaction zone in display pixels as x,y,w,h (repeatable)."),
    ] = None,
    scale: Annotated[
        float, typer.Option("--scale", help="Display scale the zones were drawn at.")
    ] = 1.0,
    rotate: Annotated[int, typer.Option("--rotate", help="Clockwise rotation in degrees (multiple of 90).")] = 0,
) -> None:
    """Upload an image, bake in crop and redactions, and generate its variants."""
    try:
        meta = AssetMeta(
            original_filename=source.name,
            title=title,
            description=description,
            alt_text=alt_text,
            category=category,
            tags=tags or [],
            is_public=not private,
        )
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from exc
    crop_area = None
    if crop:
        x, y, w, h = _parse_rect(crop, "--crop")
        crop_area = CropArea(x=int(x), y=int(y), width=int(w), height=int(h))
    display_zones = [
        DisplayZone(x=x, y=y, w=w, h=h) for x, y, w, h in (_parse_rect(raw, "--zone") for raw in zones or [])
    ]

    with _service(config_path) as service, _media_errors():
        asset = service.pipeline.upload(
            source.read_bytes(),
            meta,
            display_zones=display_zones or None,
            display_scale=scale,
            crop_area=crop_area,
            rotate=rotate,
        )
    console.print(f"[bold green]Uploaded[/]: {asset.id} ({asset.width}x{asset.height}, {asset.mime_type})")
    if asset.redaction_zones:
        console.print(f"- {len(asset.redaction_zones)} redaction zone(s) applied")
    if not asset.variants:
        console.print("[bold yellow]Warning[/]: no variants could be generated for this asset.")
    for variant in asset.variants:
        console.print(f"- {variant.size_label.value} {variant.width}x{variant.height} {variant.format}: {variant.url}")


@app.command("list")
def list_assets(
    config_path: ConfigPathOption = "folio-media.yml",
    category: Annotated[Optional[MediaCategory], typer.Option("--category", help="Filter by category.")] = None,
    tags: Annotated[Optional[list[str]], typer.Option("--tag", help="Match assets with any of these tags.")] = None,
    include_archived: Annotated[bool, typer.Option("--archived", help="Include archived assets.")] = False,
    unoptimized: Annotated[bool, typer.Option("--unoptimized", help="Only images not yet optimized.")] = False,
    limit: Annotated[Optional[int], typer.Option("--limit", min=1, help="Maximum number of assets.")] = None,
    json_output: JsonFlag = False,
) -> None:
    """List catalog assets, newest first."""
    criteria = CatalogFilter(
        category=category,
        tags=tags or [],
        include_archived=include_archived,
        limit=limit,
    )
    with _service(config_path) as service:
        assets = service.catalog.find_unoptimized(criteria) if unoptimized else service.catalog.list(criteria)
    if json_output:
        console.print_json(data=[asset.model_dump(mode="json") for asset in assets])
        return
    if not assets:
        console.print("[bold yellow]No assets found[/].")
        return
    for asset in assets:
        console.print(_asset_line(asset))
    console.print(f"[bold green]{len(assets)} asset(s)[/]")


@app.command()
def show(
    asset_id: Annotated[str, typer.Argument(help="Asset id.")],
    config_path: ConfigPathOption = "folio-media.yml",
    json_output: JsonFlag = False,
) -> None:
    """Show one asset with its variants and optimization state."""
    with _service(config_path) as service, _media_errors():
        asset = service.catalog.get(asset_id)
    if json_output:
        console.print_json(data=asset.model_dump(mode="json"))
        return
    console.print(_asset_line(asset))
    console.print(f"- source: {asset.source_url} ({asset.byte_size} bytes)")
    if asset.title:
        console.print(f"- title: {asset.title}")
    if asset.tags:
        console.print(f"- tags: {', '.join(asset.tags)}")
    console.print(f"- optimization: {asset.optimization_state.value}")
    summary = asset.optimization
    if summary.compression_ratio is not None:
        console.print(
            f"  {summary.original_size} -> {summary.optimized_size} bytes "
            f"(ratio {summary.compression_ratio:.2%}, quality {summary.quality})"
        )
    if summary.error:
        console.print(f"  [red]{summary.error}[/]")
    for variant in asset.variants:
        console.print(
            f"- {variant.size_label.value} {variant.width}x{variant.height} "
            f"{variant.format} {variant.byte_size} bytes: {variant.url}"
        )


@app.command()
def resolve(
    asset_id: Annotated[str, typer.Argument(help="Asset id.")],
    config_path: ConfigPathOption = "folio-media.yml",
    accept: Annotated[
        Optional[list[str]], typer.Option("--accept", help="MIME type the client accepts (repeatable).")
    ] = None,
    size: Annotated[
        Optional[SizeLabel], typer.Option("--size", help="Variant size; defaults to the optimized original.")
    ] = None,
) -> None:
    """Show which derivative would be served to a client, counting a view on public assets."""
    with _service(config_path) as service, _media_errors():
        resolved = service.catalog.resolve(asset_id, accept or [], size)
    source = "source" if resolved.variant is None else f"{resolved.variant.size_label.value} variant"
    console.print(f"[bold green]Serve[/]: {resolved.url}")
    console.print(f"- {source}, {resolved.mime_type}")


@app.command()
def delete(
    asset_id: Annotated[str, typer.Argument(help="Asset id.")],
    config_path: ConfigPathOption = "folio-media.yml",
) -> None:
    """Delete an asset and every blob it references."""
    with _service(config_path) as service, _media_errors():
        service.catalog.delete(asset_id)
    console.print(f"[bold green]Deleted[/]: {asset_id}")


@app.command()
def purge(config_path: ConfigPathOption = "folio-media.yml") -> None:
    """Retry deletes that were interrupted or could not remove every blob."""
    with _service(config_path) as service:
        purged = service.catalog.purge_pending_deletes()
    console.print(f"[bold green]Purge complete[/]: removed {len(purged)} asset(s).")


@app.command()
def optimize(  # noqa: PLR0913
    asset_ids: Annotated[Optional[list[str]], typer.Argument(help="Asset ids to optimize.")] = None,
    config_path: ConfigPathOption = "folio-media.yml",
    all_assets: Annotated[bool, typer.Option("--all", help="Queue every unoptimized image.")] = False,
    formats: Annotated[
        Optional[list[str]], typer.Option("--format", "-f", help="Output format (repeatable).")
    ] = None,
    quality: Annotated[Optional[int], typer.Option("--quality", "-q", help="Encoder quality (60-100).")] = None,
    concurrency: Annotated[
        Optional[int], typer.Option("--concurrency", help="Assets processed in parallel.")
    ] = None,
    json_output: JsonFlag = False,
) -> None:
    """Re-encode assets into smaller formats and wait for the job to finish."""
    if not asset_ids and not all_assets:
        raise typer.BadParameter("Pass asset ids or --all.")
    with _service(config_path) as service, _media_errors():
        try:
            result = service.optimize(
                None if all_assets else asset_ids,
                formats=formats,
                quality=quality,
                concurrency=concurrency,
            )
        except ValueError as exc:
            raise typer.BadParameter(str(exc)) from exc
        job = service.scheduler.wait(result.job_id)
    if json_output:
        console.print_json(data=job.model_dump(mode="json"))
    else:
        _print_job(job)
    if job.stats.failed or job.rejected:
        raise typer.Exit(code=1)


@app.command()
def status(
    job_id: Annotated[str, typer.Argument(help="Optimization job id.")],
    config_path: ConfigPathOption = "folio-media.yml",
    json_output: JsonFlag = False,
) -> None:
    """Show the recorded status of an optimization job."""
    with _service(config_path) as service, _media_errors():
        job = service.scheduler.status(job_id)
    if json_output:
        console.print_json(data=job.model_dump(mode="json"))
        return
    _print_job(job)


@app.command()
def regenerate(
    asset_id: Annotated[str, typer.Argument(help="Asset id.")],
    config_path: ConfigPathOption = "folio-media.yml",
) -> None:
    """Rebuild the default variants of an asset from its stored source."""
    with _service(config_path) as service, _media_errors():
        asset = service.pipeline.regenerate_variants(asset_id)
    console.print(f"[bold green]Regenerated[/]: {asset.id} now has {len(asset.variants)} variant(s).")


@app.command()
def stats(
    config_path: ConfigPathOption = "folio-media.yml",
    json_output: JsonFlag = False,
) -> None:
    """Summarize storage use per category and job counts."""
    with _service(config_path) as service:
        storage = service.catalog.storage_stats()
        jobs = service.scheduler.stats()
    if json_output:
        console.print_json(
            data={
                "storage": {name: entry.model_dump() for name, entry in storage.items()},
                "jobs": jobs,
            }
        )
        return
    if not storage:
        console.print("[bold yellow]Catalog is empty[/].")
    for name in sorted(storage):
        entry = storage[name]
        console.print(
            f"[bold blue]{name}[/]: {entry.count} asset(s), {entry.total_size} bytes "
            f"(avg {entry.average_size:.0f})"
        )
    console.print("Jobs: " + ", ".join(f"{key} {value}" for key, value in jobs.items()))


@app.command()
def recover(config_path: ConfigPathOption = "folio-media.yml") -> None:
    """Settle work interrupted by a crash or restart."""
    with _service(config_path) as service:
        report = service.startup_recovery.merge(service.recover())
    if report.clean:
        console.print("[bold green]Nothing to recover[/].")
        return
    console.print(
        f"[bold green]Recovered[/]: purged {len(report.purged_assets)} asset(s), "
        f"settled {len(report.interrupted_jobs)} job(s), "
        f"released {len(report.released_assets)} stale lease(s)."
    )


def _asset_line(asset: MediaAsset) -> str:
    label = asset.title or asset.original_filename
    archived = " [dim](archived)[/]" if asset.archived else ""
    return (
        f"[bold]{asset.id}[/] {label} {asset.width}x{asset.height} {asset.category.value} "
        f"variants={len(asset.variants)} optimization={asset.optimization_state.value}{archived}"
    )


def _print_job(job: OptimizationJob) -> None:
    job_stats = job.stats
    console.print(
        f"[bold green]Job {job.job_id}[/]: {job.status.value} "
        f"({job_stats.completed} completed, {job_stats.failed} failed, {job_stats.total} total; "
        f"formats {', '.join(job.formats)}, quality {job.quality})"
    )
    for asset_id, entry in job.per_asset_status.items():
        color = _STATUS_COLORS[entry.status]
        line = f"- {asset_id}: [{color}]{entry.status.value}[/] {entry.progress}%"
        if entry.optimized_size is not None:
            line += f" {entry.original_size} -> {entry.optimized_size} bytes"
        if entry.error:
            line += f" [red]{entry.error}[/]"
        console.print(line)
    for asset_id, reason in job.rejected.items():
        console.print(f"[bold yellow]Rejected[/]: {asset_id} ({reason})")


def _parse_rect(raw: str, option: str) -> tuple[float, float, float, float]:
    parts = [part.strip() for part in raw.split(",")]
    if len(parts) != 4:
        raise typer.BadParameter(f"Expected x,y,w,h but got {raw!r}", param_hint=option)
    try:
        x, y, w, h = (float(part) for part in parts)
    except ValueError as exc:
        raise typer.BadParameter(f"Expected numbers in {raw!r}", param_hint=option) from exc
    return x, y, w, h


@contextlib.contextmanager
def _service(path: str) -> Iterator[MediaService]:
    try:
        config = load_config(path)
    except FileNotFoundError as exc:
        raise typer.BadParameter(f"Config file not found: {path}") from exc
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from exc
    with MediaService(config) as service:
        yield service


@contextlib.contextmanager
def _media_errors() -> Iterator[None]:
    try:
        yield
    except (MediaError, ValueError) as exc:
        console.print(f"[bold red]{exc.__class__.__name__}[/]: {exc}")
        raise typer.Exit(code=1) from exc
