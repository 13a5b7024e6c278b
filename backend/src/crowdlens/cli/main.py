"""
crowdlens CLI: process event photos and find people from the command line.

Usage:
    crowdlens init
    crowdlens process <event_id> <folder> [--title TITLE] [--recursive]
    crowdlens recluster <event_id> [--threshold T]
    crowdlens clusters <event_id>
    crowdlens search-bib <event_id> <bib>
    crowdlens search-clothing <event_id> [--primary-color C] [--descriptor D] ...
    crowdlens search-face <event_id> <image> [--threshold T]
    crowdlens version

All commands print JSON. The in-memory backend forgets everything when the
command exits; `crowdlens init` configures the SQL backend so separate
invocations share one database.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

import click

from crowdlens import __version__
from crowdlens.errors import CrowdLensError

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: str = "INFO") -> None:
    """Send crowdlens log records to stderr at the given level."""
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format=LOG_FORMAT,
        force=True,
    )


def _echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2))


def _settings(ctx: click.Context):
    return ctx.obj["settings"]


def _open_store(ctx: click.Context):
    """Create the configured store once per invocation, closed on exit."""
    from crowdlens.storage import create_store

    if "store" not in ctx.obj:
        store = create_store(_settings(ctx))
        ctx.obj["store"] = store
        ctx.call_on_close(store.close)
    return ctx.obj["store"]


def _provider(ctx: click.Context):
    from crowdlens.vision import create_vision_provider

    settings = _settings(ctx)
    return create_vision_provider(
        settings.vision.provider,
        embedding_dim=settings.vision.embedding_dim
    )


@click.group()
@click.option(
    "--config", "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Config file (default: ~/.crowdlens/config.json)",
)
@click.option("--log-level", default=None, help="Override logging level (DEBUG, INFO, ...)")
@click.pass_context
def cli(ctx: click.Context, config_path: Path | None, log_level: str | None) -> None:
    """CrowdLens: find yourself in event photos by face, bib or clothing."""
    from crowdlens.config import load_settings

    try:
        settings = load_settings(config_path)
    except (OSError, ValueError) as e:
        raise click.ClickException(str(e))

    configure_logging(log_level or settings.log_level)
    ctx.ensure_object(dict)
    ctx.obj["settings"] = settings


@cli.command()
def version() -> None:
    """Print the installed version."""
    click.echo(f"crowdlens {__version__}")


@cli.command()
def init() -> None:
    """Create ~/.crowdlens/ with a default configuration."""
    from crowdlens.config import get_default_config
    from crowdlens.paths import ensure_data_home, get_data_home, get_default_database_path

    data_home = ensure_data_home()
    click.echo(f"Data directory: {data_home}")

    config_path = get_data_home() / "config.json"
    if config_path.exists():
        click.echo(f"Config already exists: {config_path}")
    else:
        default_config = get_default_config()
        default_config["storage"] = {
            "backend": "sql",
            "url": f"sqlite:///{get_default_database_path()}",
        }
        config_path.write_text(json.dumps(default_config, indent=2), encoding="utf-8")
        click.echo(f"Config created: {config_path}")

    click.echo("Initialization complete.")


@cli.command()
@click.argument("event_id")
@click.argument("folder", type=click.Path(exists=True, file_okay=False, path_type=Path))
@click.option("--title", default=None, help="Title for a new event (default: folder name)")
@click.option("--recursive", is_flag=True, default=False, help="Descend into subfolders")
@click.option("--no-progress", is_flag=True, default=False, help="Hide the progress bar")
@click.pass_context
def process(
    ctx: click.Context,
    event_id: str,
    folder: Path,
    title: str | None,
    recursive: bool,
    no_progress: bool,
) -> None:
    """Process every image in FOLDER into event EVENT_ID.

    The event is created if needed. Faces are clustered as they arrive.
    """
    from crowdlens import process_folder

    store = _open_store(ctx)
    try:
        summary = process_folder(
            event_id,
            folder,
            store=store,
            settings=_settings(ctx),
            provider=_provider(ctx),
            event_title=title,
            recursive=recursive,
            show_progress=not no_progress,
        )
    except CrowdLensError as e:
        raise click.ClickException(str(e))

    _echo_json(summary)
    if summary["photos"] and summary["processed"] == 0:
        raise SystemExit(1)


@cli.command()
@click.argument("event_id")
@click.option("--threshold", default=None, type=float, help="Similarity threshold (default: from config)")
@click.pass_context
def recluster(ctx: click.Context, event_id: str, threshold: float | None) -> None:
    """Rebuild the person clusters of EVENT_ID from scratch."""
    from crowdlens.search import ClusterAssigner

    settings = _settings(ctx)
    assigner = ClusterAssigner(_open_store(ctx), settings.clustering)
    try:
        count = assigner.recluster(event_id, threshold=threshold)
    except CrowdLensError as e:
        raise click.ClickException(str(e))

    _echo_json({
        "event_id": event_id,
        "threshold": settings.clustering.similarity_threshold if threshold is None else threshold,
        "clusters": count,
    })


@cli.command()
@click.argument("event_id")
@click.pass_context
def clusters(ctx: click.Context, event_id: str) -> None:
    """List the person clusters of EVENT_ID."""
    store = _open_store(ctx)
    if store.get_event(event_id) is None:
        raise click.ClickException(f"Event not found: {event_id}")

    items = [c.to_dict() for c in store.get_clusters_by_event(event_id)]
    _echo_json({"event_id": event_id, "clusters": items, "total": len(items)})


def _search_output(event_id: str, search_type: str, results, **extra: Any) -> None:
    from crowdlens.search import format_results_simple

    output = {"event_id": event_id, "search_type": search_type}
    output.update(extra)
    output["clusters"] = format_results_simple(results)
    output["total"] = len(results)
    _echo_json(output)


def _engine(ctx: click.Context, with_provider: bool = False):
    from crowdlens.search import SearchEngine

    return SearchEngine(
        _open_store(ctx),
        _settings(ctx).search,
        vision_provider=_provider(ctx) if with_provider else None,
    )


@cli.command("search-bib")
@click.argument("event_id")
@click.argument("bib")
@click.pass_context
def search_bib(ctx: click.Context, event_id: str, bib: str) -> None:
    """Find people wearing bib number BIB in EVENT_ID."""
    try:
        results = _engine(ctx).search_by_bib(event_id, bib)
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="BIB")
    except CrowdLensError as e:
        raise click.ClickException(str(e))

    _search_output(event_id, "bib", results, query=bib.strip())


@cli.command("search-clothing")
@click.argument("event_id")
@click.option("--primary-color", default=None, help="Dominant color, e.g. red")
@click.option("--secondary-color", default=None, help="Second color, e.g. white")
@click.option("--clothing-type", default=None, help="Item type, e.g. jacket")
@click.option("--descriptor", default=None, help="Text in the description, e.g. 'red jacket'")
@click.pass_context
def search_clothing(
    ctx: click.Context,
    event_id: str,
    primary_color: str | None,
    secondary_color: str | None,
    clothing_type: str | None,
    descriptor: str | None,
) -> None:
    """Find people in EVENT_ID by what they wear. At least one filter is required."""
    from crowdlens.models import ClothingSearchFilters
    from crowdlens.search import validate_filters

    filters = ClothingSearchFilters(
        primary_color=primary_color,
        secondary_color=secondary_color,
        clothing_type=clothing_type,
        descriptor=descriptor,
    )
    try:
        validate_filters(filters)
    except ValueError as e:
        raise click.UsageError(str(e))

    try:
        results = _engine(ctx).search_by_clothing(event_id, filters)
    except CrowdLensError as e:
        raise click.ClickException(str(e))

    _search_output(event_id, "clothing", results, filters=filters.to_dict())


@cli.command("search-face")
@click.argument("event_id")
@click.argument("image", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--threshold", default=None, type=float, help="Minimum face similarity (default: from config)")
@click.pass_context
def search_face(ctx: click.Context, event_id: str, image: Path, threshold: float | None) -> None:
    """Find people in EVENT_ID who look like the face in IMAGE."""
    engine = _engine(ctx, with_provider=True)
    try:
        results = engine.search_by_image(event_id, image.read_bytes(), threshold=threshold)
    except CrowdLensError as e:
        raise click.ClickException(str(e))

    _search_output(
        event_id, "face", results,
        threshold=engine.config.face_threshold if threshold is None else threshold,
    )


if __name__ == "__main__":
    cli()
