"""Command line entry points.

Examples:
  adaptorium inspect path/to/course.zip
  adaptorium inspect path/to/package --language fr
  adaptorium purge-builds
"""

from __future__ import annotations

import asyncio
import sys
import tempfile
from pathlib import Path
from typing import Any

import click
import orjson
import structlog

from Adaptorium import versioning
from Adaptorium.build_cache import BuildCache
from Adaptorium.config import Settings, load_settings
from Adaptorium.db import dispose_engine
from Adaptorium.errors import ImporterError
from Adaptorium.hierarchy import sort_hierarchy
from Adaptorium.logging import redact_settings, setup_logging
from Adaptorium.package import (
    find_course_dir,
    list_languages,
    load_config,
    load_course_data,
    load_package_manifest,
    resolve_language,
    unwrap_nested,
    unzip_package,
)
from Adaptorium.summary import get_import_content_counts

log = structlog.get_logger()


def _echo_json(data: Any, *, err: bool = False) -> None:
    click.echo(orjson.dumps(data, option=orjson.OPT_INDENT_2).decode(), err=err)


def _describe_package(root: Path, settings: Settings, language: str | None) -> dict[str, Any]:
    course_dir = find_course_dir(root)
    languages = list_languages(course_dir)
    lang = resolve_language(load_config(course_dir), languages, language)
    pkg = load_package_manifest(root)
    content = load_course_data(course_dir, lang, asset_folders=settings.asset_folders)
    course = content.course or {}
    tree = sort_hierarchy(course["_id"], content.nodes())
    return {
        "framework": {
            "package": pkg.get("version"),
            "installed": settings.framework_version,
            "compatible": versioning.is_framework_compatible(
                pkg.get("version"), settings.framework_version
            ),
        },
        "language": lang,
        "languages": languages,
        "title": course.get("title"),
        "content": get_import_content_counts(content.as_counts_source()),
        "depth": len(tree.sorted),
    }


@click.group()
@click.pass_context
def cli(ctx: click.Context) -> None:
    """Adapt course package tooling."""
    settings = load_settings()
    setup_logging(settings)
    log.debug("cli.settings", **redact_settings(settings))
    ctx.obj = settings


@cli.command()
@click.argument("path", type=click.Path(exists=True, path_type=Path))
@click.option("--language", default=None, help="Language to read instead of the default.")
@click.pass_obj
def inspect(settings: Settings, path: Path, language: str | None) -> None:
    """Check a package (directory or zip) without importing it."""
    try:
        if path.is_dir():
            report = _describe_package(path, settings, language)
        else:
            with tempfile.TemporaryDirectory(prefix="adaptorium-") as tmp:
                root = unzip_package(
                    path, Path(tmp) / "package", max_size=settings.import_max_file_size
                )
                report = _describe_package(unwrap_nested(root), settings, language)
    except ImporterError as exc:
        log.warning("cli.inspect.failed", code=exc.code, path=str(path))
        _echo_json(exc.to_dict(), err=True)
        sys.exit(1)
    _echo_json(report)


@cli.command("purge-builds")
@click.option("--keep-output", is_flag=True, help="Leave expired build directories on disk.")
def purge_builds(keep_output: bool) -> None:
    """Delete expired build records and their output."""

    async def _purge() -> int:
        try:
            return await BuildCache().purge_expired(remove_output=not keep_output)
        finally:
            await dispose_engine()

    count = asyncio.run(_purge())
    click.echo(f"purged={count}")


if __name__ == "__main__":
    cli()
