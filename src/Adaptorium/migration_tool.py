"""File-level course migration for packages older than the installed framework.

Legacy theme conventions are patched straight into the unpacked JSON files,
then the external migration tool runs ``capture`` followed by ``migrate``.
Each run works in its own scratch directory so concurrent imports (even by
the same user) never share state.
"""

from __future__ import annotations

import asyncio
import shlex
import shutil
from pathlib import Path
from typing import Any, Mapping

import structlog

from Adaptorium.errors import MigrationToolError
from Adaptorium.interfaces import MigrationToolRunner
from Adaptorium.metrics import inc_counter
from Adaptorium.package import read_json, write_json
from Adaptorium.schemas import PluginDescriptor
from Adaptorium.tools.ulid import generate_ulid

log = structlog.get_logger()

LOG_TAIL_LINES = 20


class SubprocessMigrationTool:
    """Runs the migration tool as a child process and waits for it to exit."""

    def __init__(self, command: str = "adapt-migrations"):
        self.argv = shlex.split(command)

    async def run(self, command: str, *, cwd: Path, args: list[str]) -> tuple[int, str]:
        proc = await asyncio.create_subprocess_exec(
            *self.argv,
            command,
            *args,
            cwd=str(cwd),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
        out, _ = await proc.communicate()
        return proc.returncode or 0, out.decode("utf-8", errors="replace")


def needs_file_migration(*, package_predates_framework: bool, plugins_to_migrate: list[str]) -> bool:
    return package_predates_framework or bool(plugins_to_migrate)


def patch_legacy_theme(
    course_dir: Path, language: str, used_plugins: Mapping[str, PluginDescriptor]
) -> list[str]:
    """Apply theme conventions newer frameworks expect; returns the files touched."""
    touched: list[str] = []
    config_path = course_dir / "config.json"
    config = read_json(config_path)
    if not config.get("_theme"):
        theme = next((p.name for p in used_plugins.values() if p.type == "theme"), None)
        if theme:
            config["_theme"] = theme
            write_json(config_path, config)
            touched.append(config_path.name)

    course_path = course_dir / language / "course.json"
    if not course_path.exists():
        return touched
    course = read_json(course_path)
    changed = False
    globals_: dict[str, Any] = course.setdefault("_globals", {})
    if "_theme" in globals_:
        themes = globals_.setdefault("_themes", {})
        legacy = globals_.pop("_theme")
        if isinstance(legacy, dict):
            for k, v in legacy.items():
                themes.setdefault(k, v)
        changed = True
    # Style variables used to live on the course root
    if isinstance(course.get("_theme"), dict):
        variables = globals_.setdefault("_themes", {}).setdefault("_variables", {})
        for k, v in course.pop("_theme").items():
            variables.setdefault(k, v)
        changed = True
    if changed:
        write_json(course_path, course)
        touched.append(f"{language}/course.json")
    return touched


def _tail(text: str, lines: int = LOG_TAIL_LINES) -> str:
    return "\n".join(text.splitlines()[-lines:])


async def migrate_course_data(
    *,
    package_root: Path,
    course_dir: Path,
    language: str,
    scratch_root: Path,
    runner: MigrationToolRunner,
    used_plugins: Mapping[str, PluginDescriptor],
    user_id: str,
) -> str:
    """Patch and migrate the unpacked package in place; returns the tool log."""
    touched = await asyncio.to_thread(patch_legacy_theme, course_dir, language, used_plugins)
    log.info("importer.migration.patched", files=touched)

    scratch = scratch_root / f"migrations-{user_id}-{generate_ulid()}"
    capture_dir = scratch / "capture"
    capture_dir.mkdir(parents=True, exist_ok=True)
    log_path = scratch / "migration.log"
    args = ["--outputdir", str(course_dir), "--capturedir", str(capture_dir)]
    transcript: list[str] = []
    try:
        for step in ("capture", "migrate"):
            log.info("importer.migration.tool.start", step=step, scratch=str(scratch))
            code, output = await runner.run(step, cwd=package_root, args=args)
            transcript.append(f"$ {step} {' '.join(args)}\n{output}")
            log_path.write_text("\n".join(transcript), encoding="utf-8")
            if code != 0:
                inc_counter("importer.migration.tool.failed")
                raise MigrationToolError(
                    f"Migration tool '{step}' exited with code {code}",
                    step=step,
                    exitCode=code,
                    log=_tail(output),
                )
            log.info("importer.migration.tool.done", step=step)
    finally:
        shutil.rmtree(scratch, ignore_errors=True)
    return "\n".join(transcript)
