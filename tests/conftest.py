# tests/conftest.py

import logging
import os
from collections.abc import AsyncIterator
from pathlib import Path

import pytest
import structlog

# Point the app at a process-local in-memory DB before any Adaptorium module
# creates an engine. Each test gets a fresh engine (and so a fresh database).
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"

from Adaptorium import models as _models  # noqa: F401,E402
from Adaptorium.config import Settings  # noqa: E402
from Adaptorium.db import dispose_engine  # noqa: E402
from Adaptorium.metrics import reset_counters  # noqa: E402

from fakes import PackageBuilder, make_collaborators  # noqa: E402


@pytest.fixture
async def db() -> AsyncIterator[None]:
    """Fresh in-memory database for tests that persist build records."""
    await dispose_engine()
    yield None
    await dispose_engine()


@pytest.fixture(autouse=True)
def _reset_metrics():
    reset_counters()
    yield
    reset_counters()


@pytest.fixture
def restore_logging():
    """Undo `setup_logging` so handlers do not leak into later tests."""
    root = logging.getLogger()
    level = root.level
    yield
    for handler in root.handlers[:]:
        if isinstance(handler.formatter, structlog.stdlib.ProcessorFormatter):
            root.removeHandler(handler)
            handler.close()
    root.setLevel(level)
    logging.captureWarnings(False)
    structlog.reset_defaults()


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        database_url="sqlite+aiosqlite:///:memory:",
        framework_version="5.0.0",
        build_dir=str(tmp_path / "builds"),
        import_scratch_dir=str(tmp_path / "scratch"),
        logging_file="NONE",
    )


@pytest.fixture
def collaborators():
    return make_collaborators()


@pytest.fixture
def package(tmp_path: Path) -> PackageBuilder:
    """A complete, importable package written under ``tmp_path/pkg``."""
    return PackageBuilder(tmp_path / "pkg").write()
