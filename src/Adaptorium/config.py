"""Settings loader for Adaptorium."""

from pathlib import Path
from typing import Any

import tomllib
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _toml_settings_source() -> dict[str, Any]:
    """Load settings from config.toml with keys mapped to Settings fields.

    This source has LOWER priority than env/.env so those can override TOML.
    """
    cfg_path = Path("config.toml")
    if not cfg_path.exists():
        return {}
    with cfg_path.open("rb") as f:
        t = tomllib.load(f)
    framework_cfg = t.get("framework", {}) or {}
    import_cfg = t.get("import", {}) or {}
    build_cfg = t.get("build", {}) or {}
    out: dict[str, Any] = {
        # Framework version packages are checked against
        "framework_version": framework_cfg.get("version", "5.0.0"),
        # Import pipeline
        "import_scratch_dir": import_cfg.get("scratch_dir", "temp/import"),
        "migration_tool_command": import_cfg.get("migration_tool", "adapt-migrations"),
        "asset_folders": import_cfg.get("asset_folders", ["assets"]),
        "import_max_file_size": import_cfg.get("max_file_size", 1_000_000_000),
        # Builds
        "build_dir": build_cfg.get("dir", "temp/builds"),
        "build_expiry_seconds": int(build_cfg.get("expiry_seconds", 7 * 24 * 3600)),
        # Logging config
        "logging_level": t.get("logging", {}).get("level", "INFO"),
        # Per-handler levels: strings INFO|DEBUG|WARNING|ERROR|CRITICAL|NONE
        # console/to_file may also be bools: True -> overall level, False -> NONE
        "logging_console": None,
        "logging_file": None,
        "logging_file_path": t.get("logging", {}).get("file_path", "logs/adaptorium.jsonl"),
        "logging_max_bytes": t.get("logging", {}).get("max_bytes", 5_000_000),
        "logging_backup_count": t.get("logging", {}).get("backup_count", 5),
    }

    db_cfg = t.get("database", {}) or {}
    if db_cfg.get("url"):
        out["database_url"] = db_cfg["url"]

    log_cfg = t.get("logging", {}) or {}
    console_val = log_cfg.get("console", None)
    file_val = log_cfg.get("to_file", None)
    overall = out["logging_level"]

    def _norm_level(v, default):
        if isinstance(v, str):
            return v.upper()
        if isinstance(v, bool):
            return default if v else "NONE"
        return default

    out["logging_console"] = _norm_level(console_val, overall)
    out["logging_file"] = _norm_level(file_val, overall)

    return out


class Settings(BaseSettings):
    database_url: str = Field(default="sqlite+aiosqlite:///./adaptorium.sqlite3")

    # --- Framework ---
    framework_version: str = "5.0.0"

    # --- Import ---
    import_scratch_dir: str = "temp/import"
    migration_tool_command: str = "adapt-migrations"
    asset_folders: list[str] = Field(default_factory=lambda: ["assets"])
    # Bytes, for both a package archive and its unpacked contents
    import_max_file_size: int = 1_000_000_000

    # --- Build ---
    build_dir: str = "temp/builds"
    build_expiry_seconds: int = 7 * 24 * 3600

    # --- Logging ---
    logging_level: str = "INFO"
    logging_console: str = "INFO"
    logging_file: str = "INFO"
    logging_file_path: str = "logs/adaptorium.jsonl"
    logging_max_bytes: int = 5_000_000
    logging_backup_count: int = 5

    model_config = SettingsConfigDict(
        env_prefix="",
        case_sensitive=False,
        env_file=".env",
        extra="ignore",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        # Precedence (highest to lowest):
        # 1) init_settings (explicit overrides in code/tests)
        # 2) dotenv (.env in cwd)
        # 3) env_settings (OS env)
        # 4) TOML (repo config.toml)
        # 5) file_secret_settings
        return (
            init_settings,
            dotenv_settings,
            env_settings,
            _toml_settings_source,
            file_secret_settings,
        )


def load_settings() -> Settings:
    return Settings()
