"""Manifest validation and hashing for course packages.

This module provides:
- JSON schema validation for ``package.json`` and plugin ``bower.json`` manifests
- JSON schema validation for persisted build records
- Deterministic manifest hashing for log correlation
"""

from __future__ import annotations

import hashlib
import json
from functools import lru_cache
from pathlib import Path
from typing import Any

import jsonschema

CONTRACTS_DIR = Path(__file__).resolve().parent / "contracts"


class ManifestValidationError(ValueError):
    """Raised when manifest validation fails."""

    def __init__(self, message: str, *, path: str | None = None):
        super().__init__(message)
        self.path = path


@lru_cache(maxsize=None)
def load_contract(name: str) -> dict[str, Any]:
    """Load a JSON schema from the packaged contracts directory."""
    schema_path = CONTRACTS_DIR / f"{name}.schema.json"
    if not schema_path.exists():
        raise ManifestValidationError(f"Schema not found at {schema_path}")
    try:
        with open(schema_path, encoding="utf-8") as f:
            return json.load(f)
    except (json.JSONDecodeError, OSError) as exc:
        raise ManifestValidationError(f"Failed to load schema {name}: {exc}") from exc


def validate_against(document: Any, contract: str, *, path: str | None = None) -> None:
    """Validate ``document`` against a named contract.

    Raises:
        ManifestValidationError: If validation fails
    """
    schema = load_contract(contract)
    try:
        jsonschema.validate(
            document, schema, format_checker=jsonschema.Draft202012Validator.FORMAT_CHECKER
        )
    except jsonschema.ValidationError as exc:
        where = "/".join(str(p) for p in exc.absolute_path) or "<root>"
        raise ManifestValidationError(
            f"{contract} validation failed at {where}: {exc.message}", path=path
        ) from exc


def read_manifest(manifest_path: Path) -> dict[str, Any]:
    try:
        with open(manifest_path, encoding="utf-8") as f:
            manifest = json.load(f)
    except (json.JSONDecodeError, OSError) as exc:
        raise ManifestValidationError(
            f"Failed to load manifest from {manifest_path}: {exc}", path=str(manifest_path)
        ) from exc
    if not isinstance(manifest, dict):
        raise ManifestValidationError(
            f"Manifest {manifest_path} is not a JSON object", path=str(manifest_path)
        )
    return manifest


def validate_package_manifest(manifest_path: Path) -> dict[str, Any]:
    """Load and validate a package ``package.json``."""
    manifest = read_manifest(manifest_path)
    validate_against(manifest, "package", path=str(manifest_path))
    return manifest


def validate_plugin_manifest(manifest_path: Path) -> dict[str, Any]:
    """Load and validate a plugin ``bower.json``."""
    manifest = read_manifest(manifest_path)
    validate_against(manifest, "plugin", path=str(manifest_path))
    return manifest


def validate_build_record(record: dict[str, Any]) -> None:
    validate_against(record, "build_record")


def compute_manifest_hash(manifest: dict[str, Any]) -> str:
    """Hex SHA-256 of the manifest serialised with sorted keys."""
    encoded = json.dumps(manifest, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()
