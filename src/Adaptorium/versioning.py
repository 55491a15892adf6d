"""Semantic-version decisions for plugins and framework packages.

All functions here are pure; they never touch a store or the filesystem.
"""

from __future__ import annotations

import semver

from Adaptorium.errors import PluginVersionError
from Adaptorium.schemas import PluginStatus

# Sentinel used when a package declares a plugin version we cannot parse.
# Sorts below every real release so the installed copy always wins.
SENTINEL_VERSION = "0.0.0"


def _clean(version: str | None) -> str | None:
    if not isinstance(version, str):
        return None
    v = version.strip()
    if v[:1] in ("v", "="):
        v = v[1:]
    return v or None


def parse(version: str | None) -> semver.Version | None:
    v = _clean(version)
    if v is None or not semver.Version.is_valid(v):
        return None
    return semver.Version.parse(v)


def is_valid(version: str | None) -> bool:
    return parse(version) is not None


def compare(a: str, b: str) -> int:
    """Return -1, 0 or 1 comparing two valid versions."""
    pa, pb = parse(a), parse(b)
    if pa is None or pb is None:
        raise ValueError(f"cannot compare invalid versions {a!r} and {b!r}")
    return pa.compare(pb)


def major(version: str | None) -> int | None:
    p = parse(version)
    return p.major if p is not None else None


def coerce_import_version(installed_version: str | None, import_version: str | None) -> str:
    """Return a comparable import version.

    Invalid import versions fall back to ``SENTINEL_VERSION`` so the installed
    plugin is treated as newer; with no usable installed version either the
    plugin cannot be reconciled at all.
    """
    if is_valid(import_version):
        return _clean(import_version)  # type: ignore[return-value]
    if not is_valid(installed_version):
        raise PluginVersionError(
            "Plugin has no valid version in package or registry",
            installedVersion=installed_version,
            importVersion=import_version,
        )
    return SENTINEL_VERSION


def get_plugin_update_status(
    installed_version: str | None,
    import_version: str | None,
    is_local_install: bool | None = False,
    update_plugins: bool | None = False,
) -> PluginStatus:
    """Classify what importing ``import_version`` means for an installed plugin."""
    if not is_valid(import_version):
        return "INVALID"
    if not installed_version:
        return "INSTALLED"
    if not is_valid(installed_version):
        # Nothing to compare against; a re-install is what would happen
        return "UPDATED" if (update_plugins or is_local_install) else "UPDATE_BLOCKED"
    result = compare(import_version, installed_version)  # type: ignore[arg-type]
    if result < 0:
        return "OLDER"
    if result > 0:
        if not update_plugins and not is_local_install:
            return "UPDATE_BLOCKED"
        return "UPDATED"
    return "NO_CHANGE"


def is_framework_compatible(package_version: str | None, framework_version: str) -> bool:
    """Package and installed framework share a major version."""
    pkg_major = major(package_version)
    return pkg_major is not None and pkg_major == major(framework_version)


def package_predates_framework(package_version: str | None, framework_version: str) -> bool:
    pkg_major = major(package_version)
    fw_major = major(framework_version)
    return pkg_major is not None and fw_major is not None and pkg_major < fw_major
