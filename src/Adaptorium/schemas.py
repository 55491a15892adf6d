# schemas.py

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

PluginType = Literal["component", "extension", "menu", "theme"]

PluginStatus = Literal["INVALID", "INSTALLED", "OLDER", "NO_CHANGE", "UPDATE_BLOCKED", "UPDATED"]

BuildAction = Literal["preview", "publish", "export"]


class ImportSettings(BaseModel):
    """User-selected switches captured once per import run."""

    is_dry_run: bool = False
    import_content: bool = True
    import_plugins: bool = True
    migrate_content: bool = True
    update_plugins: bool = False
    remove_source: bool = True

    model_config = ConfigDict(frozen=True, extra="forbid")


class PluginDescriptor(BaseModel):
    """A plugin as declared by a package (``bower.json``)."""

    name: str
    path: str
    version: str | None = None
    target_attribute: str | None = Field(default=None, alias="targetAttribute")
    type: PluginType

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class StatusEntry(BaseModel):
    code: str
    data: dict[str, Any] | list[Any] | None = None


class StatusReport(BaseModel):
    """Append-only, non-fatal report of what an import did (or would do)."""

    info: list[StatusEntry] = Field(default_factory=list)
    warn: list[StatusEntry] = Field(default_factory=list)

    def add_info(self, code: str, data: dict[str, Any] | list[Any] | None = None) -> None:
        self.info.append(StatusEntry(code=code, data=data))

    def add_warn(self, code: str, data: dict[str, Any] | list[Any] | None = None) -> None:
        self.warn.append(StatusEntry(code=code, data=data))

    def codes(self, level: Literal["info", "warn"] = "info") -> list[str]:
        return [e.code for e in getattr(self, level)]


class VersionRow(BaseModel):
    name: str
    status: PluginStatus
    versions: list[str | None]


class ImportSummary(BaseModel):
    title: str | None = None
    course_id: str | None = Field(default=None, alias="courseId")
    status_report: StatusReport = Field(alias="statusReport")
    content: dict[str, int] = Field(default_factory=dict)
    versions: list[VersionRow] = Field(default_factory=list)

    model_config = ConfigDict(populate_by_name=True)


class BuildRecordData(BaseModel):
    """Persisted description of a finished build."""

    id: str | None = Field(default=None, alias="_id")
    action: BuildAction
    course_id: str = Field(alias="courseId")
    location: str
    expires_at: datetime = Field(alias="expiresAt")
    created_by: str = Field(alias="createdBy")
    versions: dict[str, str] = Field(default_factory=dict)

    model_config = ConfigDict(populate_by_name=True)
