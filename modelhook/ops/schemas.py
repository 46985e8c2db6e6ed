"""Pydantic schemas for the health, recovery and cleanup API."""

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from modelhook.ops.cleanup import CleanupType


class BackupRequest(BaseModel):
    name: Optional[str] = Field(default=None, pattern=r"^[A-Za-z0-9_.-]+$", max_length=100)
    include_deleted: bool = False


class RestoreRequest(BaseModel):
    path: str = Field(..., min_length=1, description="Backup file name or path")
    replace_existing: bool = False


class ExportFilters(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    active: Optional[bool] = None
    model_class: Optional[str] = None
    has_errors: Optional[bool] = None
    created_after: Optional[datetime] = None


class ExportRequest(BaseModel):
    format: Literal["json", "csv"] = "json"
    filters: ExportFilters = Field(default_factory=ExportFilters)


class ImportRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    path: str = Field(..., min_length=1, description="Import file name or path")
    skip_existing: bool = True
    validate_records: bool = Field(default=True, alias="validate")


class CleanupBackupsRequest(BaseModel):
    keep_days: Optional[int] = Field(default=None, ge=1, description="Defaults to the configured retention")


class MigrateCacheRequest(BaseModel):
    force: bool = False


class SyncRequest(BaseModel):
    sources: list[Literal["cache", "backup"]] = Field(default_factory=lambda: ["cache", "backup"])


class CleanupRequest(BaseModel):
    """Cleanup over the API never prompts: pass ``force`` or ``dry_run``."""

    type: CleanupType = CleanupType.ALL
    dry_run: bool = False
    force: bool = False
    archive: bool = False
    batch_size: Optional[int] = Field(default=None, ge=1, le=1000)
