"""Health, recovery and cleanup API routes."""

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, status

from modelhook.core.errors import ModelHookError
from modelhook.dependencies import Services, get_services
from modelhook.ingress.auth import require_api_key
from modelhook.ops.schemas import (
    BackupRequest,
    CleanupBackupsRequest,
    CleanupRequest,
    ExportRequest,
    ImportRequest,
    MigrateCacheRequest,
    RestoreRequest,
    SyncRequest,
)

logger = structlog.get_logger("modelhook")

health_router = APIRouter(prefix="/health", tags=["health"], dependencies=[Depends(require_api_key)])
recovery_router = APIRouter(prefix="/recovery", tags=["recovery"], dependencies=[Depends(require_api_key)])
cleanup_router = APIRouter(prefix="/cleanup", tags=["cleanup"], dependencies=[Depends(require_api_key)])


def _wrap(message: str, e: Exception) -> HTTPException:
    logger.error(message, error=str(e), exc_info=True)
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=f"{message}: {e}")


# ================================
# HEALTH
# ================================

@health_router.get("/")
async def health_check(services: Services = Depends(get_services)) -> dict:
    """Fleet-wide health with statistics and recommendations."""
    try:
        return await services.health.health_check()
    except (HTTPException, ModelHookError):
        raise
    except Exception as e:
        raise _wrap("Failed to perform health check", e) from e


@health_router.get("/detailed")
async def detailed_health(
    page: int = Query(1, ge=1),
    per_page: int = Query(20, ge=1, le=100),
    include_healthy: bool = Query(False),
    services: Services = Depends(get_services),
) -> dict:
    try:
        return await services.health.detailed_health(page=page, per_page=per_page, include_healthy=include_healthy)
    except (HTTPException, ModelHookError):
        raise
    except Exception as e:
        raise _wrap("Failed to get detailed health information", e) from e


@health_router.get("/analytics")
async def analytics(
    days: int = Query(7, ge=1, description="Look-back window, capped at 30"),
    services: Services = Depends(get_services),
) -> dict:
    try:
        return await services.health.analytics(days=days)
    except (HTTPException, ModelHookError):
        raise
    except Exception as e:
        raise _wrap("Failed to generate analytics", e) from e


@health_router.get("/subscriptions/{subscription_id}/validate")
async def validate_subscription(subscription_id: str, services: Services = Depends(get_services)) -> dict:
    return await services.health.validate_subscription(subscription_id)


# ================================
# RECOVERY
# ================================

@recovery_router.post("/backup", status_code=status.HTTP_201_CREATED)
async def create_backup(request: BackupRequest, services: Services = Depends(get_services)) -> dict:
    path = await services.recovery.backup(name=request.name, include_deleted=request.include_deleted)
    return {"path": str(path), "name": path.name}


@recovery_router.get("/backups")
async def list_backups(services: Services = Depends(get_services)) -> dict:
    backups = services.recovery.list_backups()
    return {"backups": backups, "total": len(backups)}


@recovery_router.post("/restore")
async def restore_backup(request: RestoreRequest, services: Services = Depends(get_services)) -> dict:
    return await services.recovery.restore(request.path, replace_existing=request.replace_existing)


@recovery_router.post("/export", status_code=status.HTTP_201_CREATED)
async def export_subscriptions(request: ExportRequest, services: Services = Depends(get_services)) -> dict:
    filters = request.filters.model_dump(exclude_none=True)
    path = await services.recovery.export(filters, fmt=request.format)
    return {"path": str(path), "name": path.name, "format": request.format}


@recovery_router.post("/import")
async def import_subscriptions(request: ImportRequest, services: Services = Depends(get_services)) -> dict:
    return await services.recovery.import_subscriptions(
        request.path,
        skip_existing=request.skip_existing,
        validate=request.validate_records,
    )


@recovery_router.post("/backups/cleanup")
async def cleanup_backups(request: CleanupBackupsRequest, services: Services = Depends(get_services)) -> dict:
    deleted = services.recovery.cleanup_old_backups(keep_days=request.keep_days)
    return {"deleted": deleted, "keep_days": request.keep_days or services.recovery.retention_days}


@recovery_router.post("/auto-recover")
async def auto_recover(services: Services = Depends(get_services)) -> dict:
    return await services.recovery.auto_recover()


@recovery_router.post("/sync")
async def manual_sync(request: SyncRequest, services: Services = Depends(get_services)) -> dict:
    return await services.recovery.manual_sync(list(request.sources))


@recovery_router.post("/migrate-cache")
async def migrate_cache(request: MigrateCacheRequest, services: Services = Depends(get_services)) -> dict:
    existing = await services.store.count_all()
    if existing and not request.force:
        return {"migrated": 0, "skipped": True, "reason": f"Store already holds {existing} subscriptions"}
    migrated = await services.recovery.migrate_legacy_cache(force=request.force)
    return {"migrated": migrated, "skipped": False}


# ================================
# CLEANUP
# ================================

@cleanup_router.post("/")
async def run_cleanup(request: CleanupRequest, services: Services = Depends(get_services)) -> dict:
    """Apply the retention policy. Without ``force`` a non-dry run is cancelled."""
    archive = request.archive and services.settings.archiving_enabled
    report = await services.cleanup.run(
        request.type,
        dry_run=request.dry_run,
        force=request.force,
        archive=archive,
        batch_size=request.batch_size,
    )
    return report.to_dict()
