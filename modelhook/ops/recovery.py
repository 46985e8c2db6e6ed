"""Backup, restore, export, import and legacy-cache migration of subscriptions."""

import csv
import io
import json
import os
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

import structlog

from modelhook.core.clock import ensure_utc, isoformat, parse_datetime, utcnow
from modelhook.core.errors import RecoveryError
from modelhook.ops.legacy_cache import LegacyCache
from modelhook.subscriptions.database import SubscriptionStore
from modelhook.subscriptions.models import LIVE_STATUSES, Subscription, SubscriptionStatus
from modelhook.subscriptions.schemas import is_valid_url

logger = structlog.get_logger("modelhook")

SNAPSHOT_VERSION = "1.0"
CSV_COLUMNS = ["id", "model_class", "events", "webhook_url", "properties", "active", "created_at", "updated_at"]
TIMESTAMP_FORMAT = "%Y-%m-%d_%H-%M-%S"


def _as_bool(value: Any, default: bool = True) -> bool:
    if value is None or value == "":
        return default
    if isinstance(value, str):
        return value.strip().lower() in ("true", "1", "yes", "on")
    return bool(value)


def normalise_record(raw: Any, validate: bool = True) -> dict[str, Any]:
    """Turn a snapshot, export or cache record into store fields.

    Raises ValueError with a human-readable reason when the record is unusable.
    """
    if not isinstance(raw, dict):
        raise ValueError("record is not an object")

    target_class = raw.get("model_class") or raw.get("target_class") or raw.get("model")
    endpoint_url = raw.get("webhook_url") or raw.get("endpoint_url")

    events = raw.get("events")
    if isinstance(events, str):
        events = [e for e in events.split(";") if e]
    properties = raw.get("properties", raw.get("watched_properties"))
    if isinstance(properties, str):
        try:
            properties = json.loads(properties) if properties.strip() else []
        except json.JSONDecodeError as e:
            raise ValueError("properties is not valid JSON") from e

    if not target_class:
        raise ValueError("missing model_class")
    if not endpoint_url:
        raise ValueError("missing webhook_url")
    if not isinstance(events, list) or not events:
        raise ValueError("events must be a non-empty list")
    if validate and not is_valid_url(endpoint_url):
        raise ValueError(f"invalid webhook_url: {endpoint_url}")

    status = raw.get("status") or None
    if status is not None and status not in {s.value for s in SubscriptionStatus}:
        raise ValueError(f"unknown status: {status}")

    try:
        created_at = parse_datetime(raw.get("created_at"))
        updated_at = parse_datetime(raw.get("updated_at"))
        deleted_at = parse_datetime(raw.get("deleted_at"))
    except (TypeError, ValueError) as e:
        raise ValueError(f"invalid timestamp: {e}") from e

    return {
        "id": str(raw["id"]) if raw.get("id") else None,
        "target_class": str(target_class),
        "events": [str(e) for e in events],
        "endpoint_url": str(endpoint_url),
        "watched_properties": list(properties) if properties else None,
        "active": _as_bool(raw.get("active"), default=True),
        "is_event_subscription": _as_bool(raw.get("is_event_subscription"), default=False),
        "node_id": raw.get("node_id"),
        "workflow_id": raw.get("workflow_id"),
        "created_at": created_at,
        "updated_at": updated_at,
        "status": status,
        "deleted_at": deleted_at,
    }


class RecoveryManager:
    """Moves subscriptions between the store and on-disk snapshots.

    Snapshots are written once with exclusive-create and never rewritten.
    Every batch load parses the whole input before writing and runs inside a
    single transaction; per-record problems are collected, not raised.
    """

    def __init__(
        self,
        store: SubscriptionStore,
        backup_dir: str | Path,
        export_dir: str | Path,
        legacy_cache: LegacyCache | None = None,
        retention_days: int = 30,
    ) -> None:
        self.store = store
        self.backup_dir = Path(backup_dir)
        self.export_dir = Path(export_dir)
        self.legacy_cache = legacy_cache
        self.retention_days = retention_days

    # ------------------------------------------------------------------
    # File helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _write_once(directory: Path, stem: str, suffix: str, content: str) -> Path:
        directory.mkdir(parents=True, exist_ok=True)
        candidate = directory / f"{stem}{suffix}"
        counter = 1
        while True:
            try:
                with open(candidate, "x", encoding="utf-8", newline="") as f:
                    f.write(content)
                return candidate
            except FileExistsError:
                candidate = directory / f"{stem}_{counter}{suffix}"
                counter += 1

    @staticmethod
    def _resolve(path: str | Path, base_dir: Path) -> Path:
        path = Path(path)
        if path.is_absolute() or path.exists():
            return path
        return base_dir / path

    @staticmethod
    def _read(path: Path) -> str:
        if not path.is_file():
            raise RecoveryError(f"File not found: {path}")
        with open(path, encoding="utf-8") as f:
            return f.read()

    @staticmethod
    def _parse_json(content: str, path: Path) -> Any:
        try:
            return json.loads(content)
        except json.JSONDecodeError as e:
            raise RecoveryError(f"Invalid JSON in {path}: {e.msg}") from e

    @staticmethod
    def _parse_csv(content: str, path: Path) -> list[dict[str, Any]]:
        reader = csv.DictReader(io.StringIO(content))
        if reader.fieldnames is None or not {"model_class", "events", "webhook_url"} <= set(reader.fieldnames):
            raise RecoveryError(f"CSV file {path} is missing required columns")
        try:
            return [row for row in reader if any((v or "").strip() for v in row.values() if isinstance(v, str))]
        except csv.Error as e:
            raise RecoveryError(f"Invalid CSV in {path}: {e}") from e

    # ------------------------------------------------------------------
    # Batch load
    # ------------------------------------------------------------------

    async def _load(
        self,
        raw_records: list[Any],
        replace_existing: bool = False,
        skip_existing: bool = True,
        validate: bool = True,
    ) -> dict[str, Any]:
        errors: list[str] = []
        candidates: list[dict[str, Any]] = []
        for index, raw in enumerate(raw_records):
            label = raw.get("id") if isinstance(raw, dict) and raw.get("id") else f"#{index}"
            try:
                candidates.append(normalise_record(raw, validate=validate))
            except ValueError as e:
                errors.append(f"Invalid subscription {label}: {e}")

        existing_ids: set[str] = set()
        live_endpoints: set[tuple[str, bool]] = set()
        if not replace_existing:
            existing_ids = await self.store.existing_ids([c["id"] for c in candidates if c["id"]])
            live_endpoints = {(s.endpoint_url, bool(s.is_event_subscription)) for s in await self.store.all()}

        to_insert: list[dict[str, Any]] = []
        skipped = 0
        seen_ids: set[str] = set()
        for record in candidates:
            record_id = record["id"]
            if record_id and (record_id in existing_ids or record_id in seen_ids):
                if skip_existing or record_id in seen_ids:
                    skipped += 1
                else:
                    errors.append(f"Subscription {record_id} already exists")
                continue
            if record["status"] in (None, *LIVE_STATUSES):
                endpoint = (record["endpoint_url"], record["is_event_subscription"])
                if endpoint in live_endpoints:
                    errors.append(
                        f"Subscription {record_id or record['endpoint_url']}: endpoint already subscribed"
                    )
                    continue
                live_endpoints.add(endpoint)
            if record_id:
                seen_ids.add(record_id)
            to_insert.append(record)

        inserted = 0
        try:
            with self.store.transaction() as session:
                if replace_existing:
                    removed = session.query(Subscription).delete(synchronize_session=False)
                    logger.info("Existing subscriptions cleared for restore", removed=removed)
                for record in to_insert:
                    session.add(self.store.build(record))
                session.flush()
                inserted = len(to_insert)
        except Exception as e:
            logger.error("Subscription batch load rolled back", error=str(e), exc_info=True)
            errors.append(f"Batch rolled back: {e}")
            inserted = 0

        return {"inserted": inserted, "skipped": skipped, "errors": errors}

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def backup(self, name: str | None = None, include_deleted: bool = False) -> Path:
        """Write a JSON snapshot of all subscriptions and return its path."""
        now = utcnow()
        stem = f"{name}_{now.strftime(TIMESTAMP_FORMAT)}" if name else f"subscriptions_backup_{now.strftime(TIMESTAMP_FORMAT)}"
        subscriptions = await self.store.all(include_deleted=include_deleted)
        snapshot = {
            "metadata": {
                "created_at": isoformat(now),
                "version": SNAPSHOT_VERSION,
                "total_subscriptions": len(subscriptions),
                "name": name or stem,
            },
            "subscriptions": [s.to_legacy_dict() for s in subscriptions],
        }
        path = self._write_once(self.backup_dir, stem, ".json", json.dumps(snapshot, indent=2))
        logger.info("Subscription backup created", path=str(path), total=len(subscriptions))
        return path

    async def restore(self, path: str | Path, replace_existing: bool = False) -> dict[str, Any]:
        """Load a backup. Without ``replace_existing`` rows whose id already exists are skipped."""
        backup_path = self._resolve(path, self.backup_dir)
        data = self._parse_json(self._read(backup_path), backup_path)
        if not isinstance(data, dict) or not isinstance(data.get("subscriptions"), list):
            raise RecoveryError("Invalid backup file format")

        outcome = await self._load(data["subscriptions"], replace_existing=replace_existing)
        results = {"restored": outcome["inserted"], "skipped": outcome["skipped"], "errors": outcome["errors"]}
        logger.info(
            "Subscription restore completed",
            backup_path=str(backup_path),
            restored=results["restored"],
            skipped=results["skipped"],
            errors=len(results["errors"]),
        )
        return results

    async def export(self, filters: dict[str, Any] | None = None, fmt: str = "json") -> Path:
        fmt = fmt.lower()
        if fmt not in ("json", "csv"):
            raise RecoveryError(f"Unsupported export format: {fmt}")

        subscriptions = self._filter(await self.store.all(), filters or {})
        now = utcnow()
        stem = f"subscriptions_export_{now.strftime(TIMESTAMP_FORMAT)}"

        if fmt == "json":
            content = json.dumps(
                {
                    "metadata": {
                        "exported_at": isoformat(now),
                        "version": SNAPSHOT_VERSION,
                        "total_subscriptions": len(subscriptions),
                    },
                    "subscriptions": [s.to_legacy_dict() for s in subscriptions],
                },
                indent=2,
            )
        else:
            buffer = io.StringIO()
            writer = csv.writer(buffer, lineterminator="\n")
            writer.writerow(CSV_COLUMNS)
            for s in subscriptions:
                writer.writerow([
                    s.id,
                    s.target_class,
                    ";".join(s.events or []),
                    s.endpoint_url,
                    json.dumps(s.watched_properties or []),
                    "true" if s.active else "false",
                    isoformat(s.created_at),
                    isoformat(s.updated_at),
                ])
            content = buffer.getvalue()

        path = self._write_once(self.export_dir, stem, f".{fmt}", content)
        logger.info("Subscriptions exported", path=str(path), format=fmt, total=len(subscriptions))
        return path

    @staticmethod
    def _filter(subscriptions: list[Subscription], filters: dict[str, Any]) -> list[Subscription]:
        active = filters.get("active")
        target_class = filters.get("model_class") or filters.get("target_class")
        has_errors = filters.get("has_errors")
        created_after = filters.get("created_after")
        if isinstance(created_after, str):
            try:
                created_after = parse_datetime(created_after)
            except ValueError as e:
                raise RecoveryError(f"Invalid created_after filter: {created_after}") from e
        elif isinstance(created_after, datetime):
            created_after = ensure_utc(created_after)

        result = []
        for s in subscriptions:
            if active is not None and s.active != _as_bool(active):
                continue
            if target_class and s.target_class != target_class:
                continue
            if has_errors is not None and bool(s.last_error) != _as_bool(has_errors):
                continue
            if created_after is not None and s.created_at < created_after:
                continue
            result.append(s)
        return result

    async def import_subscriptions(
        self,
        path: str | Path,
        skip_existing: bool = True,
        validate: bool = True,
    ) -> dict[str, Any]:
        """Import a JSON (list or ``{"subscriptions": [...]}``) or CSV file."""
        import_path = self._resolve(path, self.export_dir)
        content = self._read(import_path)
        extension = import_path.suffix.lower().lstrip(".")

        if extension == "json":
            data = self._parse_json(content, import_path)
            if isinstance(data, dict) and "subscriptions" in data:
                data = data["subscriptions"]
            if not isinstance(data, list):
                raise RecoveryError("Import JSON must be a list or contain a 'subscriptions' list")
            records = data
        elif extension == "csv":
            records = self._parse_csv(content, import_path)
        else:
            raise RecoveryError(f"Unsupported import format: {extension}")

        outcome = await self._load(records, skip_existing=skip_existing, validate=validate)
        results = {"imported": outcome["inserted"], "skipped": outcome["skipped"], "errors": outcome["errors"]}
        logger.info(
            "Subscription import completed",
            file_path=str(import_path),
            imported=results["imported"],
            skipped=results["skipped"],
            errors=len(results["errors"]),
        )
        return results

    async def migrate_legacy_cache(self, cache: LegacyCache | None = None, force: bool = False) -> int:
        """Copy cached subscriptions into the store, then clear the cache.

        Does nothing once the store holds live subscriptions unless ``force``
        is set. Ids already in the store are left untouched, so running twice
        is a no-op. The cache is only cleared once the inserts have committed.
        """
        cache = cache or self.legacy_cache
        if cache is None:
            return 0
        if not force:
            existing = await self.store.count_all()
            if existing:
                logger.info("Legacy cache migration skipped; store is populated", existing=existing)
                return 0
        records = cache.get()
        if not records:
            return 0

        raw_records = []
        for key, record in records.items():
            if isinstance(record, dict) and not record.get("id") and not key.startswith("__"):
                record = {**record, "id": key}
            raw_records.append(record)

        outcome = await self._load(raw_records, skip_existing=True, validate=False)
        if any(e.startswith("Batch rolled back") for e in outcome["errors"]):
            raise RecoveryError("Legacy cache migration failed; cache left intact", errors=outcome["errors"])
        for error in outcome["errors"]:
            logger.warning("Legacy cache record not migrated", error=error)

        cache.forget()
        logger.info(
            "Legacy cache migrated",
            migrated=outcome["inserted"],
            skipped=outcome["skipped"],
            failed=len(outcome["errors"]),
        )
        return outcome["inserted"]

    async def auto_recover(self) -> dict[str, Any]:
        """Recover from the legacy cache, falling back to the newest backup. Never replaces rows."""
        results: dict[str, Any] = {
            "recovered_from_cache": 0,
            "recovered_from_backup": 0,
            "total_recovered": 0,
            "errors": [],
        }
        try:
            results["recovered_from_cache"] = await self.migrate_legacy_cache()
            if results["recovered_from_cache"] == 0:
                results["recovered_from_backup"] = await self._sync_from_latest_backup(results["errors"])
        except RecoveryError as e:
            results["errors"].append(e.message)
            logger.error("Automatic subscription recovery failed", error=e.message)

        results["total_recovered"] = results["recovered_from_cache"] + results["recovered_from_backup"]
        logger.info("Automatic subscription recovery completed", **results)
        return results

    async def _sync_from_latest_backup(self, errors: list[str] | None = None) -> int:
        backups = self.list_backups()
        if not backups:
            return 0
        outcome = await self.restore(backups[0]["path"], replace_existing=False)
        if errors is not None:
            errors.extend(outcome["errors"])
        return outcome["restored"]

    async def manual_sync(self, sources: list[str] | None = None) -> dict[str, Any]:
        """Sync from each named source (``cache``, ``backup``), reporting per source."""
        results: dict[str, Any] = {"synced_sources": {}, "total_synced": 0, "errors": {}}
        for source in sources or ["cache", "backup"]:
            try:
                if source == "cache":
                    synced = await self.migrate_legacy_cache()
                elif source == "backup":
                    synced = await self._sync_from_latest_backup()
                else:
                    results["errors"][source] = f"Unknown sync source: {source}"
                    continue
            except RecoveryError as e:
                results["errors"][source] = e.message
                logger.error("Manual sync failed", source=source, error=e.message)
                continue
            results["synced_sources"][source] = synced
            results["total_synced"] += synced

        logger.info("Manual subscription sync completed", total_synced=results["total_synced"])
        return results

    def list_backups(self) -> list[dict[str, Any]]:
        """Backups with their metadata, newest first."""
        if not self.backup_dir.is_dir():
            return []
        backups = []
        for path in self.backup_dir.glob("*.json"):
            stat = path.stat()
            metadata: dict[str, Any] = {}
            try:
                with open(path, encoding="utf-8") as f:
                    metadata = (json.load(f) or {}).get("metadata", {}) or {}
            except (json.JSONDecodeError, AttributeError, OSError) as e:
                logger.warning("Unreadable backup file", path=str(path), error=str(e))

            created_at = None
            try:
                created_at = parse_datetime(metadata.get("created_at"))
            except ValueError:
                pass
            if created_at is None:
                created_at = datetime.fromtimestamp(stat.st_mtime, tz=utcnow().tzinfo)

            backups.append({
                "name": path.name,
                "path": str(path),
                "size": stat.st_size,
                "created_at": isoformat(created_at),
                "total_subscriptions": metadata.get("total_subscriptions"),
                "version": metadata.get("version"),
                "_sort": created_at,
            })

        backups.sort(key=lambda b: b["_sort"], reverse=True)
        for backup in backups:
            del backup["_sort"]
        return backups

    def cleanup_old_backups(self, keep_days: int | None = None) -> int:
        """Delete backups older than ``keep_days``, or the retention setting. Returns how many were removed."""
        keep_days = self.retention_days if keep_days is None else keep_days
        cutoff = utcnow() - timedelta(days=keep_days)
        deleted = 0
        for backup in self.list_backups():
            if parse_datetime(backup["created_at"]) < cutoff:
                os.remove(backup["path"])
                deleted += 1
        logger.info("Old backups cleaned up", deleted=deleted, keep_days=keep_days)
        return deleted
