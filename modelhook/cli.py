#!/usr/bin/env python3
"""
Operator commands for modelhook.

Usage:
    modelhook cleanup [--type=all] [--dry-run] [--force] [--archive]
    modelhook health
    modelhook backup [--name=<name>]
    modelhook restore <path> [--replace]
    modelhook export [--format=json|csv] [--active/--inactive] [--model=<class>]
    modelhook import <path> [--no-skip-existing] [--no-validate]
    modelhook list-backups
    modelhook cleanup-backups [--keep-days=N]
    modelhook auto-recover
    modelhook migrate-cache [--force]
    modelhook test-webhook <subscription-id>

Every command prints a JSON document on stdout.
"""

import argparse
import asyncio
import json
import sys
from typing import Any

import structlog

from modelhook.config import Settings, load_settings
from modelhook.core.errors import ModelHookError
from modelhook.core.logging import configure_logging
from modelhook.dependencies import Services, build_services
from modelhook.ops.cleanup import CleanupType

logger = structlog.get_logger("modelhook.cli")


def _print(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


def _confirm(prompt: str) -> bool:
    try:
        answer = input(f"{prompt} [y/N] ")
    except EOFError:
        return False
    return answer.strip().lower() in ("y", "yes")


async def cmd_cleanup(services: Services, args: argparse.Namespace) -> int:
    archive = args.archive and services.settings.archiving_enabled
    report = await services.cleanup.run(
        args.type,
        dry_run=args.dry_run,
        force=args.force,
        archive=archive,
        confirm=_confirm,
        batch_size=args.batch_size,
    )
    _print(report.to_dict())
    return 1 if report.cancelled else 0


async def cmd_health(services: Services, args: argparse.Namespace) -> int:
    result = await services.health.health_check()
    _print(result)
    return 0 if result["overall_health"] != "critical" else 2


async def cmd_backup(services: Services, args: argparse.Namespace) -> int:
    path = await services.recovery.backup(name=args.name)
    _print({"path": str(path)})
    return 0


async def cmd_restore(services: Services, args: argparse.Namespace) -> int:
    if args.replace and not args.force and not _confirm("Replace ALL existing subscriptions?"):
        _print({"cancelled": True})
        return 1
    result = await services.recovery.restore(args.path, replace_existing=args.replace)
    _print(result)
    return 0 if not result["errors"] else 1


async def cmd_export(services: Services, args: argparse.Namespace) -> int:
    filters: dict[str, Any] = {}
    if args.active is not None:
        filters["active"] = args.active
    if args.model:
        filters["model_class"] = args.model
    if args.has_errors:
        filters["has_errors"] = True
    if args.created_after:
        filters["created_after"] = args.created_after
    path = await services.recovery.export(filters, fmt=args.format)
    _print({"path": str(path)})
    return 0


async def cmd_import(services: Services, args: argparse.Namespace) -> int:
    result = await services.recovery.import_subscriptions(
        args.path,
        skip_existing=not args.no_skip_existing,
        validate=not args.no_validate,
    )
    _print(result)
    return 0 if not result["errors"] else 1


async def cmd_list_backups(services: Services, args: argparse.Namespace) -> int:
    _print(services.recovery.list_backups())
    return 0


async def cmd_cleanup_backups(services: Services, args: argparse.Namespace) -> int:
    _print({"deleted": services.recovery.cleanup_old_backups(keep_days=args.keep_days)})
    return 0


async def cmd_auto_recover(services: Services, args: argparse.Namespace) -> int:
    result = await services.recovery.auto_recover()
    _print(result)
    return 0 if not result["errors"] else 1


async def cmd_migrate_cache(services: Services, args: argparse.Namespace) -> int:
    existing = await services.store.count_all()
    if existing and not args.force:
        _print({"migrated": 0, "skipped": True, "reason": f"Store already holds {existing} subscriptions"})
        return 0
    _print({"migrated": await services.recovery.migrate_legacy_cache(force=args.force), "skipped": False})
    return 0


async def cmd_test_webhook(services: Services, args: argparse.Namespace) -> int:
    result = await services.require_dispatcher().test_deliver(args.subscription_id)
    await services.require_dispatcher().aclose()
    _print(result.to_dict())
    return 0 if result.success else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="modelhook", description="Manage modelhook webhook subscriptions")
    parser.add_argument("--database-dsn", help="Override MODELHOOK_DATABASE_DSN")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("cleanup", help="Archive or delete subscriptions past their retention window")
    p.add_argument("--type", choices=[t.value for t in CleanupType], default=CleanupType.ALL.value)
    p.add_argument("--dry-run", action="store_true", help="Report matches without changing anything")
    p.add_argument("--force", action="store_true", help="Skip the confirmation prompt")
    p.add_argument("--archive", action="store_true", help="Archive instead of deleting")
    p.add_argument("--batch-size", type=int, default=None)
    p.set_defaults(handler=cmd_cleanup)

    p = sub.add_parser("health", help="Fleet health report")
    p.set_defaults(handler=cmd_health)

    p = sub.add_parser("backup", help="Write a JSON backup")
    p.add_argument("--name")
    p.set_defaults(handler=cmd_backup)

    p = sub.add_parser("restore", help="Restore from a backup file")
    p.add_argument("path")
    p.add_argument("--replace", action="store_true", help="Delete existing subscriptions first")
    p.add_argument("--force", action="store_true", help="Skip the confirmation prompt")
    p.set_defaults(handler=cmd_restore)

    p = sub.add_parser("export", help="Export subscriptions to JSON or CSV")
    p.add_argument("--format", choices=["json", "csv"], default="json")
    group = p.add_mutually_exclusive_group()
    group.add_argument("--active", dest="active", action="store_true", default=None)
    group.add_argument("--inactive", dest="active", action="store_false")
    p.add_argument("--model")
    p.add_argument("--has-errors", action="store_true")
    p.add_argument("--created-after")
    p.set_defaults(handler=cmd_export)

    p = sub.add_parser("import", help="Import subscriptions from JSON or CSV")
    p.add_argument("path")
    p.add_argument("--no-skip-existing", action="store_true")
    p.add_argument("--no-validate", action="store_true")
    p.set_defaults(handler=cmd_import)

    p = sub.add_parser("list-backups", help="List backups, newest first")
    p.set_defaults(handler=cmd_list_backups)

    p = sub.add_parser("cleanup-backups", help="Delete old backups")
    p.add_argument("--keep-days", type=int, default=None, help="Defaults to MODELHOOK_BACKUP_RETENTION_DAYS")
    p.set_defaults(handler=cmd_cleanup_backups)

    p = sub.add_parser("auto-recover", help="Recover from legacy cache or newest backup")
    p.set_defaults(handler=cmd_auto_recover)

    p = sub.add_parser("migrate-cache", help="Move legacy cached subscriptions into the database")
    p.add_argument("--force", action="store_true", help="Migrate even if the database has rows")
    p.set_defaults(handler=cmd_migrate_cache)

    p = sub.add_parser("test-webhook", help="Send a test event to one subscription")
    p.add_argument("subscription_id")
    p.set_defaults(handler=cmd_test_webhook)

    return parser


def main(argv: list[str] | None = None, settings: Settings | None = None) -> int:
    """Main function for command line execution."""
    args = build_parser().parse_args(argv)
    settings = settings or load_settings()
    if args.database_dsn:
        settings = settings.model_copy(update={"database_dsn": args.database_dsn})
    if args.verbose:
        settings = settings.model_copy(update={"log_level": "DEBUG"})

    configure_logging(settings.log_level)
    services = build_services(settings)
    services.store.create_tables()

    try:
        return asyncio.run(args.handler(services, args))
    except ModelHookError as e:
        logger.error("Command failed", command=args.command, error=e.message)
        _print(e.to_dict())
        return 1


if __name__ == "__main__":
    sys.exit(main())
