"""Component wiring shared by the API and the CLI."""

from dataclasses import dataclass
from pathlib import Path

import httpx
import structlog
from fastapi import Request

from modelhook.config import Settings
from modelhook.core.errors import ConfigurationError
from modelhook.delivery.dispatcher import DeliveryDispatcher
from modelhook.delivery.notifier import ChangeNotifier
from modelhook.ingress.signer import Signer
from modelhook.ops.cleanup import CleanupPolicy
from modelhook.ops.health import HealthEvaluator
from modelhook.ops.legacy_cache import FileLegacyCache
from modelhook.ops.recovery import RecoveryManager
from modelhook.subscriptions.database import SubscriptionStore
from modelhook.subscriptions.registry import TargetRegistry
from modelhook.subscriptions.service import SubscriptionService

logger = structlog.get_logger("modelhook")


@dataclass
class Services:
    settings: Settings
    store: SubscriptionStore
    registry: TargetRegistry
    signer: Signer
    subscriptions: SubscriptionService
    dispatcher: DeliveryDispatcher | None
    notifier: ChangeNotifier | None
    health: HealthEvaluator
    recovery: RecoveryManager
    cleanup: CleanupPolicy

    def require_dispatcher(self) -> DeliveryDispatcher:
        if self.dispatcher is None:
            raise ConfigurationError("Webhook signing secret is not configured")
        return self.dispatcher

    def require_notifier(self) -> ChangeNotifier:
        if self.notifier is None:
            raise ConfigurationError("Webhook signing secret is not configured")
        return self.notifier


def load_registry(settings: Settings) -> TargetRegistry:
    if settings.targets_file and Path(settings.targets_file).exists():
        return TargetRegistry.from_file(settings.targets_file)
    if settings.targets_file:
        logger.warning("Targets file not found", path=settings.targets_file)
    return TargetRegistry()


def build_services(
    settings: Settings,
    store: SubscriptionStore | None = None,
    registry: TargetRegistry | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> Services:
    """Construct every component from settings.

    Delivery needs the signing secret; without it the dispatcher and
    notifier are left unset and callers get a ConfigurationError.
    """
    store = store or SubscriptionStore(settings.database_dsn)
    registry = registry if registry is not None else load_registry(settings)
    signer = Signer(timestamp_max_age=settings.timestamp_max_age_seconds)

    dispatcher = None
    notifier = None
    if settings.api_secret:
        dispatcher = DeliveryDispatcher(
            store,
            settings.api_secret,
            timeout=settings.delivery_timeout_seconds,
            max_concurrency=settings.delivery_max_concurrency,
            total_timeout=settings.delivery_total_timeout_seconds,
            signer=signer,
            transport=transport,
        )
        notifier = ChangeNotifier(dispatcher, registry, loop_prevention=settings.loop_prevention_enabled)

    legacy_cache = FileLegacyCache(settings.legacy_cache_path) if settings.legacy_cache_path else None
    recovery = RecoveryManager(
        store,
        settings.backup_dir,
        settings.export_dir,
        legacy_cache=legacy_cache,
        retention_days=settings.backup_retention_days,
    )

    return Services(
        settings=settings,
        store=store,
        registry=registry,
        signer=signer,
        subscriptions=SubscriptionService(store, registry),
        dispatcher=dispatcher,
        notifier=notifier,
        health=HealthEvaluator(store, registry, stale_hours=settings.stale_threshold_hours),
        recovery=recovery,
        cleanup=CleanupPolicy(
            store,
            inactive_days=settings.cleanup_inactive_days,
            error_days=settings.cleanup_error_days,
            never_triggered_days=settings.cleanup_never_triggered_days,
            batch_size=settings.cleanup_batch_size,
            recovery=recovery,
            backup_before_cleanup=settings.backup_enabled,
        ),
    )


def get_services(request: Request) -> Services:
    return request.app.state.services
