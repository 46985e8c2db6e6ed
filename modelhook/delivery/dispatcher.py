"""Signed, concurrent fan-out of domain changes to subscribed endpoints."""

import asyncio
import json
import time
from dataclasses import dataclass
from typing import Any

import httpx
import structlog

from modelhook import __version__
from modelhook.core.clock import isoformat, utcnow
from modelhook.core.errors import ConfigurationError, DeliveryError, NotFoundError
from modelhook.delivery.metrics import metrics
from modelhook.ingress.signer import Signer
from modelhook.subscriptions.database import SubscriptionStore
from modelhook.subscriptions.models import Subscription

logger = structlog.get_logger("modelhook")

SIGNATURE_HEADER = "X-Signature"
SUBSCRIPTION_HEADER = "X-Subscription-Id"
TIMESTAMP_HEADER = "X-Timestamp"


@dataclass
class DeliveryResult:
    subscription_id: str
    success: bool
    status_code: int | None = None
    error: str | None = None
    duration_ms: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "subscription_id": self.subscription_id,
            "success": self.success,
            "status_code": self.status_code,
            "error": self.error,
            "duration_ms": self.duration_ms,
        }


def encode_payload(payload: dict[str, Any]) -> bytes:
    """Serialise once; the same bytes are signed and sent."""
    return json.dumps(payload, separators=(",", ":"), default=str).encode("utf-8")


class DeliveryDispatcher:
    """Posts signed payloads to every matching subscription.

    Deliveries run concurrently, each bounded by ``timeout`` seconds, and
    ``notify`` waits at most ``total_timeout`` seconds for the whole batch.
    Failures are recorded on the subscription and never raised.
    """

    def __init__(
        self,
        store: SubscriptionStore,
        secret: str | None,
        timeout: float = 5.0,
        max_concurrency: int = 10,
        total_timeout: float = 15.0,
        signer: Signer | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not secret:
            raise ConfigurationError("Webhook signing secret is not configured")
        self.store = store
        self.secret = secret
        self.timeout = timeout
        self.max_concurrency = max_concurrency
        self.total_timeout = total_timeout
        self.signer = signer or Signer()
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout),
                transport=self._transport,
                headers={"User-Agent": f"modelhook/{__version__}"},
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def build_payload(
        self,
        subscription: Subscription,
        event_kind: str,
        entity_snapshot: dict[str, Any],
        metadata: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        data = dict(entity_snapshot or {})
        if subscription.watched_properties:
            data = {key: data[key] for key in subscription.watched_properties if key in data}

        payload: dict[str, Any] = {"event": event_kind}
        if subscription.is_event_subscription:
            payload["event_class"] = subscription.target_class
        else:
            payload["model"] = subscription.target_class
        payload["timestamp"] = isoformat(utcnow())
        payload["data"] = data
        payload["metadata"] = dict(metadata or {})
        return payload

    async def notify(
        self,
        target_class: str,
        event_kind: str,
        entity_snapshot: dict[str, Any],
        metadata: dict[str, Any] | None = None,
        source_trigger: dict[str, Any] | None = None,
        is_event_subscription: bool = False,
    ) -> list[DeliveryResult]:
        """Deliver one change to all active subscriptions listening for it."""
        subscriptions = await self.store.for_model_event(target_class, event_kind, is_event_subscription)
        metrics.record_notification(target_class, event_kind)
        if not subscriptions:
            logger.debug("No subscriptions for change", target_class=target_class, event_kind=event_kind)
            return []

        metadata = dict(metadata or {})
        if source_trigger:
            metadata["source_trigger"] = {**source_trigger, "timestamp": isoformat(utcnow())}

        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def run(subscription: Subscription) -> DeliveryResult:
            async with semaphore:
                payload = self.build_payload(subscription, event_kind, entity_snapshot, metadata)
                return await self.deliver(subscription, payload)

        tasks = {asyncio.ensure_future(run(s)): s for s in subscriptions}
        done, pending = await asyncio.wait(tasks, timeout=self.total_timeout)

        results = [task.result() for task in done]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            for task in pending:
                subscription = tasks[task]
                error = DeliveryError("Delivery cancelled: total wait bound exceeded", code="timeout")
                await self._record_failure(subscription, error)
                results.append(DeliveryResult(subscription.id, False, error=error.message))

        logger.info(
            "Change fanned out",
            target_class=target_class,
            event_kind=event_kind,
            subscriptions=len(subscriptions),
            succeeded=sum(1 for r in results if r.success),
            failed=sum(1 for r in results if not r.success),
        )
        return results

    async def deliver(self, subscription: Subscription, payload: dict[str, Any]) -> DeliveryResult:
        """POST one payload and record the outcome on the subscription."""
        body = encode_payload(payload)
        headers = {
            "Content-Type": "application/json",
            SIGNATURE_HEADER: self.signer.sign(body, self.secret),
            SUBSCRIPTION_HEADER: subscription.id,
            TIMESTAMP_HEADER: str(payload.get("timestamp", "")),
        }

        started = time.perf_counter()
        metrics.delivery_started()
        try:
            response = await asyncio.wait_for(
                self.client.post(subscription.endpoint_url, content=body, headers=headers),
                timeout=self.timeout,
            )
        except (TimeoutError, httpx.TimeoutException):
            error = DeliveryError(f"Timed out after {self.timeout}s", code="timeout")
        except httpx.HTTPError as e:
            error = DeliveryError(str(e) or e.__class__.__name__, code=e.__class__.__name__)
        except Exception as e:
            logger.error(
                "Unexpected delivery failure",
                subscription_id=subscription.id,
                error=str(e),
                exc_info=True,
            )
            error = DeliveryError(str(e) or e.__class__.__name__, code="unexpected")
        else:
            duration = time.perf_counter() - started
            if response.is_success:
                await self.store.record_trigger(subscription.id)
                metrics.record_delivery("success", duration)
                logger.info(
                    "Webhook delivered",
                    subscription_id=subscription.id,
                    status_code=response.status_code,
                    duration_ms=round(duration * 1000, 2),
                )
                return DeliveryResult(subscription.id, True, response.status_code, duration_ms=duration * 1000)
            error = DeliveryError(f"HTTP {response.status_code}", code=response.status_code)
        finally:
            metrics.delivery_finished()

        duration = time.perf_counter() - started
        metrics.record_delivery("failure", duration)
        await self._record_failure(subscription, error)
        status_code = error.code if isinstance(error.code, int) else None
        return DeliveryResult(subscription.id, False, status_code, error.message, duration * 1000)

    async def _record_failure(self, subscription: Subscription, error: DeliveryError) -> None:
        logger.warning(
            "Webhook delivery failed",
            subscription_id=subscription.id,
            endpoint_url=subscription.endpoint_url,
            error=error.message,
            code=error.code,
        )
        await self.store.record_error(
            subscription.id,
            {"message": error.message, "code": error.code, "occurred_at": utcnow()},
        )

    async def test_deliver(self, subscription_id: str) -> DeliveryResult:
        """Send a synthetic ``test`` event to one subscription."""
        subscription = await self.store.find_by_id(subscription_id)
        if subscription is None:
            raise NotFoundError("Subscription not found", subscription_id=subscription_id)

        payload = self.build_payload(
            subscription,
            "test",
            {"message": "Test notification", "subscription_id": subscription.id},
            {"test": True},
        )
        # Test data is synthetic; send it whole regardless of watched properties.
        payload["data"] = {"message": "Test notification", "subscription_id": subscription.id}
        return await self.deliver(subscription, payload)
