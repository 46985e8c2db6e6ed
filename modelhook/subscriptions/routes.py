"""Subscription API routes."""

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, status

from modelhook.core.errors import ModelHookError
from modelhook.dependencies import Services, get_services
from modelhook.ingress.auth import require_api_key, require_signature
from modelhook.subscriptions.schemas import (
    BulkOperationRequest,
    BulkOperationResponse,
    DeliveryResultResponse,
    NotificationRequest,
    NotificationResponse,
    SubscriptionCreate,
    SubscriptionListResponse,
    SubscriptionResponse,
    SubscriptionUpdate,
)

logger = structlog.get_logger("modelhook")

router = APIRouter(prefix="/subscriptions", tags=["subscriptions"], dependencies=[Depends(require_api_key)])
notifications_router = APIRouter(prefix="/notifications", tags=["notifications"])


def _internal_error(message: str, e: Exception, **context) -> HTTPException:
    logger.error(message, error=str(e), exc_info=True, **context)
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail=f"{message}: {e}",
    )


@router.post("/", response_model=SubscriptionResponse, status_code=status.HTTP_201_CREATED)
async def create_subscription(
    subscription_data: SubscriptionCreate,
    services: Services = Depends(get_services),
) -> SubscriptionResponse:
    """Subscribe a webhook to a model or event. Re-subscribing the same URL updates it."""
    try:
        subscription = await services.subscriptions.subscribe(subscription_data)
        return SubscriptionResponse.model_validate(subscription)
    except (HTTPException, ModelHookError):
        raise
    except Exception as e:
        raise _internal_error("Failed to create subscription", e, model=subscription_data.model) from e


@router.get("/", response_model=SubscriptionListResponse)
async def list_subscriptions(
    model: str | None = Query(None, description="Filter by target class"),
    event: str | None = Query(None, description="Filter by event kind"),
    active: bool | None = Query(None, description="Filter by active state"),
    page: int = Query(1, ge=1, description="Page number"),
    size: int = Query(50, ge=1, le=100, description="Items per page"),
    services: Services = Depends(get_services),
) -> SubscriptionListResponse:
    try:
        subscriptions, total = await services.subscriptions.list_subscriptions(
            target_class=model, event=event, active=active, page=page, size=size
        )
        return SubscriptionListResponse(
            subscriptions=[SubscriptionResponse.model_validate(s) for s in subscriptions],
            total=total,
            page=page,
            size=size,
        )
    except (HTTPException, ModelHookError):
        raise
    except Exception as e:
        raise _internal_error("Failed to list subscriptions", e) from e


@router.get("/stats")
async def subscription_stats(services: Services = Depends(get_services)) -> dict:
    """Counts by state with per-model and per-event breakdowns."""
    try:
        return await services.subscriptions.stats()
    except (HTTPException, ModelHookError):
        raise
    except Exception as e:
        raise _internal_error("Failed to compute subscription stats", e) from e


@router.post("/bulk", response_model=BulkOperationResponse)
async def bulk_operation(
    request: BulkOperationRequest,
    services: Services = Depends(get_services),
) -> BulkOperationResponse:
    try:
        result = await services.subscriptions.bulk(request.action, request.subscription_ids)
        return BulkOperationResponse(**result)
    except (HTTPException, ModelHookError):
        raise
    except Exception as e:
        raise _internal_error("Bulk operation failed", e, action=request.action) from e


@router.get("/{subscription_id}", response_model=SubscriptionResponse)
async def get_subscription(
    subscription_id: str,
    services: Services = Depends(get_services),
) -> SubscriptionResponse:
    subscription = await services.subscriptions.get(subscription_id)
    return SubscriptionResponse.model_validate(subscription)


@router.put("/{subscription_id}", response_model=SubscriptionResponse)
async def update_subscription(
    subscription_id: str,
    subscription_data: SubscriptionUpdate,
    services: Services = Depends(get_services),
) -> SubscriptionResponse:
    try:
        subscription = await services.subscriptions.update(subscription_id, subscription_data)
        return SubscriptionResponse.model_validate(subscription)
    except (HTTPException, ModelHookError):
        raise
    except Exception as e:
        raise _internal_error("Failed to update subscription", e, subscription_id=subscription_id) from e


@router.delete("/{subscription_id}")
async def delete_subscription(
    subscription_id: str,
    services: Services = Depends(get_services),
) -> dict:
    try:
        await services.subscriptions.unsubscribe(subscription_id)
        return {"message": "Subscription deleted", "subscription_id": subscription_id}
    except (HTTPException, ModelHookError):
        raise
    except Exception as e:
        raise _internal_error("Failed to delete subscription", e, subscription_id=subscription_id) from e


@router.post("/{subscription_id}/test", response_model=DeliveryResultResponse)
async def test_subscription(
    subscription_id: str,
    services: Services = Depends(get_services),
) -> DeliveryResultResponse:
    """Send a synthetic test event to the subscription's endpoint."""
    result = await services.require_dispatcher().test_deliver(subscription_id)
    return DeliveryResultResponse(**result.to_dict())


@notifications_router.post("/", response_model=NotificationResponse, dependencies=[Depends(require_signature)])
async def notify_change(
    notification: NotificationRequest,
    services: Services = Depends(get_services),
) -> NotificationResponse:
    """Fan a domain change out to matching subscriptions. The body must be HMAC-signed."""
    try:
        results = await services.require_notifier().on_change(
            notification.model,
            notification.event,
            notification.data,
            origin_metadata=notification.origin_metadata,
            changed_fields=notification.changed_fields,
            metadata=notification.metadata,
            is_event_subscription=notification.is_event_subscription,
        )
        if results is None:
            return NotificationResponse(suppressed=True, deliveries=[])
        return NotificationResponse(
            suppressed=False,
            deliveries=[DeliveryResultResponse(**r.to_dict()) for r in results],
        )
    except (HTTPException, ModelHookError):
        raise
    except Exception as e:
        raise _internal_error("Failed to process notification", e, model=notification.model) from e
