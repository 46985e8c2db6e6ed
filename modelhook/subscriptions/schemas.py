"""Pydantic schemas for the subscription API."""

from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, HttpUrl, TypeAdapter, field_validator

_http_url = TypeAdapter(HttpUrl)


def is_valid_url(url: Any) -> bool:
    """True for absolute http(s) URLs."""
    if not isinstance(url, str) or not url.strip():
        return False
    try:
        _http_url.validate_python(url)
    except ValueError:
        return False
    return True


def _dedupe(values: list[str]) -> list[str]:
    seen: list[str] = []
    for value in values:
        if value not in seen:
            seen.append(value)
    return seen


class SubscriptionCreate(BaseModel):
    """Schema for subscribing a workflow node to a target."""

    model: str = Field(..., min_length=1, description="Model, event or job to watch")
    events: list[str] = Field(..., min_length=1, description="Event kinds to be notified about")
    webhook_url: str = Field(..., description="Endpoint that receives signed notifications")
    properties: Optional[list[str]] = Field(default=None, description="Restrict payload data to these fields")
    node_id: Optional[str] = None
    workflow_id: Optional[str] = None
    verify_hmac: bool = True
    require_timestamp: bool = True
    expected_source_ip: Optional[str] = None
    is_event_subscription: bool = False

    @field_validator("events")
    @classmethod
    def dedupe_events(cls, v):
        return _dedupe(v)


class SubscriptionUpdate(BaseModel):
    """Schema for partially updating a subscription."""

    events: Optional[list[str]] = Field(default=None, min_length=1)
    webhook_url: Optional[str] = None
    properties: Optional[list[str]] = None
    active: Optional[bool] = None
    node_id: Optional[str] = None
    workflow_id: Optional[str] = None
    verify_hmac: Optional[bool] = None
    require_timestamp: Optional[bool] = None
    expected_source_ip: Optional[str] = None

    @field_validator("events")
    @classmethod
    def dedupe_events(cls, v):
        return _dedupe(v) if v is not None else v


class SubscriptionResponse(BaseModel):
    """Schema for a subscription returned by the API."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    target_class: str
    events: list[str]
    endpoint_url: str
    watched_properties: Optional[list[str]] = None
    node_id: Optional[str] = None
    workflow_id: Optional[str] = None
    verify_hmac: bool
    require_timestamp: bool
    expected_source_ip: Optional[str] = None
    is_event_subscription: bool
    status: str
    active: bool
    trigger_count: int
    last_triggered_at: Optional[datetime] = None
    last_error: Optional[dict[str, Any]] = None
    created_at: datetime
    updated_at: Optional[datetime] = None


class SubscriptionListResponse(BaseModel):
    subscriptions: list[SubscriptionResponse]
    total: int
    page: int
    size: int


class BulkOperationRequest(BaseModel):
    """Apply one action to many subscriptions."""

    action: Literal["activate", "deactivate", "delete"]
    subscription_ids: list[str] = Field(..., min_length=1, max_length=500)


class BulkOperationResponse(BaseModel):
    action: str
    results: dict[str, str]
    processed: int
    failed: list[str]


class DeliveryResultResponse(BaseModel):
    subscription_id: str
    success: bool
    status_code: Optional[int] = None
    error: Optional[str] = None
    duration_ms: float


class NotificationRequest(BaseModel):
    """A domain change reported by the host application."""

    model: str = Field(..., min_length=1)
    event: str = Field(..., min_length=1)
    data: dict[str, Any] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)
    origin_metadata: Optional[dict[str, Any]] = None
    changed_fields: Optional[list[str]] = None
    is_event_subscription: bool = False


class NotificationResponse(BaseModel):
    suppressed: bool
    deliveries: list[DeliveryResultResponse]
