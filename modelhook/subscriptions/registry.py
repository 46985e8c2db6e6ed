"""Explicit registry of notifiable targets (models, events and jobs)."""

import json
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

import structlog

logger = structlog.get_logger("modelhook")

MODEL_EVENTS = ("created", "updated", "deleted", "restored", "saving", "saved")
DISPATCH_EVENTS = ("dispatched",)


class TargetKind(str, Enum):
    MODEL = "model"
    EVENT = "event"
    JOB = "job"


def vocabulary_for(is_event_subscription: bool) -> tuple[str, ...]:
    """Event kinds a subscription of the given kind may list."""
    return DISPATCH_EVENTS if is_event_subscription else MODEL_EVENTS


@dataclass
class TargetDescriptor:
    """Describes one entity type, event or job that can be subscribed to."""

    name: str
    kind: TargetKind = TargetKind.MODEL
    fields: list[str] = field(default_factory=list)
    events: list[str] | None = None
    watched_attributes: list[str] = field(default_factory=list)

    @property
    def is_event(self) -> bool:
        return self.kind in (TargetKind.EVENT, TargetKind.JOB)

    @property
    def allowed_events(self) -> tuple[str, ...]:
        vocabulary = vocabulary_for(self.is_event)
        if self.events is None:
            return vocabulary
        return tuple(e for e in self.events if e in vocabulary)


class TargetRegistry:
    """Targets are declared up front by the host application; nothing is discovered."""

    def __init__(self, descriptors: list[TargetDescriptor] | None = None) -> None:
        self._targets: dict[str, TargetDescriptor] = {}
        for descriptor in descriptors or []:
            self.register(descriptor)

    def register(self, descriptor: TargetDescriptor) -> TargetDescriptor:
        self._targets[descriptor.name] = descriptor
        return descriptor

    def register_model(self, name: str, fields: list[str] | None = None, **kwargs: Any) -> TargetDescriptor:
        return self.register(TargetDescriptor(name=name, kind=TargetKind.MODEL, fields=fields or [], **kwargs))

    def register_event(self, name: str, kind: TargetKind = TargetKind.EVENT, **kwargs: Any) -> TargetDescriptor:
        return self.register(TargetDescriptor(name=name, kind=kind, **kwargs))

    def get(self, name: str) -> TargetDescriptor | None:
        return self._targets.get(name)

    def exists(self, name: str, is_event_subscription: bool | None = None) -> bool:
        descriptor = self._targets.get(name)
        if descriptor is None:
            return False
        if is_event_subscription is None:
            return True
        return descriptor.is_event == is_event_subscription

    def allowed_events(self, name: str) -> tuple[str, ...]:
        descriptor = self._targets.get(name)
        return descriptor.allowed_events if descriptor else ()

    def __contains__(self, name: str) -> bool:
        return name in self._targets

    def __len__(self) -> int:
        return len(self._targets)

    @classmethod
    def from_mapping(cls, mapping: dict[str, dict[str, Any]]) -> "TargetRegistry":
        """Build a registry from ``{name: {kind, fields, events, watched_attributes}}``."""
        registry = cls()
        for name, entry in mapping.items():
            entry = entry or {}
            registry.register(
                TargetDescriptor(
                    name=name,
                    kind=TargetKind(entry.get("kind", TargetKind.MODEL.value)),
                    fields=list(entry.get("fields", [])),
                    events=entry.get("events"),
                    watched_attributes=list(entry.get("watched_attributes", [])),
                )
            )
        return registry

    @classmethod
    def from_file(cls, path: str | Path) -> "TargetRegistry":
        with open(path) as f:
            mapping = json.load(f)
        registry = cls.from_mapping(mapping)
        logger.info("Target registry loaded", path=str(path), targets=len(registry))
        return registry
