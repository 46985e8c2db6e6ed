"""Access to subscriptions held by the pre-database cache format."""

import json
import os
from pathlib import Path
from typing import Any, Protocol

import structlog

from modelhook.core.errors import RecoveryError

logger = structlog.get_logger("modelhook")


class LegacyCache(Protocol):
    """Anything that can hand over cached subscription records and then forget them."""

    def get(self) -> dict[str, dict[str, Any]]:
        ...

    def forget(self) -> None:
        ...


class InMemoryLegacyCache:
    def __init__(self, records: dict[str, dict[str, Any]] | list[dict[str, Any]] | None = None) -> None:
        self._records = _keyed(records)

    def get(self) -> dict[str, dict[str, Any]]:
        return dict(self._records)

    def forget(self) -> None:
        self._records = {}


class FileLegacyCache:
    """A JSON dump of the old cache entry: a mapping of id to record, or a list of records."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def get(self) -> dict[str, dict[str, Any]]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path) as f:
                content = json.load(f)
        except json.JSONDecodeError as e:
            raise RecoveryError(f"Legacy cache file is not valid JSON: {self.path}") from e
        if content is None:
            return {}
        if not isinstance(content, (dict, list)):
            raise RecoveryError(f"Legacy cache file has an unexpected shape: {self.path}")
        return _keyed(content)

    def forget(self) -> None:
        if self.path.exists():
            os.remove(self.path)
            logger.info("Legacy subscription cache cleared", path=str(self.path))


def _keyed(records: dict[str, dict[str, Any]] | list[dict[str, Any]] | None) -> dict[str, dict[str, Any]]:
    if not records:
        return {}
    if isinstance(records, dict):
        return {str(key): value for key, value in records.items()}
    keyed: dict[str, dict[str, Any]] = {}
    for index, record in enumerate(records):
        key = str(record.get("id")) if isinstance(record, dict) and record.get("id") else f"__{index}"
        keyed[key] = record
    return keyed
