"""HMAC signing and verification for webhook payloads."""

import hashlib
import hmac
import ipaddress
from datetime import datetime
from typing import Any

import structlog

from modelhook.core.clock import parse_datetime, utcnow
from modelhook.core.errors import AuthenticationError, ConfigurationError

logger = structlog.get_logger("modelhook")

DEFAULT_TIMESTAMP_MAX_AGE = 300


class Signer:
    """Signs outbound payloads and checks inbound ones.

    Signatures are hex-encoded HMAC-SHA256 digests computed over the exact
    bytes placed on the wire. Callers must sign and send the same bytes.
    """

    def __init__(self, timestamp_max_age: int = DEFAULT_TIMESTAMP_MAX_AGE) -> None:
        self.timestamp_max_age = timestamp_max_age

    @staticmethod
    def sign(payload: bytes, secret: str) -> str:
        if isinstance(payload, str):
            payload = payload.encode("utf-8")
        return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()

    @classmethod
    def verify(cls, payload: bytes, signature: str | None, secret: str) -> bool:
        """Constant-time comparison of ``signature`` against a fresh digest."""
        if not signature:
            return False
        if signature.startswith("sha256="):
            signature = signature[len("sha256="):]
        expected = cls.sign(payload, secret)
        return hmac.compare_digest(expected.encode("utf-8"), signature.encode("utf-8"))

    def verify_timestamp(
        self,
        timestamp: str | int | float | datetime | None,
        max_age_seconds: int | None = None,
        now: datetime | None = None,
    ) -> bool:
        """Accept timestamps within ``max_age_seconds`` of ``now`` in either direction.

        Unparseable input is rejected rather than raised.
        """
        max_age = self.timestamp_max_age if max_age_seconds is None else max_age_seconds
        now = now or utcnow()
        try:
            if isinstance(timestamp, (int, float)) and not isinstance(timestamp, bool):
                moment = datetime.fromtimestamp(timestamp, tz=now.tzinfo)
            elif isinstance(timestamp, str) and timestamp.strip().lstrip("-").isdigit():
                moment = datetime.fromtimestamp(int(timestamp), tz=now.tzinfo)
            else:
                moment = parse_datetime(timestamp)
        except (TypeError, ValueError, OverflowError, OSError):
            return False
        if moment is None:
            return False
        age = (now - moment).total_seconds()
        return abs(age) <= max_age

    @staticmethod
    def verify_source_ip(remote_ip: str | None, allow_rule: str | None) -> bool:
        """Match ``remote_ip`` against a literal address or a CIDR block.

        An empty rule allows every address.
        """
        if not allow_rule:
            return True
        if not remote_ip:
            return False
        try:
            address = ipaddress.ip_address(remote_ip.strip())
            if "/" in allow_rule:
                network = ipaddress.ip_network(allow_rule.strip(), strict=False)
                return address.version == network.version and address in network
            return address == ipaddress.ip_address(allow_rule.strip())
        except ValueError:
            logger.warning("Invalid IP or CIDR in source check", remote_ip=remote_ip, rule=allow_rule)
            return False

    def verify_request(
        self,
        body: bytes,
        signature: str | None,
        secret: str | None,
        security: Any = None,
        timestamp: str | None = None,
        remote_ip: str | None = None,
    ) -> None:
        """Run every check that ``security`` enables, raising on the first failure.

        ``security`` is any object with ``verify_hmac``, ``require_timestamp``
        and ``expected_source_ip`` attributes; ``None`` means signature only.
        """
        verify_hmac = getattr(security, "verify_hmac", True)
        require_timestamp = getattr(security, "require_timestamp", False)
        expected_source_ip = getattr(security, "expected_source_ip", None)

        if verify_hmac:
            if not secret:
                raise ConfigurationError("Webhook signing secret is not configured")
            if not signature:
                raise AuthenticationError("Missing webhook signature")
            if not self.verify(body, signature, secret):
                raise AuthenticationError("Invalid webhook signature")

        if require_timestamp and not self.verify_timestamp(timestamp):
            raise AuthenticationError("Webhook timestamp missing or outside the allowed window")

        if expected_source_ip and not self.verify_source_ip(remote_ip, expected_source_ip):
            raise AuthenticationError("Request source address is not allowed")
