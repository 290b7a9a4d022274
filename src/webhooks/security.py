"""Webhook security and validation utilities.

Provides HMAC signature generation and verification for webhook payloads,
secret generation, and validation of subscriber-supplied registration data.
"""

import hashlib
import hmac
import ipaddress
import secrets
from collections.abc import Iterable, Mapping
from typing import Any
from urllib.parse import urlsplit

import structlog

from src.webhooks.errors import UnsupportedEventError, ValidationError
from src.webhooks.events import SUPPORTED_EVENTS, normalize_event_type

logger = structlog.get_logger(__name__)

# Header names used on outbound deliveries
SIGNATURE_HEADER = "X-Webhook-Signature"
EVENT_HEADER = "X-Webhook-Event"
ID_HEADER = "X-Webhook-ID"
ATTEMPT_HEADER = "X-Webhook-Attempt"
DELIVERY_HEADER = "X-Webhook-Delivery"

SIGNATURE_PREFIX = "sha256="
ALLOWED_SCHEMES = frozenset({"http", "https"})
DEFAULT_SECRET_BYTES = 32


def validate_url(url: Any) -> bool:
    """Check that a URL is an absolute http(s) URL.

    Args:
        url: Candidate webhook URL.

    Returns:
        True if the scheme is http or https and a host is present.
    """
    if not isinstance(url, str) or not url:
        return False
    try:
        parts = urlsplit(url)
        hostname = parts.hostname
    except ValueError:
        return False
    return parts.scheme.lower() in ALLOWED_SCHEMES and bool(hostname)


def is_private_target(url: str) -> bool:
    """Check whether a URL points at localhost or a non-public IP literal.

    Hostnames other than ``localhost`` are not resolved.

    Args:
        url: Webhook URL.

    Returns:
        True for loopback, private, link-local, reserved or unspecified targets.
    """
    try:
        hostname = urlsplit(url).hostname
    except ValueError:
        return False
    if not hostname:
        return False

    hostname = hostname.lower()
    if hostname == "localhost" or hostname.endswith(".localhost"):
        return True

    try:
        address = ipaddress.ip_address(hostname)
    except ValueError:
        return False

    return (
        address.is_private
        or address.is_loopback
        or address.is_link_local
        or address.is_reserved
        or address.is_multicast
        or address.is_unspecified
    )


def validate_events(
    events: Iterable[Any],
    supported: frozenset[str] = SUPPORTED_EVENTS,
) -> list[str]:
    """Validate a list of subscribed event names.

    Args:
        events: Event names (or enum members) to validate.
        supported: Supported vocabulary.

    Returns:
        Normalized, de-duplicated event names in input order.

    Raises:
        ValidationError: If no events are given.
        UnsupportedEventError: Listing every unrecognized event name.
    """
    names: list[str] = []
    for event in events:
        name = normalize_event_type(event)
        if name not in names:
            names.append(name)

    if not names:
        raise ValidationError("At least one event must be specified")

    unsupported = [name for name in names if name not in supported]
    if unsupported:
        raise UnsupportedEventError(unsupported)

    return names


def validate_headers(headers: Mapping[str, Any] | None) -> dict[str, str]:
    """Validate custom headers for a subscription.

    Args:
        headers: Header name to value mapping.

    Returns:
        Copy of the headers.

    Raises:
        ValidationError: On non-string names/values or duplicate names
            (compared case-insensitively).
    """
    if headers is None:
        return {}
    if not isinstance(headers, Mapping):
        raise ValidationError("Headers must be a mapping of names to values")

    seen: set[str] = set()
    validated: dict[str, str] = {}
    for name, value in headers.items():
        if not isinstance(name, str) or not name.strip():
            raise ValidationError("Header names must be non-empty strings")
        if not isinstance(value, str):
            raise ValidationError(
                f"Header {name!r} must have a string value",
                details={"header": name},
            )
        key = name.lower()
        if key in seen:
            raise ValidationError(
                f"Duplicate header: {name}",
                details={"header": name},
            )
        seen.add(key)
        validated[name] = value
    return validated


def generate_secret(length: int = DEFAULT_SECRET_BYTES) -> str:
    """Generate a random signing secret.

    Args:
        length: Number of random bytes.

    Returns:
        Hex-encoded secret (``2 * length`` characters).
    """
    return secrets.token_hex(length)


def generate_signature(body: bytes | str, secret: str) -> str:
    """Generate the HMAC-SHA256 signature of a request body.

    Args:
        body: Exact request body bytes (str is encoded as UTF-8).
        secret: Webhook secret key.

    Returns:
        Signature in the form ``sha256=<hex digest>``.
    """
    if isinstance(body, str):
        body = body.encode("utf-8")
    digest = hmac.new(
        secret.encode("utf-8"),
        bytes(body),
        hashlib.sha256,
    ).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


def verify_signature(body: Any, signature: Any, secret: Any) -> bool:
    """Verify the HMAC-SHA256 signature of a received body.

    Uses constant-time comparison. Never raises: malformed input of any
    kind is reported as an invalid signature.

    Args:
        body: Raw request body exactly as received.
        signature: Value of the signature header.
        secret: Webhook secret key.

    Returns:
        True if the signature matches.
    """
    if not isinstance(body, bytes | bytearray | str):
        return False
    if not isinstance(signature, str) or not isinstance(secret, str):
        return False
    if not signature.startswith(SIGNATURE_PREFIX):
        return False

    try:
        expected = generate_signature(body, secret)
        is_valid = hmac.compare_digest(
            signature.encode("utf-8"),
            expected.encode("ascii"),
        )
    except (TypeError, ValueError, UnicodeError):
        return False

    if not is_valid:
        logger.debug("webhook_signature_invalid")

    return is_valid


def verify_from_headers(
    body: bytes | str,
    headers: Mapping[str, str],
    secret: str,
) -> bool:
    """Verify a webhook signature taken from request headers.

    Header lookup is case-insensitive.

    Args:
        body: Raw request body.
        headers: Request headers.
        secret: Webhook secret key.

    Returns:
        True if the signature header is present and valid.
    """
    signature = None
    for name, value in headers.items():
        if name.lower() == SIGNATURE_HEADER.lower():
            signature = value
            break

    if signature is None:
        return False

    return verify_signature(body, signature, secret)
