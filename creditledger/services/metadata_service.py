"""Metadata sanitization for transaction and webhook payloads.

Transaction metadata is free-form caller input, so it is cleaned before it
is persisted: strings lose any markup, sizes are capped and keys that look
like credentials are rejected outright. Webhook payloads come from Stripe
and are stored for operators, so there credential-like values are
redacted instead of rejected.
"""

import json
import logging

import bleach

from creditledger.errors import ValidationError

logger = logging.getLogger(__name__)

RESTRICTED_KEYS = (
    "password",
    "secret",
    "token",
    "api_key",
    "private_key",
    "card_number",
    "cvc",
    "cvv",
)

MAX_JSON_CHARS = 5000
MAX_DEPTH = 5
MAX_KEYS = 50
MAX_STRING_LENGTH = 1000

# Stripe objects nest deeper than caller metadata
WEBHOOK_MAX_DEPTH = 10
REDACTED = "[redacted]"
TRUNCATED = "[truncated]"


def clean_text(value, max_length=MAX_STRING_LENGTH):
    """Strip all HTML from a string and cap its length."""
    if value is None:
        return None
    cleaned = bleach.clean(str(value), tags=[], strip=True).strip()
    return cleaned[:max_length]


def is_restricted_key(key):
    normalized = str(key).lower().replace("-", "_")
    return any(term in normalized for term in RESTRICTED_KEYS)


def _clean_value(value, depth):
    if depth > MAX_DEPTH:
        raise ValidationError(f"Metadata nesting cannot exceed {MAX_DEPTH} levels")

    if isinstance(value, dict):
        if len(value) > MAX_KEYS:
            raise ValidationError(f"Metadata objects cannot have more than {MAX_KEYS} keys")
        cleaned = {}
        for key, item in value.items():
            if is_restricted_key(key):
                raise ValidationError(
                    "Metadata contains restricted keys",
                    suggested_action="Remove credentials and card data from metadata.",
                )
            cleaned[clean_text(key, 100)] = _clean_value(item, depth + 1)
        return cleaned

    if isinstance(value, (list, tuple)):
        if len(value) > MAX_KEYS:
            raise ValidationError(f"Metadata lists cannot have more than {MAX_KEYS} items")
        return [_clean_value(item, depth + 1) for item in value]

    if isinstance(value, str):
        return clean_text(value)

    if value is None or isinstance(value, (bool, int, float)):
        return value

    return clean_text(value)


def sanitize_metadata(metadata):
    """Return a cleaned copy of ``metadata`` safe to persist.

    Raises:
        ValidationError: Not a mapping, too large, too deep, or it
                         contains a restricted key.
    """
    if metadata is None:
        return {}
    if not isinstance(metadata, dict):
        raise ValidationError("Metadata must be a key/value object")

    cleaned = _clean_value(metadata, 1)

    if len(json.dumps(cleaned, default=str)) > MAX_JSON_CHARS:
        raise ValidationError("Metadata size exceeds maximum limit")
    return cleaned


def _redact(value, depth):
    if depth > WEBHOOK_MAX_DEPTH:
        return TRUNCATED
    if isinstance(value, dict):
        return {
            str(key): REDACTED if is_restricted_key(key) else _redact(item, depth + 1)
            for key, item in value.items()
        }
    if isinstance(value, list):
        return [_redact(item, depth + 1) for item in value[:MAX_KEYS]]
    if isinstance(value, str):
        return value[:MAX_STRING_LENGTH]
    return value


def sanitize_webhook_data(payload):
    """Redacted, depth-capped copy of a gateway event for storage."""
    if not isinstance(payload, dict):
        return {}
    return _redact(payload, 1)
