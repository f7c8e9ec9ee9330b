"""
Outbound HTTP for provider adapters.

One ``httpx.AsyncClient`` per call with a 30 second timeout.  Tests inject an
``httpx.MockTransport`` (or an ``ASGITransport``) through the registry.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Dict, Optional

import httpx

from connectors.errors import UpstreamExchangeFailed

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT_SECONDS = 30.0
_EXCERPT_LIMIT = 200

# Anything that looks like a credential inside an upstream error body.
_SECRET_PATTERNS = [
    re.compile(
        r'("?(?:access_token|refresh_token|client_secret|code_verifier|api_key|token)"?\s*[:=]\s*"?)([^"&,\s}]+)',
        re.IGNORECASE,
    ),
    re.compile(r"(Bearer\s+)([A-Za-z0-9._~+/=-]+)", re.IGNORECASE),
]


def redact_excerpt(body: str, limit: int = _EXCERPT_LIMIT) -> str:
    """Mask secret-looking values and cut the body down for logs."""
    text = body or ""
    for pattern in _SECRET_PATTERNS:
        text = pattern.sub(lambda m: m.group(1) + "***", text)
    text = " ".join(text.split())
    return text[:limit]


async def request(
    provider: str,
    operation: str,
    method: str,
    url: str,
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    **kwargs: Any,
) -> httpx.Response:
    """
    Perform a single request and enforce a 2xx status.

    Transport failures and non-2xx responses both surface as
    ``UpstreamExchangeFailed``; the status code is ``None`` for the former.
    """
    try:
        async with httpx.AsyncClient(timeout=REQUEST_TIMEOUT_SECONDS, transport=transport) as client:
            resp = await client.request(method, url, **kwargs)
    except httpx.HTTPError as exc:
        logger.warning("%s %s: transport error %s", provider, operation, type(exc).__name__)
        raise UpstreamExchangeFailed(provider, operation, None, type(exc).__name__) from exc

    if not resp.is_success:
        excerpt = redact_excerpt(resp.text)
        logger.warning("%s %s: HTTP %d — %s", provider, operation, resp.status_code, excerpt)
        raise UpstreamExchangeFailed(provider, operation, resp.status_code, excerpt)
    return resp


def json_body(provider: str, operation: str, resp: httpx.Response) -> Dict[str, Any]:
    """Decode a JSON object body or raise ``UpstreamExchangeFailed``."""
    try:
        data = resp.json()
    except (json.JSONDecodeError, ValueError) as exc:
        raise UpstreamExchangeFailed(
            provider, operation, resp.status_code, "response was not JSON"
        ) from exc
    if not isinstance(data, dict):
        raise UpstreamExchangeFailed(
            provider, operation, resp.status_code, "response was not a JSON object"
        )
    return data


def require_str(provider: str, operation: str, data: Dict[str, Any], key: str) -> str:
    """Pull a non-empty string field out of a token response."""
    value = data.get(key)
    if not isinstance(value, str) or not value:
        raise UpstreamExchangeFailed(
            provider, operation, None, f"response missing '{key}'"
        )
    return value


def optional_str(data: Dict[str, Any], key: str) -> Optional[str]:
    value = data.get(key)
    return value if isinstance(value, str) and value else None


def optional_positive_int(data: Dict[str, Any], key: str) -> Optional[int]:
    value = data.get(key)
    if isinstance(value, bool):
        return None
    if isinstance(value, str) and value.isdigit():
        value = int(value)
    return value if isinstance(value, int) and value > 0 else None
