"""HTTP transport shared by the HTTP-speaking provider adapters."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

import httpx

from ..errors import ProviderTransportError

logger = logging.getLogger("taskloop.llm")

RETRYABLE_STATUS = frozenset({408, 429})
ERROR_BODY_LIMIT = 500


def is_retryable_status(status: int) -> bool:
    return status >= 500 or status in RETRYABLE_STATUS


def backoff_delay(attempt: int) -> float:
    return 1.5 * (attempt + 1)


async def post_json(
    client: httpx.AsyncClient,
    provider: str,
    url: str,
    body: dict[str, Any],
    headers: dict[str, str] | None = None,
    timeout: float = 180.0,
    max_retries: int = 2,
) -> dict[str, Any]:
    """POST a JSON body and return the decoded JSON reply.

    Retryable failures are retried up to ``max_retries`` times with linear
    backoff, then raised as ``ProviderTransportError(retryable=True)``.
    Terminal failures raise immediately.
    """
    last_err: ProviderTransportError | None = None
    for attempt in range(max_retries + 1):
        try:
            return await _post_once(client, provider, url, body, headers or {}, timeout)
        except ProviderTransportError as e:
            if not e.retryable or attempt >= max_retries:
                raise
            wait = backoff_delay(attempt)
            logger.warning(
                f"Transient {provider} error (attempt {attempt + 1}/{max_retries + 1}), "
                f"retrying in {wait:.1f}s: {e}"
            )
            last_err = e
            await asyncio.sleep(wait)

    # Unreachable: the last attempt either returns or raises
    raise last_err or ProviderTransportError(f"{provider} request failed", provider=provider)


async def _post_once(
    client: httpx.AsyncClient,
    provider: str,
    url: str,
    body: dict[str, Any],
    headers: dict[str, str],
    timeout: float,
) -> dict[str, Any]:
    try:
        response = await client.post(
            url,
            json=body,
            headers={"Content-Type": "application/json", **headers},
            timeout=timeout,
        )
    except httpx.TimeoutException as e:
        raise ProviderTransportError(
            f"{provider} request timed out after {timeout:.0f}s",
            provider=provider, retryable=True,
        ) from e
    except httpx.TransportError as e:
        raise ProviderTransportError(
            f"Cannot reach {provider}: {type(e).__name__}: {e}",
            provider=provider, retryable=True,
        ) from e

    if response.status_code >= 400:
        raise classify_http_error(provider, response.status_code, response.text)

    try:
        data = response.json()
    except json.JSONDecodeError as e:
        raise ProviderTransportError(
            f"{provider} returned non-JSON content: {response.text[:ERROR_BODY_LIMIT]}",
            provider=provider, status=response.status_code, retryable=False,
        ) from e

    # Some vendors report failures in a 200 body
    if isinstance(data, dict) and data.get("error"):
        err = data["error"]
        msg = err.get("message") if isinstance(err, dict) else str(err)
        raise ProviderTransportError(
            f"{provider} API error: {msg or json.dumps(err)[:ERROR_BODY_LIMIT]}",
            provider=provider, status=response.status_code, retryable=False,
        )
    return data


def classify_http_error(provider: str, status: int, body: str) -> ProviderTransportError:
    detail = _error_detail(body)
    if status in (401, 403):
        hint = "check the API key for this provider"
    elif status == 429:
        hint = "rate limited"
    elif status >= 500:
        hint = "provider-side failure"
    else:
        hint = "request rejected"
    return ProviderTransportError(
        f"{provider} HTTP {status} ({hint}): {detail}",
        provider=provider, status=status, retryable=is_retryable_status(status),
    )


def _error_detail(body: str) -> str:
    try:
        data = json.loads(body)
    except (json.JSONDecodeError, TypeError):
        return (body or "").strip()[:ERROR_BODY_LIMIT]
    if isinstance(data, dict):
        err = data.get("error")
        if isinstance(err, dict) and err.get("message"):
            return str(err["message"])[:ERROR_BODY_LIMIT]
        if isinstance(err, str):
            return err[:ERROR_BODY_LIMIT]
    return body.strip()[:ERROR_BODY_LIMIT]
