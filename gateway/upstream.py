from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

import httpx

from .config import Settings
from .errors import UpstreamRejected, UpstreamUnavailable


logger = logging.getLogger("gateway.upstream")

# Shared HTTP client (HTTP/1.1 + optional HTTP/2) with connection pooling
_HTTPX_CLIENT: Optional[httpx.AsyncClient] = None

_SECRET_HEADERS = ("authorization", "x-api-key", "sign")


def get_httpx_client(settings: Settings) -> httpx.AsyncClient:
    global _HTTPX_CLIENT
    if _HTTPX_CLIENT is None:
        limits = httpx.Limits(
            max_connections=100,
            max_keepalive_connections=20,
            keepalive_expiry=30.0,
        )
        try:
            _HTTPX_CLIENT = httpx.AsyncClient(http2=settings.http2, limits=limits)
        except ImportError:
            # h2 not installed: stay on HTTP/1.1
            _HTTPX_CLIENT = httpx.AsyncClient(http2=False, limits=limits)
    return _HTTPX_CLIENT


async def close_httpx_client() -> None:
    global _HTTPX_CLIENT
    if _HTTPX_CLIENT is not None:
        await _HTTPX_CLIENT.aclose()
        _HTTPX_CLIENT = None


def bearer(token: Optional[str]) -> Dict[str, str]:
    if not token:
        return {}
    if token.lower().startswith("bearer "):
        return {"Authorization": token}
    return {"Authorization": f"Bearer {token}"}


def redact_headers(headers: Dict[str, str]) -> Dict[str, str]:
    return {k: ("<redacted>" if k.lower() in _SECRET_HEADERS else v) for k, v in headers.items()}


def _error_message(status: int, body: bytes) -> str:
    text = body.decode("utf-8", errors="ignore") if body else ""
    try:
        data = json.loads(text) if text else {}
    except ValueError:
        return text or f"Upstream returned HTTP {status}"
    if isinstance(data, dict):
        err = data.get("error")
        if isinstance(err, dict) and err.get("message"):
            return str(err["message"])
        if isinstance(err, str) and err:
            return err
        if data.get("message"):
            return str(data["message"])
        if data.get("errMessage"):
            return str(data["errMessage"])
    return text or f"Upstream returned HTTP {status}"


def _log_request(label: str, url: str, headers: Dict[str, str]) -> None:
    if logger.isEnabledFor(logging.DEBUG):
        logger.debug(
            "[proxy] upstream request (%s): %s",
            label,
            json.dumps({"url": url, "headers": redact_headers(headers)}, ensure_ascii=False),
        )


@asynccontextmanager
async def open_stream(
    client: httpx.AsyncClient,
    url: str,
    *,
    payload: Dict[str, Any],
    headers: Dict[str, str],
    timeout: float,
    label: str = "stream",
) -> AsyncIterator[httpx.Response]:
    """POST and hand back the un-read response; the connection closes on exit.

    Transport failures and timeouts, including read timeouts raised while the
    caller iterates the body, surface as ``UpstreamUnavailable``; non-2xx
    statuses as ``UpstreamRejected``.
    """
    _log_request(label, url, headers)
    try:
        async with client.stream(
            "POST", url, json=payload, headers=headers, timeout=httpx.Timeout(timeout)
        ) as resp:
            if resp.status_code >= 400:
                body = await resp.aread()
                message = _error_message(resp.status_code, body)
                logger.warning("[proxy] %s rejected: HTTP %s %s", label, resp.status_code, message[:200])
                raise UpstreamRejected(message, upstream_status=resp.status_code)
            yield resp
    except httpx.TimeoutException as e:
        raise UpstreamUnavailable(f"{label}: upstream timed out ({type(e).__name__})") from e
    except httpx.HTTPError as e:
        raise UpstreamUnavailable(f"{label}: upstream error: {e}") from e


async def post_json(
    client: httpx.AsyncClient,
    url: str,
    *,
    payload: Dict[str, Any],
    headers: Dict[str, str],
    timeout: float,
    label: str = "request",
) -> Any:
    _log_request(label, url, headers)
    try:
        resp = await client.post(url, json=payload, headers=headers, timeout=httpx.Timeout(timeout))
    except httpx.TimeoutException as e:
        raise UpstreamUnavailable(f"{label}: upstream timed out ({type(e).__name__})") from e
    except httpx.HTTPError as e:
        raise UpstreamUnavailable(f"{label}: upstream error: {e}") from e
    if resp.status_code >= 400:
        raise UpstreamRejected(_error_message(resp.status_code, resp.content), upstream_status=resp.status_code)
    try:
        return resp.json()
    except ValueError:
        return None
