from __future__ import annotations

import asyncio
import random
from typing import Any, AsyncIterator, Callable, Dict, Optional

import httpx

from agent_relay.domain.errors import AgentError, ProviderHttpError, StreamProtocolError
from agent_relay.providers.sse import SseLineBuffer, is_done_sentinel, parse_data_line

StatusErrorMapper = Callable[[int, str], AgentError]
TransportErrorMapper = Callable[[httpx.TransportError], AgentError]


def build_httpx_client(
    *,
    base_url: str = "",
    headers: Optional[Dict[str, str]] = None,
    connect_timeout_sec: float = 10.0,
    read_timeout_sec: float = 300.0,
    max_connections: int = 30,
    max_keepalive_connections: int = 10,
) -> httpx.AsyncClient:
    timeout = httpx.Timeout(connect=connect_timeout_sec, read=read_timeout_sec, write=read_timeout_sec, pool=5.0)
    limits = httpx.Limits(
        max_connections=max(1, int(max_connections)),
        max_keepalive_connections=max(1, int(max_keepalive_connections)),
    )
    return httpx.AsyncClient(base_url=base_url, headers=headers or {}, timeout=timeout, limits=limits)


async def get_text_with_retries(
    client: httpx.AsyncClient,
    url: str,
    *,
    attempts: int = 3,
    base_backoff_sec: float = 0.5,
) -> str:
    last_exc: Exception | None = None
    max_attempts = max(1, int(attempts))
    for idx in range(max_attempts):
        try:
            resp = await client.get(url)
            if resp.status_code in {408, 425, 429, 500, 502, 503, 504}:
                if idx + 1 >= max_attempts:
                    resp.raise_for_status()
                await _sleep_backoff(idx, base_backoff_sec)
                continue
            resp.raise_for_status()
            return resp.text
        except httpx.HTTPError as exc:
            last_exc = exc
            if idx + 1 >= max_attempts or (not _is_transient_error(exc)):
                raise
            await _sleep_backoff(idx, base_backoff_sec)
    if last_exc is not None:
        raise last_exc
    raise RuntimeError("get_text_with_retries exhausted without result")


async def iter_sse_payloads(
    client: httpx.AsyncClient,
    url: str,
    *,
    json_body: Dict[str, Any],
    headers: Optional[Dict[str, str]] = None,
    on_status_error: StatusErrorMapper,
    on_transport_error: TransportErrorMapper,
) -> AsyncIterator[str]:
    """Yield ``data:`` payloads of an SSE response until ``[DONE]`` or EOF.

    Request failures (connect, timeout, non-2xx) are raised through the
    mappers before anything is yielded. Failures while reading the body are
    raised as ``StreamProtocolError``.
    """
    try:
        async with client.stream("POST", url, json=json_body, headers=headers) as response:
            if not response.is_success:
                body = (await response.aread()).decode("utf-8", errors="replace")
                raise on_status_error(response.status_code, body)
            buffer = SseLineBuffer()
            async for line in _iter_lines(response, buffer):
                payload = parse_data_line(line)
                if payload is None:
                    continue
                if is_done_sentinel(payload):
                    return
                yield payload
    except httpx.TransportError as exc:
        raise on_transport_error(exc) from exc


async def _iter_lines(response: httpx.Response, buffer: SseLineBuffer) -> AsyncIterator[str]:
    try:
        async for data in response.aiter_bytes():
            for line in buffer.append(data):
                yield line
    except (httpx.ReadError, httpx.RemoteProtocolError, httpx.DecodingError) as exc:
        raise StreamProtocolError(f"Stream read error: {exc}") from exc
    tail = buffer.finish()
    if tail:
        yield tail


def describe_transport_error(service: str, exc: httpx.TransportError, connect_hint: str = "") -> ProviderHttpError:
    if isinstance(exc, httpx.ConnectError):
        message = f"Cannot connect to {service}."
        if connect_hint:
            message = f"{message} {connect_hint}"
        return ProviderHttpError(message)
    if isinstance(exc, httpx.TimeoutException):
        return ProviderHttpError(f"{service} request timed out.")
    return ProviderHttpError(f"{service} request failed: {exc}")


def _is_transient_error(exc: Exception) -> bool:
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code >= 500 or exc.response.status_code in {408, 425, 429}
    text = type(exc).__name__.lower() + " " + str(exc).lower()
    transient_markers = ["timeout", "readerror", "connecterror", "network", "tempor", "name or service not known"]
    return any(marker in text for marker in transient_markers)


async def _sleep_backoff(attempt_idx: int, base_backoff_sec: float) -> None:
    # bounded exponential backoff with jitter
    delay = min(8.0, max(0.05, float(base_backoff_sec)) * (2 ** attempt_idx))
    delay = delay * (0.8 + random.random() * 0.4)
    await asyncio.sleep(delay)
