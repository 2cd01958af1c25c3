from __future__ import annotations

import logging
import time
from enum import Enum
from typing import AsyncIterator

import httpx
from fastapi import status
from fastapi.responses import JSONResponse, Response, StreamingResponse

from ollama_relay.translator import TranslatedRequest

HOP_BY_HOP_RESPONSE_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
    "content-length",
}

logger = logging.getLogger("uvicorn.error")


class ForwardingErrorKind(str, Enum):
    TIMEOUT = "timeout"
    UNREACHABLE = "unreachable"
    OTHER_TRANSPORT = "other_transport"

    @property
    def status_code(self) -> int:
        if self is ForwardingErrorKind.TIMEOUT:
            return status.HTTP_504_GATEWAY_TIMEOUT
        return status.HTTP_502_BAD_GATEWAY


def classify_forwarding_error(exc: BaseException) -> ForwardingErrorKind:
    if isinstance(exc, httpx.TimeoutException):
        return ForwardingErrorKind.TIMEOUT
    if isinstance(exc, (httpx.ConnectError, httpx.NetworkError)):
        return ForwardingErrorKind.UNREACHABLE
    return ForwardingErrorKind.OTHER_TRANSPORT


def forwarding_error_response(exc: BaseException) -> JSONResponse:
    kind = classify_forwarding_error(exc)
    details = str(exc).strip() or repr(exc)
    return JSONResponse(
        status_code=kind.status_code,
        content={
            "error": "proxy error",
            "details": details,
            "error_type": exc.__class__.__name__,
        },
    )


def _filter_response_headers(headers: httpx.Headers) -> dict[str, str]:
    filtered: dict[str, str] = {}
    for name, value in headers.items():
        if name.lower() not in HOP_BY_HOP_RESPONSE_HEADERS:
            filtered[name] = value
    return filtered


def _redacted_headers(headers: dict[str, str]) -> dict[str, str]:
    return {
        name: ("Bearer ***" if name.lower() == "authorization" else value)
        for name, value in headers.items()
    }


class ProxyForwarder:
    """Executes translated requests against the upstream provider.

    One attempt per request. The upstream body is relayed chunk by chunk as
    it arrives; nothing is buffered.
    """

    def __init__(
        self,
        *,
        connect_timeout_seconds: float = 10.0,
        read_timeout_seconds: float | None = None,
        write_timeout_seconds: float = 30.0,
        pool_timeout_seconds: float = 10.0,
        debug: bool = False,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.debug = debug
        read_timeout = (
            max(0.1, float(read_timeout_seconds))
            if read_timeout_seconds is not None
            else None
        )
        self.client = httpx.AsyncClient(
            timeout=httpx.Timeout(
                timeout=None,
                connect=max(0.1, float(connect_timeout_seconds)),
                read=read_timeout,
                write=max(0.1, float(write_timeout_seconds)),
                pool=max(0.1, float(pool_timeout_seconds)),
            ),
            limits=httpx.Limits(max_connections=256, max_keepalive_connections=64),
            transport=transport,
        )

    async def close(self) -> None:
        await self.client.aclose()

    async def forward(
        self, translated: TranslatedRequest, *, request_id: str = "-"
    ) -> Response:
        if self.debug:
            logger.debug(
                "proxy_outgoing_request request_id=%s method=%s url=%s headers=%s body=%s",
                request_id,
                translated.method,
                translated.url,
                _redacted_headers(translated.headers),
                translated.body.decode("utf-8", errors="replace"),
            )

        started = time.perf_counter()
        try:
            request = self.client.build_request(
                method=translated.method,
                url=translated.url,
                content=translated.body,
                headers=translated.headers,
            )
            upstream = await self.client.send(request, stream=True)
        except Exception as exc:
            kind = classify_forwarding_error(exc)
            logger.warning(
                (
                    "proxy_request_error request_id=%s alias=%s url=%s kind=%s "
                    "error_type=%s error=%s"
                ),
                request_id,
                translated.alias,
                translated.url,
                kind.value,
                exc.__class__.__name__,
                str(exc).strip() or repr(exc),
            )
            return forwarding_error_response(exc)

        connect_ms = (time.perf_counter() - started) * 1000.0
        logger.info(
            "proxy_upstream_connected request_id=%s alias=%s upstream_model=%s status=%d connect_ms=%.2f",
            request_id,
            translated.alias,
            translated.upstream_model,
            upstream.status_code,
            connect_ms,
        )
        if self.debug:
            logger.debug(
                "proxy_upstream_response request_id=%s status=%d headers=%s",
                request_id,
                upstream.status_code,
                dict(upstream.headers),
            )

        response_headers = _filter_response_headers(upstream.headers)
        response_headers["x-relay-request-id"] = request_id
        response_headers["x-relay-alias"] = translated.alias
        response_headers["x-relay-upstream-model"] = translated.upstream_model

        return StreamingResponse(
            content=self._relay(upstream, request_id=request_id),
            status_code=upstream.status_code,
            headers=response_headers,
        )

    async def _relay(
        self, upstream: httpx.Response, *, request_id: str
    ) -> AsyncIterator[bytes]:
        relayed = 0
        try:
            async for chunk in upstream.aiter_raw():
                relayed += len(chunk)
                yield chunk
        except httpx.HTTPError as exc:
            logger.warning(
                "proxy_upstream_stream_error request_id=%s relayed_bytes=%d error_type=%s error=%s",
                request_id,
                relayed,
                exc.__class__.__name__,
                str(exc).strip() or repr(exc),
            )
        finally:
            await upstream.aclose()
            if self.debug:
                logger.debug(
                    "proxy_stream_closed request_id=%s relayed_bytes=%d",
                    request_id,
                    relayed,
                )
