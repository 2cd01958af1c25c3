from __future__ import annotations

import json
import logging
from urllib.parse import quote_from_bytes
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any

import httpx

from ollama_relay.config import ProviderEntry
from ollama_relay.registry import ProviderRegistry

CHAT_COMPLETIONS_SUFFIX = "/chat/completions"

# Reserved query characters kept as-is; existing %-escapes stay intact.
QUERY_SAFE_CHARS = "=&%+;/?:@,!$'()*[]~"

HOP_BY_HOP_REQUEST_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailer",
    "trailers",
    "transfer-encoding",
    "upgrade",
}

# Set by the translator itself.
OWNED_REQUEST_HEADERS = {"host", "content-length", "authorization"}

logger = logging.getLogger("uvicorn.error")


class TranslationErrorKind(str, Enum):
    NOT_FOUND = "not_found"
    MISCONFIGURED = "misconfigured"


class TranslationError(Exception):
    def __init__(
        self, kind: TranslationErrorKind, message: str, *, alias: str = ""
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.alias = alias

    @property
    def status_code(self) -> int:
        if self.kind == TranslationErrorKind.NOT_FOUND:
            return 404
        return 500


@dataclass(frozen=True, slots=True)
class TranslatedRequest:
    method: str
    url: str
    headers: dict[str, str]
    body: bytes
    alias: str
    upstream_model: str
    body_rewritten: bool


def _parse_json_object(body: bytes) -> dict[str, Any] | None:
    if not body:
        return None
    try:
        payload = json.loads(body)
    except (UnicodeDecodeError, ValueError):
        return None
    if not isinstance(payload, dict):
        return None
    return payload


def _alias_from_payload(payload: dict[str, Any] | None) -> str:
    if payload is None:
        return ""
    model = payload.get("model")
    if isinstance(model, str):
        return model
    return ""


def _serialize_payload(payload: dict[str, Any]) -> bytes | None:
    try:
        return json.dumps(
            payload, ensure_ascii=False, separators=(",", ":")
        ).encode("utf-8")
    except (TypeError, ValueError, UnicodeEncodeError):
        return None


def _with_system_message(payload: dict[str, Any], system_message: str) -> None:
    messages = payload.get("messages")
    if not isinstance(messages, list):
        return
    for message in messages:
        if isinstance(message, dict) and message.get("role") == "system":
            return
    payload["messages"] = [{"role": "system", "content": system_message}, *messages]


def build_upstream_url(api_base: str) -> httpx.URL:
    try:
        base = httpx.URL(api_base)
    except (httpx.InvalidURL, TypeError) as exc:
        raise ValueError(f"invalid API base URL '{api_base}'") from exc
    if base.scheme not in {"http", "https"} or not base.host:
        raise ValueError(f"invalid API base URL '{api_base}'")
    path = base.path.rstrip("/") + CHAT_COMPLETIONS_SUFFIX
    return base.copy_with(path=path, query=None)


def encode_query(query: str | bytes) -> bytes:
    """Percent-encode an inbound query string for the upstream URL.

    Raw bytes from the ASGI scope pass through as sent; text is taken as UTF-8.
    """
    raw = query if isinstance(query, bytes) else query.encode("utf-8")
    return quote_from_bytes(raw, safe=QUERY_SAFE_CHARS).encode("ascii")


def _host_header(url: httpx.URL) -> str:
    if url.port is None:
        return url.host
    return f"{url.host}:{url.port}"


def build_upstream_headers(
    incoming_headers: Mapping[str, str],
    *,
    api_key: str,
    host: str,
    content_length: int,
) -> dict[str, str]:
    headers: dict[str, str] = {}
    for name, value in incoming_headers.items():
        lower = name.lower()
        if lower in HOP_BY_HOP_REQUEST_HEADERS or lower in OWNED_REQUEST_HEADERS:
            continue
        headers[name] = value

    headers["Authorization"] = f"Bearer {api_key}"
    headers["Host"] = host
    headers["Content-Length"] = str(content_length)
    if not any(key.lower() == "content-type" for key in headers):
        headers["Content-Type"] = "application/json"
    return headers


class RequestTranslator:
    """Turns an inbound chat request into the upstream provider's request.

    The body takes one of two branches. When it parses as a JSON object the
    ``model`` field is replaced with the provider's upstream model. Anything
    else is forwarded byte for byte, which also means no alias can be read
    from it and the lookup fails with a not-found error.
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        *,
        inject_system_message: bool = False,
    ) -> None:
        self._registry = registry
        self._inject_system_message = inject_system_message

    def resolve(self, alias: str) -> ProviderEntry:
        entry = self._registry.lookup(alias)
        if entry is None:
            raise TranslationError(
                TranslationErrorKind.NOT_FOUND,
                f"model '{alias}' not found in proxy configuration",
                alias=alias,
            )
        return entry

    def translate(
        self,
        body: bytes,
        headers: Mapping[str, str],
        *,
        path: str = "/v1/chat/completions",
        method: str = "POST",
        query: str | bytes = "",
    ) -> TranslatedRequest:
        payload = _parse_json_object(body)
        if payload is None and body:
            logger.warning(
                "request_body_not_json path=%s bytes=%d forwarding_verbatim=true",
                path,
                len(body),
            )
        alias = _alias_from_payload(payload)
        entry = self.resolve(alias)

        api_base = entry.resolved_api_base()
        if api_base is None:
            logger.error(
                "upstream_misconfigured alias=%s provider=%s reason=missing_api_base",
                entry.name,
                entry.provider,
            )
            raise TranslationError(
                TranslationErrorKind.MISCONFIGURED,
                "invalid upstream configuration - missing API base URL",
                alias=alias,
            )
        try:
            url = build_upstream_url(api_base)
        except ValueError as exc:
            logger.error(
                "upstream_misconfigured alias=%s api_base=%s reason=%s",
                entry.name,
                api_base,
                exc,
            )
            raise TranslationError(
                TranslationErrorKind.MISCONFIGURED,
                "invalid upstream configuration - malformed API base URL",
                alias=alias,
            ) from exc
        if query:
            url = url.copy_with(query=encode_query(query))

        outbound_body = body
        body_rewritten = False
        if payload is not None:
            payload["model"] = entry.model
            if self._inject_system_message and entry.system_message:
                _with_system_message(payload, entry.system_message)
            serialized = _serialize_payload(payload)
            if serialized is None:
                logger.error(
                    "request_body_serialize_failed alias=%s forwarding_original=true",
                    alias,
                )
            else:
                outbound_body = serialized
                body_rewritten = True

        return TranslatedRequest(
            method=method.upper(),
            url=str(url),
            headers=build_upstream_headers(
                headers,
                api_key=entry.resolved_api_key(),
                host=_host_header(url),
                content_length=len(outbound_body),
            ),
            body=outbound_body,
            alias=alias,
            upstream_model=entry.model,
            body_rewritten=body_rewritten,
        )
