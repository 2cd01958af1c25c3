from __future__ import annotations

import json
import logging
from typing import Any

import pytest
from starlette.datastructures import Headers

from ollama_relay.config import ProviderEntry
from ollama_relay.registry import ProviderRegistry
from ollama_relay.translator import (
    RequestTranslator,
    TranslationError,
    TranslationErrorKind,
    build_upstream_headers,
    build_upstream_url,
)


def _registry(*entries: dict[str, Any]) -> ProviderRegistry:
    return ProviderRegistry(ProviderEntry.model_validate(item) for item in entries)


def _novita_translator(**kwargs: Any) -> RequestTranslator:
    registry = _registry(
        {
            "name": "llama-local",
            "provider": "novita",
            "model": "meta/llama-3",
            "apiKey": "k",
            "systemMessage": "Be brief.",
        }
    )
    return RequestTranslator(registry, **kwargs)


def test_translate_rewrites_model_and_keeps_other_fields() -> None:
    messages = [{"role": "user", "content": "hi"}]
    body = json.dumps(
        {"model": "llama-local", "messages": messages, "stream": True, "temperature": 0.2}
    ).encode("utf-8")

    translated = _novita_translator().translate(
        body, Headers({"content-type": "application/json"})
    )

    assert translated.url == "https://api.novita.ai/v3/openai/chat/completions"
    assert translated.method == "POST"
    assert translated.alias == "llama-local"
    assert translated.upstream_model == "meta/llama-3"
    assert translated.body_rewritten is True
    payload = json.loads(translated.body)
    assert payload["model"] == "meta/llama-3"
    assert payload["messages"] == messages
    assert payload["stream"] is True
    assert payload["temperature"] == 0.2
    assert translated.headers["Authorization"] == "Bearer k"
    assert translated.headers["Host"] == "api.novita.ai"
    assert translated.headers["Content-Length"] == str(len(translated.body))


def test_translate_unknown_alias_is_not_found() -> None:
    body = b'{"model":"nope","messages":[]}'

    with pytest.raises(TranslationError) as exc_info:
        _novita_translator().translate(body, Headers({}))

    error = exc_info.value
    assert error.kind is TranslationErrorKind.NOT_FOUND
    assert error.status_code == 404
    assert error.message == "model 'nope' not found in proxy configuration"
    assert error.alias == "nope"


@pytest.mark.parametrize(
    "body",
    [b"", b"not json at all", b"[1, 2, 3]", b'{"messages": []}', b'{"model": 12}'],
)
def test_translate_without_readable_alias_is_not_found(body: bytes) -> None:
    with pytest.raises(TranslationError) as exc_info:
        _novita_translator().translate(body, Headers({}))
    assert exc_info.value.kind is TranslationErrorKind.NOT_FOUND
    assert exc_info.value.alias == ""


def test_non_json_body_is_logged(caplog: Any) -> None:
    with caplog.at_level(logging.WARNING, logger="uvicorn.error"):
        with pytest.raises(TranslationError):
            _novita_translator().translate(b"\xff\xfe garbage", Headers({}))
    assert "request_body_not_json" in caplog.text


def test_missing_api_base_is_misconfigured() -> None:
    translator = RequestTranslator(
        _registry({"name": "orphan", "provider": "unknown-vendor", "model": "m"})
    )

    with pytest.raises(TranslationError) as exc_info:
        translator.translate(b'{"model":"orphan"}', Headers({}))

    error = exc_info.value
    assert error.kind is TranslationErrorKind.MISCONFIGURED
    assert error.status_code == 500
    assert error.message == "invalid upstream configuration - missing API base URL"


@pytest.mark.parametrize("api_base", ["not a url", "ftp://example.com/v1", "/v1"])
def test_malformed_api_base_is_misconfigured(api_base: str) -> None:
    translator = RequestTranslator(
        _registry({"name": "bad", "apiBase": api_base, "model": "m"})
    )

    with pytest.raises(TranslationError) as exc_info:
        translator.translate(b'{"model":"bad"}', Headers({}))
    assert exc_info.value.kind is TranslationErrorKind.MISCONFIGURED
    assert "malformed" in exc_info.value.message


def test_unserializable_payload_forwards_original_bytes() -> None:
    # a lone surrogate decodes from JSON but cannot be re-encoded as UTF-8
    body = b'{"model":"llama-local","messages":[{"role":"user","content":"\\ud800"}]}'

    translated = _novita_translator().translate(body, Headers({}))

    assert translated.body == body
    assert translated.body_rewritten is False
    assert translated.headers["Content-Length"] == str(len(body))


def test_system_message_injection_is_opt_in() -> None:
    body = b'{"model":"llama-local","messages":[{"role":"user","content":"hi"}]}'

    plain = _novita_translator().translate(body, Headers({}))
    assert json.loads(plain.body)["messages"] == [{"role": "user", "content": "hi"}]

    injected = _novita_translator(inject_system_message=True).translate(
        body, Headers({})
    )
    assert json.loads(injected.body)["messages"] == [
        {"role": "system", "content": "Be brief."},
        {"role": "user", "content": "hi"},
    ]


def test_system_message_injection_respects_existing_system_turn() -> None:
    messages = [
        {"role": "system", "content": "Custom."},
        {"role": "user", "content": "hi"},
    ]
    body = json.dumps({"model": "llama-local", "messages": messages}).encode("utf-8")

    translated = _novita_translator(inject_system_message=True).translate(
        body, Headers({})
    )
    assert json.loads(translated.body)["messages"] == messages


def test_method_and_query_are_carried_over() -> None:
    translated = _novita_translator().translate(
        b'{"model":"llama-local"}', Headers({}), method="put", query="a=1&b=two"
    )
    assert translated.method == "PUT"
    assert translated.url == "https://api.novita.ai/v3/openai/chat/completions?a=1&b=two"


@pytest.mark.parametrize(
    ("api_base", "expected"),
    [
        ("https://api.openai.com/v1", "https://api.openai.com/v1/chat/completions"),
        ("https://api.openai.com/v1/", "https://api.openai.com/v1/chat/completions"),
        ("https://api.openai.com", "https://api.openai.com/chat/completions"),
        ("http://localhost:8080/v1", "http://localhost:8080/v1/chat/completions"),
    ],
)
def test_build_upstream_url_appends_chat_completions(
    api_base: str, expected: str
) -> None:
    assert str(build_upstream_url(api_base)) == expected


def test_host_header_keeps_non_default_port() -> None:
    translator = RequestTranslator(
        _registry({"name": "local", "apiBase": "http://localhost:8080/v1", "model": "m"})
    )
    translated = translator.translate(b'{"model":"local"}', Headers({}))
    assert translated.headers["Host"] == "localhost:8080"


def test_build_upstream_headers_drops_hop_by_hop_and_replaces_owned() -> None:
    incoming = Headers(
        {
            "authorization": "Bearer client-token",
            "host": "127.0.0.1:11434",
            "content-length": "999",
            "connection": "keep-alive",
            "transfer-encoding": "chunked",
            "te": "trailers",
            "accept": "text/event-stream",
            "x-custom": "kept",
        }
    )

    headers = build_upstream_headers(
        incoming, api_key="secret", host="api.example.com", content_length=12
    )

    assert headers == {
        "accept": "text/event-stream",
        "x-custom": "kept",
        "Authorization": "Bearer secret",
        "Host": "api.example.com",
        "Content-Length": "12",
        "Content-Type": "application/json",
    }


def test_build_upstream_headers_keeps_client_content_type() -> None:
    headers = build_upstream_headers(
        {"Content-Type": "text/plain"}, api_key="", host="h", content_length=0
    )
    assert headers["Content-Type"] == "text/plain"
    assert headers["Authorization"] == "Bearer "
    assert sum(1 for name in headers if name.lower() == "content-type") == 1


@pytest.mark.parametrize(
    ("query", "expected_query"),
    [
        ("q=é", "q=%C3%A9"),
        (b"q=\xc3\xa9", "q=%C3%A9"),
        ("q=a%20b&lang=en", "q=a%20b&lang=en"),
        ("q=hello world", "q=hello%20world"),
    ],
)
def test_non_ascii_query_is_percent_encoded(
    query: str | bytes, expected_query: str
) -> None:
    translated = _novita_translator().translate(
        b'{"model":"llama-local"}', Headers({}), query=query
    )

    assert translated.url == (
        "https://api.novita.ai/v3/openai/chat/completions?" + expected_query
    )
    assert translated.headers["Host"] == "api.novita.ai"
