from __future__ import annotations

import logging
import socket
from typing import Any
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response

from ollama_relay.capabilities import (
    build_models_response,
    build_show_response,
    build_tags_response,
)
from ollama_relay.forwarder import ProxyForwarder
from ollama_relay.loader import ConfigLoader
from ollama_relay.registry import ProviderRegistry
from ollama_relay.settings import Settings, get_settings
from ollama_relay.translator import RequestTranslator, TranslationError
from ollama_relay.watcher import ConfigWatcher

app = FastAPI(
    title="Ollama Relay",
    description="Ollama-compatible API that relays chat completions to OpenAI-compatible providers.",
    version="0.1.0",
)

logger = logging.getLogger("uvicorn.error")

PROXY_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS", "HEAD"]


def _request_id(request: Request) -> str:
    return (
        request.headers.get("x-request-id")
        or request.headers.get("x-correlation-id")
        or uuid4().hex[:12]
    )


def _setup_optional_tracing(
    *,
    app_obj: FastAPI,
    forwarder: ProxyForwarder,
    settings: Settings,
) -> None:
    if not settings.observability_tracing_enabled:
        return
    try:
        from opentelemetry import trace
        from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
        from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
        from opentelemetry.sdk.resources import Resource
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor
    except ImportError as exc:
        logger.warning("observability_tracing_unavailable reason=%s", str(exc))
        return

    provider = TracerProvider(
        resource=Resource.create({"service.name": settings.observability_service_name})
    )
    endpoint = settings.observability_otlp_endpoint
    if endpoint:
        try:
            from opentelemetry.exporter.otlp.proto.http.trace_exporter import (
                OTLPSpanExporter,
            )

            provider.add_span_processor(
                BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint))
            )
        except ImportError as exc:
            logger.warning(
                "observability_otlp_exporter_unavailable reason=%s", str(exc)
            )
    trace.set_tracer_provider(provider)

    try:
        FastAPIInstrumentor.instrument_app(app_obj)
    except Exception as exc:
        logger.warning(
            "observability_fastapi_instrumentation_failed reason=%s", str(exc)
        )
    try:
        HTTPXClientInstrumentor().instrument_client(forwarder.client)
    except Exception as exc:
        logger.warning("observability_httpx_instrumentation_failed reason=%s", str(exc))


@app.on_event("startup")
async def startup() -> None:
    settings = get_settings()
    if settings.debug:
        logger.setLevel(logging.DEBUG)
    registry = ProviderRegistry()
    loader = ConfigLoader(settings.config_path, registry)
    # A bad config on first load aborts startup.
    snapshot = loader.load()

    app.state.settings = settings
    app.state.registry = registry
    app.state.config_loader = loader
    app.state.translator = RequestTranslator(
        registry, inject_system_message=settings.inject_system_message
    )
    app.state.forwarder = ProxyForwarder(
        connect_timeout_seconds=settings.upstream_connect_timeout_seconds,
        read_timeout_seconds=settings.upstream_read_timeout_seconds,
        write_timeout_seconds=settings.upstream_write_timeout_seconds,
        pool_timeout_seconds=settings.upstream_pool_timeout_seconds,
        debug=settings.debug,
    )
    _setup_optional_tracing(
        app_obj=app, forwarder=app.state.forwarder, settings=settings
    )
    watcher = ConfigWatcher(
        loader=loader,
        logger=logger,
        enabled=settings.config_watch_enabled,
        interval_seconds=settings.config_watch_interval_seconds,
    )
    await watcher.start()
    app.state.config_watcher = watcher
    logger.info(
        "startup complete config_path=%s providers=%d generation=%d watch_enabled=%s debug=%s",
        loader.path,
        len(snapshot),
        snapshot.generation,
        settings.config_watch_enabled,
        settings.debug,
    )


@app.on_event("shutdown")
async def shutdown() -> None:
    watcher: ConfigWatcher | None = getattr(app.state, "config_watcher", None)
    if watcher is not None:
        await watcher.stop()
    forwarder: ProxyForwarder | None = getattr(app.state, "forwarder", None)
    if forwarder is not None:
        await forwarder.close()
    logger.info("shutdown complete")


@app.api_route("/", methods=["GET", "HEAD"])
async def root() -> dict[str, Any]:
    registry: ProviderRegistry = app.state.registry
    watcher: ConfigWatcher | None = getattr(app.state, "config_watcher", None)
    snapshot = registry.snapshot()
    return {
        "status": "running",
        "message": "Ollama Proxy is active",
        "providers": len(snapshot),
        "generation": snapshot.generation,
        "last_reload_error": watcher.status.last_error if watcher else None,
    }


@app.get("/v1/models")
async def models() -> dict[str, Any]:
    registry: ProviderRegistry = app.state.registry
    return build_models_response(registry.list())


@app.get("/api/tags")
async def tags() -> dict[str, Any]:
    registry: ProviderRegistry = app.state.registry
    return build_tags_response(registry.list())


@app.post("/api/show")
async def show(request: Request) -> JSONResponse:
    try:
        payload = await request.json()
    except Exception as exc:
        return JSONResponse(
            status_code=400, content={"error": f"invalid request body: {exc}"}
        )
    if not isinstance(payload, dict):
        return JSONResponse(
            status_code=400,
            content={"error": "invalid request body: expected a JSON object"},
        )

    alias = payload.get("model") or payload.get("name") or ""
    if not isinstance(alias, str):
        alias = ""
    registry: ProviderRegistry = app.state.registry
    entry = registry.lookup(alias)
    if entry is None:
        return JSONResponse(
            status_code=404, content={"error": f"model '{alias}' not found"}
        )
    return JSONResponse(content=build_show_response(entry))


@app.api_route("/v1/chat/{subpath:path}", methods=PROXY_METHODS)
async def chat_proxy(subpath: str, request: Request) -> Response:
    translator: RequestTranslator = app.state.translator
    forwarder: ProxyForwarder = app.state.forwarder
    request_id = _request_id(request)
    body = await request.body()
    if forwarder.debug:
        logger.debug(
            "proxy_incoming_request request_id=%s method=%s url=%s headers=%s body=%s",
            request_id,
            request.method,
            request.url,
            {
                name: value
                for name, value in request.headers.items()
                if name.lower() != "authorization"
            },
            body.decode("utf-8", errors="replace"),
        )

    translated = translator.translate(
        body,
        request.headers,
        path=f"/v1/chat/{subpath}",
        method=request.method,
        query=request.scope.get("query_string", b""),
    )
    logger.info(
        "proxy_request request_id=%s path=/v1/chat/%s alias=%s upstream_model=%s url=%s body_rewritten=%s",
        request_id,
        subpath,
        translated.alias,
        translated.upstream_model,
        translated.url,
        translated.body_rewritten,
    )
    return await forwarder.forward(translated, request_id=request_id)


@app.exception_handler(TranslationError)
async def translation_error_handler(_: Request, exc: TranslationError) -> JSONResponse:
    logger.info(
        "proxy_translation_failed kind=%s alias=%s status=%d",
        exc.kind.value,
        exc.alias,
        exc.status_code,
    )
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


def find_available_port(host: str, port: int, max_attempts: int) -> int:
    for offset in range(max(0, int(max_attempts)) + 1):
        candidate = port + offset
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as probe:
            try:
                probe.bind((host, candidate))
            except OSError:
                logger.warning("port_in_use host=%s port=%d", host, candidate)
                continue
        return candidate
    raise OSError(
        f"No free port on {host} between {port} and {port + max(0, int(max_attempts))}."
    )


def run() -> None:
    import uvicorn

    settings = get_settings()
    port = find_available_port(settings.host, settings.port, settings.max_port_attempts)
    uvicorn.run(
        app,
        host=settings.host,
        port=port,
        log_level="debug" if settings.debug else "info",
        reload=False,
    )


if __name__ == "__main__":
    run()
