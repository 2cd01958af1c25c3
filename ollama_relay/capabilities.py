from __future__ import annotations

import time
from collections.abc import Sequence
from datetime import datetime, timezone
from typing import Any

from ollama_relay.config import ProviderEntry

OWNED_BY = "ollama-proxy"
PLACEHOLDER_FORMAT = "proxy"
PLACEHOLDER_FAMILY = "proxy"
UNKNOWN_SIZE = "N/A"

DEFAULT_PARAMETERS = "# No specific parameters defined in proxy config"
DEFAULT_TEMPLATE = (
    "{{ if .System }}System: {{ .System }}{{ end }}\n"
    "User: {{ .Prompt }}\n"
    "Assistant: {{ .Response }}"
)
DEFAULT_CONTEXT_LENGTH = 120000


def _default_modelfile(alias: str) -> str:
    return f"# Modelfile for {alias} (proxied)\nFROM scratch"


def _iso_timestamp(epoch_seconds: float) -> str:
    moment = datetime.fromtimestamp(epoch_seconds, tz=timezone.utc)
    return moment.isoformat().replace("+00:00", "Z")


def _placeholder_details(*, include_parent: bool = False) -> dict[str, Any]:
    details: dict[str, Any] = {}
    if include_parent:
        details["parent_model"] = ""
    details.update(
        {
            "format": PLACEHOLDER_FORMAT,
            "family": PLACEHOLDER_FAMILY,
            "families": [],
            "parameter_size": UNKNOWN_SIZE,
            "quantization_level": UNKNOWN_SIZE,
        }
    )
    return details


def build_models_response(
    entries: Sequence[ProviderEntry], *, now: float | None = None
) -> dict[str, Any]:
    created = int(time.time() if now is None else now)
    return {
        "object": "list",
        "data": [
            {
                "id": entry.name,
                "object": "model",
                "created": created,
                "owned_by": OWNED_BY,
            }
            for entry in entries
        ],
    }


def build_tags_response(
    entries: Sequence[ProviderEntry], *, now: float | None = None
) -> dict[str, Any]:
    modified_at = _iso_timestamp(time.time() if now is None else now)
    return {
        "models": [
            {
                "name": entry.name,
                "model": entry.name,
                "modified_at": modified_at,
                "size": 0,
                "digest": "",
                "details": _placeholder_details(),
            }
            for entry in entries
        ]
    }


def build_show_response(entry: ProviderEntry) -> dict[str, Any]:
    """Describe a proxied model in the shape of Ollama's ``/api/show``.

    Modelfile, parameters and template come from the entry's overrides when
    set. Everything under ``model_info`` is placeholder data; the proxy has
    no way to learn the upstream model's architecture.
    """
    return {
        "license": "",
        "modelfile": entry.modelfile or _default_modelfile(entry.name),
        "parameters": entry.parameters or DEFAULT_PARAMETERS,
        "template": entry.template or DEFAULT_TEMPLATE,
        "details": _placeholder_details(include_parent=True),
        "model_info": {
            "general.architecture": "llama",
            "general.name": entry.name,
            "general.file_type": 2,
            "general.parameter_count": 0,
            "llama.context_length": DEFAULT_CONTEXT_LENGTH,
            "llama.block_count": 0,
            "llama.embedding_length": 0,
            "llama.attention.head_count": 0,
            "llama.attention.head_count_kv": 0,
            "llama.attention.layer_norm_rms_epsilon": 0.00001,
            "llama.feed_forward_length": 0,
            "llama.rope.dimension_count": 0,
            "llama.rope.freq_base": 500000,
            "llama.vocab_size": 0,
            "tokenizer.ggml.model": "gpt2",
            "tokenizer.ggml.bos_token_id": 0,
            "tokenizer.ggml.eos_token_id": 0,
        },
        "capabilities": [],
    }
