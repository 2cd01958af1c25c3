from __future__ import annotations

import argparse
import os
from pathlib import Path
from typing import Any, Callable, cast

import yaml

from ollama_relay.config import ConfigError, load_proxy_config, resolve_config_path
from ollama_relay.settings import get_settings

DEFAULT_INIT_PATH = "config.yaml"
ENV_PREFIX = "OLLAMA_RELAY_"

SAMPLE_CONFIG: dict[str, Any] = {
    "models": [
        {
            "name": "example-model",
            "apiBase": "https://api.openai.com/v1",
            "model": "gpt-4o-mini",
            "apiKey": "your_api_key_here",
            "systemMessage": "You are a helpful assistant.",
        },
        {
            "name": "llama-novita",
            "provider": "novita",
            "model": "meta-llama/llama-3.1-8b-instruct",
            "apiKeyEnv": "NOVITA_API_KEY",
        },
    ]
}


def _write_yaml(path: Path, payload: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(payload, handle, sort_keys=False)


def _apply_env_overrides(overrides: dict[str, Any]) -> None:
    for key, value in overrides.items():
        if value is None:
            continue
        os.environ[f"{ENV_PREFIX}{key.upper()}"] = str(value)
    get_settings.cache_clear()


def cmd_serve(args: argparse.Namespace) -> int:
    _apply_env_overrides(
        {
            "config_path": args.config,
            "host": args.host,
            "port": args.port,
            "debug": "true" if args.debug else None,
            "config_watch_enabled": "false" if args.no_watch else None,
        }
    )
    from ollama_relay.main import run

    run()
    return 0


def cmd_init(args: argparse.Namespace) -> int:
    output_path = resolve_config_path(args.path)
    if output_path.exists() and not args.force:
        raise ValueError(
            f"Refusing to overwrite existing file: {output_path}. Use --force to overwrite."
        )
    _write_yaml(output_path, SAMPLE_CONFIG)
    print(f"Wrote sample config: {output_path}")
    return 0


def cmd_validate(args: argparse.Namespace) -> int:
    path = args.path or get_settings().config_path
    config = load_proxy_config(path)
    routable = config.routable_models()
    print(f"Config is valid: {resolve_config_path(path)} ({len(routable)} providers)")
    if config.unnamed_count():
        print(f"warning: {config.unnamed_count()} entries without a name are skipped")
    for alias in config.duplicate_aliases():
        print(f"warning: duplicate alias '{alias}' (first entry wins)")
    for entry in routable:
        if entry.resolved_api_base() is None:
            print(
                f"warning: '{entry.name}' has no apiBase and provider "
                f"'{entry.provider}' has no known default"
            )
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ollama-relay",
        description="Serve an Ollama-compatible API backed by OpenAI-compatible providers.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve = subparsers.add_parser("serve", help="Run the proxy server.")
    serve.add_argument("--config", default=None, help="Path to the provider config.")
    serve.add_argument("--host", default=None)
    serve.add_argument("--port", type=int, default=None)
    serve.add_argument("--debug", action="store_true")
    serve.add_argument(
        "--no-watch", action="store_true", help="Disable config hot reload."
    )
    serve.set_defaults(handler=cmd_serve)

    init = subparsers.add_parser("init", help="Write a sample provider config.")
    init.add_argument("--path", default=DEFAULT_INIT_PATH)
    init.add_argument("--force", action="store_true")
    init.set_defaults(handler=cmd_init)

    validate = subparsers.add_parser("validate", help="Check a provider config.")
    validate.add_argument("--path", default=None)
    validate.set_defaults(handler=cmd_validate)
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    handler = cast(Callable[[argparse.Namespace], int], args.handler)

    try:
        return handler(args)
    except (ConfigError, ValueError, OSError) as exc:
        parser.exit(2, f"error: {exc}\n")


if __name__ == "__main__":
    raise SystemExit(main())
