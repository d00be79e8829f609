"""Application bootstrap helpers for the kernel agent."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Sequence, TextIO, get_args, get_origin, get_type_hints

from .ai.client import AIClient, ClientSettings
from .ai.orchestration.conversation import ConversationStore
from .ai.orchestration.jobs import JobQueue, LoopJobDispatcher
from .ai.orchestration.runner import LoopConfig, LoopController, ModelClient
from .ai.orchestration.tool_invoker import ToolInvoker
from .ai.prompts import SYSTEM_PROMPT
from .sandbox import Sandbox
from .services.agent_service import AgentService
from .services.settings import Settings, SettingsStore, redact_secret
from .services.telemetry import ProgressChannel
from .utils import logging as logging_utils

_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}
_FALSE_VALUES = {"0", "false", "no", "off", "disabled"}
_LOGGER = logging.getLogger(__name__)


def configure_logging(debug: bool = False, *, force: bool = False, console: bool = True) -> None:
    """Configure structured logging for the application."""

    level = logging_utils.resolve_level(debug)
    logging_utils.setup_logging(level, force=force, console=console)
    _LOGGER.debug("Logging configured (level=%s)", logging.getLevelName(level))


def load_settings(
    path: Optional[Path] = None,
    *,
    store: SettingsStore | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> Settings:
    """Load persisted settings or fall back to defaults."""

    active_store = store or SettingsStore(path)
    try:
        settings = active_store.load(overrides=overrides)
    except (OSError, ValueError) as exc:
        _LOGGER.warning("Failed to load settings from %s: %s", active_store.path, exc)
        settings = Settings()
    return settings


def build_client_settings(settings: Settings) -> ClientSettings:
    return ClientSettings(
        base_url=settings.base_url,
        api_key=settings.api_key,
        model=settings.model,
        organization=settings.organization,
        request_timeout=settings.request_timeout,
        max_retries=settings.max_retries,
        retry_min_seconds=settings.retry_min_seconds,
        retry_max_seconds=settings.retry_max_seconds,
        default_headers=dict(settings.default_headers) or None,
        metadata=dict(settings.metadata) or None,
        debug_logging=settings.debug_logging,
    )


def build_agent_service(
    settings: Settings,
    sandbox: Sandbox,
    *,
    client: ModelClient | None = None,
    progress: ProgressChannel | None = None,
    settings_store: SettingsStore | None = None,
) -> AgentService:
    """Wire the client, tool invoker, loop controller, and job queue together.

    Args:
        settings: Effective settings.
        sandbox: Code-execution sandbox shared by every job.
        client: Model client; an :class:`AIClient` built from settings by default.
        progress: Progress channel; a fresh one by default.
        settings_store: Store used to persist a regenerated system prompt.

    Returns:
        The service facade owning every component.
    """

    channel = progress or ProgressChannel()
    model_client = client or AIClient(build_client_settings(settings))
    invoker = ToolInvoker(sandbox, progress=channel)
    controller = LoopController(
        model_client,
        invoker,
        ConversationStore(),
        progress=channel,
        config=LoopConfig(
            system_prompt=settings.system_prompt or SYSTEM_PROMPT,
            temperature=settings.temperature,
            max_steps=settings.max_steps,
            context_warning_chars=settings.context_warning_chars,
        ),
    )
    queue = JobQueue(
        LoopJobDispatcher(controller, invoker),
        progress=channel,
        max_finished_jobs=settings.max_finished_jobs,
    )
    _LOGGER.info("Agent service ready (provider=%s, model=%s)", settings.provider, settings.model)
    return AgentService(
        settings,
        controller,
        queue,
        sandbox,
        progress=channel,
        settings_store=settings_store,
        client=model_client,
    )


def main(argv: Sequence[str] | None = None) -> None:
    """Entry point invoked by the `kernelagent` console script."""

    args = _parse_cli_args(argv)
    debug = _env_flag("KERNELAGENT_DEBUG", default=False)
    configure_logging(debug, console=not args.dump_settings)

    settings_path = args.settings_path or os.environ.get("KERNELAGENT_SETTINGS_PATH")
    resolved_path = Path(settings_path).expanduser() if settings_path else None
    settings_store = SettingsStore(resolved_path)
    try:
        cli_overrides = _coerce_cli_overrides(args.overrides or [])
    except ValueError as exc:
        print(f"Invalid --set override: {exc}", file=sys.stderr)
        raise SystemExit(2) from exc

    settings = load_settings(resolved_path, store=settings_store, overrides=cli_overrides or None)
    if settings.debug_logging and not debug:
        configure_logging(True, force=True, console=not args.dump_settings)

    if args.save:
        settings_store.save(settings)
        _LOGGER.info("Settings saved to %s", settings_store.path)

    if args.list_models:
        for model in asyncio.run(_list_models(settings)):
            print(model)
        return

    _dump_settings(settings, settings_store, overrides=cli_overrides)


async def _list_models(settings: Settings) -> list[str]:
    client = AIClient(build_client_settings(settings))
    try:
        return await client.list_models()
    finally:
        await client.aclose()


def _env_flag(name: str, *, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in _TRUE_VALUES


def _parse_cli_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="kernelagent",
        description="Inspect and manage the kernel agent configuration.",
    )
    parser.add_argument(
        "--dump-settings",
        action="store_true",
        help="Print the effective settings payload (with secrets redacted) and exit.",
    )
    parser.add_argument(
        "--list-models",
        action="store_true",
        help="List the models offered by the configured endpoint and exit.",
    )
    parser.add_argument(
        "--save",
        action="store_true",
        help="Persist the effective settings (including --set overrides).",
    )
    parser.add_argument(
        "--settings-path",
        metavar="PATH",
        help="Override the default ~/.kernelagent/settings.json path.",
    )
    parser.add_argument(
        "--set",
        dest="overrides",
        metavar="KEY=VALUE",
        action="append",
        default=[],
        help="Override persisted settings (repeatable).",
    )
    return parser.parse_args(argv)


def _coerce_cli_overrides(items: Sequence[str]) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    fields = Settings.__dataclass_fields__  # type: ignore[attr-defined]
    type_hints = get_type_hints(Settings)
    for entry in items:
        if "=" not in entry:
            raise ValueError(f"Override '{entry}' must use KEY=VALUE syntax.")
        key, raw_value = entry.split("=", 1)
        key = key.strip()
        if not key:
            raise ValueError("Override is missing a field name.")
        if key not in fields:
            raise ValueError(f"Unknown setting '{key}'.")
        overrides[key] = _coerce_value(type_hints.get(key, str), raw_value.strip())
    return overrides


def _coerce_value(annotation: Any, raw_value: str) -> Any:
    optional = type(None) in get_args(annotation)
    if optional and raw_value.lower() in {"none", "null"}:
        return None
    target = _resolve_annotation(annotation)

    if target is bool:
        return _parse_bool(raw_value)
    if target is int:
        return int(raw_value, 10)
    if target is float:
        return float(raw_value)
    if target is dict:
        try:
            payload = json.loads(raw_value or "{}")
        except json.JSONDecodeError as exc:
            raise ValueError("Dict overrides must be valid JSON objects") from exc
        if not isinstance(payload, dict):
            raise ValueError("Dict overrides must be valid JSON objects")
        return payload
    return raw_value


def _resolve_annotation(annotation: Any) -> Any:
    origin = get_origin(annotation)
    if origin is None:
        return annotation
    if origin is dict:
        return dict
    args = [arg for arg in get_args(annotation) if arg is not type(None)]
    return args[0] if args else origin


def _parse_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ValueError(f"Cannot coerce '{value}' to a boolean.")


def _dump_settings(
    settings: Settings,
    store: SettingsStore,
    *,
    overrides: Mapping[str, Any],
    stream: TextIO | None = None,
) -> None:
    destination = stream or sys.stdout
    payload = asdict(settings)
    payload["api_key"] = redact_secret(settings.api_key)
    metadata = {
        "path": str(store.path),
        "secret_backend": store.secret_backend,
        "cli_overrides": sorted(overrides.keys()),
        "environment_variables": sorted(name for name in os.environ if name.startswith("KERNELAGENT_")),
    }
    json.dump({"settings": payload, "meta": metadata}, destination, indent=2)
    destination.write("\n")


if __name__ == "__main__":  # pragma: no cover - manual invocation
    main()
