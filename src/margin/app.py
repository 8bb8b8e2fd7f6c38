"""Console entry point for the Margin reader engine."""

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

from .ai.backend import OpenAIBackend
from .ai.client import ClientSettings
from .engine.events import MessageUpdated
from .engine.reader_engine import ReaderEngine
from .services.chat_store import JsonChatStore
from .services.settings import Settings, SettingsStore, redact_secret
from .utils import logging as logging_utils

_LOGGER = logging.getLogger(__name__)
_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}
_FALSE_VALUES = {"0", "false", "no", "off", "disabled"}
_COMMAND_HELP = (
    "Commands: /new, /sessions, /switch N, /remove N, /rename N TITLE, /clear, "
    "/explain STYLE :: TEXT, /quit"
)


def configure_logging(debug: bool = False, *, force: bool = False) -> None:
    level = logging.DEBUG if debug else logging.INFO
    logging_utils.setup_logging(level, force=force)
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
        return active_store.load(overrides=overrides)
    except Exception as exc:  # pragma: no cover - defensive path
        _LOGGER.warning("Failed to load settings from %s: %s", active_store.path, exc)
        return Settings()


def build_engine(settings: Settings, *, settings_store: SettingsStore | None = None) -> ReaderEngine:
    """Wire the OpenAI backend and JSON chat store into a reader engine."""

    client_settings = ClientSettings(
        base_url=settings.base_url,
        api_key=settings.api_key,
        model=settings.model,
        organization=settings.organization,
        request_timeout=settings.request_timeout,
        max_retries=settings.max_retries,
        retry_min_seconds=settings.retry_min_seconds,
        retry_max_seconds=settings.retry_max_seconds,
        default_headers=settings.default_headers,
        debug_logging=settings.debug_logging,
    )
    backend = OpenAIBackend(
        client_settings,
        explain_max_tokens=settings.explain_max_tokens,
        chat_max_tokens=settings.chat_max_tokens,
        temperature=settings.temperature,
    )
    return ReaderEngine(
        backend,
        JsonChatStore(settings.chats_dir),
        settings=settings,
        settings_store=settings_store,
    )


class ConsoleTranscript:
    """Prints streamed assistant messages as they grow."""

    def __init__(self, engine: ReaderEngine, stream: TextIO | None = None) -> None:
        self._engine = engine
        self._out = stream or sys.stdout
        self._printed: Dict[str, int] = {}
        engine.subscribe(MessageUpdated, self._on_message_updated)

    def _on_message_updated(self, event: MessageUpdated) -> None:
        context = self._engine.context
        if context is None or not context.is_active or context.document_key != event.document_key:
            return
        message = context.store.get_message(event.session_id, event.message_id)
        if message is None or message.role != "assistant" or message.status == "receiving":
            return
        offset = self._printed.get(message.id, 0)
        if offset == 0:
            self._out.write("ai> ")
        self._out.write(message.content[offset:])
        self._printed[message.id] = len(message.content)
        if not message.is_open:
            self._out.write("\n")
        self._out.flush()


def main(argv: Sequence[str] | None = None) -> None:
    """Entry point invoked by the `margin` console script."""

    args = _parse_cli_args(argv)
    debug = _env_flag("MARGIN_DEBUG", default=False)
    configure_logging(debug)

    settings_path = args.settings_path or os.environ.get("MARGIN_SETTINGS_PATH")
    resolved_path = Path(settings_path).expanduser() if settings_path else None
    settings_store = SettingsStore(resolved_path)
    try:
        cli_overrides = _coerce_cli_overrides(args.overrides or [])
    except ValueError as exc:
        print(f"Invalid --set override: {exc}", file=sys.stderr)
        raise SystemExit(2) from exc

    settings = load_settings(resolved_path, store=settings_store, overrides=cli_overrides or None)
    if args.dump_settings:
        _dump_settings(settings, settings_store, overrides=cli_overrides)
        return
    logging_utils.apply_settings(settings, debug=debug)

    document = args.document or settings.last_open_file
    if not document:
        print("No document given and no previously opened document.", file=sys.stderr)
        raise SystemExit(2)

    engine = build_engine(settings, settings_store=settings_store)
    try:
        asyncio.run(_run(engine, document, explain=args.explain, style=args.style))
    except KeyboardInterrupt:  # pragma: no cover - manual shutdown path
        _LOGGER.info("Shutdown requested by user.")


async def _run(engine: ReaderEngine, document: str, *, explain: str | None, style: str | None) -> None:
    transcript = ConsoleTranscript(engine)
    try:
        context = await engine.open_document(document)
        print(f"Opened {context.document_key} ({len(context.store.sessions)} session(s))")
        if explain:
            await engine.request_explanation(explain, style or engine.settings.default_style)
            await engine.wait_for_streams()
            return
        print(_COMMAND_HELP)
        while True:
            try:
                line = await asyncio.to_thread(input, "you> ")
            except EOFError:
                break
            if not await dispatch_command(engine, line):
                break
            await engine.wait_for_streams()
    finally:
        engine.unsubscribe(MessageUpdated, transcript._on_message_updated)
        await engine.shutdown()


async def dispatch_command(engine: ReaderEngine, line: str, *, out: TextIO | None = None) -> bool:
    """Run one line of console input; returns False when the user quits."""

    destination = out or sys.stdout
    text = line.strip()
    if not text:
        return True
    if not text.startswith("/"):
        await engine.send_chat_message(text)
        return True

    command, _, rest = text[1:].partition(" ")
    store = engine.store
    sessions = store.sessions
    if command == "quit":
        return False
    if command == "new":
        session = engine.new_session()
        print(f"Now in {session.title}", file=destination)
    elif command == "sessions":
        for index, session in enumerate(sessions, start=1):
            marker = "*" if session.id == store.current_session_id else " "
            print(f"{marker} {index}. {session.title} ({len(session.messages)} message(s))", file=destination)
    elif command in {"switch", "remove", "rename"}:
        number, _, title = rest.strip().partition(" ")
        try:
            position = int(number)
        except ValueError:
            position = 0
        if not 1 <= position <= len(sessions):
            print(f"Unknown session {number!r}", file=destination)
            return True
        session = sessions[position - 1]
        if command == "switch":
            engine.switch_session(session.id)
        elif command == "remove":
            engine.remove_session(session.id)
        else:
            engine.rename_session(session.id, title)
    elif command == "clear":
        engine.clear_current_session()
    elif command == "explain":
        style, _, selection = rest.partition("::")
        await engine.request_explanation(selection, style)
    else:
        print(_COMMAND_HELP, file=destination)
    return True



def _env_flag(name: str, *, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in _TRUE_VALUES


def _parse_cli_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="margin",
        description="Chat about a document with an AI assistant from the terminal.",
    )
    parser.add_argument("document", nargs="?", help="Document to open (defaults to the last one).")
    parser.add_argument("--explain", metavar="TEXT", help="Explain TEXT once and exit.")
    parser.add_argument("--style", metavar="STYLE", help="Explanation style or custom prompt.")
    parser.add_argument(
        "--dump-settings",
        action="store_true",
        help="Print the effective settings payload (with secrets redacted) and exit.",
    )
    parser.add_argument(
        "--settings-path",
        metavar="PATH",
        help="Override the default ~/.margin/settings.json path.",
    )
    parser.add_argument(
        "--set",
        dest="overrides",
        metavar="KEY=VALUE",
        action="append",
        default=[],
        help="Override persisted settings for this run (repeatable).",
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
        overrides[key] = _coerce_value(type_hints.get(key, fields[key].type), raw_value.strip())
    return overrides


def _coerce_value(annotation: Any, raw_value: str) -> Any:
    optional = type(None) in get_args(annotation)
    target = _resolve_annotation(annotation)
    if optional and raw_value.lower() in {"none", "null"}:
        return None
    if target is str or target is Any:
        return raw_value
    if target is bool:
        return _parse_bool(raw_value)
    if target is int:
        return int(raw_value, 10)
    if target is float:
        return float(raw_value)
    if target in {list, dict}:
        try:
            value = json.loads(raw_value or ("[]" if target is list else "{}"))
        except json.JSONDecodeError as exc:
            raise ValueError(f"{target.__name__} overrides must be valid JSON") from exc
        if not isinstance(value, target):
            raise ValueError(f"Expected a JSON {target.__name__}")
        return value
    return raw_value


def _resolve_annotation(annotation: Any) -> Any:
    origin = get_origin(annotation)
    if origin is None:
        return annotation
    if origin in {list, dict}:
        return origin
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
    output = {
        "settings": payload,
        "meta": {
            "path": str(store.path),
            "secret_backend": store.vault.strategy,
            "cli_overrides": sorted(overrides),
            "environment_variables": sorted(name for name in os.environ if name.startswith("MARGIN_")),
        },
    }
    json.dump(output, destination, indent=2)
    destination.write("\n")


if __name__ == "__main__":  # pragma: no cover
    main()
