"""Command-line entry point for the studyflow client."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Sequence, TextIO, get_args, get_origin, get_type_hints

import httpx

from .events import EventBus
from .services.ai_service import AIService
from .services.api_client import ApiClient, ClientSettings
from .services.errors import ApiError
from .services.history import HistoryService
from .services.settings import TRUE_VALUES, Settings, SettingsStore, redact_secret
from .services.tool_config import ToolConfigService
from .services.wallet import WalletService
from .tools.attachments import AttachmentRejected, UploadFile
from .tools.catalog import ToolCatalog
from .tools.models import (
    AnyToolParams,
    ExplainParams,
    QuestionsParams,
    RewriteParams,
    SummaryParams,
    ToolId,
    ToolState,
)
from .utils import logging as logging_utils

_LOGGER = logging.getLogger(__name__)
_FALSE_VALUES = {"0", "false", "no", "off", "disabled"}


@dataclass(slots=True)
class Services:
    """Backend service clients sharing one HTTP connection pool."""

    api: ApiClient
    ai: AIService
    wallet: WalletService
    history: HistoryService
    tool_configs: ToolConfigService

    async def aclose(self) -> None:
        await self.api.aclose()


def configure_logging(debug: bool = False, *, force: bool = False) -> None:
    """Send diagnostics to stderr and the rotating log file."""

    path = logging_utils.setup_logging(debug, reconfigure=force)
    _LOGGER.debug("Logging to %s (debug=%s)", path, debug)


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


def build_services(settings: Settings, *, http_client: httpx.AsyncClient | None = None) -> Services:
    """Wire the service layer from ``settings``."""

    client_settings = ClientSettings(
        base_url=settings.base_url,
        access_token=settings.access_token,
        request_timeout=settings.request_timeout,
        max_retries=settings.max_retries,
        retry_min_seconds=settings.retry_min_seconds,
        retry_max_seconds=settings.retry_max_seconds,
        default_headers=settings.default_headers,
        debug_logging=settings.debug_logging,
    )
    api = ApiClient(client_settings, client=http_client)
    return Services(
        api=api,
        ai=AIService(api),
        wallet=WalletService(api),
        history=HistoryService(api),
        tool_configs=ToolConfigService(api, ttl_seconds=settings.tool_config_ttl),
    )


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point invoked by the `studyflow` console script."""

    parser = _build_parser()
    args = parser.parse_args(argv)

    debug = _env_flag("STUDYFLOW_DEBUG", default=False)
    configure_logging(debug)

    settings_path = args.settings_path or os.environ.get("STUDYFLOW_SETTINGS_PATH")
    resolved_path = Path(settings_path).expanduser() if settings_path else None
    settings_store = SettingsStore(resolved_path)
    try:
        cli_overrides = _coerce_cli_overrides(args.overrides or [])
    except ValueError as exc:
        print(f"Invalid --set override: {exc}", file=sys.stderr)
        return 2

    overrides_mapping: Dict[str, Any] | None = cli_overrides or None
    settings = load_settings(resolved_path, store=settings_store, overrides=overrides_mapping)

    if args.dump_settings:
        _dump_settings(settings, settings_store, overrides=cli_overrides)
        return 0

    if settings.debug_logging and not debug:
        configure_logging(True, force=True)

    if args.command is None:
        parser.print_help(sys.stderr)
        return 2

    try:
        return asyncio.run(run_command(args, build_services(settings)))
    except KeyboardInterrupt:  # pragma: no cover - manual shutdown path
        _LOGGER.info("Interrupted by user.")
        return 130


async def run_command(
    args: argparse.Namespace,
    services: Services,
    *,
    out: TextIO | None = None,
    err: TextIO | None = None,
) -> int:
    """Execute one parsed sub-command and return the process exit code."""

    stdout = out or sys.stdout
    stderr = err or sys.stderr
    handlers = {
        "run": _run_tool,
        "balance": _show_balance,
        "history": _history,
    }
    try:
        return await handlers[args.command](args, services, stdout, stderr)
    except ApiError as exc:
        _LOGGER.debug("Command %s failed: %s", args.command, exc.to_dict())
        print(f"Error: {exc.message}", file=stderr)
        return 1
    finally:
        await services.aclose()


# ----------------------------------------------------------------------
# Sub-commands
# ----------------------------------------------------------------------


async def _run_tool(args: argparse.Namespace, services: Services, out: TextIO, err: TextIO) -> int:
    tool_id = ToolId(args.tool)
    try:
        params = _params_from_args(tool_id, args)
    except ValueError as exc:
        print(f"Invalid option: {exc}", file=err)
        return 2

    catalog = ToolCatalog(
        services.ai,
        services.wallet,
        tool_configs=services.tool_configs,
        history=services.history,
        event_bus=EventBus(),
    )
    try:
        await catalog.load()
        controller = catalog.controller(tool_id)
        controller.params = params
        await catalog.ledger.refresh()

        text = args.text or ""
        if text == "-":
            text = sys.stdin.read()
        controller.text = text
        for raw_path in args.files:
            try:
                upload = UploadFile.from_path(raw_path)
            except OSError as exc:
                print(f"Cannot read {raw_path}: {exc.strerror or exc}", file=err)
                return 2
            try:
                controller.attachments.add(upload)
            except AttachmentRejected as exc:
                print(exc.message, file=err)
                return 2
        await controller.attachments.wait_idle()
        for failed in controller.attachments.failed():
            print(f"Warning: {failed.original_name}: {failed.error}", file=err)

        status = await controller.submit()
        if status.state is not ToolState.SUCCEEDED or status.result is None:
            print(f"Error: {status.error or 'The request did not complete.'}", file=err)
            return 1

        result = status.result
        out.write(result.output_text.rstrip() + "\n")
        await controller.drain()
        print(
            f"\nCredits used: {result.credits_used} | Balance: {catalog.ledger.current()}",
            file=err,
        )

        if args.save:
            status = await controller.commit()
            if not status.committed:
                print(f"Error: {status.error}", file=err)
                return 1
            print("Saved to history.", file=err)
        return 0
    finally:
        await catalog.drain()
        catalog.dispose()


async def _show_balance(args: argparse.Namespace, services: Services, out: TextIO, err: TextIO) -> int:
    del args, err
    wallet = await services.wallet.get_wallet()
    out.write(f"Total credits: {wallet.total_credits}\n")
    out.write(f"  free: {wallet.free_credits}  paid: {wallet.paid_credits}  used today: {wallet.used_today}\n")
    return 0


async def _history(args: argparse.Namespace, services: Services, out: TextIO, err: TextIO) -> int:
    action = args.history_command
    if action == "list":
        page = await services.history.list(page=args.page, limit=args.limit)
        if not page.items:
            out.write("No history yet.\n")
            return 0
        for item in page.items:
            preview = " ".join(item.output_text.split())[:60]
            out.write(f"{item.item_id:>6}  {item.tool_id:<10} {item.credits_used:>3}  {item.created_at}  {preview}\n")
        out.write(f"Page {page.page}/{page.total_pages} ({page.total} total)\n")
        return 0
    if action == "show":
        item = await services.history.get(args.item_id)
        out.write(f"#{item.item_id} {item.tool_id} ({item.credits_used} credits) {item.created_at}\n")
        if item.settings:
            out.write(f"Settings: {json.dumps(dict(item.settings), sort_keys=True)}\n")
        out.write(f"\nInput:\n{item.input_text}\n\nOutput:\n{item.output_text}\n")
        return 0
    if action == "delete":
        await services.history.delete(args.item_id)
        print(f"Deleted history item {args.item_id}.", file=err)
        return 0
    if action == "clear":
        await services.history.delete_all()
        print("History cleared.", file=err)
        return 0
    print("Choose a history action: list, show, delete, clear", file=err)
    return 2


def _params_from_args(tool_id: ToolId, args: argparse.Namespace) -> AnyToolParams:
    if tool_id is ToolId.SUMMARY:
        return SummaryParams(mode=args.mode or "key_points")
    if tool_id is ToolId.QUESTIONS:
        return QuestionsParams(question_type=args.question_type or "mcq", count=args.count or 5)
    if tool_id is ToolId.EXPLAIN:
        return ExplainParams(mode=args.mode or "easy", with_examples=not args.no_examples)
    return RewriteParams(style=args.style or "student", word_limit=args.word_limit)


# ----------------------------------------------------------------------
# Argument parsing
# ----------------------------------------------------------------------


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="studyflow",
        description="Run credit-metered study tools and browse saved results.",
    )
    parser.add_argument(
        "--dump-settings",
        action="store_true",
        help="Print the effective settings payload (with secrets redacted) and exit.",
    )
    parser.add_argument(
        "--settings-path",
        metavar="PATH",
        help="Override the default ~/.studyflow/settings.json path.",
    )
    parser.add_argument(
        "--set",
        dest="overrides",
        metavar="KEY=VALUE",
        action="append",
        default=[],
        help="Override persisted settings for this invocation (repeatable).",
    )
    commands = parser.add_subparsers(dest="command")

    run = commands.add_parser("run", help="Run a tool over text and attached files.")
    run.add_argument("tool", choices=[tool.value for tool in ToolId])
    run.add_argument("--text", help="Input text, or '-' to read from stdin.")
    run.add_argument(
        "--file",
        dest="files",
        metavar="PATH",
        action="append",
        default=[],
        help="Attach a file or image (repeatable, up to 5).",
    )
    run.add_argument("--mode", help="Summary or explain mode.")
    run.add_argument("--question-type", help="Question type (mcq, short, true_false, fill_blank).")
    run.add_argument("--count", type=int, help="Number of questions (3, 5, 7 or 10).")
    run.add_argument("--no-examples", action="store_true", help="Explain without examples.")
    run.add_argument("--style", help="Rewrite style.")
    run.add_argument("--word-limit", type=int, help="Approximate word limit for rewrites.")
    run.add_argument("--save", action="store_true", help="Save the result to history.")

    commands.add_parser("balance", help="Show the current credit balance.")

    history = commands.add_parser("history", help="Browse saved results.")
    history_commands = history.add_subparsers(dest="history_command")
    listing = history_commands.add_parser("list", help="List saved results.")
    listing.add_argument("--page", type=int, default=1)
    listing.add_argument("--limit", type=int, default=20)
    show = history_commands.add_parser("show", help="Show one saved result.")
    show.add_argument("item_id", type=int)
    delete = history_commands.add_parser("delete", help="Delete one saved result.")
    delete.add_argument("item_id", type=int)
    history_commands.add_parser("clear", help="Delete every saved result.")
    return parser


def _env_flag(name: str, *, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in TRUE_VALUES


def _coerce_cli_overrides(items: Sequence[str]) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    if not items:
        return overrides

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
        annotation = type_hints.get(key, fields[key].type)
        overrides[key] = _coerce_value(annotation, raw_value.strip())
    return overrides


def _coerce_value(annotation: Any, raw_value: str) -> Any:
    target = _resolve_annotation(annotation)
    normalized = raw_value.strip()

    if target is str or target is Any:
        return normalized
    if target is bool:
        return _parse_bool(normalized)
    if target is int:
        return int(normalized, 10)
    if target is float:
        return float(normalized)
    if target is dict:
        try:
            payload = json.loads(normalized or "{}")
        except json.JSONDecodeError as exc:
            raise ValueError("Dict overrides must be valid JSON objects") from exc
        if not isinstance(payload, dict):
            raise ValueError("Dict overrides must be valid JSON objects")
        return payload
    return normalized


def _resolve_annotation(annotation: Any) -> Any:
    origin = get_origin(annotation)
    if origin is None:
        return annotation
    if origin in {list, dict}:
        return origin
    args = [arg for arg in get_args(annotation) if arg is not type(None)]
    if not args:
        return origin
    return args[0]


def _parse_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in TRUE_VALUES:
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
    payload["access_token"] = redact_secret(settings.access_token)
    metadata = {
        "path": str(store.path),
        "secret_backend": store.cipher.name,
        "cli_overrides": sorted(overrides.keys()),
        "environment_variables": _active_env_overrides(),
    }
    output = {"settings": payload, "meta": metadata}
    json.dump(output, destination, indent=2)
    destination.write("\n")


def _active_env_overrides() -> list[str]:
    return sorted(name for name in os.environ if name.startswith("STUDYFLOW_"))


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
