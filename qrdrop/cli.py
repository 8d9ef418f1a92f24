"""
Command line interface for qrdrop.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import re
import sys
import threading
from pathlib import Path
from typing import Optional, Sequence

from rich.logging import RichHandler
from rich.text import Text

from . import __version__
from .chunker import Incomplete, QrChunker
from .config import (
    NETWORK_MODES,
    AppConfig,
    load_config,
    resolve_download_dir,
    save_config,
)
from .envelope import EnvelopeCodec, Role
from .errors import NegotiationError, TokenError, TransferCancelled, TransferError
from .language import LANGUAGES, MESSAGES, get_message, render_message
from .negotiator import Negotiator
from .transfer import DirectorySink, FileReceiver, FileSender, ReceivedFile, TransferProgress
from .transport import AiortcTransport, build_ice_servers
from .ui import ProgressTracker, TerminalUI, show_message, show_token_parts
from .utils import flush_input_buffer, format_size

COMPRESS_ALIASES = {
    "on": True,
    "yes": True,
    "y": True,
    "true": True,
    "1": True,
    "开": True,
    "开启": True,
    "off": False,
    "no": False,
    "n": False,
    "false": False,
    "0": False,
    "关": False,
    "关闭": False,
}


def debug_enabled() -> bool:
    return os.getenv("QRDROP_DEBUG", "").strip().lower() in {"1", "true", "yes", "on"}


def configure_logging(debug: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=debug, show_path=debug)],
        force=True,
    )


def normalize_compress_flag(value: Optional[str]) -> Optional[bool]:
    if value is None:
        return None
    return COMPRESS_ALIASES.get(value.strip().lower())


def prompt_language_choice(
    ui: TerminalUI, default: str, allow_cancel: bool = False
) -> Optional[str]:
    while True:
        show_message(ui, "select_language", default)
        for code, label in LANGUAGES.items():
            entry = Text("  ")
            entry.append(code, style="bold cyan")
            entry.append(" - ")
            entry.append(label, style="bright_white")
            ui.print(entry)
        try:
            choice_raw = ui.input(
                render_message("prompt_language_choice", default, default=default)
            )
        except (KeyboardInterrupt, EOFError):
            ui.blank()
            if allow_cancel:
                return None
            raise SystemExit(0)
        choice = choice_raw.strip().lower()
        if not choice:
            return default
        if choice in LANGUAGES:
            return choice
        show_message(ui, "invalid_choice", default)


def choose_language(ui: TerminalUI) -> str:
    result = prompt_language_choice(ui, "en", allow_cancel=False)
    return result or "en"


def emit_message(
    ui: TerminalUI,
    language: str,
    key: str,
    quiet: bool,
    *,
    error: bool = False,
    **kwargs: object,
) -> None:
    if quiet and not error:
        return
    show_message(ui, key, language, **kwargs)


def emit_print(
    ui: TerminalUI,
    message: Text | str,
    quiet: bool,
    *,
    error: bool = False,
) -> None:
    if quiet and not error:
        return
    ui.print(message)


def emit_blank(ui: TerminalUI, quiet: bool) -> None:
    if quiet:
        return
    ui.blank()


class LocalizedArgumentParser(argparse.ArgumentParser):
    """ArgumentParser that uses localized usage and error messages."""

    def __init__(self, *args, **kwargs) -> None:
        self._messages = kwargs.pop("messages", {})
        super().__init__(*args, **kwargs)

    def _render_usage(self) -> Optional[str]:
        template = self.usage or self._messages.get("cli_usage")
        if not template:
            return None
        if "%(prog)s" in template:
            try:
                body = template % {"prog": self.prog}
            except Exception:  # noqa: BLE001
                body = template
        else:
            try:
                body = template.format(prog=self.prog)
            except Exception:  # noqa: BLE001
                body = template
        prefix = self._messages.get("cli_usage_prefix")
        if prefix:
            return f"{prefix} {body}"
        return body

    def format_usage(self) -> str:
        rendered = self._render_usage()
        if rendered is not None:
            if not rendered.endswith("\n"):
                rendered += "\n"
            return rendered
        return super().format_usage()

    def format_help(self) -> str:
        help_text = super().format_help()
        prefix = self._messages.get("cli_usage_prefix")
        if prefix and prefix != "usage:":
            help_text = help_text.replace("usage:", prefix, 1)
        help_text = re.sub(r"^\s+\{[^}]+}\n", "", help_text, flags=re.MULTILINE)
        return help_text

    def error(self, message: str) -> None:  # noqa: D401 - match argparse signature
        self.print_usage(sys.stderr)
        template = self._messages.get("cli_error", "Error: {error}")
        self.exit(2, template.format(error=message) + "\n")


def initialize_application() -> tuple[AppConfig, TerminalUI, str]:
    configure_logging(debug_enabled())
    config = load_config()
    ui = TerminalUI()
    if config.language in LANGUAGES:
        language = config.language
    else:
        language = choose_language(ui)
        config.language = language
        save_config(config)
    return config, ui, language


def build_negotiator(config: AppConfig, network_mode: Optional[str] = None) -> Negotiator:
    mode = network_mode or config.network_mode
    ice_servers = build_ice_servers(mode, config.ice_servers)
    return Negotiator(
        lambda: AiortcTransport(ice_servers),
        codec=EnvelopeCodec(compress=config.compress_tokens),
        chunker=QrChunker(abandon_after=config.reassembly_timeout),
        max_part_size=config.max_part_size,
        gather_timeout=config.gather_timeout,
        connect_timeout=config.connect_timeout,
    )


async def ask(ui: TerminalUI, prompt: Text | str) -> str:
    """Read a line on a daemon thread so the event loop keeps running."""

    loop = asyncio.get_running_loop()
    future: asyncio.Future[str] = loop.create_future()

    def _deliver(value: Optional[str], exc: Optional[BaseException]) -> None:
        if future.done():
            return
        if exc is not None:
            future.set_exception(exc)
        else:
            future.set_result(value or "")

    def _worker() -> None:
        try:
            value = ui.input(prompt)
        except BaseException as exc:  # noqa: BLE001 - handed to the awaiting task
            loop.call_soon_threadsafe(_deliver, None, exc)
        else:
            loop.call_soon_threadsafe(_deliver, value, None)

    threading.Thread(target=_worker, name="qrdrop-input", daemon=True).start()
    return await future


async def read_token(
    ui: TerminalUI,
    language: str,
    negotiator: Negotiator,
    prompt_key: str,
    expected: Role,
) -> str:
    """Prompt until a complete token with the expected role has been pasted."""

    while True:
        raw = (await ask(ui, render_message(prompt_key, language))).strip()
        if not raw:
            continue
        try:
            result = negotiator.feed(raw)
        except TokenError as exc:
            show_message(ui, "token_invalid", language, error=exc)
            continue
        if isinstance(result, Incomplete):
            show_message(
                ui, "parts_progress", language, received=result.received, total=result.total
            )
            continue
        try:
            descriptor = negotiator.codec.decode(result)
        except TokenError as exc:
            show_message(ui, "token_invalid", language, error=exc)
            continue
        if descriptor.role is not expected:
            show_message(
                ui,
                "token_wrong_role",
                language,
                expected=expected.value,
                actual=descriptor.role.value,
            )
            continue
        flush_input_buffer()
        return result


async def send_session(
    ui: TerminalUI,
    config: AppConfig,
    language: str,
    paths: Sequence[Path],
    *,
    network_mode: Optional[str] = None,
    quiet: bool = False,
) -> int:
    async with build_negotiator(config, network_mode) as negotiator:
        try:
            emit_message(ui, language, "creating_offer", quiet)
            envelope = await negotiator.create_offer()
            show_token_parts(ui, language, negotiator.render(envelope), heading="show_offer")
            token = await read_token(ui, language, negotiator, "prompt_answer", Role.ANSWER)
            emit_message(ui, language, "waiting_connection", quiet)
            channel = await negotiator.accept_answer(token)
        except NegotiationError as exc:
            emit_print(ui, render_message("negotiation_failed", language, error=exc), quiet, error=True)
            return 1
        emit_message(ui, language, "connected", quiet)

        tracker: Optional[ProgressTracker] = None

        def on_progress(progress: TransferProgress) -> None:
            if tracker is not None:
                tracker.update(progress)

        sender = FileSender(
            channel,
            chunk_size=config.chunk_size,
            high_water_mark=config.high_water_mark,
            progress_cb=on_progress,
        )
        for path in paths:
            emit_message(
                ui,
                language,
                "sending",
                quiet,
                filename=path.name,
                size=format_size(path.stat().st_size),
            )
            tracker = ProgressTracker(ui, language, enabled=not quiet)
            try:
                await sender.send(path)
            except TransferCancelled:
                tracker.finish()
                emit_message(ui, language, "send_cancelled", quiet, error=True)
                return 1
            except (TransferError, OSError) as exc:
                tracker.finish()
                emit_print(ui, render_message("send_failed", language, error=exc), quiet, error=True)
                return 1
            tracker.finish()
            emit_message(ui, language, "send_success", quiet, filename=path.name)
        await sender.flush()
    return 0


async def receive_session(
    ui: TerminalUI,
    config: AppConfig,
    language: str,
    directory: Path,
    *,
    network_mode: Optional[str] = None,
    quiet: bool = False,
) -> int:
    async with build_negotiator(config, network_mode) as negotiator:
        try:
            offer = await read_token(ui, language, negotiator, "prompt_offer", Role.OFFER)
            emit_message(ui, language, "creating_answer", quiet)
            envelope = await negotiator.accept_offer(offer)
            show_token_parts(ui, language, negotiator.render(envelope), heading="show_answer")
            emit_message(ui, language, "waiting_connection", quiet)
            channel = await negotiator.wait_connected()
        except NegotiationError as exc:
            emit_print(ui, render_message("negotiation_failed", language, error=exc), quiet, error=True)
            return 1
        emit_message(ui, language, "connected", quiet)
        emit_message(ui, language, "receive_waiting", quiet, path=directory)

        finished = asyncio.Event()
        failures: list[Exception] = []
        trackers: dict[str, ProgressTracker] = {}
        directory_sink = DirectorySink(directory)

        def on_progress(progress: TransferProgress) -> None:
            tracker = trackers.get(progress.name)
            if tracker is None:
                emit_message(
                    ui,
                    language,
                    "receive_started",
                    quiet,
                    filename=progress.name,
                    size=format_size(progress.size),
                )
                tracker = ProgressTracker(ui, language, enabled=not quiet)
                trackers[progress.name] = tracker
            tracker.update(progress)

        def on_file(received: ReceivedFile) -> None:
            tracker = trackers.pop(received.name, None)
            if tracker is not None:
                tracker.finish()
            try:
                saved = directory_sink(received)
            except OSError as exc:
                on_error(exc)
                return
            emit_message(ui, language, "receive_done", quiet, path=saved)

        def on_error(exc: Exception) -> None:
            emit_print(ui, render_message("receive_failed", language, error=exc), quiet, error=True)
            failures.append(exc)
            finished.set()

        def on_abort(name: str) -> None:
            tracker = trackers.pop(name, None)
            if tracker is not None:
                tracker.finish()
            emit_message(ui, language, "send_cancelled", quiet)

        receiver = FileReceiver(
            on_file, progress_cb=on_progress, on_error=on_error, on_abort=on_abort
        )
        receiver.attach(channel)
        channel.on_close(finished.set)
        if not channel.is_open:
            finished.set()
        await finished.wait()
        for name in receiver.in_flight:
            emit_print(
                ui,
                render_message("receive_failed", language, error=f"{name} was not completed"),
                quiet,
                error=True,
            )
    if failures or receiver.in_flight:
        return 1
    emit_message(ui, language, "goodbye", quiet)
    return 0


def _validate_paths(raw_paths: Sequence[str]) -> tuple[list[Path], list[str]]:
    paths: list[Path] = []
    missing: list[str] = []
    for raw in raw_paths:
        path = Path(raw).expanduser()
        if path.is_file():
            paths.append(path)
        else:
            missing.append(raw)
    return paths, missing


def run_send_command(
    raw_paths: Sequence[str],
    *,
    network: Optional[str] = None,
    quiet: bool = False,
) -> int:
    config, ui, language = initialize_application()
    if network is not None and network not in NETWORK_MODES:
        emit_message(ui, language, "settings_network_invalid", quiet, error=True, value=network)
        return 1
    paths, missing = _validate_paths(raw_paths)
    if missing:
        for raw in missing:
            emit_message(ui, language, "file_not_found", quiet, error=True, path=raw)
        return 1
    try:
        return asyncio.run(
            send_session(ui, config, language, paths, network_mode=network, quiet=quiet)
        )
    except (KeyboardInterrupt, EOFError):
        ui.blank()
        emit_message(ui, language, "operation_cancelled", quiet, error=True)
        return 1


def run_receive_command(
    directory: Optional[str] = None,
    *,
    network: Optional[str] = None,
    quiet: bool = False,
) -> int:
    config, ui, language = initialize_application()
    if network is not None and network not in NETWORK_MODES:
        emit_message(ui, language, "settings_network_invalid", quiet, error=True, value=network)
        return 1
    if directory:
        target = Path(directory).expanduser()
        if not target.is_absolute():
            target = Path.cwd() / target
        try:
            target.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            emit_print(ui, render_message("receive_failed", language, error=exc), quiet, error=True)
            return 1
    else:
        target = resolve_download_dir(config)
    try:
        return asyncio.run(
            receive_session(ui, config, language, target, network_mode=network, quiet=quiet)
        )
    except (KeyboardInterrupt, EOFError):
        ui.blank()
        emit_message(ui, language, "goodbye", quiet)
        return 0


def run_settings_command(
    language_value: Optional[str] = None,
    network: Optional[str] = None,
    compress: Optional[str] = None,
    download_dir: Optional[str] = None,
    *,
    quiet: bool = False,
) -> int:
    config, ui, language = initialize_application()
    changed = False

    if language_value is not None:
        code = language_value.strip().lower()
        if code not in LANGUAGES:
            emit_message(
                ui,
                language,
                "settings_language_invalid",
                quiet,
                error=True,
                value=language_value,
                codes=", ".join(sorted(LANGUAGES)),
            )
            return 1
        config.language = code
        language = code
        changed = True
        emit_message(ui, language, "settings_language_updated", quiet, language_name=LANGUAGES[code])

    if network is not None:
        mode = network.strip().lower()
        if mode not in NETWORK_MODES:
            emit_message(ui, language, "settings_network_invalid", quiet, error=True, value=network)
            return 1
        config.network_mode = mode
        changed = True
        emit_message(ui, language, "settings_network_updated", quiet, network=mode)

    if compress is not None:
        flag = normalize_compress_flag(compress)
        if flag is None:
            emit_message(ui, language, "settings_compress_invalid", quiet, error=True, value=compress)
            return 1
        config.compress_tokens = flag
        changed = True
        state = get_message("settings_on" if flag else "settings_off", language)
        emit_message(ui, language, "settings_compress_updated", quiet, state=state)

    if download_dir is not None:
        candidate = Path(download_dir).expanduser()
        if not candidate.is_absolute():
            emit_message(ui, language, "settings_download_dir_invalid", quiet, error=True)
            return 1
        config.download_dir = str(candidate)
        resolved = resolve_download_dir(config)
        changed = True
        emit_message(ui, language, "settings_download_dir_updated", quiet, path=resolved)

    if changed:
        save_config(config)
        return 0

    compress_state = get_message(
        "settings_on" if config.compress_tokens else "settings_off", language
    )
    show_message(
        ui,
        "settings_header",
        language,
        language_name=LANGUAGES.get(language, language),
        language_code=language,
        network=config.network_mode,
        compress=compress_state,
        part_size=config.max_part_size,
        path=config.download_dir or resolve_download_dir(config),
    )
    return 0


def _add_common_flags(parser: argparse.ArgumentParser, language: str) -> None:
    parser._optionals.title = get_message("cli_optionals_title", language)
    parser.add_argument(
        "-h",
        "--help",
        action="help",
        help=get_message("cli_help_help", language),
    )
    parser.add_argument(
        "-q",
        "--quiet",
        action="store_true",
        help=get_message("cli_quiet_help", language),
    )


def build_parser(language: str) -> argparse.ArgumentParser:
    language_messages = MESSAGES.get(language, MESSAGES["en"])
    language_codes = ", ".join(sorted(LANGUAGES))
    parser = LocalizedArgumentParser(
        prog="qrdrop",
        description=get_message("cli_description", language),
        add_help=False,
        messages=language_messages,
    )
    parser.usage = get_message("cli_usage", language)
    parser._positionals.title = get_message("cli_positionals_title", language)
    parser._optionals.title = get_message("cli_optionals_title", language)
    parser.add_argument(
        "-h",
        "--help",
        action="help",
        help=get_message("cli_help_help", language),
    )
    parser.add_argument(
        "-V",
        "--version",
        action="version",
        help=get_message("cli_version_help", language),
        version=get_message("cli_version_output", language, version=__version__),
    )
    subparsers = parser.add_subparsers(
        dest="command",
        title=get_message("cli_commands_title", language),
        parser_class=LocalizedArgumentParser,
    )
    subparsers.metavar = None

    send_parser = subparsers.add_parser(
        "send",
        help=get_message("cli_send_help", language),
        description=get_message("cli_send_help", language),
        add_help=False,
        messages=language_messages,
    )
    send_parser.prog = f"{parser.prog} send"
    send_parser.usage = get_message("cli_send_usage", language)
    send_parser._positionals.title = get_message("cli_positionals_title", language)
    _add_common_flags(send_parser, language)
    send_parser.add_argument(
        "paths",
        nargs="+",
        help=get_message("cli_send_paths_help", language),
    )
    send_parser.add_argument(
        "--network",
        help=get_message("cli_network_help", language),
    )

    receive_parser = subparsers.add_parser(
        "receive",
        help=get_message("cli_receive_help", language),
        description=get_message("cli_receive_help", language),
        add_help=False,
        messages=language_messages,
    )
    receive_parser.prog = f"{parser.prog} receive"
    _add_common_flags(receive_parser, language)
    receive_parser.add_argument(
        "--dir",
        help=get_message("cli_receive_dir_help", language),
    )
    receive_parser.add_argument(
        "--network",
        help=get_message("cli_network_help", language),
    )

    settings_parser = subparsers.add_parser(
        "settings",
        help=get_message("cli_settings_help", language),
        description=get_message("cli_settings_help", language),
        add_help=False,
        messages=language_messages,
    )
    settings_parser.prog = f"{parser.prog} settings"
    _add_common_flags(settings_parser, language)
    settings_parser.add_argument(
        "--language",
        help=get_message("cli_settings_language_help", language, codes=language_codes),
    )
    settings_parser.add_argument(
        "--network",
        help=get_message("cli_settings_network_help", language),
    )
    settings_parser.add_argument(
        "--compress",
        help=get_message("cli_settings_compress_help", language),
    )
    settings_parser.add_argument(
        "--download-dir",
        help=get_message("cli_settings_dir_help", language),
    )
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    arguments = sys.argv[1:] if argv is None else argv
    config = load_config()
    language = config.language if config.language in LANGUAGES else "en"
    parser = build_parser(language)
    if not arguments:
        parser.print_help()
        return 0
    args = parser.parse_args(arguments)
    command = getattr(args, "command", None)
    quiet = bool(getattr(args, "quiet", False))
    if command == "send":
        return run_send_command(
            args.paths,
            network=getattr(args, "network", None),
            quiet=quiet,
        )
    if command == "receive":
        return run_receive_command(
            getattr(args, "dir", None),
            network=getattr(args, "network", None),
            quiet=quiet,
        )
    if command == "settings":
        return run_settings_command(
            getattr(args, "language", None),
            getattr(args, "network", None),
            getattr(args, "compress", None),
            getattr(args, "download_dir", None),
            quiet=quiet,
        )
    parser.print_help()
    return 0


if __name__ == "__main__":
    sys.exit(main())
