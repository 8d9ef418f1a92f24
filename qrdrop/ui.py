"""
UI helpers shared by the qrdrop CLI.
"""

from __future__ import annotations

import io
import threading
import time
from typing import Optional

import qrcode
from qrcode.constants import ERROR_CORRECT_L
from rich.console import Console, RenderableType
from rich.text import Text

from .language import render_message
from .transfer import TransferProgress
from .utils import format_percent, format_rate, format_size

MIN_PROGRESS_RATE_WINDOW = 0.1


class TerminalUI:
    """Thin wrapper around rich.Console to standardize CLI I/O."""

    def __init__(self, console: Optional[Console] = None) -> None:
        self._console = console or Console(markup=True, highlight=False, soft_wrap=True)
        self._lock = threading.Lock()
        self._last_carriage_width = 0

    @property
    def console(self) -> Console:
        return self._console

    def print(self, message: RenderableType = "", *, end: str = "\n") -> None:
        with self._lock:
            self._console.print(
                message,
                end=end,
                soft_wrap=True,
            )
            try:
                self._console.file.flush()
            except Exception:  # noqa: BLE001
                pass
            self._last_carriage_width = 0

    def input(self, prompt: RenderableType) -> str:
        self.flush()
        self._last_carriage_width = 0
        return self._console.input(prompt)

    def carriage(self, message: RenderableType, padding: str = "") -> None:
        with self._lock:
            with self._console.capture() as capture:
                self._console.print(message, end="", soft_wrap=True)
            rendered = capture.get()
            visible_width = Text.from_ansi(rendered).cell_len
            padding_text = padding
            padding_width = len(padding_text)
            residual = self._last_carriage_width - (visible_width + padding_width)
            if residual > 0:
                padding_text += " " * residual
                padding_width += residual
            try:
                self._console.file.write("\r" + rendered + padding_text)
                self._console.file.flush()
            except Exception:  # noqa: BLE001
                pass
            self._last_carriage_width = visible_width + padding_width

    def blank(self) -> None:
        self.print()

    def flush(self) -> None:
        with self._lock:
            try:
                self._console.file.flush()
            except Exception:  # noqa: BLE001
                pass
            self._last_carriage_width = 0


def show_message(
    ui: TerminalUI,
    key: str,
    language: str,
    *,
    tone: Optional[str] = None,
    **kwargs: object,
) -> None:
    """Helper to print a localized message with consistent styling."""

    ui.print(render_message(key, language, tone=tone, **kwargs))


def qr_ascii(text: str, *, border: int = 1) -> str:
    """Render `text` as a terminal QR code made of block characters."""

    code = qrcode.QRCode(error_correction=ERROR_CORRECT_L, border=border)
    code.add_data(text)
    code.make(fit=True)
    buffer = io.StringIO()
    code.print_ascii(out=buffer, invert=True)
    return buffer.getvalue()


def show_token_parts(ui: TerminalUI, language: str, parts: list[str], *, heading: str) -> None:
    """Display every QR part of a token followed by its copyable text."""

    show_message(ui, heading, language)
    total = len(parts)
    for index, part in enumerate(parts, start=1):
        if total > 1:
            show_message(ui, "part_header", language, index=index, total=total)
        ui.print(Text(qr_ascii(part)))
    show_message(ui, "copy_hint", language)
    for part in parts:
        ui.print(Text(part, style="bright_white"))


class ProgressTracker:
    """Unifies progress refresh cadence and rate formatting for transfers."""

    def __init__(
        self,
        ui: TerminalUI,
        language: str,
        *,
        min_interval: float = 0.1,
        enabled: bool = True,
    ) -> None:
        self._ui = ui
        self._language = language
        self._min_interval = min_interval
        self._enabled = enabled
        self._start_time: Optional[float] = None
        self._last_time: Optional[float] = None
        self._last_bytes = 0
        self._last_percent = -1.0
        self._line_width = 0
        self._progress_shown = False

    @property
    def last_bytes(self) -> int:
        return self._last_bytes

    @property
    def last_percent(self) -> float:
        return self._last_percent

    def update(self, progress: TransferProgress, *, force: bool = False) -> bool:
        transferred = max(0, int(progress.bytes_seen))
        percent = progress.percent
        force = force or progress.completed
        now = time.time()
        if (
            not force
            and self._last_time is not None
            and transferred == self._last_bytes
            and percent == self._last_percent
        ):
            return False
        if self._enabled and not force and self._last_time is not None:
            if now - self._last_time < self._min_interval:
                return False
        if self._start_time is None:
            self._start_time = now
        elapsed = max(now - self._start_time, MIN_PROGRESS_RATE_WINDOW)
        if force or self._last_time is None or transferred < self._last_bytes:
            rate = transferred / elapsed
        else:
            time_delta = max(now - self._last_time, MIN_PROGRESS_RATE_WINDOW)
            rate = (transferred - self._last_bytes) / time_delta
        self._last_time = now
        self._last_bytes = transferred
        self._last_percent = percent
        if not self._enabled:
            return True
        message = render_message(
            "progress_line",
            self._language,
            percent=format_percent(percent),
            transferred=format_size(transferred),
            total=format_size(progress.size),
            rate=format_rate(rate),
        )
        if len(message.plain) > self._line_width:
            self._line_width = len(message.plain)
        padding = " " * max(0, self._line_width - len(message.plain))
        self._ui.carriage(message, padding)
        self._progress_shown = True
        return True

    def finish(self) -> None:
        if self._progress_shown:
            self._ui.blank()


__all__ = [
    "MIN_PROGRESS_RATE_WINDOW",
    "ProgressTracker",
    "TerminalUI",
    "qr_ascii",
    "show_message",
    "show_token_parts",
]
