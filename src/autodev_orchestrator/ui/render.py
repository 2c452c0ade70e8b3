"""Plain-text rendering for CLI output."""

from __future__ import annotations

import json
import os
import sys
from typing import TYPE_CHECKING, TextIO

if TYPE_CHECKING:
    from collections.abc import Sequence


def _color_allowed(stream: TextIO) -> bool:
    if os.environ.get("NO_COLOR", ""):
        return False
    return hasattr(stream, "isatty") and stream.isatty()


class CLIRenderer:
    """Thin CLI output renderer producing deterministic plain text."""

    def __init__(self, *, stream: TextIO | None = None) -> None:
        self._stream = stream if stream is not None else sys.stdout
        self._color = _color_allowed(self._stream)

    def _print(self, text: str = "") -> None:
        print(text, file=self._stream)

    def heading(self, text: str) -> None:
        self._print(text)

    def kv(self, key: str, value: object) -> None:
        self._print(f"{key}: {value}")

    def text(self, line: str) -> None:
        self._print(line)

    def section(self, title: str) -> None:
        self._print(f"\n{title}")

    def warning(self, text: str) -> None:
        label = "\033[33mWarning\033[0m" if self._color else "Warning"
        self._print(f"  {label}: {text}")

    def items(self, entries: Sequence[str], *, prefix: str = "- ") -> None:
        for entry in entries:
            self._print(f"  {prefix}{entry}")

    def table(
        self,
        headers: Sequence[str],
        rows: Sequence[Sequence[str]],
        *,
        title: str | None = None,
    ) -> None:
        """Print a formatted ASCII table; nothing is printed for zero rows."""

        if not rows:
            return

        col_count = len(headers)
        widths = [len(h) for h in headers]
        for row in rows:
            for i in range(min(len(row), col_count)):
                widths[i] = max(widths[i], len(str(row[i])))

        def _pad(cells: Sequence[str]) -> str:
            parts: list[str] = []
            for i in range(col_count):
                cell = str(cells[i]) if i < len(cells) else ""
                parts.append(cell.ljust(widths[i]))
            return "  ".join(parts).rstrip()

        if title:
            self.section(title)
        self._print(f"  {_pad(list(headers))}")
        self._print(f"  {'  '.join('-' * w for w in widths)}")
        for row in rows:
            self._print(f"  {_pad(list(row))}")

    def next_steps(self, steps: Sequence[str]) -> None:
        if not steps:
            return
        self.section("Next steps:")
        for step in steps:
            self._print(f"  $ {step}")

    def ok(self, label: str) -> None:
        self._print(f"  OK  {label}")

    def fail(self, label: str) -> None:
        self._print(f"  FAIL  {label}")


def error_document(type_name: str, message: str, exit_code: int) -> str:
    """Structured error object written to stderr by the CLI boundary."""

    return json.dumps(
        {"error": {"type": type_name, "message": message, "exit_code": exit_code}},
        sort_keys=True,
        ensure_ascii=False,
    )


def create_renderer(*, stream: TextIO | None = None) -> CLIRenderer:
    return CLIRenderer(stream=stream)


__all__ = ["CLIRenderer", "create_renderer", "error_document"]
