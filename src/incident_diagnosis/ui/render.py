"""Plain-text rendering helpers for the ``incident-diagnosis`` CLI.

Output is deterministic and line oriented so it can be diffed and piped.
Progress and warnings go to stderr; everything else goes to stdout.
"""

from __future__ import annotations

import os
import sys
from typing import TYPE_CHECKING, TextIO

if TYPE_CHECKING:
    from collections.abc import Sequence

    from incident_diagnosis.domain.models import CodeFragment
    from incident_diagnosis.orchestration.progress import ProgressEvent

_BOLD = "\033[1m{}\033[0m"


def _wants_color(no_color_flag: bool, stream: TextIO) -> bool:
    if no_color_flag or os.environ.get("NO_COLOR"):
        return False
    isatty = getattr(stream, "isatty", None)
    return bool(isatty and isatty())


class CLIRenderer:
    """Respects ``NO_COLOR`` and ``--no-color``; headings are bold on a terminal."""

    def __init__(self, *, no_color: bool = False, verbose: bool = False) -> None:
        self.verbose = verbose
        self._color = _wants_color(no_color, sys.stdout)

    @staticmethod
    def _out(line: str = "", *, err: bool = False) -> None:
        print(line, file=sys.stderr if err else sys.stdout)

    def heading(self, text: str) -> None:
        self._out(_BOLD.format(text) if self._color else text)

    def kv(self, key: str, value: object) -> None:
        self._out(f"{key}: {value}")

    def text(self, line: str) -> None:
        self._out(line)

    def section(self, title: str) -> None:
        self._out()
        self._out(title)

    def warning(self, text: str) -> None:
        self._out(f"  Warning: {text}", err=True)

    def ok(self, label: str) -> None:
        self._out(f"  OK  {label}")

    def fail(self, label: str) -> None:
        self._out(f"  FAIL  {label}")

    def table(
        self,
        headers: Sequence[str],
        rows: Sequence[Sequence[str]],
        *,
        title: str | None = None,
    ) -> None:
        """Left-aligned columns separated by two spaces; zero rows prints nothing."""

        if not rows:
            return
        cells = [list(headers)] + [
            [str(row[i]) if i < len(row) else "" for i in range(len(headers))] for row in rows
        ]
        widths = [max(len(line[i]) for line in cells) for i in range(len(headers))]

        if title:
            self.section(title)
        rule = ["-" * width for width in widths]
        for line in [cells[0], rule, *cells[1:]]:
            padded = "  ".join(cell.ljust(width) for cell, width in zip(line, widths))
            self._out(f"  {padded.rstrip()}")

    def fragments(self, fragments: Sequence[CodeFragment], *, title: str | None = None) -> None:
        self.table(
            ("#", "Score", "File", "Lines"),
            [
                (str(rank), f"{item.relevance:.2f}", item.file, f"{item.start_line}-{item.end_line}")
                for rank, item in enumerate(fragments, start=1)
            ],
            title=title,
        )

    def progress(self, event: ProgressEvent) -> None:
        """One stderr line per event, e.g. ``[ 40%] optimizing_context: Selecting code``."""

        percent = event.progress if event.progress >= 0 else event.stage.percent
        self._out(f"[{percent:>3}%] {event.stage.value}: {event.message}", err=True)


def create_renderer(*, no_color: bool = False, verbose: bool = False) -> CLIRenderer:
    return CLIRenderer(no_color=no_color, verbose=verbose)


__all__ = ["CLIRenderer", "create_renderer"]
