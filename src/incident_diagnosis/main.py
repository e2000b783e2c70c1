"""Process entrypoint: run the CLI and turn anything that escapes it into an exit code."""

from __future__ import annotations

import sys
import traceback
from enum import IntEnum
from typing import TYPE_CHECKING

from incident_diagnosis.config.loader import ConfigLoadError
from incident_diagnosis.config.schema import ConfigValidationError
from incident_diagnosis.domain.errors import DiagnosisValidationError
from incident_diagnosis.providers.base import ProviderError

if TYPE_CHECKING:
    from collections.abc import Iterator, Sequence


class ExitCode(IntEnum):
    SUCCESS = 0
    DIAGNOSIS_FAILED = 1
    CONFIG_ERROR = 2
    PROVIDER_ERROR = 3
    INTERNAL_ERROR = 4


_CONFIG_ERRORS: tuple[type[BaseException], ...] = (
    ConfigLoadError,
    ConfigValidationError,
    DiagnosisValidationError,
    FileNotFoundError,
    NotADirectoryError,
    PermissionError,
    ValueError,
)
_PROVIDER_SDK_MODULES = frozenset({"anthropic", "openai"})


def cli_entrypoint(argv: Sequence[str] | None = None) -> int:
    """Used by ``python -m incident_diagnosis`` and the ``incident-diagnosis`` script."""

    # Deferred: the CLI module imports ExitCode from here.
    from incident_diagnosis.ui.cli import run_cli

    try:
        return _coerce_exit_code(run_cli(argv))
    except SystemExit as exc:  # argparse exits on --help and usage errors.
        return _coerce_exit_code(exc.code)
    except BaseException as exc:  # noqa: BLE001 - CLI boundary normalization.
        exit_code = classify_exception(exc)
        if exit_code is ExitCode.INTERNAL_ERROR:
            traceback.print_exception(type(exc), exc, exc.__traceback__, file=sys.stderr)
        else:
            _write_stderr(str(exc).strip() or type(exc).__name__)
        return int(exit_code)


def classify_exception(exc: BaseException) -> ExitCode:
    """Map an exception (or anything in its cause chain) onto the exit-code contract."""

    for item in _exception_chain(exc):
        if isinstance(item, ProviderError):
            return ExitCode.PROVIDER_ERROR
        if isinstance(item, ModuleNotFoundError) and item.name in _PROVIDER_SDK_MODULES:
            return ExitCode.PROVIDER_ERROR
        if isinstance(item, _CONFIG_ERRORS):
            return ExitCode.CONFIG_ERROR
    return ExitCode.INTERNAL_ERROR


def _coerce_exit_code(raw: object) -> int:
    if raw is None:
        return int(ExitCode.SUCCESS)
    if isinstance(raw, int) and raw in ExitCode._value2member_map_:
        return raw
    if isinstance(raw, str) and raw.strip():
        _write_stderr(raw.strip())
    return int(ExitCode.INTERNAL_ERROR)


def _exception_chain(exc: BaseException) -> Iterator[BaseException]:
    seen: set[int] = set()
    current: BaseException | None = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        yield current
        if current.__cause__ is not None:
            current = current.__cause__
        elif not current.__suppress_context__:
            current = current.__context__
        else:
            current = None


def _write_stderr(message: str) -> None:
    sys.stderr.write(message.rstrip("\n") + "\n")


__all__ = ["ExitCode", "classify_exception", "cli_entrypoint"]
