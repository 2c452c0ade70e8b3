"""Executable CLI entrypoint for ``autodev_orchestrator``."""

from __future__ import annotations

import sys
import traceback
from enum import IntEnum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Sequence


class ExitCode(IntEnum):
    """Deterministic process exit-code contract."""

    SUCCESS = 0
    TASK_FAILURE = 1
    CONFIG_ERROR = 2
    RESOURCE_ERROR = 3
    CONSISTENCY_ERROR = 4
    INTERNAL_ERROR = 5


def cli_entrypoint(argv: Sequence[str] | None = None) -> int:
    """Entrypoint used by ``python -m autodev_orchestrator`` and the ``autodev`` script."""

    try:
        from autodev_orchestrator.ui.cli import run_cli

        return _normalize_exit_code(run_cli(argv))
    except SystemExit as exc:
        return _normalize_exit_code(exc.code)
    except KeyboardInterrupt:
        _write_stderr("interrupted")
        return int(ExitCode.INTERNAL_ERROR)
    except Exception as exc:  # noqa: BLE001 - CLI boundary normalization.
        exit_code = _route_exception(exc)
        _emit_failure(exc, exit_code)
        return int(exit_code)


def console_main() -> None:
    raise SystemExit(cli_entrypoint())


def _normalize_exit_code(raw_code: object) -> int:
    if isinstance(raw_code, int) and raw_code in {code.value for code in ExitCode}:
        return raw_code
    if raw_code is None:
        return int(ExitCode.SUCCESS)
    if isinstance(raw_code, str) and raw_code.strip():
        _write_stderr(raw_code.strip())
    return int(ExitCode.INTERNAL_ERROR)


def _route_exception(exc: BaseException) -> ExitCode:
    from autodev_orchestrator.config.loader import ConfigLoadError
    from autodev_orchestrator.config.schema import ConfigValidationError
    from autodev_orchestrator.domain.errors import (
        ConflictDetected,
        ConsistencyError,
        PhaseTransitionError,
        ResourceError,
    )
    from autodev_orchestrator.integration_plane.git_engine import GitEngineError

    for item in _iter_exception_chain(exc):
        if isinstance(item, ConsistencyError):
            return ExitCode.CONSISTENCY_ERROR
        if isinstance(item, ConflictDetected):
            return ExitCode.TASK_FAILURE
        if isinstance(item, (ResourceError, GitEngineError)):
            return ExitCode.RESOURCE_ERROR
        if isinstance(item, (ConfigLoadError, ConfigValidationError, PhaseTransitionError)):
            return ExitCode.CONFIG_ERROR
        if isinstance(item, (FileNotFoundError, NotADirectoryError, PermissionError, ValueError, KeyError)):
            return ExitCode.CONFIG_ERROR
    return ExitCode.INTERNAL_ERROR


def _iter_exception_chain(exc: BaseException) -> list[BaseException]:
    seen: set[int] = set()
    items: list[BaseException] = []
    current: BaseException | None = exc
    while current is not None:
        marker = id(current)
        if marker in seen:
            break
        seen.add(marker)
        items.append(current)
        if current.__cause__ is not None:
            current = current.__cause__
            continue
        if current.__context__ is not None and not current.__suppress_context__:
            current = current.__context__
            continue
        break
    return items


def _emit_failure(exc: BaseException, exit_code: ExitCode) -> None:
    from autodev_orchestrator.ui.render import error_document

    if exit_code is ExitCode.INTERNAL_ERROR:
        traceback.print_exception(type(exc), exc, exc.__traceback__, file=sys.stderr)
    message = str(exc).strip() or exc.__class__.__name__
    if isinstance(exc, KeyError) and exc.args:
        message = str(exc.args[0])
    _write_stderr(error_document(exc.__class__.__name__, message, int(exit_code)))


def _write_stderr(message: str) -> None:
    sys.stderr.write(message.rstrip("\n") + "\n")


__all__ = ["ExitCode", "cli_entrypoint", "console_main"]
