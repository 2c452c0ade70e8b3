"""Operator-facing command line interface."""

from autodev_orchestrator.ui.cli import CLIError, build_parser, run_cli

__all__ = ["CLIError", "build_parser", "run_cli"]
