"""Unit tests for plain-text CLI rendering."""

from __future__ import annotations

import io
import json

import pytest

from autodev_orchestrator.ui.render import CLIRenderer, error_document


def _renderer() -> tuple[CLIRenderer, io.StringIO]:
    stream = io.StringIO()
    return CLIRenderer(stream=stream), stream


def test_key_value_and_items() -> None:
    renderer, stream = _renderer()

    renderer.kv("Phase", "EXECUTE")
    renderer.items(["T1", "T2"])

    assert stream.getvalue() == "Phase: EXECUTE\n  - T1\n  - T2\n"


def test_table_pads_columns_to_widest_cell() -> None:
    renderer, stream = _renderer()

    renderer.table(["SLOT", "TASK"], [["wt-1", "T1"], ["wt-10", "-"]], title="Slots:")

    assert stream.getvalue().splitlines() == [
        "",
        "Slots:",
        "  SLOT   TASK",
        "  -----  ----",
        "  wt-1   T1",
        "  wt-10  -",
    ]


def test_empty_table_prints_nothing() -> None:
    renderer, stream = _renderer()

    renderer.table(["ID"], [], title="Checkpoints:")

    assert stream.getvalue() == ""


def test_next_steps_and_status_markers() -> None:
    renderer, stream = _renderer()

    renderer.next_steps(["autodev resume --worker-command <cmd>"])
    renderer.next_steps([])
    renderer.ok("wt-1")
    renderer.fail("wt-2")

    assert stream.getvalue().splitlines() == [
        "",
        "Next steps:",
        "  $ autodev resume --worker-command <cmd>",
        "  OK  wt-1",
        "  FAIL  wt-2",
    ]


def test_warning_is_plain_when_not_a_tty(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("NO_COLOR", raising=False)
    renderer, stream = _renderer()

    renderer.warning("pending conflict")

    assert stream.getvalue() == "  Warning: pending conflict\n"


def test_error_document_is_stable_json() -> None:
    rendered = error_document("ConsistencyError", "checkpoint cp-000001 is stale", 4)

    assert json.loads(rendered) == {
        "error": {"exit_code": 4, "message": "checkpoint cp-000001 is stale", "type": "ConsistencyError"}
    }
    assert rendered.index('"exit_code"') < rendered.index('"message"') < rendered.index('"type"')
