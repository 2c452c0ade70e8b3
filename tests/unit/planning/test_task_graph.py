"""Unit tests for planning.task_graph."""

from __future__ import annotations

import json
import random
from typing import TYPE_CHECKING

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from autodev_orchestrator.domain.errors import CyclicDependencyError, InvalidTaskGraphError
from autodev_orchestrator.domain.models import TaskSpec
from autodev_orchestrator.planning.task_graph import TaskGraph, load_task_specs
from tests.support import spec

if TYPE_CHECKING:
    from pathlib import Path


def test_diamond_graph_orders_dependencies_first() -> None:
    graph = TaskGraph.from_specs([spec("D", "B", "C"), spec("C", "A"), spec("B", "A"), spec("A")])

    assert graph.topological_order() == ("A", "B", "C", "D")
    assert graph.dependents("A") == ("B", "C")
    assert graph.transitive_dependents("A") == ("B", "C", "D")
    assert graph.transitive_dependents("D") == ()


def test_ties_break_by_natural_id() -> None:
    graph = TaskGraph.from_specs([spec("T10"), spec("T2"), spec("T1")])

    assert graph.topological_order() == ("T1", "T2", "T10")
    assert graph.task_ids == ("T1", "T2", "T10")
    assert [item.id for item in graph.specs] == ["T1", "T2", "T10"]


def test_cycle_detection_names_the_members() -> None:
    with pytest.raises(CyclicDependencyError) as excinfo:
        TaskGraph.from_specs([spec("A", "C"), spec("B", "A"), spec("C", "B"), spec("D")])

    assert excinfo.value.cycle_members == ("A", "B", "C")
    assert isinstance(excinfo.value, InvalidTaskGraphError)


@pytest.mark.parametrize(
    ("specs", "message"),
    [
        ([], "at least one task"),
        ([spec("A"), spec("A")], "duplicate task id: A"),
        ([spec("A", "A")], "depends on itself"),
        ([spec("A", "Z")], "unknown task Z"),
    ],
)
def test_invalid_graphs_are_rejected(specs: list[TaskSpec], message: str) -> None:
    with pytest.raises(InvalidTaskGraphError, match=message):
        TaskGraph.from_specs(specs)


def test_from_payload_accepts_list_or_tasks_object() -> None:
    items = [{"id": "T1", "description": "a"}, {"id": "T2", "description": "b", "dependsOn": ["T1"]}]

    assert TaskGraph.from_payload(items).topological_order() == ("T1", "T2")
    assert TaskGraph.from_payload({"tasks": items}).spec("T2").depends_on == ("T1",)


@pytest.mark.parametrize(
    ("payload", "message"),
    [
        ("T1", "list of tasks"),
        ({"items": []}, "list of tasks"),
        ([["T1"]], r"tasks\[0\]: expected object"),
        ([{"id": "bad id!", "description": "x"}], r"tasks\[0\]"),
    ],
)
def test_from_payload_rejects_malformed_documents(payload: object, message: str) -> None:
    with pytest.raises(InvalidTaskGraphError, match=message):
        TaskGraph.from_payload(payload)


def test_load_task_specs_reads_json_and_yaml(tmp_path: Path) -> None:
    json_path = tmp_path / "graph.json"
    json_path.write_text(json.dumps({"tasks": [{"id": "T1", "description": "x"}]}), encoding="utf-8")
    yaml_path = tmp_path / "graph.yaml"
    yaml_path.write_text(
        "tasks:\n"
        "  - id: T1\n"
        "    description: parser\n"
        "    files: [src/parser.py]\n"
        "  - id: T2\n"
        "    description: cli\n"
        "    depends_on: [T1]\n"
        "    verification_command: pytest -q\n",
        encoding="utf-8",
    )

    assert load_task_specs(json_path).task_ids == ("T1",)
    graph = load_task_specs(yaml_path)
    assert graph.spec("T1").files == ("src/parser.py",)
    assert graph.spec("T2").verification_command == "pytest -q"


def test_load_task_specs_wraps_read_and_parse_errors(tmp_path: Path) -> None:
    with pytest.raises(InvalidTaskGraphError, match="unable to read"):
        load_task_specs(tmp_path / "missing.json")

    broken = tmp_path / "broken.yml"
    broken.write_text("tasks: [unclosed\n", encoding="utf-8")
    with pytest.raises(InvalidTaskGraphError, match="invalid task graph document"):
        load_task_specs(broken)


@settings(max_examples=50, deadline=None)
@given(size=st.integers(min_value=1, max_value=12), seed=st.integers(min_value=0, max_value=10_000))
def test_order_is_independent_of_input_order(size: int, seed: int) -> None:
    rng = random.Random(seed)
    ids = [f"T{index}" for index in range(1, size + 1)]
    specs: list[TaskSpec] = []
    for position, task_id in enumerate(ids):
        earlier = ids[:position]
        deps = rng.sample(earlier, k=min(len(earlier), rng.randint(0, 2)))
        specs.append(spec(task_id, *deps))

    baseline = TaskGraph.from_specs(specs).topological_order()
    shuffled = list(specs)
    rng.shuffle(shuffled)
    order = TaskGraph.from_specs(shuffled).topological_order()

    assert order == baseline
    position_of = {task_id: index for index, task_id in enumerate(order)}
    for item in specs:
        assert all(position_of[dep] < position_of[item.id] for dep in item.depends_on)
