"""Deterministic task DAG built from task graph input files."""

from __future__ import annotations

import json
from collections.abc import Iterable, Iterator, Mapping, Sequence
from heapq import heapify, heappop, heappush
from pathlib import Path

import yaml

from autodev_orchestrator.domain.errors import CyclicDependencyError, InvalidTaskGraphError
from autodev_orchestrator.domain.models import TaskSpec, natural_id_key, sorted_ids

_YAML_SUFFIXES = frozenset({".yaml", ".yml"})


class TaskGraph:
    """Validated, immutable dependency graph over :class:`TaskSpec` items."""

    __slots__ = ("_children", "_order", "_specs")

    def __init__(self, specs: Mapping[str, TaskSpec], children: Mapping[str, tuple[str, ...]]) -> None:
        self._specs = dict(specs)
        self._children = dict(children)
        self._order = self._topological_sort()

    @classmethod
    def from_specs(cls, specs: Iterable[TaskSpec]) -> TaskGraph:
        """
        Validate ``specs`` and build the graph.

        Rejects an empty graph, duplicate ids, unknown or self dependencies, and
        cycles (``CyclicDependencyError`` names the cycle members).
        """
        by_id: dict[str, TaskSpec] = {}
        for spec in specs:
            if spec.id in by_id:
                raise InvalidTaskGraphError(f"duplicate task id: {spec.id}")
            by_id[spec.id] = spec
        if not by_id:
            raise InvalidTaskGraphError("task graph must contain at least one task")

        children: dict[str, list[str]] = {task_id: [] for task_id in by_id}
        for spec in by_id.values():
            for dependency_id in spec.depends_on:
                if dependency_id == spec.id:
                    raise InvalidTaskGraphError(f"task {spec.id} depends on itself")
                if dependency_id not in by_id:
                    raise InvalidTaskGraphError(
                        f"task {spec.id} depends on unknown task {dependency_id}"
                    )
                children[dependency_id].append(spec.id)
        return cls(by_id, {key: sorted_ids(value) for key, value in children.items()})

    @classmethod
    def from_payload(cls, payload: object) -> TaskGraph:
        """Build from a decoded document: a list of tasks or ``{"tasks": [...]}``."""

        items: object = payload
        if isinstance(payload, Mapping):
            items = payload.get("tasks")
        if not isinstance(items, Sequence) or isinstance(items, (str, bytes)):
            raise InvalidTaskGraphError("task graph must be a list of tasks or an object with 'tasks'")
        specs: list[TaskSpec] = []
        for index, item in enumerate(items):
            if not isinstance(item, Mapping):
                raise InvalidTaskGraphError(f"tasks[{index}]: expected object")
            try:
                specs.append(TaskSpec.from_dict(item))
            except ValueError as exc:
                raise InvalidTaskGraphError(f"tasks[{index}]: {exc}") from exc
        return cls.from_specs(specs)

    @property
    def specs(self) -> tuple[TaskSpec, ...]:
        return tuple(self._specs[task_id] for task_id in self._order)

    @property
    def task_ids(self) -> tuple[str, ...]:
        return sorted_ids(self._specs)

    def __len__(self) -> int:
        return len(self._specs)

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._specs

    def spec(self, task_id: str) -> TaskSpec:
        return self._specs[task_id]

    def topological_order(self) -> tuple[str, ...]:
        """Dependencies first; ties broken by natural id (``T2`` before ``T10``)."""
        return self._order

    def dependents(self, task_id: str) -> tuple[str, ...]:
        return self._children[task_id]

    def transitive_dependents(self, task_id: str) -> tuple[str, ...]:
        seen: set[str] = set()
        stack = list(self._children[task_id])
        while stack:
            node = stack.pop()
            if node in seen:
                continue
            seen.add(node)
            stack.extend(self._children[node])
        return sorted_ids(seen)

    def _topological_sort(self) -> tuple[str, ...]:
        indegree = {task_id: len(spec.depends_on) for task_id, spec in self._specs.items()}
        ready = [(natural_id_key(task_id), task_id) for task_id, degree in indegree.items() if degree == 0]
        heapify(ready)

        order: list[str] = []
        while ready:
            _, node = heappop(ready)
            order.append(node)
            for child in self._children[node]:
                indegree[child] -= 1
                if indegree[child] == 0:
                    heappush(ready, (natural_id_key(child), child))

        if len(order) != len(self._specs):
            cycles = self._detect_cycles()
            members = sorted_ids(node for cycle in cycles for node in cycle)
            if not members:
                members = sorted_ids(node for node in self._specs if node not in set(order))
            raise CyclicDependencyError(members)
        return tuple(order)

    def _detect_cycles(self) -> tuple[tuple[str, ...], ...]:
        state: dict[str, int] = {}
        stack: list[str] = []
        stack_index: dict[str, int] = {}
        cycles: dict[tuple[str, ...], None] = {}

        for start in sorted_ids(self._specs):
            if state.get(start, 0) != 0:
                continue
            state[start] = 1
            stack.append(start)
            stack_index[start] = 0
            frames: list[tuple[str, Iterator[str]]] = [(start, iter(self._children[start]))]

            while frames:
                node, child_iter = frames[-1]
                try:
                    child = next(child_iter)
                except StopIteration:
                    frames.pop()
                    state[node] = 2
                    stack.pop()
                    del stack_index[node]
                    continue

                child_state = state.get(child, 0)
                if child_state == 0:
                    state[child] = 1
                    stack_index[child] = len(stack)
                    stack.append(child)
                    frames.append((child, iter(self._children[child])))
                elif child_state == 1:
                    cycles[tuple(stack[stack_index[child] :])] = None

        return tuple(cycles)


def load_task_specs(path: str | Path) -> TaskGraph:
    """Read a JSON or YAML task graph file and return the validated graph."""

    source = Path(path)
    try:
        text = source.read_text(encoding="utf-8")
    except OSError as exc:
        raise InvalidTaskGraphError(f"unable to read task graph {source}: {exc}") from exc

    try:
        if source.suffix.lower() in _YAML_SUFFIXES:
            payload = yaml.safe_load(text)
        else:
            payload = json.loads(text)
    except (json.JSONDecodeError, yaml.YAMLError) as exc:
        raise InvalidTaskGraphError(f"invalid task graph document {source}: {exc}") from exc
    return TaskGraph.from_payload(payload)


__all__ = ["TaskGraph", "load_task_specs"]
