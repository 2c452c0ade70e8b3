"""Task graph input parsing and deterministic DAG ordering."""

from autodev_orchestrator.planning.task_graph import TaskGraph, load_task_specs

__all__ = ["TaskGraph", "load_task_specs"]
