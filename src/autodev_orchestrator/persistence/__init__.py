"""Persistence layer: the atomic JSON state store."""

from autodev_orchestrator.persistence.state_store import StateStore

__all__ = ["StateStore"]
