"""
Token budget tracking and edge-triggered threshold decisions.

Usage only grows within a session. Crossing ``warn_at`` from below publishes one
``context_compression_hint``; crossing ``handoff_at`` publishes one
``handoff_requested``. Neither re-fires while usage stays above its threshold;
``reset_for_new_session`` re-arms both edges.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, replace
from enum import StrEnum
from typing import TYPE_CHECKING, Any

import structlog

from autodev_orchestrator.domain.events import EventType
from autodev_orchestrator.domain.models import TokenBudget

if TYPE_CHECKING:
    from autodev_orchestrator.observability.events import EventBus


class BudgetAction(StrEnum):
    """What the coordinator should do after a usage update."""

    CONTINUE = "continue"
    COMPRESS = "compress"
    HANDOFF = "handoff"


@dataclass(frozen=True, slots=True)
class BudgetDecision:
    action: BudgetAction
    ratio: float
    used: int
    max_tokens: int
    crossed: tuple[str, ...] = ()

    @property
    def should_handoff(self) -> bool:
        return self.action is BudgetAction.HANDOFF

    def to_dict(self) -> dict[str, object]:
        return {
            "action": self.action.value,
            "ratio": round(self.ratio, 6),
            "used": self.used,
            "max_tokens": self.max_tokens,
            "crossed": list(self.crossed),
        }


@dataclass(frozen=True, slots=True)
class BudgetStatus:
    used: int
    max_tokens: int
    remaining: int
    ratio: float
    lifetime_used: int
    per_phase: dict[str, int]
    warned: bool
    handoff_fired: bool

    def to_dict(self) -> dict[str, object]:
        return {
            "used": self.used,
            "max_tokens": self.max_tokens,
            "remaining": self.remaining,
            "ratio": round(self.ratio, 6),
            "lifetime_used": self.lifetime_used,
            "per_phase": dict(self.per_phase),
            "warned": self.warned,
            "handoff_fired": self.handoff_fired,
        }


class TokenBudgetMonitor:
    """
    Track session token usage against a :class:`TokenBudget`.

    The monitor replaces its frozen budget on every update; the coordinator copies
    ``budget`` back into the orchestration state before persisting.
    """

    def __init__(
        self,
        budget: TokenBudget,
        bus: EventBus | None = None,
        logger: Any | None = None,
    ) -> None:
        self._budget = budget
        self._bus = bus
        self._lock = threading.RLock()
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def budget(self) -> TokenBudget:
        with self._lock:
            return self._budget

    def record(self, tokens: int, *, phase: str = "execute") -> BudgetDecision:
        """Add ``tokens`` consumed during ``phase``."""

        if tokens < 0:
            raise ValueError("tokens must be >= 0")
        with self._lock:
            per_phase = dict(self._budget.per_phase)
            per_phase[phase] = per_phase.get(phase, 0) + tokens
            updated = replace(
                self._budget,
                used=self._budget.used + tokens,
                lifetime_used=self._budget.lifetime_used + tokens,
                per_phase=per_phase,
            )
            return self._apply(updated)

    def update(self, used: int) -> BudgetDecision:
        """Set absolute session usage; values must never decrease."""

        with self._lock:
            if used < self._budget.used:
                raise ValueError(
                    f"token usage must be monotonic (current {self._budget.used}, got {used})"
                )
            delta = used - self._budget.used
            updated = replace(
                self._budget,
                used=used,
                lifetime_used=self._budget.lifetime_used + delta,
            )
            return self._apply(updated)

    def decision(self) -> BudgetDecision:
        with self._lock:
            return self._decide(self._budget, ())

    def reset_for_new_session(self) -> TokenBudget:
        with self._lock:
            self._budget = replace(self._budget, used=0, warned=False, handoff_fired=False)
            budget = self._budget
        self._logger.info(
            "token_budget_session_reset",
            lifetime_used=budget.lifetime_used,
            max_tokens=budget.max_tokens,
        )
        return budget

    def status(self) -> BudgetStatus:
        with self._lock:
            budget = self._budget
        return BudgetStatus(
            used=budget.used,
            max_tokens=budget.max_tokens,
            remaining=budget.remaining,
            ratio=budget.ratio,
            lifetime_used=budget.lifetime_used,
            per_phase=dict(budget.per_phase),
            warned=budget.warned,
            handoff_fired=budget.handoff_fired,
        )

    def _apply(self, updated: TokenBudget) -> BudgetDecision:
        crossed: list[str] = []
        if not updated.warned and updated.used >= updated.warn_tokens:
            updated = replace(updated, warned=True)
            crossed.append("warn")
        if not updated.handoff_fired and updated.used >= updated.handoff_tokens:
            updated = replace(updated, handoff_fired=True)
            crossed.append("handoff")
        self._budget = updated

        payload = {
            "used": updated.used,
            "max_tokens": updated.max_tokens,
            "ratio": round(updated.ratio, 6),
        }
        if "warn" in crossed:
            self._logger.warning("token_budget_warn_threshold", **payload)
            if self._bus is not None:
                self._bus.emit(EventType.CONTEXT_COMPRESSION_HINT, payload)
        if "handoff" in crossed:
            self._logger.warning("token_budget_handoff_threshold", **payload)
            if self._bus is not None:
                self._bus.emit(EventType.HANDOFF_REQUESTED, payload)
        return self._decide(updated, tuple(crossed))

    @staticmethod
    def _decide(budget: TokenBudget, crossed: tuple[str, ...]) -> BudgetDecision:
        if budget.handoff_fired:
            action = BudgetAction.HANDOFF
        elif budget.warned:
            action = BudgetAction.COMPRESS
        else:
            action = BudgetAction.CONTINUE
        return BudgetDecision(
            action=action,
            ratio=budget.ratio,
            used=budget.used,
            max_tokens=budget.max_tokens,
            crossed=crossed,
        )


__all__ = [
    "BudgetAction",
    "BudgetDecision",
    "BudgetStatus",
    "TokenBudgetMonitor",
]
