"""Effective priority computation.

effective = base + (0 if healthy else -weight) + sum(adjustments)

Adjustments are named, externally supplied weight changes; the manual
override is the adjustment called "override".
"""

from __future__ import annotations

from typing import Dict

OVERRIDE = "override"


class PriorityCalculator:
    def __init__(self, base_priority: int, weight: int = 50):
        self.base_priority = base_priority
        self.weight = weight
        self.healthy = True
        self._adjustments: Dict[str, int] = {}
        self.value = self.compute()

    def compute(self) -> int:
        penalty = 0 if self.healthy else -self.weight
        return self.base_priority + penalty + sum(self._adjustments.values())

    def _refresh(self) -> bool:
        new = self.compute()
        changed = new != self.value
        self.value = new
        return changed

    def update_health(self, ok: bool) -> bool:
        """Record a health result; True if the effective priority changed."""
        self.healthy = bool(ok)
        return self._refresh()

    def set_adjustment(self, name: str, delta: int) -> bool:
        self._adjustments[name] = int(delta)
        return self._refresh()

    def clear_adjustment(self, name: str) -> bool:
        self._adjustments.pop(name, None)
        return self._refresh()

    @property
    def adjustments(self) -> Dict[str, int]:
        return dict(self._adjustments)
