from __future__ import annotations

"""
Lifecycle gate: the desired existence of a workspace instance.

Two states only. There is no starting/stopping state at this layer; the
engine's create/remove calls are observed synchronously.
"""

import enum


class LifecycleGate(str, enum.Enum):
    stopped = "stopped"
    running = "running"

    @property
    def desired_count(self) -> int:
        return 1 if self is LifecycleGate.running else 0

    @classmethod
    def from_count(cls, count: int) -> "LifecycleGate":
        if isinstance(count, bool) or count not in (0, 1):
            raise ValueError(f"desired count must be 0 or 1, got {count!r}")
        return cls.running if count == 1 else cls.stopped


__all__ = ["LifecycleGate"]
