"""
Engine lifecycle as observed by the host controller.

EngineStatus is the authoritative FSM; EngineState pairs a status with the
error message carried by ERROR. LoadProgress is only meaningful while LOADING.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class EngineStatus(str, Enum):
    UNINITIALIZED = "UNINITIALIZED"
    LOADING = "LOADING"
    READY = "READY"
    GENERATING = "GENERATING"
    ERROR = "ERROR"


ENGINE_TRANSITIONS: dict[EngineStatus, frozenset[EngineStatus]] = {
    EngineStatus.UNINITIALIZED: frozenset({EngineStatus.LOADING}),
    EngineStatus.LOADING: frozenset({EngineStatus.READY, EngineStatus.ERROR}),
    EngineStatus.READY: frozenset({EngineStatus.GENERATING}),
    EngineStatus.GENERATING: frozenset({EngineStatus.READY}),
    EngineStatus.ERROR: frozenset({EngineStatus.LOADING}),
}


@dataclass(frozen=True)
class EngineState:
    status: EngineStatus = EngineStatus.UNINITIALIZED
    message: str = ""

    @property
    def can_send(self) -> bool:
        return self.status == EngineStatus.READY

    @property
    def can_retry(self) -> bool:
        return self.status == EngineStatus.ERROR

    def transition(self, target: EngineStatus, message: str = "") -> EngineState:
        allowed = ENGINE_TRANSITIONS[self.status]
        if target not in allowed:
            raise RuntimeError(
                f"Illegal engine transition: {self.status.value} -> {target.value}"
            )
        return EngineState(status=target, message=message if target == EngineStatus.ERROR else "")


@dataclass(frozen=True)
class LoadProgress:
    text: str = ""
    fraction: float = 0.0

    def __post_init__(self) -> None:
        try:
            value = float(self.fraction)
        except (TypeError, ValueError):
            value = 0.0
        object.__setattr__(self, "fraction", min(1.0, max(0.0, value)))

    @property
    def percent(self) -> int:
        return int(round(self.fraction * 100))
