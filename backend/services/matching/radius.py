"""Search radius progression."""

import math
from dataclasses import dataclass
from typing import Sequence, Tuple


@dataclass(frozen=True)
class RadiusExpander:
    """
    Pure mapping (current radius, candidates found this pass) -> next radius.

    A pass that found candidates keeps the radius. Otherwise the radius grows
    by `step_meters`, or moves to the next value of `schedule` when one is
    given. Past the last scheduled value the result is infinite, which ends
    the search on any finite MAX_RADIUS.
    """
    step_meters: float = 1000.0
    schedule: Tuple[float, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, "schedule", tuple(float(r) for r in self.schedule))
        if self.step_meters <= 0:
            raise ValueError("step_meters must be positive")
        if any(r <= 0 for r in self.schedule):
            raise ValueError("schedule radii must be positive")
        if any(b <= a for a, b in zip(self.schedule, self.schedule[1:])):
            raise ValueError("schedule must be strictly increasing")

    @classmethod
    def from_schedule(cls, radii: Sequence[float]) -> "RadiusExpander":
        return cls(schedule=tuple(radii))

    def initial(self, default: float) -> float:
        return self.schedule[0] if self.schedule else float(default)

    def __call__(self, radius: float, candidates_found: int = 0) -> float:
        if candidates_found > 0:
            return radius
        if self.schedule:
            for value in self.schedule:
                if value > radius:
                    return value
            return math.inf
        return radius + self.step_meters
