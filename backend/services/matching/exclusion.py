"""Per-request set of drivers that were offered the ride and not assigned."""

from typing import Dict, Iterable, Iterator, List

from .types import DriverCandidate


class ExclusionTracker:
    """
    Append-only, insertion-ordered set of excluded driver IDs.

    Owned by a single DispatchLoop run; it is the only authority used to
    de-duplicate candidates across passes and radius expansions.
    """

    def __init__(self, initial: Iterable[str] = ()):
        self._ids: Dict[str, None] = dict.fromkeys(str(driver_id) for driver_id in initial)

    def add(self, driver_id) -> bool:
        """Exclude a driver. Returns True if it was not excluded before."""
        key = str(driver_id)
        if key in self._ids:
            return False
        self._ids[key] = None
        return True

    def fresh(self, candidates: Iterable[DriverCandidate]) -> List[DriverCandidate]:
        """
        Candidates not yet excluded, nearest first.

        The sort is stable, so equal distances keep the GeoIndex order. A driver
        listed twice in one response is kept once.
        """
        seen = set()
        result = []
        for candidate in sorted(candidates, key=lambda c: c.distance_meters):
            driver_id = str(candidate.driver_id)
            if driver_id in self._ids or driver_id in seen:
                continue
            seen.add(driver_id)
            result.append(candidate)
        return result

    def snapshot(self) -> List[str]:
        return list(self._ids)

    def __contains__(self, driver_id) -> bool:
        return str(driver_id) in self._ids

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._ids))

    def __len__(self) -> int:
        return len(self._ids)
