"""Issue ledger for review/fix bookkeeping.

Keeps, per target, the sequence of review cycles and how many consecutive
cycles each issue fingerprint has survived. The escalation gate reads the
persistence counts; the loop controller reads is_clean() and open_issues().
"""

from dataclasses import dataclass, field
from typing import Any

from workplan.models import FixAttempt, Issue, ReviewCycle, order_by_severity


@dataclass
class _TargetHistory:
    cycles: list[ReviewCycle] = field(default_factory=list)
    # fingerprint -> consecutive cycles, only for fingerprints in the latest cycle
    streaks: dict[str, int] = field(default_factory=dict)


class IssueLedger:
    """Tracks reported issues and their persistence across review cycles.

    An issue that disappears from a cycle drops out of the active set; if it
    comes back later its count restarts at 1. Counting is by fingerprint,
    since a fix may resolve two issues and introduce a third.
    """

    def __init__(self) -> None:
        self._history: dict[str, _TargetHistory] = {}

    def record(
        self,
        target: str,
        cycle_number: int,
        issues: list[Issue],
        evidence: dict[str, Any] | None = None,
        round: int = 1,
    ) -> ReviewCycle:
        """Fold a new review cycle into the target's history.

        Args:
            target: Target key ("1.2" or "M1")
            cycle_number: 1-based cycle number, strictly increasing per target
            issues: Issues reported by the reviewer in this cycle
            evidence: Verification evidence captured with the review
            round: Review round the cycle belongs to

        Returns:
            The ReviewCycle that was recorded

        Raises:
            ValueError: If cycle_number does not advance the target's history
        """
        cycle = ReviewCycle(
            target=target,
            cycle_number=cycle_number,
            issues=list(issues),
            evidence=dict(evidence or {}),
            round=round,
        )
        self._fold(target, cycle)
        return cycle

    def restore(self, target: str, cycles: list[ReviewCycle]) -> None:
        """Rebuild a target's history from persisted cycles (used on resume)."""
        self.clear(target)
        for cycle in sorted(cycles, key=lambda c: c.cycle_number):
            self._fold(target, cycle)

    def _fold(self, target: str, cycle: ReviewCycle) -> None:
        history = self._history.setdefault(target, _TargetHistory())
        if history.cycles and cycle.cycle_number <= history.cycles[-1].cycle_number:
            raise ValueError(
                f"Cycle {cycle.cycle_number} for {target} does not follow "
                f"cycle {history.cycles[-1].cycle_number}"
            )
        current = {issue.fingerprint for issue in cycle.issues}
        history.streaks = {fp: history.streaks.get(fp, 0) + 1 for fp in current}
        history.cycles.append(cycle)

    def record_fix(self, target: str, attempt: FixAttempt) -> None:
        """Attach a fix attempt to the target's latest cycle.

        Raises:
            ValueError: If the target has no recorded cycle
        """
        latest = self._latest(target)
        if latest is None:
            raise ValueError(f"No review cycle recorded for {target}")
        latest.fix = attempt
        fixed = set(attempt.fingerprints)
        for issue in latest.issues:
            if issue.fingerprint in fixed:
                issue.fix_applied = True

    def persisting_issues(self, target: str) -> list[tuple[Issue, int]]:
        """Open issues with the number of consecutive cycles each has appeared in.

        Sorted most persistent first, then by severity.
        """
        latest = self._latest(target)
        if latest is None:
            return []
        streaks = self._history[target].streaks
        unique: dict[str, Issue] = {}
        for issue in latest.issues:
            unique.setdefault(issue.fingerprint, issue)
        pairs = [(issue, streaks[fp]) for fp, issue in unique.items()]
        return sorted(pairs, key=lambda pair: (-pair[1], pair[0].severity.rank))

    def is_clean(self, target: str) -> bool:
        """True iff the most recent cycle reported zero issues of any severity."""
        latest = self._latest(target)
        return latest is not None and latest.is_clean

    def open_issues(self, target: str) -> list[Issue]:
        """Latest cycle's issues, ordered Critical -> Important -> Minor."""
        latest = self._latest(target)
        return order_by_severity(latest.issues) if latest else []

    def awaiting_fix(self, target: str) -> bool:
        """True if the latest cycle found issues and no fix has been applied yet."""
        latest = self._latest(target)
        return latest is not None and not latest.is_clean and latest.fix is None

    def cycle_count(self, target: str) -> int:
        latest = self._latest(target)
        return latest.cycle_number if latest else 0

    def cycles(self, target: str) -> list[ReviewCycle]:
        history = self._history.get(target)
        return list(history.cycles) if history else []

    def fix_attempts(self, target: str) -> list[FixAttempt]:
        return [cycle.fix for cycle in self.cycles(target) if cycle.fix is not None]

    def clear(self, target: str) -> None:
        """Forget a target's history; its next cycle starts at 1."""
        self._history.pop(target, None)

    def _latest(self, target: str) -> ReviewCycle | None:
        history = self._history.get(target)
        if history is None or not history.cycles:
            return None
        return history.cycles[-1]
