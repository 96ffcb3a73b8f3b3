from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class Assumption:
    """
    A modelling assumption needed to read the weighted contrasts causally.

    ``IPTWResult.assumptions`` lists them. ``testable`` says whether the
    data can speak to the assumption at all (positivity can be examined
    through the weights) or whether it rests on subject-matter knowledge
    (no unmeasured confounding cannot).
    """

    name: str
    """Human-readable description of the assumption."""

    testable: bool
    """``True`` if the assumption can be checked empirically."""

    def fmt_tag(self) -> str:
        """Fixed-width bracketed testability label for summary output."""
        return "[  testable  ]" if self.testable else "[ untestable ]"


class RefutationCheck:
    """
    Outcome of one refutation check.

    ``contrast`` names the pairwise contrast that decided the verdict (the
    one furthest from its tolerance), or ``None`` if the check could not be
    run at all.
    """

    def __init__(self, name: str, passed: bool, detail: str, contrast: str | None = None) -> None:
        self.name = name
        self.passed = passed
        self.detail = detail
        self.contrast = contrast

    def __repr__(self) -> str:
        status = "PASS" if self.passed else "FAIL"
        return f"RefutationCheck({status!r}, {self.name!r}, contrast={self.contrast!r})"


class RefutationReport:
    """
    Base class for refutation reports.

    Subclasses supply the title through ``_header_lines()``. Every check
    compares a shift in the contrasts against the bootstrap SE, so the
    report also records how many replicates that SE rests on; with fewer
    than two the tolerance is undefined and no check can pass.
    """

    def __init__(
        self,
        checks: list[RefutationCheck],
        exposure: str,
        outcome: str,
        n_bootstrap: int,
    ) -> None:
        self._checks = checks
        self._exposure = exposure
        self._outcome = outcome
        self._n_bootstrap = n_bootstrap

    def _header_lines(self) -> list[str]:
        raise NotImplementedError

    @property
    def checks(self) -> list[RefutationCheck]:
        """All checks, in the order they were run."""
        return list(self._checks)

    @property
    def n_bootstrap(self) -> int:
        """Bootstrap replicates behind the SE used as tolerance."""
        return self._n_bootstrap

    @property
    def passed(self) -> bool:
        """``True`` if every check passed."""
        return all(c.passed for c in self._checks)

    @property
    def failed_checks(self) -> list[RefutationCheck]:
        return [c for c in self._checks if not c.passed]

    @property
    def flagged_contrasts(self) -> list[str]:
        """Contrasts named by failed checks, without duplicates."""
        seen = []
        for c in self.failed_checks:
            if c.contrast is not None and c.contrast not in seen:
                seen.append(c.contrast)
        return seen

    def summary(self) -> str:
        """Each check with its verdict, then the overall verdict."""
        lines = [
            "",
            *self._header_lines(),
            f"  Tolerance: 1 bootstrap SE ({self._n_bootstrap} replicates)",
            "─" * 50,
        ]
        if self._n_bootstrap < 2:
            lines.append("  Fewer than 2 usable replicates: the tolerance is undefined.")
        for check in self._checks:
            status = "PASS" if check.passed else "FAIL"
            lines.append(f"  [{status}]  {check.name}: {check.detail}")
        lines.append("")
        if self.passed:
            lines.append("  All checks passed.")
        else:
            lines.append(f"  {len(self.failed_checks)} check(s) failed, see above.")
            if self.flagged_contrasts:
                lines.append(f"  Contrasts flagged: {', '.join(self.flagged_contrasts)}")
        lines.append("")
        return "\n".join(lines)

    def __repr__(self) -> str:
        return self.summary()
