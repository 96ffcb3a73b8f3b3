"""
Narrative explanation renderer for IPTW results.

``explain_iptw`` takes a fitted ``IPTWResult`` and returns a formatted
multi-line string; ``IPTWResult.executive_summary()`` calls it.
"""
from __future__ import annotations

_SEP = "━" * 66


# ── Shared helpers ─────────────────────────────────────────────────────────────

def _fmt_p(p: float) -> str:
    if p < 0.001:
        return "p < 0.001"
    return f"p = {p:.3f}"


def _fmt_ci(lo: float, hi: float) -> str:
    return f"[{lo:.4f}, {hi:.4f}]"


def _list_vars(names: list[str]) -> str:
    if not names:
        return "no covariates"
    if len(names) == 1:
        return names[0]
    return ", ".join(names[:-1]) + f" and {names[-1]}"


def _contrast_phrase(effect: float, level, reference, exposure: str, outcome: str) -> str:
    direction = "higher" if effect >= 0 else "lower"
    return (
        f"setting {exposure} to {level} rather than {reference} is estimated to make "
        f"mean {outcome} {abs(effect):.4f} {direction}"
    )


# ── Section builders ───────────────────────────────────────────────────────────

def _weights_section(result) -> str:
    diag = result.weight_diagnostics
    n = len(result.weights)
    lines = [
        "WEIGHTS",
        f"Stabilized weights have mean {diag['mean']:.4f} (ideally close to 1), "
        f"range {diag['min']:.4f} to {diag['max']:.4f}, and an effective sample "
        f"size of {diag['ess']:.1f} out of {n} subjects.",
    ]
    if diag["max"] > 10:
        lines.append(
            "The largest weights exceed 10: a few subjects dominate the weighted "
            "comparison, which suggests near-violations of positivity."
        )
    if result.excluded_subjects:
        lines.append(
            f"{len(result.excluded_subjects)} subject(s) had a numerically zero "
            f"probability of their own exposure level and were excluded."
        )
    return "\n".join(lines)


def _assumptions_section(assumptions: list) -> str:
    n = len(assumptions)
    n_u = sum(1 for a in assumptions if not a.testable)
    n_t = n - n_u
    intro = (
        f"{n_u} of the {n} required assumptions {'is' if n_u == 1 else 'are'} untestable "
        f"and must be justified on substantive grounds; {n_t} can be probed in the data."
    )
    lines = ["ASSUMPTIONS", intro, ""]
    for a in assumptions:
        lines.append(f"  {a.fmt_tag()}  {a.name}")
    return "\n".join(lines)


# ── Method explanation ─────────────────────────────────────────────────────────

def explain_iptw(result) -> str:
    E, Y = result._exposure, result._outcome
    adj = sorted(result.confounders)
    levels = list(result.levels)
    conf = 100 * (1 - result._alpha)

    result_lines = ["RESULT"]
    for level, reference in result.levels.pairs():
        lo, hi = result.conf_int(level, reference)
        effect = result.effect(level, reference)
        result_lines.append(
            f"  • {_contrast_phrase(effect, level, reference, E, Y).capitalize()} "
            f"({conf:g}% CI: {_fmt_ci(lo, hi)}, bootstrap SE = "
            f"{result.std_err(level, reference):.4f}, "
            f"{_fmt_p(result.pvalue(level, reference))}). "
            f"Unweighted: {result.unadjusted_effect(level, reference):.4f}."
        )

    used, failed = result.n_bootstrap_used, result.n_bootstrap_failed
    boot_note = f"{used} bootstrap replicates"
    if failed:
        boot_note += f" ({failed} further replicates failed and were dropped)"

    blocks = [
        "\n".join([_SEP, "Executive Summary — Stabilized IPTW, categorical exposure",
                   f"  {E} → {Y}  |  levels: {', '.join(map(str, levels))}", _SEP]),

        "\n".join([
            "METHOD",
            f"A multinomial logistic regression of {E} on {_list_vars(adj)} gives "
            f"each subject's probability of every exposure level. Each subject is "
            f"weighted by the marginal probability of the level they actually had, "
            f"divided by that probability given their covariates. In the weighted "
            f"sample {E} is independent of the measured confounders, so weighted "
            f"differences in mean {Y} between levels estimate average causal "
            f"contrasts. Intervals are normal approximations centred on the "
            f"original estimates, with spread from {boot_note} in which both "
            f"propensity models were refitted.",
        ]),

        _weights_section(result),
        _assumptions_section(result.assumptions),
        "\n".join(result_lines),

        "\n".join([
            "CAVEATS",
            f"Weighting only balances the covariates in the propensity model; "
            f"confounders of {E} and {Y} that were not measured will still bias "
            f"every contrast. The analysis used complete cases only, which is "
            f"unbiased only if values are missing completely at random. Large "
            f"weights signal that some exposure levels are rare for some covariate "
            f"patterns, making the estimates unstable.",
        ]),

        _SEP,
    ]
    return "\n\n".join(blocks)
