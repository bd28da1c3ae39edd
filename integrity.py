# integrity.py
# -----------------------------------------------------------------------------
# Integrity-adjusted quiz scoring.
# - Pure: same inputs -> same QuizAttemptResult (attempt records are audited)
# - Penalty = counted violations * per-violation + tab-switch surcharge, capped
# - Benign client errors (fullscreen permission, browser compatibility) are
#   never counted as misconduct
# -----------------------------------------------------------------------------

import math
import os
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Optional, Sequence, Tuple

PENALTY_CAP = 20  # hard ceiling on penaltyPercent, whatever a quiz configures

REASON_BELOW_PASSING = "BELOW_PASSING_SCORE"
REASON_SECURITY = "SECURITY_VIOLATION"

FULLSCREEN_EXIT = "FULLSCREEN_EXIT"


class InvalidInput(ValueError):
    """Malformed scoring input; the attempt is rejected and never persisted."""
    status_code = 400


def _parse_benign(raw: str) -> Tuple[Tuple[str, ...], ...]:
    groups = []
    for chunk in (raw or "").split(";"):
        parts = tuple(p.strip().lower() for p in chunk.split("+") if p.strip())
        if parts:
            groups.append(parts)
    return tuple(groups)


DEFAULT_BENIGN_VIOLATIONS = _parse_benign(
    os.getenv("QUIZ_BENIGN_VIOLATIONS") or "fullscreen+permission;browser compatibility"
)


@dataclass(frozen=True)
class ScoringPolicy:
    pass_threshold: float = 70
    per_violation_penalty: int = 5
    tab_switch_threshold: int = 3
    tab_switch_penalty: int = 10
    max_penalty: int = PENALTY_CAP
    auto_submit_tab_switches: int = 3
    auto_submit_fullscreen_exits: int = 3
    benign_violations: Tuple[Tuple[str, ...], ...] = DEFAULT_BENIGN_VIOLATIONS

    @classmethod
    def from_row(cls, row: Optional[Dict[str, Any]], defaults: Optional["ScoringPolicy"] = None) -> "ScoringPolicy":
        """Overlay non-NULL quiz columns on top of the defaults."""
        base = defaults or cls()
        row = row or {}

        def pick(col: str, cur):
            v = row.get(col)
            return cur if v is None else type(cur)(v)

        return cls(
            pass_threshold=pick("pass_score", float(base.pass_threshold)),
            per_violation_penalty=pick("per_violation_penalty", base.per_violation_penalty),
            tab_switch_threshold=pick("tab_switch_threshold", base.tab_switch_threshold),
            tab_switch_penalty=pick("tab_switch_penalty", base.tab_switch_penalty),
            max_penalty=min(PENALTY_CAP, pick("max_penalty", base.max_penalty)),
            auto_submit_tab_switches=base.auto_submit_tab_switches,
            auto_submit_fullscreen_exits=base.auto_submit_fullscreen_exits,
            benign_violations=base.benign_violations,
        )


def policy_from_env() -> ScoringPolicy:
    return ScoringPolicy(
        pass_threshold=float(os.getenv("QUIZ_PASS_SCORE") or 70),
        per_violation_penalty=int(os.getenv("QUIZ_PER_VIOLATION_PENALTY") or 5),
        tab_switch_threshold=int(os.getenv("QUIZ_TAB_SWITCH_THRESHOLD") or 3),
        tab_switch_penalty=int(os.getenv("QUIZ_TAB_SWITCH_PENALTY") or 10),
        max_penalty=min(PENALTY_CAP, int(os.getenv("QUIZ_MAX_PENALTY") or PENALTY_CAP)),
        auto_submit_tab_switches=int(os.getenv("QUIZ_AUTO_SUBMIT_TAB_SWITCHES") or 3),
        auto_submit_fullscreen_exits=int(os.getenv("QUIZ_AUTO_SUBMIT_FULLSCREEN_EXITS") or 3),
    )


@dataclass(frozen=True)
class SecurityReport:
    tab_switch_count: int = 0
    violations: Tuple[Any, ...] = ()
    is_auto_submit: bool = False

    @classmethod
    def from_payload(cls, data: Optional[Dict[str, Any]]) -> "SecurityReport":
        """Accepts both camelCase (browser client) and snake_case keys."""
        data = data or {}
        raw_tabs = data.get("tab_switch_count", data.get("tabSwitchCount"))
        if raw_tabs is None or raw_tabs == "":
            raw_tabs = 0
        elif isinstance(raw_tabs, str) and raw_tabs.strip().lstrip("-").isdigit():
            raw_tabs = int(raw_tabs)
        tabs = as_int("tab_switch_count", raw_tabs)
        violations = data.get("violations", data.get("securityViolations")) or []
        if not isinstance(violations, (list, tuple)):
            raise InvalidInput("violations must be a list")
        auto = data.get("is_auto_submit", data.get("isAutoSubmit", False))
        return cls(tab_switch_count=tabs, violations=tuple(violations), is_auto_submit=bool(auto))


@dataclass(frozen=True)
class QuizAttemptResult:
    raw_score: int
    max_score: int
    raw_percentage: float
    penalty_percent: int
    final_percentage: float
    final_score: int
    passed: bool
    counted_violations: int
    ignored_violations: int
    tab_switch_count: int
    is_auto_submit: bool
    fullscreen_exits: int = 0
    security_flags: Tuple[str, ...] = field(default_factory=tuple)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "raw_score": self.raw_score,
            "max_score": self.max_score,
            "raw_percentage": round(self.raw_percentage, 2),
            "penalty_percent": self.penalty_percent,
            "final_percentage": round(self.final_percentage, 2),
            "final_score": self.final_score,
            "passed": self.passed,
            "counted_violations": self.counted_violations,
            "ignored_violations": self.ignored_violations,
            "tab_switch_count": self.tab_switch_count,
            "is_auto_submit": self.is_auto_submit,
            "fullscreen_exits": self.fullscreen_exits,
            "security_flags": list(self.security_flags),
        }


# ------------------------------- violations ----------------------------------
def _violation_type(v: Any) -> str:
    if isinstance(v, dict):
        return str(v.get("type") or v.get("violationType") or "").strip()
    return ""


def _violation_text(v: Any) -> str:
    if isinstance(v, dict):
        details = v.get("details") if isinstance(v.get("details"), dict) else {}
        bits = [
            v.get("type"), v.get("violationType"), v.get("message"),
            v.get("description"), details.get("message"),
        ]
        return " ".join(str(b) for b in bits if b).lower()
    return str(v or "").lower()


def is_benign(v: Any, patterns: Sequence[Sequence[str]]) -> bool:
    text = _violation_text(v)
    return any(all(p in text for p in group) for group in patterns)


def count_violations(violations: Sequence[Any], policy: ScoringPolicy) -> Tuple[int, int]:
    """Returns (counted, ignored)."""
    ignored = sum(1 for v in violations if is_benign(v, policy.benign_violations))
    return len(violations) - ignored, ignored


def _fullscreen_exits(violations: Sequence[Any], policy: ScoringPolicy) -> int:
    n = 0
    for v in violations:
        if is_benign(v, policy.benign_violations):
            continue
        t = _violation_type(v).upper().replace("-", "_")
        if t == FULLSCREEN_EXIT:
            n += 1
    return n


def _half_up(x: float) -> int:
    return int(Decimal(repr(x)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def as_int(name: str, value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise InvalidInput(f"{name} must be an integer, got {value!r}")
    if isinstance(value, float) and (not math.isfinite(value) or not value.is_integer()):
        raise InvalidInput(f"{name} must be an integer, got {value!r}")
    return int(value)


# --------------------------------- scoring -----------------------------------
def score(raw_score: int, max_score: int, report: SecurityReport, policy: ScoringPolicy) -> QuizAttemptResult:
    raw_score = as_int("raw_score", raw_score)
    max_score = as_int("max_score", max_score)
    if max_score <= 0:
        raise InvalidInput(f"max_score must be positive, got {max_score}")
    if not (0 <= raw_score <= max_score):
        raise InvalidInput(f"raw_score {raw_score} outside [0, {max_score}]")
    tabs = as_int("tab_switch_count", report.tab_switch_count)
    if tabs < 0:
        raise InvalidInput("tab_switch_count must be >= 0")

    counted, ignored = count_violations(report.violations, policy)
    surcharge = policy.tab_switch_penalty if tabs > policy.tab_switch_threshold else 0
    cap = max(0, min(policy.max_penalty, PENALTY_CAP))
    penalty = max(0, min(cap, counted * policy.per_violation_penalty + surcharge))

    raw_pct = raw_score * 100.0 / max_score
    final_pct = max(0.0, raw_pct - penalty)
    final_score = _half_up(final_pct / 100.0 * max_score)

    fs_exits = _fullscreen_exits(report.violations, policy)
    flags: List[str] = []
    if report.is_auto_submit:
        flags.append("auto_submit")
    if tabs >= policy.auto_submit_tab_switches:
        flags.append("tab_switching")
    if fs_exits >= policy.auto_submit_fullscreen_exits:
        flags.append("fullscreen_exit")

    return QuizAttemptResult(
        raw_score=raw_score,
        max_score=max_score,
        raw_percentage=raw_pct,
        penalty_percent=penalty,
        final_percentage=final_pct,
        final_score=final_score,
        passed=final_pct >= policy.pass_threshold,
        counted_violations=counted,
        ignored_violations=ignored,
        tab_switch_count=tabs,
        is_auto_submit=bool(report.is_auto_submit),
        fullscreen_exits=fs_exits,
        security_flags=tuple(flags),
    )


def disqualification_reason(result: QuizAttemptResult) -> Optional[str]:
    """None when the attempt stands; otherwise the lock reason."""
    if result.security_flags:
        return REASON_SECURITY
    if not result.passed:
        return REASON_BELOW_PASSING
    return None


def describe_failure(result: QuizAttemptResult) -> str:
    if "auto_submit" in result.security_flags:
        return "Auto-submitted due to security violations"
    if "tab_switching" in result.security_flags:
        return f"Auto-submitted due to excessive tab changes ({result.tab_switch_count})"
    if "fullscreen_exit" in result.security_flags:
        return f"Repeated fullscreen exit ({result.fullscreen_exits})"
    if result.penalty_percent:
        return (f"Score {result.final_percentage:.1f}% below threshold "
                f"after {result.penalty_percent}% security penalty")
    return f"Score {result.final_percentage:.1f}% below threshold"


__all__ = [
    "InvalidInput", "ScoringPolicy", "SecurityReport", "QuizAttemptResult",
    "policy_from_env", "count_violations", "is_benign", "score", "as_int",
    "disqualification_reason", "describe_failure",
    "REASON_BELOW_PASSING", "REASON_SECURITY", "PENALTY_CAP",
]
