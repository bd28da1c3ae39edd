# ledger.py
# -----------------------------------------------------------------------------
# Unlock authority ledger: one record per (student, quiz).
# - States: UNLOCKED, LOCKED(TEACHER | HOD | DEAN)
# - Escalation: TEACHER (quota) -> HOD (quota) -> DEAN (unlimited); ADMIN overrides
# - attempt_limit = 1 + every unlock ever granted
# - Mutators validate first and only then touch state, so a rejected call
#   leaves the ledger exactly as it was
# -----------------------------------------------------------------------------

import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import IntEnum
from typing import Any, Dict, List, Optional


class AuthorityLevel(IntEnum):
    TEACHER = 1
    HOD = 2
    DEAN = 3
    ADMIN = 4

    @classmethod
    def parse(cls, value: Any) -> Optional["AuthorityLevel"]:
        """Role string from the users table -> level; None for non-staff."""
        if isinstance(value, cls):
            return value
        s = str(value or "").strip().upper()
        if s == "COORDINATOR":
            s = "TEACHER"
        return cls.__members__.get(s)


REASON_MANUAL = "MANUAL_LOCK"
REASON_TIME_EXCEEDED = "TIME_EXCEEDED"


# ------------------------------- errors --------------------------------------
class LedgerError(Exception):
    status_code = 400


class LedgerNotFound(LedgerError):
    status_code = 404


class NotLocked(LedgerError):
    status_code = 409


class InsufficientAuthority(LedgerError):
    status_code = 403


class QuotaExceeded(LedgerError):
    status_code = 403


class ConcurrentModification(LedgerError):
    """Compare-and-swap lost: the row changed since it was read. Retry."""
    status_code = 409


# ------------------------------- quotas --------------------------------------
@dataclass(frozen=True)
class UnlockQuotas:
    teacher: int = 3
    hod: int = 3

    @classmethod
    def from_row(cls, row: Optional[Dict[str, Any]], defaults: Optional["UnlockQuotas"] = None) -> "UnlockQuotas":
        base = defaults or cls()
        row = row or {}
        t = row.get("teacher_unlock_quota")
        h = row.get("hod_unlock_quota")
        return cls(
            teacher=base.teacher if t is None else int(t),
            hod=base.hod if h is None else int(h),
        )


def quotas_from_env() -> UnlockQuotas:
    return UnlockQuotas(
        teacher=int(os.getenv("QUIZ_TEACHER_UNLOCK_QUOTA") or 3),
        hod=int(os.getenv("QUIZ_HOD_UNLOCK_QUOTA") or 3),
    )


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(v: Optional[datetime]) -> Optional[str]:
    return v.isoformat() if isinstance(v, datetime) else v


# ------------------------------- ledger --------------------------------------
@dataclass
class Ledger:
    student_id: int
    quiz_id: int
    course_id: int
    id: Optional[int] = None
    is_locked: bool = False
    authorization_level: AuthorityLevel = AuthorityLevel.TEACHER
    teacher_unlock_count: int = 0
    hod_unlock_count: int = 0
    dean_unlock_count: int = 0
    admin_unlock_count: int = 0
    failure_reason: Optional[str] = None
    failure_detail: Optional[str] = None
    last_failure_score: Optional[float] = None
    passing_score: Optional[float] = None
    lock_timestamp: Optional[datetime] = None
    total_attempts: int = 0
    last_attempt_score: Optional[float] = None
    last_attempt_at: Optional[datetime] = None
    unlock_history: List[Dict[str, Any]] = field(default_factory=list)
    version: int = 0

    # ---- derived ------------------------------------------------------------
    @property
    def attempt_limit(self) -> int:
        return attempt_limit(self)

    def expected_level(self, quotas: UnlockQuotas) -> AuthorityLevel:
        if self.teacher_unlock_count < quotas.teacher:
            return AuthorityLevel.TEACHER
        if self.hod_unlock_count < quotas.hod:
            return AuthorityLevel.HOD
        return AuthorityLevel.DEAN

    def remaining(self, quotas: UnlockQuotas) -> Dict[str, int]:
        return {
            "teacher": max(0, quotas.teacher - self.teacher_unlock_count),
            "hod": max(0, quotas.hod - self.hod_unlock_count),
        }

    def can_act(self, role: AuthorityLevel, quotas: UnlockQuotas) -> bool:
        try:
            self._check_unlock(role, quotas)
        except LedgerError:
            return False
        return True

    # ---- transitions --------------------------------------------------------
    def heal(self, quotas: UnlockQuotas) -> bool:
        """Re-derive authorization_level from the counters. True if it changed."""
        want = self.expected_level(quotas)
        if self.authorization_level != want:
            self.authorization_level = want
            return True
        return False

    def correct_quotas(self, quotas: UnlockQuotas) -> bool:
        """Clamp TEACHER/HOD counters to quota, moving the excess to admin so
        attempt_limit is unchanged."""
        excess = max(0, self.teacher_unlock_count - quotas.teacher) + \
            max(0, self.hod_unlock_count - quotas.hod)
        if not excess:
            return False
        self.teacher_unlock_count = min(self.teacher_unlock_count, quotas.teacher)
        self.hod_unlock_count = min(self.hod_unlock_count, quotas.hod)
        self.admin_unlock_count += excess
        return True

    def record_attempt(self, percentage: float, at: Optional[datetime] = None):
        self.total_attempts += 1
        self.last_attempt_score = percentage
        self.last_attempt_at = at or _now()

    def lock(self, reason: str, quotas: UnlockQuotas, score: Optional[float] = None,
             passing_score: Optional[float] = None, detail: Optional[str] = None,
             at: Optional[datetime] = None):
        """UNLOCKED -> LOCKED(lowest tier with quota left)."""
        if not self.is_locked:
            self.lock_timestamp = at or _now()
        self.is_locked = True
        self.failure_reason = reason
        self.failure_detail = detail
        self.last_failure_score = score
        if passing_score is not None:
            self.passing_score = passing_score
        self.heal(quotas)

    def _check_unlock(self, role: AuthorityLevel, quotas: UnlockQuotas):
        if not self.is_locked:
            raise NotLocked("Quiz is not currently locked")
        if role == AuthorityLevel.ADMIN:
            return
        if role < self.authorization_level:
            raise InsufficientAuthority(
                f"{self.authorization_level.name} authorization required "
                f"(caller is {role.name})"
            )
        if role == AuthorityLevel.TEACHER and self.teacher_unlock_count >= quotas.teacher:
            raise QuotaExceeded(f"Teacher unlock limit reached ({quotas.teacher}/{quotas.teacher})")
        if role == AuthorityLevel.HOD and self.hod_unlock_count >= quotas.hod:
            raise QuotaExceeded(f"HOD unlock limit reached ({quotas.hod}/{quotas.hod})")

    def unlock(self, role: AuthorityLevel, actor_id: Any, reason: str, quotas: UnlockQuotas,
               notes: str = "", at: Optional[datetime] = None) -> Dict[str, Any]:
        """LOCKED(level) -> UNLOCKED, granting exactly one more attempt."""
        role = AuthorityLevel(role)
        self._check_unlock(role, quotas)

        overridden = self.authorization_level
        if role == AuthorityLevel.TEACHER:
            self.teacher_unlock_count += 1
        elif role == AuthorityLevel.HOD:
            self.hod_unlock_count += 1
        elif role == AuthorityLevel.DEAN:
            self.dean_unlock_count += 1
        else:
            self.admin_unlock_count += 1

        entry = {
            "unlocked_by": actor_id,
            "role": role.name,
            "unlock_timestamp": _iso(at or _now()),
            "reason": reason,
            "notes": notes or "",
            "level_at_unlock": overridden.name,
            "lock_reason": self.failure_reason,
        }
        self.unlock_history.append(entry)
        self.is_locked = False
        self.heal(quotas)
        return entry

    # ---- wire ---------------------------------------------------------------
    def to_dict(self, quotas: Optional[UnlockQuotas] = None) -> Dict[str, Any]:
        out = {
            "lock_id": self.id,
            "student_id": self.student_id,
            "quiz_id": self.quiz_id,
            "course_id": self.course_id,
            "is_locked": self.is_locked,
            "authorization_level": self.authorization_level.name,
            "teacher_unlock_count": self.teacher_unlock_count,
            "hod_unlock_count": self.hod_unlock_count,
            "dean_unlock_count": self.dean_unlock_count,
            "admin_unlock_count": self.admin_unlock_count,
            "attempt_limit": self.attempt_limit,
            "failure_reason": self.failure_reason,
            "failure_detail": self.failure_detail,
            "last_failure_score": self.last_failure_score,
            "passing_score": self.passing_score,
            "lock_timestamp": _iso(self.lock_timestamp),
            "total_attempts": self.total_attempts,
            "last_attempt_score": self.last_attempt_score,
            "last_attempt_at": _iso(self.last_attempt_at),
            "unlock_history": sorted(self.unlock_history, key=lambda h: h.get("unlock_timestamp") or ""),
            "version": self.version,
        }
        if quotas is not None:
            rem = self.remaining(quotas)
            out["remaining_teacher_unlocks"] = rem["teacher"]
            out["remaining_hod_unlocks"] = rem["hod"]
        return out


def attempt_limit(ledger: Optional[Ledger]) -> int:
    if ledger is None:
        return 1
    return (1 + ledger.teacher_unlock_count + ledger.hod_unlock_count
            + ledger.dean_unlock_count + ledger.admin_unlock_count)


__all__ = [
    "AuthorityLevel", "UnlockQuotas", "quotas_from_env", "Ledger", "attempt_limit",
    "LedgerError", "LedgerNotFound", "NotLocked", "InsufficientAuthority",
    "QuotaExceeded", "ConcurrentModification", "REASON_MANUAL", "REASON_TIME_EXCEEDED",
]
