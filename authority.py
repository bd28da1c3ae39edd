# authority.py
# -----------------------------------------------------------------------------
# Staff-facing operations on unlock ledgers:
#   submit_attempt       gate -> score -> persist attempt -> lock decision
#   unlock               rank check + CAS write
#   locked_students_for  scoped dashboard list, self-healing on read
#   heal_all             maintenance: self-heal + quota correction for every row
# Scope dicts come from the identity/membership collaborators:
#   {"course_ids": [...] | None, "student_ids": [...] | None}
# Both None means unscoped (admin).
# -----------------------------------------------------------------------------

from dataclasses import replace
from typing import Any, Callable, Dict, List, Optional, Tuple

from integrity import (
    QuizAttemptResult, ScoringPolicy, SecurityReport,
    describe_failure, disqualification_reason, score,
)
from ledger import (
    AuthorityLevel, ConcurrentModification, InsufficientAuthority, Ledger,
    LedgerError, LedgerNotFound, REASON_MANUAL, UnlockQuotas, attempt_limit,
)
from ledger_store import LedgerStore

QuotasFor = Callable[[Any], UnlockQuotas]

# Which stored tiers each role sees on its dashboard.
VISIBLE_LEVELS = {
    AuthorityLevel.TEACHER: {AuthorityLevel.TEACHER},
    AuthorityLevel.HOD: {AuthorityLevel.TEACHER, AuthorityLevel.HOD},
    AuthorityLevel.DEAN: {AuthorityLevel.DEAN},
    AuthorityLevel.ADMIN: {AuthorityLevel.TEACHER, AuthorityLevel.HOD, AuthorityLevel.DEAN},
}

WRITE_RETRIES = 3


class AttemptNotAllowed(LedgerError):
    status_code = 403


def _role(value: Any) -> AuthorityLevel:
    role = AuthorityLevel.parse(value)
    if role is None:
        raise InsufficientAuthority(f"role {value!r} cannot act on quiz locks")
    return role


def in_scope(ledger: Ledger, scope: Optional[Dict[str, Any]]) -> bool:
    if not scope:
        return True
    courses = scope.get("course_ids")
    students = scope.get("student_ids")
    if courses is None and students is None:
        return True
    return ledger.course_id in set(courses or []) or ledger.student_id in set(students or [])


# ------------------------------- gates ---------------------------------------
def availability(store: LedgerStore, student_id: int, quiz_id: int) -> Dict[str, Any]:
    """Lock flag and attempt count are independent gates; both must be open."""
    ledger = store.find(student_id, quiz_id)
    taken = store.attempts_taken(student_id, quiz_id)
    limit = attempt_limit(ledger)
    locked = bool(ledger and ledger.is_locked)
    return {
        "is_locked": locked,
        "attempts_taken": taken,
        "attempt_limit": limit,
        "remaining_attempts": max(0, limit - taken),
        "can_attempt": (not locked) and taken < limit,
        "authorization_level": ledger.authorization_level.name if locked else None,
        "failure_reason": ledger.failure_reason if locked else None,
        "lock_id": ledger.id if ledger else None,
    }


# ------------------------------- submission ----------------------------------
def _apply_outcome(ledger: Ledger, result: QuizAttemptResult, reason: Optional[str],
                   policy: ScoringPolicy, quotas: UnlockQuotas):
    ledger.record_attempt(result.final_percentage)
    if reason:
        ledger.lock(
            reason, quotas,
            score=result.final_percentage,
            passing_score=policy.pass_threshold,
            detail=describe_failure(result),
        )
    else:
        ledger.heal(quotas)


def record_outcome(store: LedgerStore, student_id: int, quiz_id: int, course_id: int,
                   result: QuizAttemptResult, policy: ScoringPolicy,
                   quotas: UnlockQuotas) -> Optional[Ledger]:
    """Create/update the ledger for a scored attempt. No ledger exists until
    the first disqualifying attempt."""
    reason = disqualification_reason(result)
    for _ in range(WRITE_RETRIES):
        ledger = store.find(student_id, quiz_id)
        if ledger is None:
            if reason is None:
                return None
            fresh = Ledger(student_id=student_id, quiz_id=quiz_id, course_id=course_id)
            _apply_outcome(fresh, result, reason, policy, quotas)
            created = store.create(fresh)
            if created is not None:
                print(f"[lock] student {student_id} quiz {quiz_id}: {reason} "
                      f"({result.final_percentage:.1f}%) -> {created.authorization_level.name}")
                return created
            print(f"[lock] ledger for student {student_id} quiz {quiz_id} created concurrently; retrying")
            continue
        _apply_outcome(ledger, result, reason, policy, quotas)
        try:
            saved = store.save(ledger)
        except ConcurrentModification as e:
            print(f"[lock] {e}; retrying")
            continue
        if reason:
            print(f"[lock] student {student_id} quiz {quiz_id}: {reason} "
                  f"({result.final_percentage:.1f}%) -> {saved.authorization_level.name}")
        return saved
    raise ConcurrentModification(f"could not record outcome for student {student_id} quiz {quiz_id}")


def submit_attempt(store: LedgerStore, student_id: int, quiz_id: int, course_id: int,
                   raw_score: int, max_score: int, report: SecurityReport,
                   policy: ScoringPolicy, quotas: UnlockQuotas
                   ) -> Tuple[QuizAttemptResult, Optional[Ledger], Dict[str, Any]]:
    """Gate, attempt record and ledger write run under one per-(student, quiz)
    transaction; any failure rolls all of them back."""
    with store.serialized(student_id, quiz_id) as tx:
        gate = availability(tx, student_id, quiz_id)
        if not gate["can_attempt"]:
            if gate["is_locked"]:
                raise AttemptNotAllowed(
                    f"Quiz locked ({gate['failure_reason']}); "
                    f"{gate['authorization_level']} unlock required"
                )
            raise AttemptNotAllowed(f"Attempt limit reached ({gate['attempt_limit']})")

        result = score(raw_score, max_score, report, policy)  # InvalidInput -> nothing persisted
        reason = disqualification_reason(result)
        security = {
            "tab_switch_count": report.tab_switch_count,
            "is_auto_submit": report.is_auto_submit,
            "violations": list(report.violations),
            "counted_violations": result.counted_violations,
            "ignored_violations": result.ignored_violations,
            "penalty_percent": result.penalty_percent,
            "security_flags": list(result.security_flags),
        }
        attempt = tx.insert_attempt(student_id, quiz_id, course_id, result, security, reason)
        ledger = record_outcome(tx, student_id, quiz_id, course_id, result, policy, quotas)
    return result, ledger, attempt


# ------------------------------- unlock --------------------------------------
def unlock(store: LedgerStore, lock_id: int, acting_role: Any, actor_id: Any, reason: str,
           quotas_for: QuotasFor, notes: str = "",
           scope: Optional[Dict[str, Any]] = None) -> Ledger:
    role = _role(acting_role)
    ledger = store.get(lock_id)
    if ledger is None:
        raise LedgerNotFound(f"quiz lock {lock_id} not found")
    if role != AuthorityLevel.ADMIN and not in_scope(ledger, scope):
        raise InsufficientAuthority("You do not have access to unlock this student")

    quotas = quotas_for(ledger.quiz_id)
    before = ledger.authorization_level
    ledger.heal(quotas)  # judge rank against the tier the counters imply
    ledger.unlock(role, actor_id, reason, quotas, notes=notes)
    saved = store.save(ledger)
    print(f"[unlock] lock {saved.id} student {saved.student_id} quiz {saved.quiz_id}: "
          f"{role.name} by {actor_id} at {before.name}; attempt_limit={saved.attempt_limit} "
          f"next={saved.authorization_level.name}")
    return saved


def manual_lock(store: LedgerStore, student_id: int, quiz_id: int, course_id: int,
                detail: str, quotas: UnlockQuotas, reason: str = REASON_MANUAL) -> Ledger:
    for _ in range(WRITE_RETRIES):
        ledger = store.find(student_id, quiz_id)
        if ledger is None:
            fresh = Ledger(student_id=student_id, quiz_id=quiz_id, course_id=course_id)
            fresh.lock(reason, quotas, detail=detail)
            created = store.create(fresh)
            if created is not None:
                return created
            continue
        ledger.lock(reason, quotas, score=ledger.last_failure_score, detail=detail)
        try:
            return store.save(ledger)
        except ConcurrentModification as e:
            print(f"[lock] {e}; retrying")
    raise ConcurrentModification(f"could not lock student {student_id} quiz {quiz_id}")


# ------------------------------- self-heal -----------------------------------
def heal_ledger(store: LedgerStore, ledger: Ledger, quotas: UnlockQuotas) -> Ledger:
    """Persist a corrected tier if it drifted. A failed write is logged and the
    read is returned unhealed."""
    candidate = replace(ledger, unlock_history=list(ledger.unlock_history))
    original = ledger.authorization_level
    if not candidate.heal(quotas):
        return ledger
    try:
        saved = store.save(candidate)
    except Exception as e:
        print(f"[heal] lock {ledger.id}: could not correct {original.name} -> "
              f"{candidate.authorization_level.name}: {e}")
        return ledger
    print(f"[heal] lock {saved.id} student {saved.student_id}: "
          f"{original.name} -> {saved.authorization_level.name}")
    return saved


def locked_students_for(store: LedgerStore, role: Any, scope: Optional[Dict[str, Any]],
                        quotas_for: QuotasFor) -> List[Ledger]:
    role = _role(role)
    if role == AuthorityLevel.ADMIN:
        rows = store.list_ledgers(locked_only=True)
    else:
        scope = scope or {}
        rows = store.list_ledgers(
            course_ids=scope.get("course_ids") or [],
            student_ids=scope.get("student_ids") or [],
            locked_only=True,
        )
    visible = VISIBLE_LEVELS[role]
    out: List[Ledger] = []
    for ledger in rows:
        healed = heal_ledger(store, ledger, quotas_for(ledger.quiz_id))
        if healed.is_locked and healed.authorization_level in visible:
            out.append(healed)
    return out


def heal_all(store: LedgerStore, quotas_for: QuotasFor) -> Dict[str, int]:
    """Idempotent maintenance pass over every ledger (admin API)."""
    stats = {"examined": 0, "tier_corrected": 0, "quota_corrected": 0, "conflicts": 0}
    for ledger in store.list_ledgers(locked_only=False):
        stats["examined"] += 1
        quotas = quotas_for(ledger.quiz_id)
        quota_fixed = ledger.correct_quotas(quotas)
        tier_fixed = ledger.heal(quotas)
        if not (quota_fixed or tier_fixed):
            continue
        try:
            store.save(ledger)
        except ConcurrentModification as e:
            stats["conflicts"] += 1
            print(f"[heal] {e}")
            continue
        stats["quota_corrected"] += int(quota_fixed)
        stats["tier_corrected"] += int(tier_fixed)
    print(f"[heal] maintenance pass: {stats}")
    return stats


def unlocks_performed_by(store: LedgerStore, actor_id: Any, role: Optional[AuthorityLevel] = None,
                         quiz_id: Optional[int] = None, course_id: Optional[int] = None
                         ) -> List[Dict[str, Any]]:
    """Flat feed of the unlocks one staff member granted, newest first."""
    out: List[Dict[str, Any]] = []
    for ledger in store.list_unlocked_by(actor_id):
        if quiz_id is not None and ledger.quiz_id != quiz_id:
            continue
        if course_id is not None and ledger.course_id != course_id:
            continue
        for entry in ledger.unlock_history:
            if entry.get("unlocked_by") != actor_id:
                continue
            if role is not None and entry.get("role") != role.name:
                continue
            out.append({
                **entry,
                "lock_id": ledger.id,
                "student_id": ledger.student_id,
                "quiz_id": ledger.quiz_id,
                "course_id": ledger.course_id,
                "is_locked": ledger.is_locked,
                "authorization_level": ledger.authorization_level.name,
            })
    out.sort(key=lambda h: h.get("unlock_timestamp") or "", reverse=True)
    return out


__all__ = [
    "AttemptNotAllowed", "VISIBLE_LEVELS", "availability", "submit_attempt",
    "record_outcome", "unlock", "manual_lock", "heal_ledger", "locked_students_for",
    "heal_all", "in_scope", "unlocks_performed_by",
]
