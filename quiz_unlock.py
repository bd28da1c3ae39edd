# quiz_unlock.py
# -----------------------------------------------------------------------------
# Quiz integrity + unlock authority endpoints (JSON only).
# - Students: availability check, scored submission (lock on disqualification)
# - Staff: scoped locked-student dashboards (self-healing), unlock, history
# - Admin: all locks, manual lock, maintenance heal pass
# Mounted at <base_path>/api/quiz-unlock
# -----------------------------------------------------------------------------

from typing import Any, Callable, Dict, Optional

from flask import Blueprint, request, jsonify, g

from authority import (
    availability, heal_all, in_scope, locked_students_for, manual_lock,
    submit_attempt, unlock, unlocks_performed_by,
)
from integrity import InvalidInput, SecurityReport, as_int
from ledger import (
    AuthorityLevel, ConcurrentModification, Ledger, LedgerError, LedgerNotFound,
    REASON_MANUAL, REASON_TIME_EXCEEDED,
)
from ledger_store import LedgerStore

# Reasons an administrator may record when locking by hand.
ADMIN_LOCK_REASONS = (REASON_MANUAL, REASON_TIME_EXCEEDED)


def create_quiz_unlock_blueprint(base_path: str, deps: Dict[str, Any], name: str = "quiz_unlock") -> Blueprint:
    """
    Required deps:
      store                 LedgerStore
      scoring_policy(quiz_id)  -> ScoringPolicy
      unlock_quotas(quiz_id)   -> UnlockQuotas
      scope_for(user_id, role) -> {"course_ids": [...], "student_ids": [...]}
    Optional deps:
      course_for_quiz(quiz_id) -> course_id (authoritative; client course_id must match)
    """
    url_prefix = (base_path or "").rstrip("/") + "/api/quiz-unlock"
    bp = Blueprint(name, __name__, url_prefix=url_prefix)

    store: LedgerStore = deps["store"]
    scoring_policy: Callable = deps["scoring_policy"]
    unlock_quotas: Callable = deps["unlock_quotas"]
    scope_for: Callable = deps["scope_for"]
    course_for_quiz: Optional[Callable] = deps.get("course_for_quiz")

    # ------------------------------- helpers ---------------------------------
    def _err(msg: str, status: int, **extra):
        body = {"ok": False, "error": msg}
        body.update(extra)
        return jsonify(body), status

    @bp.errorhandler(LedgerError)
    def _ledger_error(e: LedgerError):
        if isinstance(e, ConcurrentModification):
            print(f"[unlock] conflict: {e}")
            return _err(str(e), e.status_code, retry=True)
        return _err(str(e), e.status_code)

    @bp.errorhandler(InvalidInput)
    def _invalid_input(e: InvalidInput):
        return _err(str(e), e.status_code)

    def _caller():
        """(user_id, staff level or None); user_id is None when unauthenticated."""
        uid = getattr(g, "user_id", None)
        if not uid:
            return None, None
        return uid, AuthorityLevel.parse(getattr(g, "user_role", None))

    def _staff_scope(uid: Any, role: AuthorityLevel) -> Optional[Dict[str, Any]]:
        if role == AuthorityLevel.ADMIN:
            return None
        return scope_for(uid, role) or {"course_ids": [], "student_ids": []}

    def _quotas_cache() -> Callable:
        cache: Dict[Any, Any] = {}

        def get(quiz_id):
            if quiz_id not in cache:
                cache[quiz_id] = unlock_quotas(quiz_id)
            return cache[quiz_id]
        return get

    def _int_field(data: Dict[str, Any], key: str) -> int:
        v = data.get(key)
        if v is None or v == "":
            raise InvalidInput(f"{key} is required")
        if isinstance(v, str) and v.strip().lstrip("-").isdigit():
            return int(v)
        return as_int(key, v)

    def _course_id(quiz_id: int, data: Dict[str, Any]) -> int:
        """The quiz's own course; a client-sent course_id must agree with it."""
        if course_for_quiz is None:
            return _int_field(data, "course_id")
        known = course_for_quiz(quiz_id)
        if known is None:
            raise LedgerNotFound(f"quiz {quiz_id} not found")
        if data.get("course_id") not in (None, "") and _int_field(data, "course_id") != int(known):
            raise InvalidInput(f"course_id does not match quiz {quiz_id}")
        return int(known)

    def _can_view(uid: Any, role: Optional[AuthorityLevel], student_id: int, quiz_id: int,
                  ledger: Optional[Ledger]) -> bool:
        if role is None:
            return int(student_id) == int(uid)
        if ledger is None:
            ledger = Ledger(student_id=student_id, quiz_id=quiz_id,
                            course_id=course_for_quiz(quiz_id) if course_for_quiz else None)
        return in_scope(ledger, _staff_scope(uid, role))

    # ------------------------------- student ---------------------------------
    @bp.get("/quiz/<int:quiz_id>/availability")
    def quiz_availability(quiz_id: int):
        uid, role = _caller()
        if not uid:
            return _err("unauthorized", 401)
        student_id = uid
        if request.args.get("student_id"):
            if role is None:
                return _err("Access denied", 403)
            student_id = _int_field(request.args, "student_id")
            if not _can_view(uid, role, student_id, quiz_id, store.find(student_id, quiz_id)):
                return _err("Access denied", 403)
        return jsonify({"ok": True, **availability(store, student_id, quiz_id)})

    @bp.post("/quiz/<int:quiz_id>/submit")
    def quiz_submit(quiz_id: int):
        uid, _role = _caller()
        if not uid:
            return _err("unauthorized", 401)
        data = request.get_json(silent=True) or {}
        course_id = _course_id(quiz_id, data)

        raw_score = data.get("raw_score", data.get("score"))
        max_score = data.get("max_score", data.get("maxScore"))
        if raw_score is None or max_score is None:
            return _err("raw_score and max_score are required", 400)

        report = SecurityReport.from_payload(data.get("security") or data)
        policy = scoring_policy(quiz_id)
        quotas = unlock_quotas(quiz_id)
        result, ledger, attempt = submit_attempt(
            store, uid, quiz_id, course_id, raw_score, max_score, report, policy, quotas
        )
        return jsonify({
            "ok": True,
            "attempt_id": attempt.get("id"),
            "result": result.to_dict(),
            "pass_threshold": policy.pass_threshold,
            "locked": bool(ledger and ledger.is_locked),
            "lock": ledger.to_dict(quotas) if ledger else None,
        })

    # ------------------------------- dashboards ------------------------------
    @bp.get("/locked-students")
    def locked_students():
        uid, role = _caller()
        if not uid:
            return _err("unauthorized", 401)
        if role is None:
            return _err("Access denied", 403)
        quotas_for = _quotas_cache()
        ledgers = locked_students_for(store, role, _staff_scope(uid, role), quotas_for)
        rows = []
        for l in ledgers:
            q = quotas_for(l.quiz_id)
            row = l.to_dict(q)
            row["actionable"] = l.can_act(role, q)
            rows.append(row)
        return jsonify({"ok": True, "role": role.name, "count": len(rows), "data": rows})

    @bp.get("/lock-status/<int:student_id>/<int:quiz_id>")
    def lock_status(student_id: int, quiz_id: int):
        uid, role = _caller()
        if not uid:
            return _err("unauthorized", 401)
        ledger = store.find(student_id, quiz_id)
        if not _can_view(uid, role, student_id, quiz_id, ledger):
            return _err("Access denied", 403)
        if ledger is None:
            return jsonify({"ok": True, "is_locked": False, "data": None})
        quotas = unlock_quotas(quiz_id)
        data = ledger.to_dict(quotas)
        if role is None:
            data.pop("unlock_history", None)
        else:
            data["actionable"] = ledger.can_act(role, quotas)
        return jsonify({"ok": True, "is_locked": ledger.is_locked, "data": data})

    @bp.get("/unlock-history/<int:lock_id>")
    def unlock_history(lock_id: int):
        uid, role = _caller()
        if not uid:
            return _err("unauthorized", 401)
        if role is None:
            return _err("Access denied", 403)
        ledger = store.get(lock_id)
        if ledger is None:
            raise LedgerNotFound(f"quiz lock {lock_id} not found")
        if not in_scope(ledger, _staff_scope(uid, role)):
            return _err("Access denied", 403)
        history = ledger.to_dict()["unlock_history"]
        return jsonify({"ok": True, "lock_id": lock_id, "count": len(history), "data": history})

    @bp.get("/my-unlocks")
    def my_unlocks():
        """Unlocks the caller granted; ?role=, ?quiz_id=, ?course_id= narrow it."""
        uid, role = _caller()
        if not uid:
            return _err("unauthorized", 401)
        if role is None:
            return _err("Access denied", 403)
        as_role = None
        if request.args.get("role"):
            as_role = AuthorityLevel.parse(request.args["role"])
            if as_role is None:
                return _err("role must be one of TEACHER, HOD, DEAN, ADMIN", 400)
        quiz_id = _int_field(request.args, "quiz_id") if request.args.get("quiz_id") else None
        course_id = _int_field(request.args, "course_id") if request.args.get("course_id") else None
        rows = unlocks_performed_by(store, uid, role=as_role, quiz_id=quiz_id, course_id=course_id)
        return jsonify({"ok": True, "count": len(rows), "data": rows})

    # ------------------------------- actions ---------------------------------
    @bp.post("/unlock/<int:lock_id>")
    def unlock_student(lock_id: int):
        uid, role = _caller()
        if not uid:
            return _err("unauthorized", 401)
        if role is None:
            return _err("Access denied", 403)
        data = request.get_json(silent=True) or {}
        reason = str(data.get("reason") or "").strip()
        if not reason:
            return _err("Unlock reason is required", 400)
        notes = str(data.get("notes") or "").strip()
        quotas_for = _quotas_cache()
        ledger = unlock(store, lock_id, role, uid, reason, quotas_for,
                        notes=notes, scope=_staff_scope(uid, role))
        return jsonify({
            "ok": True,
            "message": "Student quiz unlocked successfully",
            "data": ledger.to_dict(quotas_for(ledger.quiz_id)),
        })

    @bp.post("/lock")
    def lock_student():
        uid, role = _caller()
        if not uid:
            return _err("unauthorized", 401)
        if role != AuthorityLevel.ADMIN:
            return _err("Access denied", 403)
        data = request.get_json(silent=True) or {}
        student_id = _int_field(data, "student_id")
        quiz_id = _int_field(data, "quiz_id")
        course_id = _course_id(quiz_id, data)
        lock_reason = str(data.get("lock_reason") or REASON_MANUAL).strip().upper()
        if lock_reason not in ADMIN_LOCK_REASONS:
            return _err(f"lock_reason must be one of {', '.join(ADMIN_LOCK_REASONS)}", 400)
        detail = str(data.get("detail") or data.get("reason") or "Locked by administrator").strip()
        quotas = unlock_quotas(quiz_id)
        ledger = manual_lock(store, student_id, quiz_id, course_id, detail, quotas,
                             reason=lock_reason)
        print(f"[lock] {lock_reason} by {uid}: student {student_id} quiz {quiz_id}")
        return jsonify({"ok": True, "data": ledger.to_dict(quotas)})

    @bp.post("/maintenance/heal")
    def maintenance_heal():
        uid, role = _caller()
        if not uid:
            return _err("unauthorized", 401)
        if role != AuthorityLevel.ADMIN:
            return _err("Access denied", 403)
        stats = heal_all(store, _quotas_cache())
        return jsonify({"ok": True, **stats})

    return bp
