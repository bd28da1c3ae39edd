# ledger_store.py
# -----------------------------------------------------------------------------
# PostgreSQL persistence for unlock ledgers and immutable attempt records.
# Every ledger write is a compare-and-swap on the row's `version` column:
#   UPDATE ... SET version = version + 1 WHERE id = %s AND version = %s
# Zero rows back means somebody else wrote first -> ConcurrentModification.
# -----------------------------------------------------------------------------

import json
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional

from psycopg.rows import dict_row

from integrity import QuizAttemptResult
from ledger import AuthorityLevel, ConcurrentModification, Ledger

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS public.quiz_locks (
    id                     BIGSERIAL PRIMARY KEY,
    student_id             BIGINT      NOT NULL,
    quiz_id                BIGINT      NOT NULL,
    course_id              BIGINT      NOT NULL,
    is_locked              BOOLEAN     NOT NULL DEFAULT FALSE,
    authorization_level    TEXT        NOT NULL DEFAULT 'TEACHER',
    teacher_unlock_count   INTEGER     NOT NULL DEFAULT 0,
    hod_unlock_count       INTEGER     NOT NULL DEFAULT 0,
    dean_unlock_count      INTEGER     NOT NULL DEFAULT 0,
    admin_unlock_count     INTEGER     NOT NULL DEFAULT 0,
    failure_reason         TEXT,
    failure_detail         TEXT,
    last_failure_score     DOUBLE PRECISION,
    passing_score          DOUBLE PRECISION,
    lock_timestamp         TIMESTAMPTZ,
    total_attempts         INTEGER     NOT NULL DEFAULT 0,
    last_attempt_score     DOUBLE PRECISION,
    last_attempt_at        TIMESTAMPTZ,
    unlock_history         JSONB       NOT NULL DEFAULT '[]'::jsonb,
    version                INTEGER     NOT NULL DEFAULT 0,
    created_at             TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at             TIMESTAMPTZ NOT NULL DEFAULT now(),
    UNIQUE (student_id, quiz_id)
);
CREATE INDEX IF NOT EXISTS quiz_locks_course_locked_idx ON public.quiz_locks (course_id, is_locked);
CREATE INDEX IF NOT EXISTS quiz_locks_level_locked_idx  ON public.quiz_locks (authorization_level, is_locked);
CREATE INDEX IF NOT EXISTS quiz_locks_history_gin_idx   ON public.quiz_locks USING GIN (unlock_history jsonb_path_ops);

CREATE TABLE IF NOT EXISTS public.quiz_attempts (
    id                 BIGSERIAL PRIMARY KEY,
    student_id         BIGINT      NOT NULL,
    quiz_id            BIGINT      NOT NULL,
    course_id          BIGINT      NOT NULL,
    raw_score          INTEGER     NOT NULL,
    max_score          INTEGER     NOT NULL,
    raw_percentage     DOUBLE PRECISION NOT NULL,
    penalty_percent    INTEGER     NOT NULL,
    final_percentage   DOUBLE PRECISION NOT NULL,
    final_score        INTEGER     NOT NULL,
    passed             BOOLEAN     NOT NULL,
    security           JSONB       NOT NULL DEFAULT '{}'::jsonb,
    lock_reason        TEXT,
    created_at         TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE INDEX IF NOT EXISTS quiz_attempts_student_quiz_idx ON public.quiz_attempts (student_id, quiz_id);
"""

_LEDGER_COLS = """
    id, student_id, quiz_id, course_id, is_locked, authorization_level,
    teacher_unlock_count, hod_unlock_count, dean_unlock_count, admin_unlock_count,
    failure_reason, failure_detail, last_failure_score, passing_score, lock_timestamp,
    total_attempts, last_attempt_score, last_attempt_at, unlock_history, version
"""


def _history(raw: Any) -> List[Dict[str, Any]]:
    if raw is None:
        return []
    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except ValueError:
            return []
    return [dict(h) for h in raw if isinstance(h, dict)]


def _float_or_none(v: Any) -> Optional[float]:
    return None if v is None else float(v)


def ledger_from_row(row: Dict[str, Any]) -> Ledger:
    level = AuthorityLevel.parse(row.get("authorization_level")) or AuthorityLevel.TEACHER
    if level == AuthorityLevel.ADMIN:
        # legacy rows escalated past DEAN; DEAN is the top lockable tier
        level = AuthorityLevel.DEAN
    return Ledger(
        id=row.get("id"),
        student_id=row["student_id"],
        quiz_id=row["quiz_id"],
        course_id=row["course_id"],
        is_locked=bool(row.get("is_locked")),
        authorization_level=level,
        teacher_unlock_count=int(row.get("teacher_unlock_count") or 0),
        hod_unlock_count=int(row.get("hod_unlock_count") or 0),
        dean_unlock_count=int(row.get("dean_unlock_count") or 0),
        admin_unlock_count=int(row.get("admin_unlock_count") or 0),
        failure_reason=row.get("failure_reason"),
        failure_detail=row.get("failure_detail"),
        last_failure_score=_float_or_none(row.get("last_failure_score")),
        passing_score=_float_or_none(row.get("passing_score")),
        lock_timestamp=row.get("lock_timestamp"),
        total_attempts=int(row.get("total_attempts") or 0),
        last_attempt_score=_float_or_none(row.get("last_attempt_score")),
        last_attempt_at=row.get("last_attempt_at"),
        unlock_history=_history(row.get("unlock_history")),
        version=int(row.get("version") or 0),
    )


def _ledger_params(l: Ledger) -> tuple:
    return (
        l.is_locked, l.authorization_level.name,
        l.teacher_unlock_count, l.hod_unlock_count, l.dean_unlock_count, l.admin_unlock_count,
        l.failure_reason, l.failure_detail, l.last_failure_score, l.passing_score, l.lock_timestamp,
        l.total_attempts, l.last_attempt_score, l.last_attempt_at,
        json.dumps(l.unlock_history, ensure_ascii=False, default=str),
    )


class LedgerStore:
    """
    deps-style wrapper over the app's DB helpers:
      fetch_one(sql, params), fetch_all(sql, params), execute_returning(sql, params)
    Optional transaction() is a context manager yielding a psycopg connection
    inside an open transaction; serialized() needs it.
    """

    def __init__(self, fetch_one: Callable, fetch_all: Callable, execute_returning: Callable,
                 execute: Optional[Callable] = None, transaction: Optional[Callable] = None):
        self.fetch_one = fetch_one
        self.fetch_all = fetch_all
        self.execute_returning = execute_returning
        self.execute = execute
        self.transaction = transaction

    @contextmanager
    def serialized(self, student_id: int, quiz_id: int) -> Iterator["LedgerStore"]:
        """
        One transaction per (student, quiz), holding a transaction-scoped
        advisory lock. Yields a store bound to that connection; everything
        written through it commits or rolls back together.
        """
        if self.transaction is None:
            yield self
            return
        with self.transaction() as conn:
            def run(q, params=None):
                with conn.cursor(row_factory=dict_row) as cur:
                    cur.execute(q, params or ())
                    return cur.fetchall() if cur.description else []

            def one(q, params=None):
                rows = run(q, params)
                return rows[0] if rows else None

            run("SELECT pg_advisory_xact_lock(hashtextextended(%s, 0));",
                (f"quiz_attempt:{student_id}:{quiz_id}",))
            yield LedgerStore(one, run, run, run)

    def ensure_schema(self):
        if self.execute is None:
            raise RuntimeError("ensure_schema needs an execute() helper")
        for stmt in SCHEMA_SQL.split(";"):
            if stmt.strip():
                self.execute(stmt.strip() + ";", ())

    # ---- ledgers ------------------------------------------------------------
    def get(self, lock_id: int) -> Optional[Ledger]:
        row = self.fetch_one(f"SELECT {_LEDGER_COLS} FROM public.quiz_locks WHERE id = %s;", (lock_id,))
        return ledger_from_row(row) if row else None

    def find(self, student_id: int, quiz_id: int) -> Optional[Ledger]:
        row = self.fetch_one(f"""
            SELECT {_LEDGER_COLS}
              FROM public.quiz_locks
             WHERE student_id = %s AND quiz_id = %s;
        """, (student_id, quiz_id))
        return ledger_from_row(row) if row else None

    def create(self, ledger: Ledger) -> Optional[Ledger]:
        """Insert a new ledger. None when a concurrent writer created the pair first."""
        rows = self.execute_returning(f"""
            INSERT INTO public.quiz_locks
                (student_id, quiz_id, course_id,
                 is_locked, authorization_level,
                 teacher_unlock_count, hod_unlock_count, dean_unlock_count, admin_unlock_count,
                 failure_reason, failure_detail, last_failure_score, passing_score, lock_timestamp,
                 total_attempts, last_attempt_score, last_attempt_at, unlock_history, version)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s::jsonb, 0)
            ON CONFLICT (student_id, quiz_id) DO NOTHING
            RETURNING {_LEDGER_COLS};
        """, (ledger.student_id, ledger.quiz_id, ledger.course_id) + _ledger_params(ledger))
        return ledger_from_row(rows[0]) if rows else None

    def save(self, ledger: Ledger) -> Ledger:
        if ledger.id is None:
            raise ValueError("save() needs a persisted ledger; use create()")
        rows = self.execute_returning(f"""
            UPDATE public.quiz_locks
               SET is_locked = %s, authorization_level = %s,
                   teacher_unlock_count = %s, hod_unlock_count = %s,
                   dean_unlock_count = %s, admin_unlock_count = %s,
                   failure_reason = %s, failure_detail = %s, last_failure_score = %s,
                   passing_score = %s, lock_timestamp = %s,
                   total_attempts = %s, last_attempt_score = %s, last_attempt_at = %s,
                   unlock_history = %s::jsonb,
                   version = version + 1, updated_at = now()
             WHERE id = %s AND version = %s
            RETURNING {_LEDGER_COLS};
        """, _ledger_params(ledger) + (ledger.id, ledger.version))
        if not rows:
            raise ConcurrentModification(
                f"ledger {ledger.id} changed since version {ledger.version}; reload and retry"
            )
        return ledger_from_row(rows[0])

    def list_ledgers(self, course_ids: Optional[Iterable[int]] = None,
                     student_ids: Optional[Iterable[int]] = None,
                     locked_only: bool = True) -> List[Ledger]:
        """
        Scope filter: a ledger matches when its course OR its student is in
        scope. Both None -> unscoped (admin / maintenance).
        """
        where: List[str] = []
        params: List[Any] = []
        if locked_only:
            where.append("is_locked = TRUE")
        if course_ids is not None or student_ids is not None:
            c = list(course_ids or [])
            s = list(student_ids or [])
            if not c and not s:
                return []
            where.append("(course_id = ANY(%s) OR student_id = ANY(%s))")
            params.extend([c, s])
        sql = f"SELECT {_LEDGER_COLS} FROM public.quiz_locks"
        if where:
            sql += " WHERE " + " AND ".join(where)
        sql += " ORDER BY lock_timestamp DESC NULLS LAST, id;"
        return [ledger_from_row(r) for r in (self.fetch_all(sql, tuple(params)) or [])]

    def list_unlocked_by(self, actor_id: Any) -> List[Ledger]:
        """Ledgers whose history holds at least one unlock by this staff member."""
        rows = self.fetch_all(f"""
            SELECT {_LEDGER_COLS}
              FROM public.quiz_locks
             WHERE unlock_history @> %s::jsonb
             ORDER BY id;
        """, (json.dumps([{"unlocked_by": actor_id}], default=str),))
        return [ledger_from_row(r) for r in (rows or [])]

    # ---- attempts -----------------------------------------------------------
    def attempts_taken(self, student_id: int, quiz_id: int) -> int:
        row = self.fetch_one("""
            SELECT COUNT(*) AS n
              FROM public.quiz_attempts
             WHERE student_id = %s AND quiz_id = %s;
        """, (student_id, quiz_id))
        return int((row or {}).get("n") or 0)

    def insert_attempt(self, student_id: int, quiz_id: int, course_id: int,
                       result: QuizAttemptResult, security: Dict[str, Any],
                       lock_reason: Optional[str]) -> Dict[str, Any]:
        rows = self.execute_returning("""
            INSERT INTO public.quiz_attempts
                (student_id, quiz_id, course_id, raw_score, max_score, raw_percentage,
                 penalty_percent, final_percentage, final_score, passed, security, lock_reason)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s::jsonb, %s)
            RETURNING id, created_at;
        """, (
            student_id, quiz_id, course_id, result.raw_score, result.max_score,
            result.raw_percentage, result.penalty_percent, result.final_percentage,
            result.final_score, result.passed,
            json.dumps(security, ensure_ascii=False, default=str), lock_reason,
        ))
        return rows[0] if rows else {}


__all__ = ["LedgerStore", "ledger_from_row", "SCHEMA_SQL"]
