# main.py - quiz integrity & unlock authority service, BASE_PATH-aware (psycopg3 + pooling)
# Identity comes from the upstream session / IAP headers; roles and scopes are
# read from the school directory tables (users, sections, departments, courses).

import os
from contextlib import contextmanager
from urllib.parse import urlparse, parse_qs, unquote
from typing import Any, Dict, List, Optional

from flask import Flask, request, g, session, jsonify

# Database (psycopg 3)
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from integrity import ScoringPolicy, policy_from_env
from ledger import AuthorityLevel, UnlockQuotas, quotas_from_env
from ledger_store import LedgerStore
from quiz_unlock import create_quiz_unlock_blueprint

# =============================================================================
# BASE_PATH & Flask app
# =============================================================================
BASE_PATH = (os.getenv("BASE_PATH", "") or "").rstrip("/")

app = Flask(__name__)
app.url_map.strict_slashes = False
app.secret_key = os.getenv("SECRET_KEY", "dev-secret")
app.config.update(
    SESSION_COOKIE_SAMESITE="Lax",
    SESSION_COOKIE_SECURE=True,
)

AUTH_REQUIRED = os.getenv("AUTH_REQUIRED", "1").lower() in {"1", "true", "yes"}
AUTO_CREATE_SCHEMA = os.getenv("AUTO_CREATE_SCHEMA", "0").lower() in {"1", "true", "yes"}

# Per-quiz columns override these; NULL falls back.
DEFAULT_POLICY: ScoringPolicy = policy_from_env()
DEFAULT_QUOTAS: UnlockQuotas = quotas_from_env()

# =============================================================================
# DB configuration
# =============================================================================
INSTANCE_CONNECTION_NAME = os.getenv("INSTANCE_CONNECTION_NAME")
DB_USER = os.getenv("DB_USER")
DB_PASS = os.getenv("DB_PASS") or os.getenv("DB_PASSWORD")  # support either name
DB_NAME = os.getenv("DB_NAME")
DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_URL_LOCAL = os.getenv("DATABASE_URL_LOCAL")
DB_HOST_OVERRIDE = os.getenv("DB_HOST")
DB_PORT_OVERRIDE = os.getenv("DB_PORT")
FORCE_TCP = os.getenv("FORCE_TCP", "").lower() in {"1", "true", "yes"}


def _on_managed_runtime() -> bool:
    return os.getenv("GAE_ENV", "").startswith("standard") or bool(os.getenv("K_SERVICE"))


def _parse_database_url(url: str) -> dict:
    if not url:
        raise ValueError("Empty DATABASE_URL")
    for pref in ("postgresql+psycopg://", "postgres+psycopg://",
                 "postgresql+psycopg2://", "postgres+psycopg2://"):
        if url.startswith(pref):
            url = "postgresql://" + url.split("://", 1)[1]
            break
    p = urlparse(url)
    if p.scheme not in ("postgresql", "postgres"):
        raise ValueError(f"Unsupported scheme '{p.scheme}'")
    qs = parse_qs(p.query or "", keep_blank_values=True)
    dbname = (p.path or "").lstrip("/") or (qs.get("dbname") or [""])[0]
    if not dbname:
        raise ValueError("DATABASE_URL missing dbname")
    host = (qs.get("host") or [p.hostname])[0]
    kwargs = {
        "dbname": dbname,
        "user": unquote(p.username or ""),
        "password": unquote(p.password or ""),
        "connect_timeout": 10,
        "options": "-c search_path=public",
    }
    if host:
        kwargs["host"] = host
    if p.port and not (isinstance(host, str) and host.startswith("/")):
        kwargs["port"] = p.port
    if qs.get("sslmode"):
        kwargs["sslmode"] = qs["sslmode"][0]
    return kwargs


def _tcp_kwargs() -> dict:
    if not all([DB_NAME, DB_USER, DB_PASS]):
        raise RuntimeError("DB_NAME, DB_USER, DB_PASS must be set for TCP mode.")
    return {
        "host": DB_HOST_OVERRIDE or "127.0.0.1",
        "port": int(DB_PORT_OVERRIDE or "5432"),
        "dbname": DB_NAME,
        "user": DB_USER,
        "password": DB_PASS,
        "sslmode": "disable",
        "connect_timeout": 10,
        "options": "-c search_path=public",
    }


def _socket_kwargs() -> dict:
    if not all([INSTANCE_CONNECTION_NAME, DB_NAME, DB_USER, DB_PASS]):
        raise RuntimeError("INSTANCE_CONNECTION_NAME, DB_NAME, DB_USER, DB_PASS must be set for socket mode.")
    return {
        "host": f"/cloudsql/{INSTANCE_CONNECTION_NAME}",
        "dbname": DB_NAME,
        "user": DB_USER,
        "password": DB_PASS,
        "connect_timeout": 10,
        "options": "-c search_path=public",
    }


def _connection_kwargs() -> dict:
    managed = _on_managed_runtime()
    if FORCE_TCP and not managed:
        print("[DB] FORCE_TCP")
        return _tcp_kwargs()
    for origin, url in (("DATABASE_URL_LOCAL", None if managed else DATABASE_URL_LOCAL),
                        ("DATABASE_URL", DATABASE_URL)):
        if not url:
            continue
        try:
            kwargs = _parse_database_url(url)
        except ValueError as e:
            print(f"[DB] Ignoring {origin}: {e}")
            continue
        host = kwargs.get("host")
        if not managed and isinstance(host, str) and host.startswith("/cloudsql/"):
            print(f"[DB] {origin} targets /cloudsql/ but we are local; ignoring.")
            continue
        print(f"[DB] Using {origin} -> {host or 'localhost'}")
        return kwargs
    if managed:
        print("[DB] Managed runtime: Unix socket")
        return _socket_kwargs()
    print("[DB] Local dev: TCP")
    return _tcp_kwargs()


# =============================================================================
# psycopg3 Connection Pool + helpers
# =============================================================================
_pg_pool: Optional[ConnectionPool] = None


def _to_conninfo(kwargs: dict) -> str:
    parts = []
    for k, v in kwargs.items():
        if v is None:
            continue
        s = str(v)
        if any(ch.isspace() for ch in s) or "'" in s or '"' in s:
            s = "'" + s.replace("'", r"\'") + "'"
        parts.append(f"{k}={s}")
    return " ".join(parts)


def init_pool():
    global _pg_pool
    if _pg_pool is not None:
        return
    _pg_pool = ConnectionPool(conninfo=_to_conninfo(_connection_kwargs()), min_size=1, max_size=6)


@contextmanager
def get_conn():
    if _pg_pool is None:
        init_pool()
    with _pg_pool.connection() as conn:
        yield conn


def fetch_all(q, params=None):
    with get_conn() as conn:
        with conn.cursor(row_factory=dict_row) as cur:
            cur.execute(q, params or ())
            return cur.fetchall()


def fetch_one(q, params=None):
    rows = fetch_all(q, params)
    return rows[0] if rows else None


def execute(q, params=None):
    with get_conn() as conn:
        with conn.cursor(row_factory=dict_row) as cur:
            cur.execute(q, params or ())
        conn.commit()


def execute_returning(q, params=None):
    with get_conn() as conn:
        with conn.cursor(row_factory=dict_row) as cur:
            cur.execute(q, params or ())
            rows = cur.fetchall()
        conn.commit()
        return rows


@contextmanager
def transaction():
    with get_conn() as conn:
        with conn.transaction():
            yield conn


store = LedgerStore(fetch_one, fetch_all, execute_returning, execute, transaction=transaction)

# =============================================================================
# Quiz definition store (policy constants per quiz)
# =============================================================================
def _quiz_row(quiz_id: int) -> Optional[Dict[str, Any]]:
    try:
        return fetch_one("""
            SELECT id, course_id, pass_score, per_violation_penalty, tab_switch_threshold,
                   tab_switch_penalty, max_penalty, teacher_unlock_quota, hod_unlock_quota
              FROM public.quizzes
             WHERE id = %s;
        """, (quiz_id,))
    except Exception as e:
        print(f"[quiz] policy lookup failed for quiz {quiz_id}: {e}")
        return None


def scoring_policy(quiz_id: int) -> ScoringPolicy:
    return ScoringPolicy.from_row(_quiz_row(quiz_id), DEFAULT_POLICY)


def unlock_quotas(quiz_id: int) -> UnlockQuotas:
    return UnlockQuotas.from_row(_quiz_row(quiz_id), DEFAULT_QUOTAS)


def course_for_quiz(quiz_id: int) -> Optional[int]:
    row = _quiz_row(quiz_id)
    return (row or {}).get("course_id")


# =============================================================================
# Membership scopes (sections / departments / schools)
# =============================================================================
def _ids(rows: Optional[List[Dict[str, Any]]], key: str) -> List[int]:
    return sorted({r[key] for r in (rows or []) if r.get(key) is not None})


def scope_for(user_id: int, role: AuthorityLevel) -> Dict[str, Any]:
    """Courses/students the caller may act on. Lookup failure -> empty scope."""
    try:
        if role == AuthorityLevel.TEACHER:
            students = fetch_all("""
                SELECT DISTINCT ss.student_id
                  FROM public.section_students ss
                  JOIN public.sections s ON s.id = ss.section_id
                 WHERE s.teacher_id = %s;
            """, (user_id,))
            return {"course_ids": None, "student_ids": _ids(students, "student_id")}
        if role == AuthorityLevel.HOD:
            courses = fetch_all("""
                SELECT c.id
                  FROM public.courses c
                  JOIN public.users u ON u.department_id = c.department_id
                 WHERE u.id = %s;
            """, (user_id,))
            students = fetch_all("""
                SELECT DISTINCT ss.student_id
                  FROM public.section_students ss
                  JOIN public.sections s ON s.id = ss.section_id
                  JOIN public.users u ON u.department_id = s.department_id
                 WHERE u.id = %s;
            """, (user_id,))
            return {"course_ids": _ids(courses, "id"), "student_ids": _ids(students, "student_id")}
        if role == AuthorityLevel.DEAN:
            courses = fetch_all("""
                SELECT c.id
                  FROM public.courses c
                  JOIN public.departments d ON d.id = c.department_id
                  JOIN public.users u ON u.school_id = d.school_id
                 WHERE u.id = %s;
            """, (user_id,))
            return {"course_ids": _ids(courses, "id"), "student_ids": None}
    except Exception as e:
        print(f"[scope] lookup failed for user {user_id} ({role.name}): {e}")
    return {"course_ids": [], "student_ids": []}


# =============================================================================
# Identity helpers
# =============================================================================
def _session_email() -> Optional[str]:
    u = session.get("user") or {}
    e = (u.get("email") or "").strip().lower()
    return e or None


def _iap_email() -> Optional[str]:
    h = (
        request.headers.get("X-Goog-Authenticated-User-Email")
        or request.headers.get("X-Appengine-User-Email")
    )
    if not h:
        return None
    return h.split(":", 1)[-1].strip().lower()


def current_user_email() -> Optional[str]:
    return _session_email() or _iap_email()


def _user_by_email(email: str) -> Optional[Dict[str, Any]]:
    return fetch_one("SELECT id, role FROM public.users WHERE lower(email) = lower(%s);", (email,))


def _is_public_path(path: str) -> bool:
    return path in {"/healthz", BASE_PATH + "/healthz", "/favicon.ico"}


@app.before_request
def attach_identity():
    if _is_public_path(request.path):
        return
    email = current_user_email()
    if email:
        try:
            row = _user_by_email(email)
        except Exception as e:
            print(f"[Auth] user lookup failed for {email}: {e}")
            row = None
        if row:
            g.user_email = email
            g.user_id = row["id"]
            g.user_role = (row.get("role") or "student").lower()
            return
    if AUTH_REQUIRED:
        return jsonify({"ok": False, "error": "unauthorized"}), 401


# =============================================================================
# Routes
# =============================================================================
@app.get("/healthz")
def healthz():
    try:
        row = fetch_one("SELECT 1 AS ok;")
        ok = bool(row and row.get("ok") == 1)
        return ("ok" if ok else "db-fail", 200 if ok else 500)
    except Exception as e:
        return (f"error: {e}", 500)


@app.get("/favicon.ico")
def favicon():
    return ("", 204)


if AUTO_CREATE_SCHEMA:
    try:
        store.ensure_schema()
        print("[DB] quiz_locks / quiz_attempts schema ensured")
    except Exception as e:
        print(f"[DB] schema bootstrap failed: {e}")

app.register_blueprint(create_quiz_unlock_blueprint(BASE_PATH, {
    "store": store,
    "scoring_policy": scoring_policy,
    "unlock_quotas": unlock_quotas,
    "scope_for": scope_for,
    "course_for_quiz": course_for_quiz,
}))

# =============================================================================
# Local dev entry
# =============================================================================
if __name__ == "__main__":
    port = int(os.environ.get("PORT", 8080))
    app.run(host="0.0.0.0", port=port, debug=True)
