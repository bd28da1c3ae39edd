import copy
import sys
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from ledger import ConcurrentModification, Ledger, UnlockQuotas  # noqa: E402


class MemoryStore:
    """Same surface as LedgerStore, backed by dicts, with the same
    version compare-and-swap on save()."""

    def __init__(self):
        self.rows: Dict[int, Ledger] = {}
        self.attempts: List[Dict[str, Any]] = []
        self.saves = 0
        self.fail_next_save: Optional[Exception] = None
        self._next_id = 1
        self._pair_lock = threading.Lock()

    def _copy(self, ledger: Optional[Ledger]) -> Optional[Ledger]:
        return copy.deepcopy(ledger) if ledger is not None else None

    @contextmanager
    def serialized(self, student_id, quiz_id):
        # one lock for every pair; rollback restores the snapshot taken on entry
        with self._pair_lock:
            snapshot = (copy.deepcopy(self.rows), list(self.attempts), self._next_id)
            try:
                yield self
            except Exception:
                self.rows, self.attempts, self._next_id = snapshot
                raise

    def get(self, lock_id):
        return self._copy(self.rows.get(lock_id))

    def find(self, student_id, quiz_id):
        for l in self.rows.values():
            if l.student_id == student_id and l.quiz_id == quiz_id:
                return self._copy(l)
        return None

    def create(self, ledger: Ledger):
        if self.find(ledger.student_id, ledger.quiz_id) is not None:
            return None
        row = copy.deepcopy(ledger)
        row.id = self._next_id
        row.version = 0
        self._next_id += 1
        self.rows[row.id] = row
        return self._copy(row)

    def save(self, ledger: Ledger):
        if self.fail_next_save is not None:
            exc, self.fail_next_save = self.fail_next_save, None
            raise exc
        cur = self.rows.get(ledger.id)
        if cur is None or cur.version != ledger.version:
            raise ConcurrentModification(f"ledger {ledger.id} changed since version {ledger.version}")
        row = copy.deepcopy(ledger)
        row.version = cur.version + 1
        self.rows[row.id] = row
        self.saves += 1
        return self._copy(row)

    def list_ledgers(self, course_ids=None, student_ids=None, locked_only=True):
        out = []
        for l in self.rows.values():
            if locked_only and not l.is_locked:
                continue
            if course_ids is not None or student_ids is not None:
                if l.course_id not in set(course_ids or []) and l.student_id not in set(student_ids or []):
                    continue
            out.append(self._copy(l))
        return out

    def list_unlocked_by(self, actor_id):
        return [self._copy(l) for l in self.rows.values()
                if any(h.get("unlocked_by") == actor_id for h in l.unlock_history)]

    def attempts_taken(self, student_id, quiz_id):
        return sum(1 for a in self.attempts if a["student_id"] == student_id and a["quiz_id"] == quiz_id)

    def insert_attempt(self, student_id, quiz_id, course_id, result, security, lock_reason):
        row = {
            "id": len(self.attempts) + 1,
            "student_id": student_id,
            "quiz_id": quiz_id,
            "course_id": course_id,
            "result": result,
            "security": security,
            "lock_reason": lock_reason,
        }
        self.attempts.append(row)
        return row

    # test helper: write a row directly, bypassing CAS
    def put(self, ledger: Ledger) -> Ledger:
        if ledger.id is None:
            ledger.id = self._next_id
            self._next_id += 1
        self.rows[ledger.id] = copy.deepcopy(ledger)
        return ledger


@pytest.fixture
def mem_store():
    return MemoryStore()


@pytest.fixture
def quotas():
    return UnlockQuotas()
