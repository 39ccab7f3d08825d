# FILE: atg/ledger.py
from __future__ import annotations

"""
Reputation ledger: append-only feedback records + per-subject aggregates.

Goals:
  - Payment-weighted aggregation with a single scoring function shared by
    every read path (get_score / meets_threshold / tier), so reads never drift.
  - Validation before mutation: a rejected submission leaves no partial record.
  - Append-only: no delete or correct API; disputes are settled by
    submitting compensating feedback.
  - Two backends behind one interface: in-memory (tests / dev) and SQLite
    (WAL, versioned schema).

Notes:
  - Score = 50 when total weight is 0, else round(positive * 100 / total),
    rounding half up, clamped to [0, 100].
  - A FeedbackRecorded event is emitted after the write commits; observers
    (outbound cross-domain propagation) never run inside the transaction.
"""

import os
import sqlite3
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Dict, Iterator, List, Optional, Tuple

from .collaborators import SubjectRegistry, normalize_identifier
from .errors import InvalidInput, InvalidScore, UnknownSubject
from .events import EventBus, FeedbackRecorded
from .utils import clamp, is_finite_number, round_half_up

NEUTRAL_SCORE = 50
_MAX_EVIDENCE_LEN = 1024
_MAX_LIST = 1000


# ---------- Scoring ----------


def score_from_weights(positive_weight: float, total_weight: float) -> int:
    """The only place a reputation score is derived."""
    if total_weight <= 0:
        return NEUTRAL_SCORE
    return int(clamp(round_half_up(positive_weight * 100.0 / total_weight), 0, 100))


def tier_for(score: int) -> str:
    if score >= 90:
        return "premium"
    if score >= 70:
        return "standard"
    if score >= 50:
        return "basic"
    return "restricted"


# ---------- Data Models ----------


@dataclass(frozen=True)
class FeedbackRecord:
    seq: int
    subject: str
    submitter: str
    signed_score: int
    weight: float
    evidence: str
    timestamp: float

    def to_dict(self) -> Dict[str, object]:
        return {
            "seq": self.seq,
            "subject": self.subject,
            "submitter": self.submitter,
            "signed_score": self.signed_score,
            "weight": self.weight,
            "evidence": self.evidence,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True)
class ReputationAggregate:
    subject: str
    positive_weight: float = 0.0
    negative_weight: float = 0.0
    total_weight: float = 0.0
    feedback_count: int = 0
    last_updated: float = 0.0

    @property
    def score(self) -> int:
        return score_from_weights(self.positive_weight, self.total_weight)

    def applied(self, signed_score: int, weight: float, ts: float) -> "ReputationAggregate":
        return ReputationAggregate(
            subject=self.subject,
            positive_weight=self.positive_weight + (weight if signed_score > 0 else 0.0),
            negative_weight=self.negative_weight + (weight if signed_score < 0 else 0.0),
            total_weight=self.total_weight + weight,
            feedback_count=self.feedback_count + 1,
            last_updated=ts,
        )

    def to_dict(self) -> Dict[str, object]:
        return {
            "subject": self.subject,
            "score": self.score,
            "tier": tier_for(self.score),
            "positive_weight": self.positive_weight,
            "negative_weight": self.negative_weight,
            "total_weight": self.total_weight,
            "feedback_count": self.feedback_count,
            "last_updated": self.last_updated,
        }


# ---------- Exceptions ----------


class LedgerError(RuntimeError):
    """Storage-level failure (not a caller error)."""


# ---------- Base Interface ----------


class ReputationLedger:
    """
    Abstract reputation ledger. Subclasses implement storage only
    (`_append`, `get_aggregate`, `list_feedback`, `_iter_aggregates`);
    validation, scoring and event emission live here.
    """

    def __init__(
        self,
        registry: SubjectRegistry,
        *,
        events: Optional[EventBus] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.registry = registry
        self.events = events or EventBus()
        self._clock = clock

    # ----- writes -----

    def submit_feedback(
        self,
        subject: str,
        score: int,
        weight: float,
        evidence: str = "",
        *,
        submitter: str = "",
    ) -> FeedbackRecord:
        key = normalize_identifier(subject)
        if isinstance(score, bool) or not isinstance(score, int) or score not in (-1, 0, 1):
            raise InvalidScore("score must be one of -1, 0, 1", score=score)
        if not is_finite_number(weight) or weight < 0:
            raise InvalidInput("weight must be a finite non-negative number", weight=weight)
        evidence = evidence or ""
        if not isinstance(evidence, str) or len(evidence) > _MAX_EVIDENCE_LEN:
            raise InvalidInput("evidence must be a string of at most 1024 characters")
        if not key or not self.registry.is_registered(key):
            raise UnknownSubject(key or subject)

        ts = self._clock()
        record, agg = self._append(
            key,
            submitter=normalize_identifier(submitter),
            signed_score=int(score),
            weight=float(weight),
            evidence=evidence,
            ts=ts,
        )
        self.events.emit(
            FeedbackRecorded(
                subject=key,
                seq=record.seq,
                signed_score=record.signed_score,
                weight=record.weight,
                score_after=agg.score,
                timestamp=ts,
            )
        )
        return record

    def _append(
        self,
        subject: str,
        *,
        submitter: str,
        signed_score: int,
        weight: float,
        evidence: str,
        ts: float,
    ) -> Tuple[FeedbackRecord, ReputationAggregate]:
        raise NotImplementedError

    # ----- reads -----

    def get_aggregate(self, subject: str) -> Optional[ReputationAggregate]:
        raise NotImplementedError

    def list_feedback(self, subject: str, limit: int = 100) -> List[FeedbackRecord]:
        """Feedback records for `subject`, ascending by sequence."""
        raise NotImplementedError

    def _iter_aggregates(self) -> Iterator[ReputationAggregate]:
        raise NotImplementedError

    def get_score(self, subject: str) -> int:
        agg = self.get_aggregate(normalize_identifier(subject))
        return agg.score if agg is not None else NEUTRAL_SCORE

    def meets_threshold(self, subject: str, min_score: float) -> bool:
        return self.get_score(subject) >= min_score

    def get_feedback_count(self, subject: str) -> int:
        agg = self.get_aggregate(normalize_identifier(subject))
        return agg.feedback_count if agg is not None else 0

    def stats(self) -> Dict[str, object]:
        tiers = {"premium": 0, "standard": 0, "basic": 0, "restricted": 0}
        subjects = 0
        feedback = 0
        for agg in self._iter_aggregates():
            subjects += 1
            feedback += agg.feedback_count
            tiers[tier_for(agg.score)] += 1
        return {"subjects": subjects, "feedback": feedback, "tiers": tiers}


# ---------- In-Memory Implementation (tests / dev) ----------


class InMemoryReputationLedger(ReputationLedger):
    def __init__(self, registry: SubjectRegistry, **kwargs) -> None:
        super().__init__(registry, **kwargs)
        self._lock = threading.RLock()
        self._records: Dict[str, List[FeedbackRecord]] = {}
        self._aggs: Dict[str, ReputationAggregate] = {}
        self._seq = 0

    def _append(
        self,
        subject: str,
        *,
        submitter: str,
        signed_score: int,
        weight: float,
        evidence: str,
        ts: float,
    ) -> Tuple[FeedbackRecord, ReputationAggregate]:
        with self._lock:
            self._seq += 1
            rec = FeedbackRecord(
                seq=self._seq,
                subject=subject,
                submitter=submitter,
                signed_score=signed_score,
                weight=weight,
                evidence=evidence,
                timestamp=ts,
            )
            agg = self._aggs.get(subject) or ReputationAggregate(subject=subject)
            agg = agg.applied(signed_score, weight, ts)
            self._records.setdefault(subject, []).append(rec)
            self._aggs[subject] = agg
            return rec, agg

    def get_aggregate(self, subject: str) -> Optional[ReputationAggregate]:
        with self._lock:
            return self._aggs.get(subject)

    def list_feedback(self, subject: str, limit: int = 100) -> List[FeedbackRecord]:
        limit = max(1, min(int(limit), _MAX_LIST))
        with self._lock:
            return list(self._records.get(normalize_identifier(subject), [])[:limit])

    def _iter_aggregates(self) -> Iterator[ReputationAggregate]:
        with self._lock:
            snapshot = list(self._aggs.values())
        return iter(snapshot)


# ---------- SQLite Implementation ----------

_SCHEMA_V1 = """
PRAGMA journal_mode=WAL;
PRAGMA synchronous=NORMAL;

CREATE TABLE IF NOT EXISTS feedback (
  seq             INTEGER PRIMARY KEY AUTOINCREMENT,
  subject         TEXT NOT NULL,
  submitter       TEXT NOT NULL,
  signed_score    INTEGER NOT NULL CHECK (signed_score IN (-1, 0, 1)),
  weight          REAL NOT NULL CHECK (weight >= 0),
  evidence        TEXT NOT NULL,
  ts              REAL NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_feedback_subject_seq ON feedback(subject, seq);

CREATE TABLE IF NOT EXISTS aggregates (
  subject         TEXT PRIMARY KEY,
  positive_weight REAL NOT NULL,
  negative_weight REAL NOT NULL,
  total_weight    REAL NOT NULL,
  feedback_count  INTEGER NOT NULL,
  last_updated    REAL NOT NULL
);
"""

# append-only at the storage layer too
_SCHEMA_V2 = """
CREATE TRIGGER IF NOT EXISTS trg_feedback_no_update
BEFORE UPDATE ON feedback
BEGIN
  SELECT RAISE(ABORT, 'feedback is append-only');
END;

CREATE TRIGGER IF NOT EXISTS trg_feedback_no_delete
BEFORE DELETE ON feedback
BEGIN
  SELECT RAISE(ABORT, 'feedback is append-only');
END;
"""


class SQLiteReputationLedger(ReputationLedger):
    """
    Durable single-file ledger. Thread-safe via per-thread connections and a
    process lock around write transactions.
    """

    def __init__(self, registry: SubjectRegistry, path: Optional[str] = None, **kwargs) -> None:
        super().__init__(registry, **kwargs)
        self._path = path or os.environ.get("ATG_LEDGER_DB", "atg_reputation.db")
        self._lock = threading.RLock()
        self._local = threading.local()
        self._migrate()

    def _get_conn(self) -> sqlite3.Connection:
        conn = getattr(self._local, "conn", None)
        if conn is not None:
            return conn
        conn = sqlite3.connect(
            self._path,
            timeout=30.0,
            isolation_level=None,
            check_same_thread=False,
        )
        conn.execute("PRAGMA busy_timeout=30000")
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        self._local.conn = conn
        return conn

    def _migrate(self) -> None:
        conn = self._get_conn()
        with self._lock:
            ver = conn.execute("PRAGMA user_version").fetchone()[0]
            if ver == 0:
                conn.executescript(_SCHEMA_V1)
                conn.execute("PRAGMA user_version=1")
                ver = 1
            if ver < 2:
                conn.executescript(_SCHEMA_V2)
                conn.execute("PRAGMA user_version=2")

    @contextmanager
    def _txn(self):
        conn = self._get_conn()
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        conn.execute("COMMIT")

    @staticmethod
    def _row_to_agg(row) -> ReputationAggregate:
        subject, pos, neg, total, count, updated = row
        return ReputationAggregate(
            subject=subject,
            positive_weight=float(pos),
            negative_weight=float(neg),
            total_weight=float(total),
            feedback_count=int(count),
            last_updated=float(updated),
        )

    def _get_agg_row(self, conn: sqlite3.Connection, subject: str):
        return conn.execute(
            "SELECT subject, positive_weight, negative_weight, total_weight, feedback_count, last_updated "
            "FROM aggregates WHERE subject=?",
            (subject,),
        ).fetchone()

    def _append(
        self,
        subject: str,
        *,
        submitter: str,
        signed_score: int,
        weight: float,
        evidence: str,
        ts: float,
    ) -> Tuple[FeedbackRecord, ReputationAggregate]:
        try:
            with self._lock, self._txn() as conn:
                cur = conn.execute(
                    "INSERT INTO feedback(subject, submitter, signed_score, weight, evidence, ts) "
                    "VALUES(?,?,?,?,?,?)",
                    (subject, submitter, signed_score, weight, evidence, ts),
                )
                seq = int(cur.lastrowid)
                row = self._get_agg_row(conn, subject)
                agg = self._row_to_agg(row) if row else ReputationAggregate(subject=subject)
                agg = agg.applied(signed_score, weight, ts)
                conn.execute(
                    "INSERT INTO aggregates(subject, positive_weight, negative_weight, total_weight, feedback_count, last_updated) "
                    "VALUES(?,?,?,?,?,?) "
                    "ON CONFLICT(subject) DO UPDATE SET positive_weight=excluded.positive_weight, "
                    "negative_weight=excluded.negative_weight, total_weight=excluded.total_weight, "
                    "feedback_count=excluded.feedback_count, last_updated=excluded.last_updated",
                    (
                        subject,
                        agg.positive_weight,
                        agg.negative_weight,
                        agg.total_weight,
                        agg.feedback_count,
                        agg.last_updated,
                    ),
                )
        except sqlite3.Error as exc:
            raise LedgerError(f"feedback append failed: {exc}") from exc

        rec = FeedbackRecord(
            seq=seq,
            subject=subject,
            submitter=submitter,
            signed_score=signed_score,
            weight=weight,
            evidence=evidence,
            timestamp=ts,
        )
        return rec, agg

    def get_aggregate(self, subject: str) -> Optional[ReputationAggregate]:
        row = self._get_agg_row(self._get_conn(), subject)
        return self._row_to_agg(row) if row else None

    def list_feedback(self, subject: str, limit: int = 100) -> List[FeedbackRecord]:
        limit = max(1, min(int(limit), _MAX_LIST))
        rows = self._get_conn().execute(
            "SELECT seq, subject, submitter, signed_score, weight, evidence, ts "
            "FROM feedback WHERE subject=? ORDER BY seq ASC LIMIT ?",
            (normalize_identifier(subject), limit),
        ).fetchall()
        return [
            FeedbackRecord(
                seq=int(r[0]),
                subject=r[1],
                submitter=r[2],
                signed_score=int(r[3]),
                weight=float(r[4]),
                evidence=r[5],
                timestamp=float(r[6]),
            )
            for r in rows
        ]

    def _iter_aggregates(self) -> Iterator[ReputationAggregate]:
        rows = self._get_conn().execute(
            "SELECT subject, positive_weight, negative_weight, total_weight, feedback_count, last_updated "
            "FROM aggregates"
        ).fetchall()
        return (self._row_to_agg(r) for r in rows)

    def close(self) -> None:
        conn = getattr(self._local, "conn", None)
        if conn is not None:
            conn.close()
            self._local.conn = None


def make_reputation_ledger(
    dsn: str,
    registry: SubjectRegistry,
    *,
    events: Optional[EventBus] = None,
    clock: Callable[[], float] = time.time,
) -> ReputationLedger:
    """
    Build a ledger from a DSN: "memory://" or "sqlite:///path/to/file.db".
    """
    dsn = (dsn or "memory://").strip()
    if dsn.startswith("memory://"):
        return InMemoryReputationLedger(registry, events=events, clock=clock)
    if dsn.startswith("sqlite:///"):
        path = dsn[len("sqlite:///"):]
        if not path:
            raise ValueError("sqlite DSN requires a file path")
        return SQLiteReputationLedger(registry, path, events=events, clock=clock)
    raise ValueError(f"unsupported ledger DSN: {dsn!r}")


__all__ = [
    "NEUTRAL_SCORE",
    "score_from_weights",
    "tier_for",
    "FeedbackRecord",
    "ReputationAggregate",
    "LedgerError",
    "ReputationLedger",
    "InMemoryReputationLedger",
    "SQLiteReputationLedger",
    "make_reputation_ledger",
]
