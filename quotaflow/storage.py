"""Storage backends for plans, overrides, usage counters and recommendations."""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime
from typing import Dict, Iterator, List, Optional, Protocol, Tuple
import json
import logging
import sqlite3
import threading

from quotaflow.errors import StorageUnavailable
from quotaflow.limits import PeriodType
from quotaflow.models import (
    CustomOverride,
    Denial,
    OverrideStatus,
    Plan,
    PlanCategory,
    Recommendation,
    RecommendationReason,
    RecommendationStatus,
    Reservation,
    Subscription,
    UsageCounter,
)
from quotaflow.periods import PeriodKey, ensure_utc

logger = logging.getLogger(__name__)

CounterKey = Tuple[str, str, str, datetime]


class StorageBackend(Protocol):
    """Storage backend interface.

    Counter and reservation writes must be atomic per key.
    """

    def save_plan(self, plan: Plan) -> Plan:
        ...

    def get_plan(self, plan_id: str) -> Optional[Plan]:
        ...

    def list_plans(self) -> List[Plan]:
        ...

    def set_subscription(self, subscription: Subscription) -> Subscription:
        ...

    def get_subscription(self, subject_id: str) -> Optional[Subscription]:
        ...

    def count_active_subscriptions(self, plan_id: str) -> int:
        ...

    def save_override(self, override: CustomOverride) -> CustomOverride:
        ...

    def get_override(self, override_id: str) -> Optional[CustomOverride]:
        ...

    def list_overrides(self, workspace_id: str) -> List[CustomOverride]:
        ...

    def increment_counter(
        self, subject_id: str, meter: str, key: PeriodKey, delta_units: int, now: datetime
    ) -> int:
        ...

    def increment_counters(
        self, subject_id: str, meter: str, keys: List[PeriodKey], delta_units: int, now: datetime
    ) -> List[int]:
        ...

    def raise_peak(
        self, subject_id: str, meter: str, key: PeriodKey, candidate: float, now: datetime
    ) -> float:
        ...

    def get_counter(self, subject_id: str, meter: str, key: PeriodKey) -> Optional[UsageCounter]:
        ...

    def list_counters(
        self,
        subject_id: str,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> List[UsageCounter]:
        ...

    def delete_counters_before(self, cutoff: datetime) -> int:
        ...

    def list_subjects(self) -> List[str]:
        ...

    def save_recommendation(self, recommendation: Recommendation) -> Recommendation:
        ...

    def get_recommendation(self, recommendation_id: str) -> Optional[Recommendation]:
        ...

    def list_recommendations(self, subject_id: str) -> List[Recommendation]:
        ...

    def try_reserve(self, reservation: Reservation, limit: Optional[float], now: datetime) -> bool:
        ...

    def release_reservation(self, token: str) -> Optional[Reservation]:
        ...

    def reserved_quantity(self, subject_id: str, meter: str, now: datetime) -> float:
        ...

    def add_denial(self, denial: Denial) -> Denial:
        ...

    def count_denials(self, subject_id: str, since: datetime) -> Dict[str, int]:
        ...

    def delete_expired_reservations(self, now: datetime) -> int:
        ...

    def delete_denials_before(self, cutoff: datetime) -> int:
        ...


def _counter_key(subject_id: str, meter: str, key: PeriodKey) -> CounterKey:
    return (subject_id, meter, key.period_type.value, key.start)


class InMemoryStorage:
    """In-memory storage backend (default).

    A single lock serialises every read-modify-write, which makes counter
    updates linearizable within one process.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._plans: Dict[str, Plan] = {}
        self._subscriptions: Dict[str, Subscription] = {}
        self._overrides: Dict[str, CustomOverride] = {}
        self._counters: Dict[CounterKey, UsageCounter] = {}
        self._recommendations: Dict[str, Recommendation] = {}
        self._reservations: Dict[str, Reservation] = {}
        self._denials: List[Denial] = []

    # Plans and subscriptions

    def save_plan(self, plan: Plan) -> Plan:
        with self._lock:
            self._plans[plan.plan_id] = plan
        return plan

    def get_plan(self, plan_id: str) -> Optional[Plan]:
        return self._plans.get(plan_id)

    def list_plans(self) -> List[Plan]:
        with self._lock:
            return list(self._plans.values())

    def set_subscription(self, subscription: Subscription) -> Subscription:
        with self._lock:
            self._subscriptions[subscription.subject_id] = subscription
        return subscription

    def get_subscription(self, subject_id: str) -> Optional[Subscription]:
        subscription = self._subscriptions.get(subject_id)
        if subscription and subscription.status == "active":
            return subscription
        return None

    def count_active_subscriptions(self, plan_id: str) -> int:
        with self._lock:
            return sum(
                1 for s in self._subscriptions.values()
                if s.plan_id == plan_id and s.status == "active"
            )

    # Overrides

    def save_override(self, override: CustomOverride) -> CustomOverride:
        with self._lock:
            self._overrides[override.override_id] = override
        return override

    def get_override(self, override_id: str) -> Optional[CustomOverride]:
        return self._overrides.get(override_id)

    def list_overrides(self, workspace_id: str) -> List[CustomOverride]:
        with self._lock:
            return [o for o in self._overrides.values() if o.workspace_id == workspace_id]

    # Counters

    def _ensure_counter(
        self, subject_id: str, meter: str, key: PeriodKey, now: datetime
    ) -> UsageCounter:
        ckey = _counter_key(subject_id, meter, key)
        counter = self._counters.get(ckey)
        if counter is None:
            counter = UsageCounter(
                subject_id=subject_id,
                meter=meter,
                period_type=key.period_type,
                period_start=key.start,
                period_end=key.end,
                updated_at=now,
            )
            self._counters[ckey] = counter
        return counter

    def increment_counter(
        self, subject_id: str, meter: str, key: PeriodKey, delta_units: int, now: datetime
    ) -> int:
        return self.increment_counters(subject_id, meter, [key], delta_units, now)[0]

    def increment_counters(
        self, subject_id: str, meter: str, keys: List[PeriodKey], delta_units: int, now: datetime
    ) -> List[int]:
        with self._lock:
            totals = []
            for key in keys:
                counter = self._ensure_counter(subject_id, meter, key, now)
                counter.consumed_units += delta_units
                counter.updated_at = now
                totals.append(counter.consumed_units)
            return totals

    def raise_peak(
        self, subject_id: str, meter: str, key: PeriodKey, candidate: float, now: datetime
    ) -> float:
        with self._lock:
            counter = self._ensure_counter(subject_id, meter, key, now)
            if candidate > counter.peak_concurrent:
                counter.peak_concurrent = candidate
                counter.updated_at = now
            return counter.peak_concurrent

    def get_counter(self, subject_id: str, meter: str, key: PeriodKey) -> Optional[UsageCounter]:
        with self._lock:
            counter = self._counters.get(_counter_key(subject_id, meter, key))
            return replace(counter) if counter else None

    def list_counters(
        self,
        subject_id: str,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> List[UsageCounter]:
        with self._lock:
            counters = [
                replace(c) for c in self._counters.values()
                if c.subject_id == subject_id
                and (since is None or c.period_start >= since)
                and (until is None or c.period_end <= until)
            ]
        return sorted(counters, key=lambda c: (c.period_start, c.meter, c.period_type.value))

    def delete_counters_before(self, cutoff: datetime) -> int:
        with self._lock:
            stale = [k for k, c in self._counters.items() if c.period_end <= cutoff]
            for k in stale:
                del self._counters[k]
            return len(stale)

    def list_subjects(self) -> List[str]:
        with self._lock:
            subjects = {c.subject_id for c in self._counters.values()}
            subjects.update(self._subscriptions)
        return sorted(subjects)

    # Recommendations

    def save_recommendation(self, recommendation: Recommendation) -> Recommendation:
        with self._lock:
            self._recommendations[recommendation.recommendation_id] = recommendation
        return recommendation

    def get_recommendation(self, recommendation_id: str) -> Optional[Recommendation]:
        return self._recommendations.get(recommendation_id)

    def list_recommendations(self, subject_id: str) -> List[Recommendation]:
        with self._lock:
            recs = [r for r in self._recommendations.values() if r.subject_id == subject_id]
        return sorted(recs, key=lambda r: r.created_at)

    # Reservations and denials

    def try_reserve(self, reservation: Reservation, limit: Optional[float], now: datetime) -> bool:
        with self._lock:
            self.delete_expired_reservations(now)
            held = self.reserved_quantity(reservation.subject_id, reservation.meter, now)
            if limit is not None and held + reservation.quantity > limit:
                return False
            self._reservations[reservation.token] = reservation
            return True

    def release_reservation(self, token: str) -> Optional[Reservation]:
        with self._lock:
            reservation = self._reservations.pop(token, None)
        if reservation is None:
            return None
        return replace(reservation, released=True)

    def reserved_quantity(self, subject_id: str, meter: str, now: datetime) -> float:
        with self._lock:
            return sum(
                r.quantity for r in self._reservations.values()
                if r.subject_id == subject_id and r.meter == meter and r.is_active(now)
            )

    def add_denial(self, denial: Denial) -> Denial:
        with self._lock:
            self._denials.append(denial)
        return denial

    def count_denials(self, subject_id: str, since: datetime) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        with self._lock:
            for d in self._denials:
                if d.subject_id == subject_id and d.timestamp >= since:
                    counts[d.resource] = counts.get(d.resource, 0) + 1
        return counts

    def delete_expired_reservations(self, now: datetime) -> int:
        with self._lock:
            stale = [t for t, r in self._reservations.items() if not r.is_active(now)]
            for token in stale:
                del self._reservations[token]
            return len(stale)

    def delete_denials_before(self, cutoff: datetime) -> int:
        with self._lock:
            kept = [d for d in self._denials if d.timestamp >= cutoff]
            removed = len(self._denials) - len(kept)
            self._denials = kept
            return removed


def _ts(moment: Optional[datetime]) -> Optional[str]:
    if moment is None:
        return None
    return ensure_utc(moment).isoformat(timespec="microseconds")


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return ensure_utc(datetime.fromisoformat(value))


class SQLiteStorage:
    """SQLite-backed storage backend.

    Counter updates are single upsert statements run inside an immediate
    transaction, so they stay atomic across processes sharing the file.
    """

    def __init__(self, db_path: str = "quotaflow.db", timeout: float = 5.0):
        self._lock = threading.RLock()
        try:
            self._conn = sqlite3.connect(
                db_path, timeout=timeout, check_same_thread=False, isolation_level=None
            )
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL;")
            self._conn.execute("PRAGMA foreign_keys=ON;")
            self._init_schema()
        except sqlite3.Error as exc:
            raise StorageUnavailable(f"cannot open {db_path}: {exc}") from exc

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            try:
                self._conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as exc:
                raise StorageUnavailable(f"cannot start transaction: {exc}") from exc
            try:
                yield self._conn
                self._conn.execute("COMMIT")
            except sqlite3.Error as exc:
                self._rollback()
                raise StorageUnavailable(str(exc)) from exc
            except BaseException:
                self._rollback()
                raise

    def _rollback(self) -> None:
        if not self._conn.in_transaction:
            return
        try:
            self._conn.execute("ROLLBACK")
        except sqlite3.Error as exc:
            logger.error("Rollback failed: %s", exc)

    def _query(self, sql: str, params: tuple = ()) -> List[sqlite3.Row]:
        with self._lock:
            try:
                return self._conn.execute(sql, params).fetchall()
            except sqlite3.Error as exc:
                raise StorageUnavailable(str(exc)) from exc

    def _init_schema(self) -> None:
        self._conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS plans (
                plan_id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                code TEXT NOT NULL,
                category TEXT NOT NULL,
                price_monthly REAL NOT NULL,
                limits TEXT NOT NULL,
                priority_level INTEGER NOT NULL,
                allowed_file_types TEXT NOT NULL,
                version INTEGER NOT NULL,
                supersedes TEXT,
                is_active INTEGER NOT NULL,
                is_public INTEGER NOT NULL,
                created_at TEXT NOT NULL
            );
            CREATE TABLE IF NOT EXISTS subscriptions (
                subject_id TEXT PRIMARY KEY,
                plan_id TEXT NOT NULL,
                status TEXT NOT NULL,
                started_at TEXT NOT NULL
            );
            CREATE TABLE IF NOT EXISTS custom_overrides (
                override_id TEXT PRIMARY KEY,
                workspace_id TEXT NOT NULL,
                base_plan_id TEXT,
                limits TEXT NOT NULL,
                price REAL,
                contract_start TEXT NOT NULL,
                contract_end TEXT,
                status TEXT NOT NULL,
                requested_by TEXT,
                approved_by TEXT,
                approved_at TEXT,
                notes TEXT,
                created_at TEXT NOT NULL
            );
            CREATE TABLE IF NOT EXISTS usage_counters (
                subject_id TEXT NOT NULL,
                meter TEXT NOT NULL,
                period_type TEXT NOT NULL,
                period_start TEXT NOT NULL,
                period_end TEXT NOT NULL,
                consumed_units INTEGER NOT NULL DEFAULT 0 CHECK (consumed_units >= 0),
                peak_concurrent REAL NOT NULL DEFAULT 0,
                updated_at TEXT NOT NULL,
                UNIQUE (subject_id, meter, period_type, period_start)
            );
            CREATE TABLE IF NOT EXISTS recommendations (
                recommendation_id TEXT PRIMARY KEY,
                subject_id TEXT NOT NULL,
                current_plan_id TEXT NOT NULL,
                recommended_plan_id TEXT NOT NULL,
                reason TEXT NOT NULL,
                confidence REAL NOT NULL,
                monthly_cost_delta REAL NOT NULL,
                status TEXT NOT NULL,
                bottlenecks TEXT NOT NULL,
                benefits TEXT NOT NULL,
                growth_trend TEXT NOT NULL,
                periods_observed INTEGER NOT NULL,
                created_at TEXT NOT NULL,
                expires_at TEXT NOT NULL
            );
            CREATE TABLE IF NOT EXISTS reservations (
                token TEXT PRIMARY KEY,
                subject_id TEXT NOT NULL,
                meter TEXT NOT NULL,
                quantity REAL NOT NULL,
                released INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                expires_at TEXT NOT NULL
            );
            CREATE TABLE IF NOT EXISTS denials (
                subject_id TEXT NOT NULL,
                resource TEXT NOT NULL,
                timestamp TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_counters_subject ON usage_counters(subject_id, period_start);
            CREATE INDEX IF NOT EXISTS idx_overrides_workspace ON custom_overrides(workspace_id);
            CREATE INDEX IF NOT EXISTS idx_recommendations_subject ON recommendations(subject_id);
            CREATE INDEX IF NOT EXISTS idx_reservations_subject ON reservations(subject_id, meter);
            CREATE INDEX IF NOT EXISTS idx_denials_subject ON denials(subject_id, timestamp);
            """
        )

    # Plans and subscriptions

    def save_plan(self, plan: Plan) -> Plan:
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO plans (
                    plan_id, name, code, category, price_monthly, limits, priority_level,
                    allowed_file_types, version, supersedes, is_active, is_public, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    plan.plan_id,
                    plan.name,
                    plan.code,
                    plan.category.value,
                    plan.price_monthly,
                    json.dumps(plan.limits),
                    plan.priority_level,
                    json.dumps(plan.allowed_file_types),
                    plan.version,
                    plan.supersedes,
                    1 if plan.is_active else 0,
                    1 if plan.is_public else 0,
                    _ts(plan.created_at),
                ),
            )
        return plan

    def _row_to_plan(self, row: sqlite3.Row) -> Plan:
        return Plan(
            plan_id=row["plan_id"],
            name=row["name"],
            code=row["code"],
            category=PlanCategory(row["category"]),
            price_monthly=row["price_monthly"],
            limits=json.loads(row["limits"]),
            priority_level=row["priority_level"],
            allowed_file_types=json.loads(row["allowed_file_types"]),
            version=row["version"],
            supersedes=row["supersedes"],
            is_active=bool(row["is_active"]),
            is_public=bool(row["is_public"]),
            created_at=_parse_ts(row["created_at"]),
        )

    def get_plan(self, plan_id: str) -> Optional[Plan]:
        rows = self._query("SELECT * FROM plans WHERE plan_id = ?", (plan_id,))
        return self._row_to_plan(rows[0]) if rows else None

    def list_plans(self) -> List[Plan]:
        rows = self._query("SELECT * FROM plans ORDER BY price_monthly ASC, created_at ASC")
        return [self._row_to_plan(row) for row in rows]

    def set_subscription(self, subscription: Subscription) -> Subscription:
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO subscriptions (subject_id, plan_id, status, started_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(subject_id) DO UPDATE SET
                    plan_id=excluded.plan_id,
                    status=excluded.status,
                    started_at=excluded.started_at
                """,
                (
                    subscription.subject_id,
                    subscription.plan_id,
                    subscription.status,
                    _ts(subscription.started_at),
                ),
            )
        return subscription

    def get_subscription(self, subject_id: str) -> Optional[Subscription]:
        rows = self._query(
            "SELECT * FROM subscriptions WHERE subject_id = ? AND status = 'active'",
            (subject_id,),
        )
        if not rows:
            return None
        row = rows[0]
        return Subscription(
            subject_id=row["subject_id"],
            plan_id=row["plan_id"],
            status=row["status"],
            started_at=_parse_ts(row["started_at"]),
        )

    def count_active_subscriptions(self, plan_id: str) -> int:
        rows = self._query(
            "SELECT COUNT(*) AS n FROM subscriptions WHERE plan_id = ? AND status = 'active'",
            (plan_id,),
        )
        return rows[0]["n"]

    # Overrides

    def save_override(self, override: CustomOverride) -> CustomOverride:
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO custom_overrides (
                    override_id, workspace_id, base_plan_id, limits, price, contract_start,
                    contract_end, status, requested_by, approved_by, approved_at, notes, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    override.override_id,
                    override.workspace_id,
                    override.base_plan_id,
                    json.dumps(override.limits),
                    override.price,
                    _ts(override.contract_start),
                    _ts(override.contract_end),
                    override.status.value,
                    override.requested_by,
                    override.approved_by,
                    _ts(override.approved_at),
                    override.notes,
                    _ts(override.created_at),
                ),
            )
        return override

    def _row_to_override(self, row: sqlite3.Row) -> CustomOverride:
        return CustomOverride(
            override_id=row["override_id"],
            workspace_id=row["workspace_id"],
            base_plan_id=row["base_plan_id"],
            limits=json.loads(row["limits"]),
            price=row["price"],
            contract_start=_parse_ts(row["contract_start"]),
            contract_end=_parse_ts(row["contract_end"]),
            status=OverrideStatus(row["status"]),
            requested_by=row["requested_by"],
            approved_by=row["approved_by"],
            approved_at=_parse_ts(row["approved_at"]),
            notes=row["notes"],
            created_at=_parse_ts(row["created_at"]),
        )

    def get_override(self, override_id: str) -> Optional[CustomOverride]:
        rows = self._query("SELECT * FROM custom_overrides WHERE override_id = ?", (override_id,))
        return self._row_to_override(rows[0]) if rows else None

    def list_overrides(self, workspace_id: str) -> List[CustomOverride]:
        rows = self._query(
            "SELECT * FROM custom_overrides WHERE workspace_id = ? ORDER BY created_at ASC",
            (workspace_id,),
        )
        return [self._row_to_override(row) for row in rows]

    # Counters

    def increment_counter(
        self, subject_id: str, meter: str, key: PeriodKey, delta_units: int, now: datetime
    ) -> int:
        return self.increment_counters(subject_id, meter, [key], delta_units, now)[0]

    def increment_counters(
        self, subject_id: str, meter: str, keys: List[PeriodKey], delta_units: int, now: datetime
    ) -> List[int]:
        totals = []
        with self._transaction() as conn:
            for key in keys:
                row = conn.execute(
                    """
                    INSERT INTO usage_counters (
                        subject_id, meter, period_type, period_start, period_end,
                        consumed_units, peak_concurrent, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, 0, ?)
                    ON CONFLICT(subject_id, meter, period_type, period_start) DO UPDATE SET
                        consumed_units = consumed_units + excluded.consumed_units,
                        updated_at = excluded.updated_at
                    RETURNING consumed_units
                    """,
                    (
                        subject_id,
                        meter,
                        key.period_type.value,
                        _ts(key.start),
                        _ts(key.end),
                        delta_units,
                        _ts(now),
                    ),
                ).fetchone()
                totals.append(row["consumed_units"])
        return totals

    def raise_peak(
        self, subject_id: str, meter: str, key: PeriodKey, candidate: float, now: datetime
    ) -> float:
        with self._transaction() as conn:
            row = conn.execute(
                """
                INSERT INTO usage_counters (
                    subject_id, meter, period_type, period_start, period_end,
                    consumed_units, peak_concurrent, updated_at
                ) VALUES (?, ?, ?, ?, ?, 0, ?, ?)
                ON CONFLICT(subject_id, meter, period_type, period_start) DO UPDATE SET
                    peak_concurrent = MAX(peak_concurrent, excluded.peak_concurrent),
                    updated_at = excluded.updated_at
                RETURNING peak_concurrent
                """,
                (
                    subject_id,
                    meter,
                    key.period_type.value,
                    _ts(key.start),
                    _ts(key.end),
                    candidate,
                    _ts(now),
                ),
            ).fetchone()
        return row["peak_concurrent"]

    def _row_to_counter(self, row: sqlite3.Row) -> UsageCounter:
        return UsageCounter(
            subject_id=row["subject_id"],
            meter=row["meter"],
            period_type=PeriodType(row["period_type"]),
            period_start=_parse_ts(row["period_start"]),
            period_end=_parse_ts(row["period_end"]),
            consumed_units=row["consumed_units"],
            peak_concurrent=row["peak_concurrent"],
            updated_at=_parse_ts(row["updated_at"]),
        )

    def get_counter(self, subject_id: str, meter: str, key: PeriodKey) -> Optional[UsageCounter]:
        rows = self._query(
            """
            SELECT * FROM usage_counters
            WHERE subject_id = ? AND meter = ? AND period_type = ? AND period_start = ?
            """,
            (subject_id, meter, key.period_type.value, _ts(key.start)),
        )
        return self._row_to_counter(rows[0]) if rows else None

    def list_counters(
        self,
        subject_id: str,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> List[UsageCounter]:
        sql = "SELECT * FROM usage_counters WHERE subject_id = ?"
        params: list = [subject_id]
        if since is not None:
            sql += " AND period_start >= ?"
            params.append(_ts(since))
        if until is not None:
            sql += " AND period_end <= ?"
            params.append(_ts(until))
        sql += " ORDER BY period_start ASC, meter ASC, period_type ASC"
        return [self._row_to_counter(row) for row in self._query(sql, tuple(params))]

    def delete_counters_before(self, cutoff: datetime) -> int:
        with self._transaction() as conn:
            cur = conn.execute("DELETE FROM usage_counters WHERE period_end <= ?", (_ts(cutoff),))
        return cur.rowcount

    def list_subjects(self) -> List[str]:
        rows = self._query(
            """
            SELECT subject_id FROM usage_counters
            UNION
            SELECT subject_id FROM subscriptions
            ORDER BY subject_id
            """
        )
        return [row["subject_id"] for row in rows]

    # Recommendations

    def save_recommendation(self, recommendation: Recommendation) -> Recommendation:
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO recommendations (
                    recommendation_id, subject_id, current_plan_id, recommended_plan_id,
                    reason, confidence, monthly_cost_delta, status, bottlenecks, benefits,
                    growth_trend, periods_observed, created_at, expires_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    recommendation.recommendation_id,
                    recommendation.subject_id,
                    recommendation.current_plan_id,
                    recommendation.recommended_plan_id,
                    recommendation.reason.value,
                    recommendation.confidence,
                    recommendation.monthly_cost_delta,
                    recommendation.status.value,
                    json.dumps(recommendation.bottlenecks),
                    json.dumps(recommendation.benefits),
                    recommendation.growth_trend,
                    recommendation.periods_observed,
                    _ts(recommendation.created_at),
                    _ts(recommendation.expires_at),
                ),
            )
        return recommendation

    def _row_to_recommendation(self, row: sqlite3.Row) -> Recommendation:
        return Recommendation(
            recommendation_id=row["recommendation_id"],
            subject_id=row["subject_id"],
            current_plan_id=row["current_plan_id"],
            recommended_plan_id=row["recommended_plan_id"],
            reason=RecommendationReason(row["reason"]),
            confidence=row["confidence"],
            monthly_cost_delta=row["monthly_cost_delta"],
            status=RecommendationStatus(row["status"]),
            bottlenecks=json.loads(row["bottlenecks"]),
            benefits=json.loads(row["benefits"]),
            growth_trend=row["growth_trend"],
            periods_observed=row["periods_observed"],
            created_at=_parse_ts(row["created_at"]),
            expires_at=_parse_ts(row["expires_at"]),
        )

    def get_recommendation(self, recommendation_id: str) -> Optional[Recommendation]:
        rows = self._query(
            "SELECT * FROM recommendations WHERE recommendation_id = ?", (recommendation_id,)
        )
        return self._row_to_recommendation(rows[0]) if rows else None

    def list_recommendations(self, subject_id: str) -> List[Recommendation]:
        rows = self._query(
            "SELECT * FROM recommendations WHERE subject_id = ? ORDER BY created_at ASC",
            (subject_id,),
        )
        return [self._row_to_recommendation(row) for row in rows]

    # Reservations and denials

    def try_reserve(self, reservation: Reservation, limit: Optional[float], now: datetime) -> bool:
        with self._transaction() as conn:
            conn.execute(
                """
                DELETE FROM reservations
                WHERE subject_id = ? AND meter = ? AND (released = 1 OR expires_at <= ?)
                """,
                (reservation.subject_id, reservation.meter, _ts(now)),
            )
            row = conn.execute(
                """
                SELECT COALESCE(SUM(quantity), 0) AS held FROM reservations
                WHERE subject_id = ? AND meter = ? AND released = 0 AND expires_at > ?
                """,
                (reservation.subject_id, reservation.meter, _ts(now)),
            ).fetchone()
            if limit is not None and row["held"] + reservation.quantity > limit:
                return False
            conn.execute(
                """
                INSERT INTO reservations (token, subject_id, meter, quantity, released, created_at, expires_at)
                VALUES (?, ?, ?, ?, 0, ?, ?)
                """,
                (
                    reservation.token,
                    reservation.subject_id,
                    reservation.meter,
                    reservation.quantity,
                    _ts(reservation.created_at),
                    _ts(reservation.expires_at),
                ),
            )
        return True

    def release_reservation(self, token: str) -> Optional[Reservation]:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM reservations WHERE token = ? AND released = 0", (token,)
            ).fetchone()
            if row is None:
                return None
            conn.execute("DELETE FROM reservations WHERE token = ?", (token,))
        return Reservation(
            token=row["token"],
            subject_id=row["subject_id"],
            meter=row["meter"],
            quantity=row["quantity"],
            released=True,
            created_at=_parse_ts(row["created_at"]),
            expires_at=_parse_ts(row["expires_at"]),
        )

    def reserved_quantity(self, subject_id: str, meter: str, now: datetime) -> float:
        rows = self._query(
            """
            SELECT COALESCE(SUM(quantity), 0) AS held FROM reservations
            WHERE subject_id = ? AND meter = ? AND released = 0 AND expires_at > ?
            """,
            (subject_id, meter, _ts(now)),
        )
        return rows[0]["held"]

    def add_denial(self, denial: Denial) -> Denial:
        with self._transaction() as conn:
            conn.execute(
                "INSERT INTO denials (subject_id, resource, timestamp) VALUES (?, ?, ?)",
                (denial.subject_id, denial.resource, _ts(denial.timestamp)),
            )
        return denial

    def count_denials(self, subject_id: str, since: datetime) -> Dict[str, int]:
        rows = self._query(
            """
            SELECT resource, COUNT(*) AS n FROM denials
            WHERE subject_id = ? AND timestamp >= ?
            GROUP BY resource
            """,
            (subject_id, _ts(since)),
        )
        return {row["resource"]: row["n"] for row in rows}

    def delete_expired_reservations(self, now: datetime) -> int:
        with self._transaction() as conn:
            cur = conn.execute(
                "DELETE FROM reservations WHERE released = 1 OR expires_at <= ?", (_ts(now),)
            )
        return cur.rowcount

    def delete_denials_before(self, cutoff: datetime) -> int:
        with self._transaction() as conn:
            cur = conn.execute("DELETE FROM denials WHERE timestamp < ?", (_ts(cutoff),))
        return cur.rowcount

    def close(self) -> None:
        self._conn.close()
