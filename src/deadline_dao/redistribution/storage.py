"""Goal and payout ledger repositories (Phase 3 storage)."""

from __future__ import annotations

from contextlib import closing, contextmanager
from dataclasses import dataclass
from datetime import date, timezone, tzinfo
import hashlib
import json
from pathlib import Path
import re
import sqlite3
from typing import Any, Iterable, Iterator, Mapping

import psycopg

from deadline_dao.platform_runtime import resolve_run_scoped_path

from .contracts import (
    GOAL_STATUSES,
    Goal,
    PayoutRecord,
    RedistributionContractError,
    parse_amount,
    parse_deadline,
    render_amount,
)


WRITE_NEW = "NEW"
WRITE_DUPLICATE = "DUPLICATE"
WRITE_HASH_MISMATCH = "HASH_MISMATCH"


class RedistributionStoreError(RuntimeError):
    """Raised when goal or payout repository operations fail."""


@dataclass(frozen=True)
class RedistributionStorageLayout:
    goals_locator: str
    payouts_locator: str


@dataclass(frozen=True)
class PayoutWriteResult:
    status: str
    record: PayoutRecord


def is_postgres_dsn(value: str | None) -> bool:
    if not value:
        return False
    return value.startswith("postgres://") or value.startswith("postgresql://")


def build_storage_layout(config: Mapping[str, Any] | None = None) -> RedistributionStorageLayout:
    mapped = dict(config or {})
    goals_locator_raw = str(mapped.get("goals_locator") or "").strip()
    payouts_locator_raw = str(mapped.get("payouts_locator") or "").strip()
    goals_locator = resolve_run_scoped_path(
        goals_locator_raw or None,
        suffix="redistribution/goals.sqlite",
        create_if_missing=True,
    )
    payouts_locator = resolve_run_scoped_path(
        payouts_locator_raw or None,
        suffix="redistribution/payouts.sqlite",
        create_if_missing=True,
    )
    if not goals_locator or not payouts_locator:
        raise RedistributionStoreError("failed to resolve redistribution storage layout")
    return RedistributionStorageLayout(goals_locator=goals_locator, payouts_locator=payouts_locator)


class GoalStore:
    def __init__(self, *, locator: str) -> None:
        self.locator = locator
        self.backend = "postgres" if is_postgres_dsn(locator) else "sqlite"
        if self.backend == "sqlite":
            path = Path(_sqlite_path(locator))
            path.parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    def list_goals(
        self,
        *,
        deadline_date: date | None = None,
        status: str | None = None,
        tz: tzinfo = timezone.utc,
    ) -> tuple[Goal, ...]:
        if status is not None and status not in GOAL_STATUSES:
            raise RedistributionStoreError(f"unknown goal status filter: {status!r}")
        sql = f"SELECT {_GOAL_COLUMNS} FROM dd_goals"
        params: tuple[Any, ...] = ()
        if status is not None:
            sql += " WHERE status = {p1}"
            params = (status,)
        sql += " ORDER BY goal_id"
        with _store_errors("list goals"):
            with self._connect() as conn:
                rows = _query_all(conn, self.backend, sql, params)
        goals = tuple(_goal_from_row(row) for row in rows)
        if deadline_date is None:
            return goals
        # Calendar-date match in the cohort zone; time of day is ignored.
        return tuple(goal for goal in goals if goal.cohort_date(tz) == deadline_date)

    def get_goal(self, goal_id: str) -> Goal | None:
        with _store_errors("get goal"):
            with self._connect() as conn:
                row = _query_one(
                    conn,
                    self.backend,
                    f"SELECT {_GOAL_COLUMNS} FROM dd_goals WHERE goal_id = {{p1}}",
                    (goal_id,),
                )
        if row is None:
            return None
        return _goal_from_row(row)

    def upsert_goal(self, goal: Goal) -> Goal:
        params = (
            goal.goal_id,
            goal.owner,
            render_amount(goal.stake_amount),
            goal.deadline.astimezone(timezone.utc).isoformat(),
            goal.status,
            goal.title,
            goal.description,
            goal.category,
        )
        with _store_errors("upsert goal"):
            with self._connect() as conn:
                _execute(
                    conn,
                    self.backend,
                    """
                    INSERT INTO dd_goals (
                        goal_id, owner, stake_amount, deadline_utc, status, title, description, category
                    ) VALUES ({p1}, {p2}, {p3}, {p4}, {p5}, {p6}, {p7}, {p8})
                    ON CONFLICT (goal_id) DO UPDATE SET
                        owner = excluded.owner,
                        stake_amount = excluded.stake_amount,
                        deadline_utc = excluded.deadline_utc,
                        status = excluded.status,
                        title = excluded.title,
                        description = excluded.description,
                        category = excluded.category
                    """,
                    params,
                )
        return goal

    def update_goal_status(self, goal_id: str, status: str) -> Goal:
        if status not in GOAL_STATUSES:
            raise RedistributionStoreError(f"unknown goal status: {status!r}")
        existing = self.get_goal(goal_id)
        if existing is None:
            raise RedistributionStoreError(f"goal not found: {goal_id!r}")
        with _store_errors("update goal status"):
            with self._connect() as conn:
                _execute(
                    conn,
                    self.backend,
                    "UPDATE dd_goals SET status = {p1} WHERE goal_id = {p2}",
                    (status, goal_id),
                )
        return Goal(
            goal_id=existing.goal_id,
            owner=existing.owner,
            stake_amount=existing.stake_amount,
            deadline=existing.deadline,
            status=status,
            title=existing.title,
            description=existing.description,
            category=existing.category,
        )

    def _init_schema(self) -> None:
        with _store_errors("init goal schema"):
            with self._connect() as conn:
                _execute_script(
                    conn,
                    self.backend,
                    """
                    CREATE TABLE IF NOT EXISTS dd_goals (
                        goal_id TEXT PRIMARY KEY,
                        owner TEXT NOT NULL,
                        stake_amount TEXT NOT NULL,
                        deadline_utc TEXT NOT NULL,
                        status TEXT NOT NULL,
                        title TEXT NOT NULL DEFAULT '',
                        description TEXT NOT NULL DEFAULT '',
                        category TEXT NOT NULL DEFAULT ''
                    );
                    CREATE INDEX IF NOT EXISTS ix_dd_goals_status
                        ON dd_goals (status, deadline_utc);
                    CREATE INDEX IF NOT EXISTS ix_dd_goals_owner
                        ON dd_goals (owner);
                    """,
                )

    def _connect(self) -> Any:
        return _open_connection(self.locator, self.backend)


class PayoutLedgerStore:
    """Append-only payout records, at most one per goal."""

    def __init__(self, *, locator: str) -> None:
        self.locator = locator
        self.backend = "postgres" if is_postgres_dsn(locator) else "sqlite"
        if self.backend == "sqlite":
            path = Path(_sqlite_path(locator))
            path.parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    def find_payout_by_goal_id(self, goal_id: str) -> PayoutRecord | None:
        with _store_errors("find payout"):
            with self._connect() as conn:
                row = _query_one(
                    conn,
                    self.backend,
                    f"SELECT {_PAYOUT_COLUMNS} FROM dd_payout_records WHERE goal_id = {{p1}}",
                    (goal_id,),
                )
        if row is None:
            return None
        return _payout_from_row(row)

    def save_payout_record(self, record: PayoutRecord) -> PayoutWriteResult:
        record_hash = payout_record_hash(record)
        params = (
            record.goal_id,
            record.recipient,
            render_amount(record.amount),
            record.ledger_transaction_id,
            record.payout_type,
            record.cohort_date,
            record.recorded_at_utc,
            record_hash,
        )
        with _store_errors("save payout record"):
            with self._connect() as conn:
                existing = self._existing(conn, record.goal_id)
                if existing is None:
                    try:
                        _execute(
                            conn,
                            self.backend,
                            """
                            INSERT INTO dd_payout_records (
                                goal_id, recipient, amount, ledger_transaction_id, payout_type,
                                cohort_date, recorded_at_utc, record_hash
                            ) VALUES ({p1}, {p2}, {p3}, {p4}, {p5}, {p6}, {p7}, {p8})
                            """,
                            params,
                        )
                        return PayoutWriteResult(status=WRITE_NEW, record=record)
                    except (sqlite3.IntegrityError, psycopg.errors.UniqueViolation):
                        # Lost the insert race to a concurrent run.
                        conn.rollback()
                        existing = self._existing(conn, record.goal_id)
                        if existing is None:
                            raise
        existing_record, existing_hash = existing
        if existing_hash != record_hash:
            return PayoutWriteResult(status=WRITE_HASH_MISMATCH, record=existing_record)
        return PayoutWriteResult(status=WRITE_DUPLICATE, record=existing_record)

    def save_payout_records(self, records: Iterable[PayoutRecord]) -> tuple[PayoutWriteResult, ...]:
        return tuple(self.save_payout_record(record) for record in records)

    def list_payouts_by_recipient(self, address: str) -> tuple[PayoutRecord, ...]:
        with _store_errors("list payouts by recipient"):
            with self._connect() as conn:
                rows = _query_all(
                    conn,
                    self.backend,
                    f"""
                    SELECT {_PAYOUT_COLUMNS} FROM dd_payout_records
                    WHERE recipient = {{p1}}
                    ORDER BY recorded_at_utc DESC, goal_id
                    """,
                    (address,),
                )
        return tuple(_payout_from_row(row) for row in rows)

    def list_payouts(self, limit: int | None = None) -> tuple[PayoutRecord, ...]:
        sql = f"SELECT {_PAYOUT_COLUMNS} FROM dd_payout_records ORDER BY recorded_at_utc DESC, goal_id"
        params: tuple[Any, ...] = ()
        if limit is not None:
            if limit <= 0:
                raise RedistributionStoreError("limit must be > 0")
            sql += " LIMIT {p1}"
            params = (int(limit),)
        with _store_errors("list payouts"):
            with self._connect() as conn:
                rows = _query_all(conn, self.backend, sql, params)
        return tuple(_payout_from_row(row) for row in rows)

    def _existing(self, conn: Any, goal_id: str) -> tuple[PayoutRecord, str] | None:
        row = _query_one(
            conn,
            self.backend,
            f"SELECT {_PAYOUT_COLUMNS}, record_hash FROM dd_payout_records WHERE goal_id = {{p1}}",
            (goal_id,),
        )
        if row is None:
            return None
        return _payout_from_row(row), str(row[7])

    def _init_schema(self) -> None:
        with _store_errors("init payout schema"):
            with self._connect() as conn:
                _execute_script(
                    conn,
                    self.backend,
                    """
                    CREATE TABLE IF NOT EXISTS dd_payout_records (
                        goal_id TEXT PRIMARY KEY,
                        recipient TEXT NOT NULL,
                        amount TEXT NOT NULL,
                        ledger_transaction_id TEXT NOT NULL,
                        payout_type TEXT NOT NULL,
                        cohort_date TEXT,
                        recorded_at_utc TEXT NOT NULL,
                        record_hash TEXT NOT NULL
                    );
                    CREATE INDEX IF NOT EXISTS ix_dd_payout_records_recipient
                        ON dd_payout_records (recipient, recorded_at_utc);
                    CREATE INDEX IF NOT EXISTS ix_dd_payout_records_cohort
                        ON dd_payout_records (cohort_date);
                    """,
                )

    def _connect(self) -> Any:
        return _open_connection(self.locator, self.backend)


def payout_record_hash(record: PayoutRecord) -> str:
    payload = {
        "goal_id": record.goal_id,
        "recipient": record.recipient,
        "amount": render_amount(record.amount),
        "ledger_transaction_id": record.ledger_transaction_id,
        "payout_type": record.payout_type,
    }
    canonical = json.dumps(payload, sort_keys=True, ensure_ascii=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


_GOAL_COLUMNS = "goal_id, owner, stake_amount, deadline_utc, status, title, description, category"
_PAYOUT_COLUMNS = (
    "goal_id, recipient, amount, ledger_transaction_id, payout_type, cohort_date, recorded_at_utc"
)


def _goal_from_row(row: Any) -> Goal:
    try:
        return Goal(
            goal_id=str(row[0]),
            owner=str(row[1]),
            stake_amount=parse_amount(row[2], "stake_amount"),
            deadline=parse_deadline(str(row[3])),
            status=str(row[4]),
            title=str(row[5] or ""),
            description=str(row[6] or ""),
            category=str(row[7] or ""),
        )
    except RedistributionContractError as exc:
        raise RedistributionStoreError(f"stored goal {row[0]!r} is malformed: {exc}") from exc


def _payout_from_row(row: Any) -> PayoutRecord:
    try:
        return PayoutRecord(
            goal_id=str(row[0]),
            recipient=str(row[1]),
            amount=parse_amount(row[2]),
            ledger_transaction_id=str(row[3]),
            payout_type=str(row[4]),
            cohort_date=str(row[5]) if row[5] is not None else None,
            recorded_at_utc=str(row[6]),
        )
    except RedistributionContractError as exc:
        raise RedistributionStoreError(f"stored payout {row[0]!r} is malformed: {exc}") from exc


@contextmanager
def _store_errors(operation: str) -> Iterator[None]:
    try:
        yield
    except (sqlite3.Error, psycopg.Error) as exc:
        raise RedistributionStoreError(f"{operation} failed: {exc}") from exc


@contextmanager
def _open_connection(locator: str, backend: str) -> Iterator[Any]:
    if backend == "sqlite":
        conn = sqlite3.connect(_sqlite_path(locator))
        conn.row_factory = sqlite3.Row
        # The sqlite context manager only ends the transaction; close explicitly.
        with closing(conn), conn:
            yield conn
        return
    with psycopg.connect(locator) as conn:
        yield conn


def _sqlite_path(locator: str) -> str:
    if locator.startswith("sqlite:///"):
        return locator[len("sqlite:///") :]
    if locator.startswith("sqlite://"):
        return locator[len("sqlite://") :]
    return locator


_SQL_PARAM_PATTERN = re.compile(r"\{p(?P<index>\d+)\}")


def _render_sql_with_params(sql: str, backend: str, params: tuple[Any, ...]) -> tuple[str, tuple[Any, ...]]:
    ordered_params: list[Any] = []
    placeholder = "%s" if backend == "postgres" else "?"

    def _replace(match: re.Match[str]) -> str:
        index = int(match.group("index"))
        if index <= 0 or index > len(params):
            raise RedistributionStoreError(
                f"SQL placeholder index p{index} out of range for {len(params)} params"
            )
        ordered_params.append(params[index - 1])
        return placeholder

    rendered = _SQL_PARAM_PATTERN.sub(_replace, sql)
    return rendered, tuple(ordered_params)


def _query_one(conn: Any, backend: str, sql: str, params: tuple[Any, ...]) -> Any:
    rendered, ordered_params = _render_sql_with_params(sql, backend, params)
    if backend == "sqlite":
        cur = conn.execute(rendered, ordered_params)
        return cur.fetchone()
    cur = conn.cursor()
    cur.execute(rendered, ordered_params)
    row = cur.fetchone()
    cur.close()
    return row


def _query_all(conn: Any, backend: str, sql: str, params: tuple[Any, ...]) -> list[Any]:
    rendered, ordered_params = _render_sql_with_params(sql, backend, params)
    if backend == "sqlite":
        cur = conn.execute(rendered, ordered_params)
        return list(cur.fetchall())
    cur = conn.cursor()
    cur.execute(rendered, ordered_params)
    rows = list(cur.fetchall())
    cur.close()
    return rows


def _execute(conn: Any, backend: str, sql: str, params: tuple[Any, ...]) -> None:
    rendered, ordered_params = _render_sql_with_params(sql, backend, params)
    if backend == "sqlite":
        conn.execute(rendered, ordered_params)
        conn.commit()
        return
    cur = conn.cursor()
    cur.execute(rendered, ordered_params)
    conn.commit()
    cur.close()


def _execute_script(conn: Any, backend: str, sql: str) -> None:
    if backend == "sqlite":
        conn.executescript(sql)
        conn.commit()
        return
    cur = conn.cursor()
    for statement in [part.strip() for part in sql.split(";") if part.strip()]:
        cur.execute(statement)
    conn.commit()
    cur.close()
