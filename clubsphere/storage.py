import datetime
import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Generator, Iterable

import psycopg2
import psycopg2.extras
import psycopg2.pool

from .models import (
    Club,
    ClubStatus,
    Event,
    EventKind,
    EventRegistration,
    EventStatus,
    Payment,
    PaymentKind,
    PaymentStatus,
    RegistrationStatus,
    Role,
    User,
)

logger = logging.getLogger(__name__)


class DuplicateKeyError(Exception):
    """A write violated one of the store's unique indexes."""


class _PgCursor:
    def __init__(self, cursor):
        self._c = cursor

    def execute(self, query, params=None):
        q = query.replace("?", "%s")
        self._c.execute(q, params or [])
        return self

    def fetchone(self):
        return self._c.fetchone()

    def fetchall(self):
        return self._c.fetchall()

    def __iter__(self):
        return iter(self._c)

    def __getattr__(self, name):
        return getattr(self._c, name)


class _PgConnection:
    """Pooled connection; ``close`` hands it back to the pool and frees its slot."""

    def __init__(self, conn, pool, slots):
        self._conn = conn
        self._pool = pool
        self._slots = slots

    def cursor(self, *a, **kw):
        return _PgCursor(self._conn.cursor(*a, **kw))

    def commit(self):
        self._conn.commit()

    def rollback(self):
        self._conn.rollback()

    def close(self):
        try:
            self._pool.putconn(self._conn)
        finally:
            self._slots.release()

    def __getattr__(self, name):
        return getattr(self._conn, name)


_SCHEMA = [
    """CREATE TABLE IF NOT EXISTS users (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        name TEXT,
        photo_url TEXT,
        role TEXT NOT NULL DEFAULT 'user',
        created_at TEXT NOT NULL
    )""",
    """CREATE TABLE IF NOT EXISTS clubs (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        creator_email TEXT NOT NULL,
        membership_fee INTEGER NOT NULL,
        status TEXT NOT NULL,
        payment_status TEXT NOT NULL,
        tracking_code TEXT UNIQUE,
        member_count INTEGER NOT NULL DEFAULT 0,
        description TEXT,
        category TEXT,
        location TEXT,
        banner_url TEXT,
        created_at TEXT NOT NULL,
        paid_at TEXT
    )""",
    """CREATE TABLE IF NOT EXISTS events (
        id TEXT PRIMARY KEY,
        club_id TEXT NOT NULL,
        club_name TEXT,
        title TEXT NOT NULL,
        description TEXT,
        date_time TEXT NOT NULL,
        location TEXT,
        kind TEXT NOT NULL,
        price INTEGER NOT NULL DEFAULT 0,
        max_attendees INTEGER,
        attendees INTEGER NOT NULL DEFAULT 0,
        creator_email TEXT NOT NULL,
        status TEXT NOT NULL,
        created_at TEXT NOT NULL
    )""",
    """CREATE TABLE IF NOT EXISTS event_registrations (
        id TEXT PRIMARY KEY,
        event_id TEXT NOT NULL,
        event_title TEXT,
        email TEXT NOT NULL,
        payment_status TEXT NOT NULL,
        transaction_id TEXT UNIQUE,
        amount_minor INTEGER NOT NULL DEFAULT 0,
        currency TEXT,
        registered_at TEXT NOT NULL,
        UNIQUE (event_id, email)
    )""",
    """CREATE TABLE IF NOT EXISTS payments (
        id TEXT PRIMARY KEY,
        kind TEXT NOT NULL,
        subject_id TEXT NOT NULL,
        subject_name TEXT,
        amount_minor INTEGER NOT NULL,
        currency TEXT NOT NULL,
        payer_email TEXT NOT NULL,
        owner_email TEXT,
        transaction_id TEXT NOT NULL UNIQUE,
        status TEXT NOT NULL,
        paid_at TEXT NOT NULL
    )""",
    "CREATE INDEX IF NOT EXISTS idx_payments_subject ON payments(subject_id)",
    "CREATE INDEX IF NOT EXISTS idx_payments_owner ON payments(owner_email)",
    "CREATE INDEX IF NOT EXISTS idx_events_club ON events(club_id)",
    "CREATE INDEX IF NOT EXISTS idx_registrations_email ON event_registrations(email)",
]


def _ts(value: datetime.datetime | None) -> str | None:
    return value.isoformat() if value else None


def _parse_ts(value: str | None) -> datetime.datetime | None:
    return datetime.datetime.fromisoformat(value) if value else None


def _like(term: str) -> str:
    """Return a case-insensitive substring pattern with wildcards escaped."""
    escaped = term.lower().replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def _user_from_row(row) -> User:
    return User(
        id=row["id"],
        email=row["email"],
        name=row["name"],
        photo_url=row["photo_url"],
        role=Role(row["role"]),
        created_at=_parse_ts(row["created_at"]),
    )


def _club_from_row(row) -> Club:
    return Club(
        id=row["id"],
        name=row["name"],
        creator_email=row["creator_email"],
        membership_fee=row["membership_fee"],
        status=ClubStatus(row["status"]),
        payment_status=PaymentStatus(row["payment_status"]),
        tracking_code=row["tracking_code"],
        member_count=row["member_count"],
        description=row["description"],
        category=row["category"],
        location=row["location"],
        banner_url=row["banner_url"],
        created_at=_parse_ts(row["created_at"]),
        paid_at=_parse_ts(row["paid_at"]),
    )


def _event_from_row(row) -> Event:
    return Event(
        id=row["id"],
        club_id=row["club_id"],
        club_name=row["club_name"],
        title=row["title"],
        description=row["description"],
        date_time=row["date_time"],
        location=row["location"],
        kind=EventKind(row["kind"]),
        price=row["price"],
        max_attendees=row["max_attendees"],
        attendees=row["attendees"],
        creator_email=row["creator_email"],
        status=EventStatus(row["status"]),
        created_at=_parse_ts(row["created_at"]),
    )


def _registration_from_row(row) -> EventRegistration:
    return EventRegistration(
        id=row["id"],
        event_id=row["event_id"],
        event_title=row["event_title"],
        email=row["email"],
        payment_status=RegistrationStatus(row["payment_status"]),
        transaction_id=row["transaction_id"],
        amount_minor=row["amount_minor"],
        currency=row["currency"],
        registered_at=_parse_ts(row["registered_at"]),
    )


def _payment_from_row(row) -> Payment:
    return Payment(
        id=row["id"],
        kind=PaymentKind(row["kind"]),
        subject_id=row["subject_id"],
        subject_name=row["subject_name"],
        amount_minor=row["amount_minor"],
        currency=row["currency"],
        payer_email=row["payer_email"],
        owner_email=row["owner_email"],
        transaction_id=row["transaction_id"],
        status=row["status"],
        paid_at=_parse_ts(row["paid_at"]),
    )


class Store:
    """Record store backed by SQLite or PostgreSQL.

    Consistency between concurrent writers relies on the unique indexes in
    the schema and on conditional updates; callers never lock. ``open`` must
    be called before use and ``close`` on shutdown.
    """

    def __init__(self, database_url: str, *, busy_timeout: float = 30.0, max_connections: int = 10):
        self.database_url = database_url
        self.is_pg = database_url.startswith("postgres")
        self.busy_timeout = busy_timeout
        self.max_connections = max_connections
        self._pool = None
        # ThreadedConnectionPool raises when exhausted; callers wait for a slot instead
        self._slots = threading.BoundedSemaphore(max_connections)
        self._opened = False
        if not self.is_pg:
            # sqlite:///relative.db or sqlite:////abs/path.db
            prefix = "sqlite:///"
            self.path = Path(database_url[len(prefix):] if database_url.startswith(prefix) else database_url)

    # --- lifecycle ---------------------------------------------------------

    def open(self) -> "Store":
        if self._opened:
            return self
        if self.is_pg:
            self._pool = psycopg2.pool.ThreadedConnectionPool(
                1,
                self.max_connections,
                self.database_url,
                cursor_factory=psycopg2.extras.RealDictCursor,
            )
        self._opened = True
        with self.transaction() as conn:
            cur = conn.cursor()
            for stmt in _SCHEMA:
                cur.execute(stmt)
        logger.info("Store opened (%s)", "postgres" if self.is_pg else self.path)
        return self

    def close(self) -> None:
        if self._pool is not None:
            self._pool.closeall()
            self._pool = None
        self._opened = False

    def _connect(self):
        """Return a DB connection based on ``database_url``."""
        if not self._opened:
            raise RuntimeError("Store is not open")
        if self.is_pg:
            if not self._slots.acquire(timeout=self.busy_timeout):
                raise RuntimeError("Timed out waiting for a database connection")
            try:
                raw = self._pool.getconn()
            except Exception:
                self._slots.release()
                raise
            return _PgConnection(raw, self._pool, self._slots)
        conn = sqlite3.connect(self.path, timeout=self.busy_timeout)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def transaction(self) -> Generator[object, None, None]:
        """Context manager yielding a connection with an active transaction."""
        conn = self._connect()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    @contextmanager
    def _use(self, conn=None):
        if conn is not None:
            yield conn
            return
        with self.transaction() as own:
            yield own

    def _insert(self, conn, table: str, values: dict) -> None:
        cols = ", ".join(values)
        marks = ", ".join("?" for _ in values)
        try:
            conn.cursor().execute(
                f"INSERT INTO {table}({cols}) VALUES ({marks})",
                tuple(values.values()),
            )
        except (sqlite3.IntegrityError, psycopg2.IntegrityError) as exc:
            raise DuplicateKeyError(f"{table}: {exc}") from exc

    def _fetchone(self, query: str, params: Iterable = ()):
        with self._use() as conn:
            return conn.cursor().execute(query, tuple(params)).fetchone()

    def _fetchall(self, query: str, params: Iterable = ()):
        with self._use() as conn:
            return conn.cursor().execute(query, tuple(params)).fetchall()

    def _execute(self, query: str, params: Iterable = (), conn=None) -> int:
        """Run a write statement and return the affected row count."""
        with self._use(conn) as c:
            try:
                return c.cursor().execute(query, tuple(params)).rowcount
            except (sqlite3.IntegrityError, psycopg2.IntegrityError) as exc:
                raise DuplicateKeyError(str(exc)) from exc

    # --- users -------------------------------------------------------------

    def create_user(self, user: User, conn=None) -> None:
        with self._use(conn) as c:
            self._insert(
                c,
                "users",
                {
                    "id": user.id,
                    "email": user.email,
                    "name": user.name,
                    "photo_url": user.photo_url,
                    "role": user.role.value,
                    "created_at": _ts(user.created_at),
                },
            )

    def get_user(self, user_id: str) -> User | None:
        row = self._fetchone("SELECT * FROM users WHERE id = ?", (user_id,))
        return _user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> User | None:
        row = self._fetchone("SELECT * FROM users WHERE email = ?", (email,))
        return _user_from_row(row) if row else None

    def list_users(self) -> list[User]:
        rows = self._fetchall("SELECT * FROM users ORDER BY created_at DESC")
        return [_user_from_row(r) for r in rows]

    def update_user_role(self, user_id: str, role: Role) -> bool:
        return self._execute("UPDATE users SET role = ? WHERE id = ?", (role.value, user_id)) > 0

    # --- clubs -------------------------------------------------------------

    def create_club(self, club: Club, conn=None) -> None:
        with self._use(conn) as c:
            self._insert(
                c,
                "clubs",
                {
                    "id": club.id,
                    "name": club.name,
                    "creator_email": club.creator_email,
                    "membership_fee": club.membership_fee,
                    "status": club.status.value,
                    "payment_status": club.payment_status.value,
                    "tracking_code": club.tracking_code,
                    "member_count": club.member_count,
                    "description": club.description,
                    "category": club.category,
                    "location": club.location,
                    "banner_url": club.banner_url,
                    "created_at": _ts(club.created_at),
                    "paid_at": _ts(club.paid_at),
                },
            )

    def get_club(self, club_id: str) -> Club | None:
        row = self._fetchone("SELECT * FROM clubs WHERE id = ?", (club_id,))
        return _club_from_row(row) if row else None

    def list_clubs(
        self,
        *,
        creator_email: str | None = None,
        status: ClubStatus | None = None,
        payment_status: PaymentStatus | None = None,
        name: str | None = None,
        search: str | None = None,
    ) -> list[Club]:
        clauses, params = [], []
        if creator_email is not None:
            clauses.append("creator_email = ?")
            params.append(creator_email)
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)
        if payment_status is not None:
            clauses.append("payment_status = ?")
            params.append(payment_status.value)
        if name is not None:
            clauses.append("name = ?")
            params.append(name)
        if search:
            clauses.append("LOWER(name) LIKE ? ESCAPE '\\'")
            params.append(_like(search))
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self._fetchall(f"SELECT * FROM clubs{where} ORDER BY created_at DESC", params)
        return [_club_from_row(r) for r in rows]

    def mark_club_paid(self, club_id: str, tracking_code: str, paid_at: datetime.datetime, conn=None) -> bool:
        """Move a club from payment pending to paid; no-op if already paid."""
        return (
            self._execute(
                "UPDATE clubs SET payment_status = ?, tracking_code = ?, paid_at = ? "
                "WHERE id = ? AND payment_status = ?",
                (
                    PaymentStatus.PAID.value,
                    tracking_code,
                    _ts(paid_at),
                    club_id,
                    PaymentStatus.PENDING.value,
                ),
                conn=conn,
            )
            > 0
        )

    def approve_club(self, club_id: str) -> bool:
        return self._execute(
            "UPDATE clubs SET status = ? WHERE id = ?",
            (ClubStatus.APPROVED.value, club_id),
        ) > 0

    def delete_club(self, club_id: str) -> bool:
        return self._execute("DELETE FROM clubs WHERE id = ?", (club_id,)) > 0

    # --- events ------------------------------------------------------------

    def create_event(self, event: Event, conn=None) -> None:
        with self._use(conn) as c:
            self._insert(
                c,
                "events",
                {
                    "id": event.id,
                    "club_id": event.club_id,
                    "club_name": event.club_name,
                    "title": event.title,
                    "description": event.description,
                    "date_time": event.date_time,
                    "location": event.location,
                    "kind": event.kind.value,
                    "price": event.price,
                    "max_attendees": event.max_attendees,
                    "attendees": event.attendees,
                    "creator_email": event.creator_email,
                    "status": event.status.value,
                    "created_at": _ts(event.created_at),
                },
            )

    def get_event(self, event_id: str) -> Event | None:
        row = self._fetchone("SELECT * FROM events WHERE id = ?", (event_id,))
        return _event_from_row(row) if row else None

    def list_events(
        self,
        *,
        status: EventStatus | None = None,
        club_id: str | None = None,
        creator_email: str | None = None,
        search: str | None = None,
    ) -> list[Event]:
        clauses, params = [], []
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)
        if club_id is not None:
            clauses.append("club_id = ?")
            params.append(club_id)
        if creator_email is not None:
            clauses.append("creator_email = ?")
            params.append(creator_email)
        if search:
            clauses.append("LOWER(title) LIKE ? ESCAPE '\\'")
            params.append(_like(search))
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self._fetchall(f"SELECT * FROM events{where} ORDER BY created_at DESC", params)
        return [_event_from_row(r) for r in rows]

    def delete_event(self, event_id: str) -> bool:
        return self._execute("DELETE FROM events WHERE id = ?", (event_id,)) > 0

    def reserve_seat(self, event_id: str, conn=None) -> bool:
        """Increment attendees only while below capacity."""
        return (
            self._execute(
                "UPDATE events SET attendees = attendees + 1 "
                "WHERE id = ? AND (max_attendees IS NULL OR attendees < max_attendees)",
                (event_id,),
                conn=conn,
            )
            > 0
        )

    def increment_attendees(self, event_id: str, conn=None) -> bool:
        return self._execute(
            "UPDATE events SET attendees = attendees + 1 WHERE id = ?",
            (event_id,),
            conn=conn,
        ) > 0

    # --- registrations -----------------------------------------------------

    def create_registration(self, reg: EventRegistration, conn=None) -> None:
        with self._use(conn) as c:
            self._insert(
                c,
                "event_registrations",
                {
                    "id": reg.id,
                    "event_id": reg.event_id,
                    "event_title": reg.event_title,
                    "email": reg.email,
                    "payment_status": reg.payment_status.value,
                    "transaction_id": reg.transaction_id,
                    "amount_minor": reg.amount_minor,
                    "currency": reg.currency,
                    "registered_at": _ts(reg.registered_at),
                },
            )

    def get_registration(self, event_id: str, email: str) -> EventRegistration | None:
        row = self._fetchone(
            "SELECT * FROM event_registrations WHERE event_id = ? AND email = ?",
            (event_id, email),
        )
        return _registration_from_row(row) if row else None

    def get_registration_by_transaction(self, transaction_id: str) -> EventRegistration | None:
        row = self._fetchone(
            "SELECT * FROM event_registrations WHERE transaction_id = ?",
            (transaction_id,),
        )
        return _registration_from_row(row) if row else None

    def list_registrations(self, email: str) -> list[EventRegistration]:
        rows = self._fetchall(
            "SELECT * FROM event_registrations WHERE email = ? ORDER BY registered_at DESC",
            (email,),
        )
        return [_registration_from_row(r) for r in rows]

    def count_registrations(self, event_id: str) -> int:
        row = self._fetchone(
            "SELECT COUNT(*) AS n FROM event_registrations WHERE event_id = ?",
            (event_id,),
        )
        return row["n"]

    def count_paid_registrations(self, event_id: str) -> int:
        row = self._fetchone(
            "SELECT COUNT(*) AS n FROM event_registrations WHERE event_id = ? AND payment_status = ?",
            (event_id, RegistrationStatus.PAID.value),
        )
        return row["n"]

    # --- payments ----------------------------------------------------------

    def create_payment(self, payment: Payment, conn=None) -> None:
        with self._use(conn) as c:
            self._insert(
                c,
                "payments",
                {
                    "id": payment.id,
                    "kind": payment.kind.value,
                    "subject_id": payment.subject_id,
                    "subject_name": payment.subject_name,
                    "amount_minor": payment.amount_minor,
                    "currency": payment.currency,
                    "payer_email": payment.payer_email,
                    "owner_email": payment.owner_email,
                    "transaction_id": payment.transaction_id,
                    "status": payment.status,
                    "paid_at": _ts(payment.paid_at),
                },
            )

    def get_payment_by_transaction(self, transaction_id: str) -> Payment | None:
        row = self._fetchone("SELECT * FROM payments WHERE transaction_id = ?", (transaction_id,))
        return _payment_from_row(row) if row else None

    def list_payments(self, subject_ids: list[str]) -> list[Payment]:
        """Return payments for the given subjects, newest first."""
        if not subject_ids:
            return []
        marks = ", ".join("?" for _ in subject_ids)
        rows = self._fetchall(
            f"SELECT * FROM payments WHERE subject_id IN ({marks}) ORDER BY paid_at DESC",
            subject_ids,
        )
        return [_payment_from_row(r) for r in rows]

    def list_payments_for_owner(self, owner_email: str) -> list[Payment]:
        """Return payments for subjects created by ``owner_email``, newest first.

        Rows outlive their subject, so this still lists payments for clubs
        that were rejected after being paid.
        """
        rows = self._fetchall(
            "SELECT * FROM payments WHERE owner_email = ? ORDER BY paid_at DESC",
            (owner_email,),
        )
        return [_payment_from_row(r) for r in rows]
