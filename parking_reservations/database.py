"""
PostgreSQL reservation store on an asyncpg connection pool

Isolation: each transaction locks the space row (SELECT ... FOR UPDATE)
before anything else, so overlap checks and inserts for one space are
serialized. The reservations table also carries an exclusion constraint
over active windows as a last line of defence.
"""
import asyncpg
from typing import Optional, List, Dict, Any, AsyncGenerator, AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime
import logging
from uuid import UUID

from .config import settings
from .exceptions import ReservationError, SlotUnavailableError, StorageConflictError
from .models import (
    Payment,
    RateSchedule,
    Reservation,
    ReservationFilter,
    ReservationPage,
    ReservationStatus,
    SpaceInfo,
    StatusChange,
    VehicleInfo,
)
from .store import ReservationStore, StoreTransaction

logger = logging.getLogger(__name__)

SCHEMA_SQL = """
CREATE EXTENSION IF NOT EXISTS btree_gist;

CREATE TABLE IF NOT EXISTS parking_spaces (
    id UUID PRIMARY KEY,
    owner_id UUID NOT NULL,
    hourly_rate NUMERIC(12, 2) NOT NULL DEFAULT 0,
    daily_rate NUMERIC(12, 2) NOT NULL DEFAULT 0,
    weekly_rate NUMERIC(12, 2) NOT NULL DEFAULT 0,
    monthly_rate NUMERIC(12, 2) NOT NULL DEFAULT 0,
    is_active BOOLEAN NOT NULL DEFAULT TRUE,
    total_spots INTEGER NOT NULL DEFAULT 1 CHECK (total_spots >= 0),
    available_spots INTEGER NOT NULL DEFAULT 1 CHECK (available_spots >= 0 AND available_spots <= total_spots),
    auto_approve BOOLEAN NOT NULL DEFAULT FALSE
);

CREATE TABLE IF NOT EXISTS reservations (
    id UUID PRIMARY KEY,
    reference_code TEXT NOT NULL UNIQUE,
    requester_id UUID NOT NULL,
    space_id UUID NOT NULL REFERENCES parking_spaces (id),
    space_owner_id UUID NOT NULL,
    start_time TIMESTAMPTZ NOT NULL,
    end_time TIMESTAMPTZ NOT NULL,
    pricing_mode TEXT NOT NULL,
    duration_units INTEGER NOT NULL,
    vehicle_type TEXT NOT NULL,
    vehicle_plate TEXT NOT NULL,
    vehicle_model TEXT,
    base_amount NUMERIC(12, 2) NOT NULL,
    tax_amount NUMERIC(12, 2) NOT NULL,
    service_fee NUMERIC(12, 2) NOT NULL,
    discount_amount NUMERIC(12, 2) NOT NULL DEFAULT 0,
    total_amount NUMERIC(12, 2) NOT NULL,
    discount_code TEXT,
    status TEXT NOT NULL,
    created_at TIMESTAMPTZ NOT NULL,
    updated_at TIMESTAMPTZ,
    status_changed_at TIMESTAMPTZ,
    check_in_time TIMESTAMPTZ,
    check_out_time TIMESTAMPTZ,
    cancelled_at TIMESTAMPTZ,
    cancellation_reason TEXT,
    CHECK (end_time > start_time),
    CONSTRAINT reservations_no_active_overlap EXCLUDE USING gist (
        space_id WITH =,
        tstzrange(start_time, end_time, '[)') WITH &&
    ) WHERE (status IN ('pending', 'awaiting_payment', 'confirmed', 'in_progress'))
);

CREATE INDEX IF NOT EXISTS idx_reservations_requester ON reservations (requester_id, start_time DESC);
CREATE INDEX IF NOT EXISTS idx_reservations_owner ON reservations (space_owner_id, start_time DESC);
CREATE INDEX IF NOT EXISTS idx_reservations_expiry ON reservations (status, created_at)
    WHERE status IN ('pending', 'awaiting_payment');

CREATE TABLE IF NOT EXISTS reservation_payments (
    id UUID PRIMARY KEY,
    reservation_id UUID NOT NULL UNIQUE REFERENCES reservations (id),
    amount NUMERIC(12, 2) NOT NULL,
    currency CHAR(3) NOT NULL,
    status TEXT NOT NULL,
    transaction_id TEXT,
    failure_reason TEXT,
    created_at TIMESTAMPTZ NOT NULL,
    paid_at TIMESTAMPTZ,
    refund_amount NUMERIC(12, 2),
    refund_transaction_id TEXT,
    refunded_at TIMESTAMPTZ
);

CREATE TABLE IF NOT EXISTS reservation_status_history (
    id BIGSERIAL PRIMARY KEY,
    reservation_id UUID NOT NULL REFERENCES reservations (id),
    from_status TEXT,
    to_status TEXT NOT NULL,
    event TEXT,
    actor_id UUID,
    reason TEXT,
    changed_at TIMESTAMPTZ NOT NULL
);
"""

# Columns a status transition may write besides status itself
MUTABLE_COLUMNS = frozenset({
    "updated_at",
    "status_changed_at",
    "check_in_time",
    "check_out_time",
    "cancelled_at",
    "cancellation_reason",
})

RETRYABLE_ERRORS = (
    asyncpg.exceptions.SerializationError,
    asyncpg.exceptions.DeadlockDetectedError,
    asyncpg.exceptions.LockNotAvailableError,
    asyncpg.exceptions.UniqueViolationError,
)


class DatabasePool:
    """
    Async PostgreSQL connection pool
    """

    def __init__(self, dsn: str = None):
        self.dsn = dsn or settings.database_url
        self.pool: Optional[asyncpg.Pool] = None
        self._initialized = False

    async def initialize(self):
        """Create connection pool"""
        if self._initialized:
            return

        try:
            logger.info("Creating database pool...")

            self.pool = await asyncpg.create_pool(
                self.dsn,
                min_size=settings.db_pool_min_size,
                max_size=settings.db_pool_max_size,
                max_inactive_connection_lifetime=300,
                command_timeout=60,
                server_settings={
                    'application_name': settings.app_name,
                    'jit': 'off'
                }
            )

            async with self.pool.acquire() as conn:
                version = await conn.fetchval("SELECT version()")
                logger.info(f"Connected to PostgreSQL: {version[:30]}...")

            self._initialized = True
            logger.info(f"Database pool ready: {self.get_stats()}")

        except (OSError, asyncpg.PostgresError) as e:
            logger.error(f"Failed to initialize database pool: {e}")
            raise

    async def close(self):
        """Close connection pool"""
        if self.pool:
            await self.pool.close()
            self._initialized = False
            logger.info("Database pool closed")

    @asynccontextmanager
    async def acquire(self) -> AsyncGenerator[asyncpg.Connection, None]:
        """Acquire connection from pool"""
        if not self.pool:
            raise RuntimeError("Database pool not initialized")

        async with self.pool.acquire() as conn:
            yield conn

    @asynccontextmanager
    async def transaction(self) -> AsyncGenerator[asyncpg.Connection, None]:
        """Execute in transaction"""
        async with self.acquire() as conn:
            async with conn.transaction():
                yield conn

    async def init_schema(self):
        """Create tables, indexes and constraints if missing"""
        async with self.acquire() as conn:
            await conn.execute(SCHEMA_SQL)
        logger.info("Reservation schema ready")

    def get_stats(self) -> Dict[str, Any]:
        """Get pool statistics"""
        if not self.pool:
            return {"status": "not_initialized"}

        return {
            "size": self.pool.get_size(),
            "min_size": self.pool.get_min_size(),
            "max_size": self.pool.get_max_size(),
            "free_connections": self.pool.get_idle_size(),
        }

# ============================================================
# Row Mapping
# ============================================================

def row_to_reservation(row) -> Reservation:
    data = dict(row)
    data["vehicle"] = VehicleInfo(
        vehicle_type=data.pop("vehicle_type"),
        plate=data.pop("vehicle_plate"),
        model=data.pop("vehicle_model", None),
    )
    return Reservation(**data)

def row_to_space(row) -> SpaceInfo:
    data = dict(row)
    data["rates"] = RateSchedule(
        hourly_rate=data.pop("hourly_rate"),
        daily_rate=data.pop("daily_rate"),
        weekly_rate=data.pop("weekly_rate"),
        monthly_rate=data.pop("monthly_rate"),
    )
    return SpaceInfo(**data)

def _value(v):
    return v.value if hasattr(v, "value") else v

# ============================================================
# Transaction
# ============================================================

class PostgresTransaction(StoreTransaction):
    """StoreTransaction over one connection inside an open transaction"""

    def __init__(self, conn: asyncpg.Connection):
        self.conn = conn

    async def find_overlapping(
        self,
        space_id: UUID,
        start_time: datetime,
        end_time: datetime,
        exclude_reservation_id: Optional[UUID] = None
    ) -> List[Reservation]:
        rows = await self.conn.fetch("""
            SELECT * FROM reservations
            WHERE space_id = $1
            AND status IN ('pending', 'awaiting_payment', 'confirmed', 'in_progress')
            AND start_time < $3
            AND $2 < end_time
            AND ($4::uuid IS NULL OR id <> $4)
            ORDER BY start_time
        """, space_id, start_time, end_time, exclude_reservation_id)
        return [row_to_reservation(row) for row in rows]

    async def get_reservation(self, reservation_id: UUID) -> Optional[Reservation]:
        row = await self.conn.fetchrow("SELECT * FROM reservations WHERE id = $1", reservation_id)
        return row_to_reservation(row) if row else None

    async def insert_reservation(self, reservation: Reservation) -> Reservation:
        row = await self.conn.fetchrow("""
            INSERT INTO reservations (
                id, reference_code, requester_id, space_id, space_owner_id,
                start_time, end_time, pricing_mode, duration_units,
                vehicle_type, vehicle_plate, vehicle_model,
                base_amount, tax_amount, service_fee, discount_amount, total_amount, discount_code,
                status, created_at, updated_at, status_changed_at
            ) VALUES (
                $1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11,
                $12, $13, $14, $15, $16, $17, $18, $19, $20, $21, $22
            )
            RETURNING *
        """,
            reservation.id,
            reservation.reference_code,
            reservation.requester_id,
            reservation.space_id,
            reservation.space_owner_id,
            reservation.start_time,
            reservation.end_time,
            _value(reservation.pricing_mode),
            reservation.duration_units,
            _value(reservation.vehicle.vehicle_type),
            reservation.vehicle.plate,
            reservation.vehicle.model,
            reservation.base_amount,
            reservation.tax_amount,
            reservation.service_fee,
            reservation.discount_amount,
            reservation.total_amount,
            reservation.discount_code,
            _value(reservation.status),
            reservation.created_at,
            reservation.updated_at,
            reservation.status_changed_at
        )
        return row_to_reservation(row)

    async def compare_and_set_status(
        self,
        reservation_id: UUID,
        expected: ReservationStatus,
        new_status: ReservationStatus,
        changes: Optional[dict] = None
    ) -> Optional[Reservation]:
        params = [reservation_id, _value(expected), _value(new_status)]
        assignments = ["status = $3"]

        for column, value in (changes or {}).items():
            if column not in MUTABLE_COLUMNS:
                raise ValueError(f"Column {column} cannot change on a status transition")
            params.append(value)
            assignments.append(f"{column} = ${len(params)}")

        row = await self.conn.fetchrow(f"""
            UPDATE reservations
            SET {', '.join(assignments)}
            WHERE id = $1 AND status = $2
            RETURNING *
        """, *params)
        return row_to_reservation(row) if row else None

    async def adjust_available_spots(self, space_id: UUID, delta: int) -> Optional[int]:
        return await self.conn.fetchval("""
            UPDATE parking_spaces
            SET available_spots = LEAST(GREATEST(available_spots + $2, 0), total_spots)
            WHERE id = $1
            RETURNING available_spots
        """, space_id, delta)

    async def get_payment(self, reservation_id: UUID) -> Optional[Payment]:
        row = await self.conn.fetchrow(
            "SELECT * FROM reservation_payments WHERE reservation_id = $1",
            reservation_id
        )
        return Payment(**dict(row)) if row else None

    async def save_payment(self, payment: Payment) -> Payment:
        row = await self.conn.fetchrow("""
            INSERT INTO reservation_payments (
                id, reservation_id, amount, currency, status, transaction_id, failure_reason,
                created_at, paid_at, refund_amount, refund_transaction_id, refunded_at
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12)
            ON CONFLICT (reservation_id) DO UPDATE SET
                status = EXCLUDED.status,
                transaction_id = EXCLUDED.transaction_id,
                failure_reason = EXCLUDED.failure_reason,
                paid_at = EXCLUDED.paid_at,
                refund_amount = EXCLUDED.refund_amount,
                refund_transaction_id = EXCLUDED.refund_transaction_id,
                refunded_at = EXCLUDED.refunded_at
            RETURNING *
        """,
            payment.id,
            payment.reservation_id,
            payment.amount,
            payment.currency,
            _value(payment.status),
            payment.transaction_id,
            payment.failure_reason,
            payment.created_at,
            payment.paid_at,
            payment.refund_amount,
            payment.refund_transaction_id,
            payment.refunded_at
        )
        return Payment(**dict(row))

    async def append_history(self, change: StatusChange) -> None:
        await self.conn.execute("""
            INSERT INTO reservation_status_history (
                reservation_id, from_status, to_status, event, actor_id, reason, changed_at
            ) VALUES ($1, $2, $3, $4, $5, $6, $7)
        """,
            change.reservation_id,
            _value(change.from_status),
            _value(change.to_status),
            _value(change.event),
            change.actor_id,
            change.reason,
            change.changed_at
        )

# ============================================================
# Store
# ============================================================

class PostgresReservationStore(ReservationStore):
    """ReservationStore backed by PostgreSQL"""

    def __init__(self, db: DatabasePool, lock_timeout_ms: Optional[int] = None):
        self.db = db
        self.lock_timeout_ms = lock_timeout_ms or int(settings.lock_wait_seconds * 1000)

    @asynccontextmanager
    async def transaction(self, space_id: UUID) -> AsyncIterator[StoreTransaction]:
        try:
            async with self.db.transaction() as conn:
                await conn.execute(f"SET LOCAL lock_timeout = '{int(self.lock_timeout_ms)}ms'")
                await conn.fetchval("SELECT id FROM parking_spaces WHERE id = $1 FOR UPDATE", space_id)
                yield PostgresTransaction(conn)
        except ReservationError:
            raise
        except asyncpg.exceptions.ExclusionViolationError as e:
            logger.warning(f"Exclusion constraint rejected overlap on space {space_id}: {e}")
            raise SlotUnavailableError(space_id) from e
        except RETRYABLE_ERRORS as e:
            logger.warning(f"Transaction conflict on space {space_id}: {type(e).__name__}: {e}")
            raise StorageConflictError(str(e), resource=f"space:{space_id}") from e

    async def get_reservation(self, reservation_id: UUID) -> Optional[Reservation]:
        async with self.db.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM reservations WHERE id = $1", reservation_id)
        return row_to_reservation(row) if row else None

    async def get_reservation_by_reference(self, reference_code: str) -> Optional[Reservation]:
        async with self.db.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM reservations WHERE reference_code = $1",
                reference_code.strip().upper()
            )
        return row_to_reservation(row) if row else None

    async def list_reservations(
        self,
        filters: ReservationFilter,
        requester_id: Optional[UUID] = None,
        space_owner_id: Optional[UUID] = None
    ) -> ReservationPage:
        where = "WHERE 1=1"
        params = []

        if requester_id:
            params.append(requester_id)
            where += f" AND requester_id = ${len(params)}"

        if space_owner_id:
            params.append(space_owner_id)
            where += f" AND space_owner_id = ${len(params)}"

        if filters.space_id:
            params.append(filters.space_id)
            where += f" AND space_id = ${len(params)}"

        if filters.status:
            params.append(_value(filters.status))
            where += f" AND status = ${len(params)}"

        if filters.start_date:
            params.append(filters.start_date)
            where += f" AND end_time >= ${len(params)}"

        if filters.end_date:
            params.append(filters.end_date)
            where += f" AND start_time <= ${len(params)}"

        async with self.db.acquire() as conn:
            total = await conn.fetchval(f"SELECT COUNT(*) FROM reservations {where}", *params)
            rows = await conn.fetch(
                f"SELECT * FROM reservations {where} "
                f"ORDER BY start_time DESC, created_at DESC "
                f"LIMIT {filters.page_size} OFFSET {filters.offset}",
                *params
            )

        return ReservationPage(
            items=[row_to_reservation(row) for row in rows],
            total=total,
            page=filters.page,
            page_size=filters.page_size
        )

    async def find_expirable(
        self,
        pending_created_before: datetime,
        payment_changed_before: datetime,
        now: datetime,
        limit: int = 500
    ) -> List[Reservation]:
        async with self.db.acquire() as conn:
            rows = await conn.fetch("""
                SELECT * FROM reservations
                WHERE (status = 'pending' AND (created_at <= $1 OR start_time <= $3))
                OR (
                    status = 'awaiting_payment'
                    AND (COALESCE(status_changed_at, created_at) <= $2 OR end_time <= $3)
                )
                ORDER BY created_at
                LIMIT $4
            """, pending_created_before, payment_changed_before, now, limit)
        return [row_to_reservation(row) for row in rows]

    async def get_payment(self, reservation_id: UUID) -> Optional[Payment]:
        async with self.db.acquire() as conn:
            return await PostgresTransaction(conn).get_payment(reservation_id)

    async def get_history(self, reservation_id: UUID) -> List[StatusChange]:
        async with self.db.acquire() as conn:
            rows = await conn.fetch("""
                SELECT reservation_id, from_status, to_status, event, actor_id, reason, changed_at
                FROM reservation_status_history
                WHERE reservation_id = $1
                ORDER BY changed_at, id
            """, reservation_id)
        return [StatusChange(**dict(row)) for row in rows]


class PostgresSpaceDirectory:
    """Space lookup from the parking_spaces table"""

    def __init__(self, db: DatabasePool):
        self.db = db

    async def get_space(self, space_id: UUID) -> Optional[SpaceInfo]:
        async with self.db.acquire() as conn:
            row = await conn.fetchrow("""
                SELECT id, owner_id, hourly_rate, daily_rate, weekly_rate, monthly_rate,
                       is_active, total_spots, available_spots, auto_approve
                FROM parking_spaces
                WHERE id = $1
            """, space_id)
        return row_to_space(row) if row else None

# Global instance (singleton pattern)
_db_pool: Optional[DatabasePool] = None

async def get_db_pool() -> DatabasePool:
    """Get or create database pool"""
    global _db_pool

    if _db_pool is None:
        _db_pool = DatabasePool()
        await _db_pool.initialize()

    return _db_pool

async def close_db_pool():
    """Close database pool"""
    global _db_pool

    if _db_pool:
        await _db_pool.close()
        _db_pool = None
