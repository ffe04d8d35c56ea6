import os
import json
import logging
from contextlib import asynccontextmanager
import asyncpg
from asyncpg.exceptions import PostgresError, UniqueViolationError
from typing import Type, List, Optional
from pydantic import BaseModel

from shared.errors import DuplicateValueError, PersistenceError

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS flights (
    flight_id SERIAL PRIMARY KEY,
    flight_code TEXT NOT NULL UNIQUE,
    flight_name TEXT NOT NULL,
    airline TEXT NOT NULL,
    origin TEXT NOT NULL,
    destination TEXT NOT NULL,
    departure_time TIMESTAMPTZ NOT NULL,
    arrival_time TIMESTAMPTZ NOT NULL,
    duration TEXT NOT NULL,
    total_seats INTEGER NOT NULL CHECK (total_seats >= 1),
    unassigned_seats INTEGER NOT NULL CHECK (unassigned_seats >= 0),
    base_price DOUBLE PRECISION NOT NULL CHECK (base_price >= 0),
    status TEXT NOT NULL DEFAULT 'scheduled',
    gate TEXT,
    terminal TEXT,
    aircraft TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE INDEX IF NOT EXISTS flights_route_idx ON flights (origin, destination, departure_time);

CREATE TABLE IF NOT EXISTS fare_classes (
    flight_id INTEGER NOT NULL REFERENCES flights (flight_id) ON DELETE CASCADE,
    class_name TEXT NOT NULL,
    price DOUBLE PRECISION NOT NULL CHECK (price >= 0),
    allocated_seats INTEGER NOT NULL CHECK (allocated_seats >= 0),
    available_seats INTEGER NOT NULL CHECK (available_seats >= 0 AND available_seats <= allocated_seats),
    PRIMARY KEY (flight_id, class_name)
);

CREATE TABLE IF NOT EXISTS bookings (
    booking_id SERIAL PRIMARY KEY,
    booking_code TEXT NOT NULL UNIQUE,
    user_id TEXT NOT NULL,
    flight_id INTEGER NOT NULL,
    flight_name TEXT,
    origin TEXT,
    destination TEXT,
    departure_time TIMESTAMPTZ,
    journey_date TIMESTAMPTZ,
    passengers INTEGER NOT NULL CHECK (passengers BETWEEN 1 AND 9),
    seat_class TEXT NOT NULL,
    seats JSONB NOT NULL DEFAULT '[]',
    price DOUBLE PRECISION NOT NULL CHECK (price >= 0),
    total_price DOUBLE PRECISION NOT NULL CHECK (total_price >= 0),
    status TEXT NOT NULL,
    payment_status TEXT NOT NULL,
    payment_method TEXT NOT NULL,
    booking_date TIMESTAMPTZ NOT NULL DEFAULT now(),
    email TEXT,
    mobile TEXT,
    special_requests TEXT,
    extras JSONB NOT NULL DEFAULT '{}'
);
CREATE INDEX IF NOT EXISTS bookings_user_idx ON bookings (user_id, booking_date DESC);
CREATE INDEX IF NOT EXISTS bookings_status_idx ON bookings (status);

CREATE TABLE IF NOT EXISTS payment_notices (
    notice_id SERIAL PRIMARY KEY,
    booking_id INTEGER NOT NULL,
    event_id TEXT NOT NULL UNIQUE,
    kind TEXT NOT NULL,
    amount DOUBLE PRECISION NOT NULL,
    status TEXT NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE TABLE IF NOT EXISTS outbox (
    event_id TEXT PRIMARY KEY,
    event_type TEXT NOT NULL,
    payload JSONB NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE TABLE IF NOT EXISTS inbox (
    event_id TEXT PRIMARY KEY,
    event_type TEXT NOT NULL,
    payload JSONB NOT NULL,
    received_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
"""


async def _init_connection(conn):
    await conn.set_type_codec("jsonb", encoder=json.dumps, decoder=json.loads, schema="pg_catalog")


class Database:
    def __init__(self, dsn: Optional[str] = None):
        self.dsn = dsn or os.getenv("POSTGRES_CONN_STRING")
        self.pool = None

    async def connect(self):
        try:
            self.pool = await asyncpg.create_pool(self.dsn, init=_init_connection)
        except Exception as e:
            raise ConnectionError(f"Error connecting to database: {e}")

    async def disconnect(self):
        if self.pool:
            await self.pool.close()

    async def create_schema(self):
        if not self.pool:
            raise RuntimeError("Database connection pool is not initialized")
        async with self.pool.acquire() as conn:
            await conn.execute(SCHEMA)
        logger.info("Database schema is in place")

    @asynccontextmanager
    async def transaction(self):
        if not self.pool:
            raise RuntimeError("Database connection pool is not initialized")
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                yield conn

    async def execute_query(self, sql, *parameters, conn=None):
        if conn is None and not self.pool:
            raise RuntimeError("Database connection pool is not initialized")
        try:
            executor = conn if conn is not None else self.pool
            response = await executor.fetch(sql, *parameters)
            return [dict(row) for row in response]
        except UniqueViolationError as e:
            raise DuplicateValueError(f"Duplicate value: {e.detail or e}", constraint=e.constraint_name) from e
        except PostgresError as e:
            logger.error(f"Postgres error: {e}")
            raise PersistenceError(f"Database error: {e}") from e

    async def execute_to_model(self, model: Type[BaseModel], sql: str, *parameters, conn=None) -> List[BaseModel]:
        result = await self.execute_query(sql, *parameters, conn=conn)
        return [model(**item) for item in result]
