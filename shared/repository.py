import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import AsyncIterator, List, Optional

from shared.database import Database
from shared.errors import PersistenceError
from shared.models import Booking, FareClass, Flight, FlightQuery, SeatClass

logger = logging.getLogger(__name__)


class BookingRepository(ABC):
    """Persistence used by the booking lifecycle and the flight catalog.

    Seat counters only move through ``reserve_seats`` and ``release_seats``.
    A ``seat_class`` of ``None`` stands for a class the flight does not offer:
    those seats come out of the whole flight, following ``Flight.draw_plan``
    and ``Flight.return_plan``.
    """

    @abstractmethod
    def transaction(self) -> "AsyncIterator[BookingRepository]":
        """Async context manager yielding a repository bound to one unit of work."""

    @abstractmethod
    async def find_flight(self, flight_id: int) -> Optional[Flight]: ...

    @abstractmethod
    async def find_flights(self, query: FlightQuery) -> List[Flight]: ...

    @abstractmethod
    async def insert_flight(self, flight: Flight) -> Flight: ...

    @abstractmethod
    async def update_flight(self, flight: Flight) -> Optional[Flight]: ...

    @abstractmethod
    async def delete_flight(self, flight_id: int) -> bool: ...

    @abstractmethod
    async def reserve_seats(self, flight_id: int, seat_class: Optional[SeatClass], count: int) -> bool:
        """Take ``count`` seats from the pool only if it still holds that many."""

    @abstractmethod
    async def release_seats(self, flight_id: int, seat_class: Optional[SeatClass], count: int) -> bool: ...

    @abstractmethod
    async def find_booking(self, booking_id: int, for_update: bool = False) -> Optional[Booking]: ...

    @abstractmethod
    async def list_bookings(self, user_id: Optional[str] = None) -> List[Booking]: ...

    @abstractmethod
    async def insert_booking(self, booking: Booking) -> Booking:
        """Raises ``DuplicateValueError`` on a taken booking code, leaving the unit of work usable."""

    @abstractmethod
    async def save_booking(self, booking: Booking) -> Booking: ...


FLIGHT_COLUMNS = (
    "flight_code, flight_name, airline, origin, destination, departure_time, arrival_time, "
    "duration, total_seats, unassigned_seats, base_price, status, gate, terminal, aircraft"
)

BOOKING_COLUMNS = (
    "booking_code, user_id, flight_id, flight_name, origin, destination, departure_time, "
    "journey_date, passengers, seat_class, seats, price, total_price, status, payment_status, "
    "payment_method, booking_date, email, mobile, special_requests, extras"
)

BOOKING_CODE_CONSTRAINT = "bookings_booking_code_key"


class PostgresRepository(BookingRepository):
    def __init__(self, db: Database, conn=None):
        self.db = db
        self.conn = conn

    @asynccontextmanager
    async def transaction(self):
        if self.conn is not None:
            # Already inside a unit of work.
            yield self
            return
        async with self.db.transaction() as conn:
            yield PostgresRepository(self.db, conn)

    async def _fetch(self, sql, *parameters):
        return await self.db.execute_query(sql, *parameters, conn=self.conn)

    async def _attach_classes(self, rows) -> List[Flight]:
        if not rows:
            return []
        ids = [row["flight_id"] for row in rows]
        fares = await self._fetch(
            """
            SELECT flight_id, class_name, price, allocated_seats, available_seats
            FROM fare_classes WHERE flight_id = ANY($1::int[])
            ORDER BY flight_id, price
            """,
            ids,
        )
        by_flight = {}
        for fare in fares:
            flight_id = fare.pop("flight_id")
            by_flight.setdefault(flight_id, []).append(FareClass(**fare))
        return [Flight(**row, classes=by_flight.get(row["flight_id"], [])) for row in rows]

    async def find_flight(self, flight_id: int) -> Optional[Flight]:
        rows = await self._fetch(f"SELECT flight_id, {FLIGHT_COLUMNS} FROM flights WHERE flight_id = $1", flight_id)
        flights = await self._attach_classes(rows)
        return flights[0] if flights else None

    async def find_flights(self, query: FlightQuery) -> List[Flight]:
        conditions = []
        parameters = []

        def bind(value):
            parameters.append(value)
            return f"${len(parameters)}"

        if query.origin is not None:
            conditions.append(f"f.origin = {bind(query.origin)}")
        if query.destination is not None:
            conditions.append(f"f.destination = {bind(query.destination)}")
        if query.status is not None:
            conditions.append(f"f.status = {bind(query.status.value)}")
        if query.departs_after is not None:
            conditions.append(f"f.departure_time > {bind(query.departs_after)}")
        if query.departs_from is not None:
            conditions.append(f"f.departure_time >= {bind(query.departs_from)}")
        if query.departs_before is not None:
            conditions.append(f"f.departure_time < {bind(query.departs_before)}")
        if query.min_available is not None:
            conditions.append(f"f.unassigned_seats + COALESCE(c.available, 0) >= {bind(query.min_available)}")
        if query.exclude_flight_id is not None:
            conditions.append(f"f.flight_id <> {bind(query.exclude_flight_id)}")
        if query.min_price is not None:
            conditions.append(f"f.base_price >= {bind(query.min_price)}")
        if query.max_price is not None:
            conditions.append(f"f.base_price <= {bind(query.max_price)}")

        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        sql = f"""
            SELECT f.flight_id, {', '.join('f.' + c.strip() for c in FLIGHT_COLUMNS.split(','))}
            FROM flights f
            LEFT JOIN (
                SELECT flight_id, SUM(available_seats) AS available
                FROM fare_classes GROUP BY flight_id
            ) c ON c.flight_id = f.flight_id
            {where}
            ORDER BY f.departure_time ASC
        """
        rows = await self._fetch(sql, *parameters)
        return await self._attach_classes(rows)

    async def insert_flight(self, flight: Flight) -> Flight:
        async with self.transaction() as tx:
            data = flight.model_dump(include=set(c.strip() for c in FLIGHT_COLUMNS.split(",")), mode="python")
            data["status"] = flight.status.value
            names = list(data)
            placeholders = ", ".join(f"${i}" for i in range(1, len(names) + 1))
            rows = await tx._fetch(
                f"INSERT INTO flights ({', '.join(names)}) VALUES ({placeholders}) RETURNING flight_id",
                *data.values(),
            )
            flight_id = rows[0]["flight_id"]
            for fare in flight.classes:
                await tx._fetch(
                    """
                    INSERT INTO fare_classes (flight_id, class_name, price, allocated_seats, available_seats)
                    VALUES ($1, $2, $3, $4, $5)
                    """,
                    flight_id, fare.class_name.value, fare.price, fare.allocated_seats, fare.available_seats,
                )
        return flight.model_copy(update={"flight_id": flight_id})

    async def update_flight(self, flight: Flight) -> Optional[Flight]:
        rows = await self._fetch(
            """
            UPDATE flights SET flight_name = $2, airline = $3, departure_time = $4, arrival_time = $5,
                duration = $6, base_price = $7, status = $8, gate = $9, terminal = $10, aircraft = $11
            WHERE flight_id = $1
            RETURNING flight_id
            """,
            flight.flight_id, flight.flight_name, flight.airline, flight.departure_time, flight.arrival_time,
            flight.duration, flight.base_price, flight.status.value, flight.gate, flight.terminal, flight.aircraft,
        )
        if not rows:
            return None
        return await self.find_flight(flight.flight_id)

    async def delete_flight(self, flight_id: int) -> bool:
        rows = await self._fetch("DELETE FROM flights WHERE flight_id = $1 RETURNING flight_id", flight_id)
        return bool(rows)

    async def _lock_flight(self, flight_id: int) -> Optional[Flight]:
        rows = await self._fetch(
            f"SELECT flight_id, {FLIGHT_COLUMNS} FROM flights WHERE flight_id = $1 FOR UPDATE", flight_id
        )
        await self._fetch("SELECT class_name FROM fare_classes WHERE flight_id = $1 FOR UPDATE", flight_id)
        flights = await self._attach_classes(rows)
        return flights[0] if flights else None

    async def _take(self, flight_id: int, pool: Optional[SeatClass], count: int) -> bool:
        if pool is None:
            rows = await self._fetch(
                """
                UPDATE flights SET unassigned_seats = unassigned_seats - $2
                WHERE flight_id = $1 AND unassigned_seats >= $2
                RETURNING unassigned_seats
                """,
                flight_id, count,
            )
        else:
            rows = await self._fetch(
                """
                UPDATE fare_classes SET available_seats = available_seats - $3
                WHERE flight_id = $1 AND class_name = $2 AND available_seats >= $3
                RETURNING available_seats
                """,
                flight_id, pool.value, count,
            )
        return bool(rows)

    async def _give(self, flight_id: int, pool: Optional[SeatClass], count: int) -> bool:
        if pool is None:
            rows = await self._fetch(
                """
                UPDATE flights SET unassigned_seats = unassigned_seats + $2
                WHERE flight_id = $1
                RETURNING unassigned_seats
                """,
                flight_id, count,
            )
        else:
            rows = await self._fetch(
                """
                UPDATE fare_classes SET available_seats = available_seats + $3
                WHERE flight_id = $1 AND class_name = $2
                RETURNING available_seats
                """,
                flight_id, pool.value, count,
            )
        return bool(rows)

    async def reserve_seats(self, flight_id: int, seat_class: Optional[SeatClass], count: int) -> bool:
        if seat_class is not None:
            return await self._take(flight_id, seat_class, count)
        async with self.transaction() as tx:
            # Locks every pool of the flight so the plan stays valid until commit.
            flight = await tx._lock_flight(flight_id)
            plan = flight.draw_plan(count) if flight is not None else None
            if plan is None:
                return False
            for pool, seats in plan:
                if not await tx._take(flight_id, pool, seats):
                    raise PersistenceError(f"Seat pool {pool} of flight {flight_id} changed under lock")
        return True

    async def release_seats(self, flight_id: int, seat_class: Optional[SeatClass], count: int) -> bool:
        if seat_class is not None:
            return await self._give(flight_id, seat_class, count)
        async with self.transaction() as tx:
            flight = await tx._lock_flight(flight_id)
            if flight is None:
                return False
            for pool, seats in flight.return_plan(count):
                await tx._give(flight_id, pool, seats)
        return True

    async def find_booking(self, booking_id: int, for_update: bool = False) -> Optional[Booking]:
        lock = " FOR UPDATE" if for_update and self.conn is not None else ""
        result = await self.db.execute_to_model(
            Booking,
            f"SELECT booking_id, {BOOKING_COLUMNS} FROM bookings WHERE booking_id = $1{lock}",
            booking_id,
            conn=self.conn,
        )
        return result[0] if result else None

    async def list_bookings(self, user_id: Optional[str] = None) -> List[Booking]:
        if user_id is None:
            sql = f"SELECT booking_id, {BOOKING_COLUMNS} FROM bookings ORDER BY booking_date DESC"
            return await self.db.execute_to_model(Booking, sql, conn=self.conn)
        sql = f"SELECT booking_id, {BOOKING_COLUMNS} FROM bookings WHERE user_id = $1 ORDER BY booking_date DESC"
        return await self.db.execute_to_model(Booking, sql, user_id, conn=self.conn)

    @staticmethod
    def _booking_values(booking: Booking) -> list:
        data = booking.model_dump(mode="json", exclude={"booking_id"})
        # asyncpg wants datetimes, not their JSON strings
        for key in ("departure_time", "journey_date", "booking_date"):
            data[key] = getattr(booking, key)
        return [data[c.strip()] for c in BOOKING_COLUMNS.split(",")]

    async def insert_booking(self, booking: Booking) -> Booking:
        columns = [c.strip() for c in BOOKING_COLUMNS.split(",")]
        placeholders = ", ".join(f"${i}" for i in range(1, len(columns) + 1))
        sql = f"INSERT INTO bookings ({BOOKING_COLUMNS}) VALUES ({placeholders}) RETURNING booking_id"
        if self.conn is None:
            rows = await self._fetch(sql, *self._booking_values(booking))
        else:
            # Savepoint, so a booking code collision does not abort the surrounding transaction.
            async with self.conn.transaction():
                rows = await self._fetch(sql, *self._booking_values(booking))
        return booking.model_copy(update={"booking_id": rows[0]["booking_id"]})

    async def save_booking(self, booking: Booking) -> Booking:
        columns = [c.strip() for c in BOOKING_COLUMNS.split(",")]
        assignments = ", ".join(f"{c} = ${i}" for i, c in enumerate(columns, start=2))
        rows = await self._fetch(
            f"UPDATE bookings SET {assignments} WHERE booking_id = $1 RETURNING booking_id",
            booking.booking_id,
            *self._booking_values(booking),
        )
        if not rows:
            logger.warning(f"Booking {booking.booking_id} vanished before it could be saved")
        return booking
