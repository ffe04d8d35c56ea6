"""
Shared fixtures: an in-memory repository standing in for Postgres, a recording
event publisher and a fixed clock.
"""

import copy
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import List, Optional

import pytest

from shared.errors import DuplicateValueError
from shared.models import (
    Booking,
    BookingRequest,
    Caller,
    FareClass,
    Flight,
    FlightQuery,
    FlightStatus,
    PaymentMethod,
    SeatClass,
    UserRole,
)
from shared.repository import BOOKING_CODE_CONSTRAINT, BookingRepository
from svc_booking.lifecycle import BookingLifecycle
from svc_flight.catalog import FlightCatalog

NOW = datetime(2026, 10, 19, 9, 0, tzinfo=timezone.utc)


class InMemoryRepository(BookingRepository):
    """Dict-backed repository; a failed transaction restores the prior state."""

    def __init__(self):
        self.flights = {}
        self.bookings = {}
        self.next_flight_id = 1
        self.next_booking_id = 1
        self.rollbacks = 0

    @asynccontextmanager
    async def transaction(self):
        snapshot = copy.deepcopy((self.flights, self.bookings, self.next_flight_id, self.next_booking_id))
        try:
            yield self
        except Exception:
            self.flights, self.bookings, self.next_flight_id, self.next_booking_id = snapshot
            self.rollbacks += 1
            raise

    def add_flight(self, flight: Flight) -> Flight:
        flight = flight.model_copy(update={"flight_id": self.next_flight_id}, deep=True)
        self.flights[flight.flight_id] = flight
        self.next_flight_id += 1
        return flight

    async def find_flight(self, flight_id: int) -> Optional[Flight]:
        flight = self.flights.get(flight_id)
        return flight.model_copy(deep=True) if flight else None

    async def find_flights(self, query: FlightQuery) -> List[Flight]:
        found = [f.model_copy(deep=True) for f in self.flights.values() if query.matches(f)]
        return sorted(found, key=lambda f: f.departure_time)

    async def insert_flight(self, flight: Flight) -> Flight:
        return self.add_flight(flight)

    async def update_flight(self, flight: Flight) -> Optional[Flight]:
        if flight.flight_id not in self.flights:
            return None
        self.flights[flight.flight_id] = flight.model_copy(deep=True)
        return await self.find_flight(flight.flight_id)

    async def delete_flight(self, flight_id: int) -> bool:
        return self.flights.pop(flight_id, None) is not None

    def _pool_move(self, flight, pool, delta) -> bool:
        if pool is None:
            if flight.unassigned_seats + delta < 0:
                return False
            flight.unassigned_seats += delta
            return True
        fare = flight.fare_class(pool)
        if fare is None or fare.available_seats + delta < 0:
            return False
        fare.available_seats += delta
        return True

    async def reserve_seats(self, flight_id, seat_class, count) -> bool:
        flight = self.flights.get(flight_id)
        if flight is None:
            return False
        if seat_class is not None:
            return self._pool_move(flight, seat_class, -count)
        plan = flight.draw_plan(count)
        if plan is None:
            return False
        for pool, seats in plan:
            self._pool_move(flight, pool, -seats)
        return True

    async def release_seats(self, flight_id, seat_class, count) -> bool:
        flight = self.flights.get(flight_id)
        if flight is None:
            return False
        if seat_class is not None:
            return self._pool_move(flight, seat_class, count)
        for pool, seats in flight.return_plan(count):
            self._pool_move(flight, pool, seats)
        return True

    async def find_booking(self, booking_id, for_update=False) -> Optional[Booking]:
        booking = self.bookings.get(booking_id)
        return booking.model_copy(deep=True) if booking else None

    async def list_bookings(self, user_id=None) -> List[Booking]:
        found = [b for b in self.bookings.values() if user_id is None or b.user_id == user_id]
        return sorted(found, key=lambda b: b.booking_date, reverse=True)

    async def insert_booking(self, booking: Booking) -> Booking:
        if any(b.booking_code == booking.booking_code for b in self.bookings.values()):
            raise DuplicateValueError(
                f"Duplicate value: booking_code {booking.booking_code}", constraint=BOOKING_CODE_CONSTRAINT
            )
        booking = booking.model_copy(update={"booking_id": self.next_booking_id}, deep=True)
        self.bookings[booking.booking_id] = booking
        self.next_booking_id += 1
        return booking

    async def save_booking(self, booking: Booking) -> Booking:
        self.bookings[booking.booking_id] = booking.model_copy(deep=True)
        return booking


class RecordingEvents:
    def __init__(self, error: Optional[Exception] = None):
        self.published = []
        self.error = error

    async def publish_event(self, event_type, payload):
        if self.error is not None:
            raise self.error
        self.published.append((event_type, payload))
        return f"event-{len(self.published)}"


def make_flight(
    code="AI101",
    origin="DEL",
    destination="BOM",
    departs_in=timedelta(days=2),
    total_seats=10,
    economy_seats=8,
    economy_available=None,
    economy_price=3000.0,
    base_price=2500.0,
    extra_classes=(),
    status=FlightStatus.SCHEDULED,
) -> Flight:
    classes = []
    if economy_seats is not None:
        classes.append(FareClass(
            class_name=SeatClass.ECONOMY,
            price=economy_price,
            allocated_seats=economy_seats,
            available_seats=economy_seats if economy_available is None else economy_available,
        ))
    classes.extend(extra_classes)
    departure = NOW + departs_in
    return Flight(
        flight_id=0,
        flight_code=code,
        flight_name=f"Flight {code}",
        airline="Air India",
        origin=origin,
        destination=destination,
        departure_time=departure,
        arrival_time=departure + timedelta(hours=2, minutes=10),
        duration="2h 10m",
        total_seats=total_seats,
        unassigned_seats=total_seats - sum(c.allocated_seats for c in classes),
        base_price=base_price,
        classes=classes,
        status=status,
    )


def booking_request(flight_id, passengers=2, seat_class=SeatClass.ECONOMY, **kwargs) -> BookingRequest:
    return BookingRequest(
        flight_id=flight_id,
        passengers=passengers,
        seat_class=seat_class,
        payment_method=PaymentMethod.UPI,
        **kwargs,
    )


@pytest.fixture
def repository():
    return InMemoryRepository()


@pytest.fixture
def events():
    return RecordingEvents()


@pytest.fixture
def clock():
    return lambda: NOW


@pytest.fixture
def lifecycle(repository, events, clock):
    return BookingLifecycle(repository, events=events, clock=clock)


@pytest.fixture
def catalog(repository, clock):
    return FlightCatalog(repository, clock=clock)


@pytest.fixture
def customer():
    return Caller(user_id="user-arjun", role=UserRole.CUSTOMER, email="arjun@example.com")


@pytest.fixture
def other_customer():
    return Caller(user_id="user-meera", role=UserRole.CUSTOMER, email="meera@example.com")


@pytest.fixture
def admin():
    return Caller(user_id="user-admin", role=UserRole.ADMIN, email="admin@flightbooking.com")
