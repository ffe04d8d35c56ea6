"""
Tests for booking creation, cancellation and status changes.
Run with: pytest tests/test_booking_lifecycle.py -v
"""

import re
from datetime import timedelta

import pytest

from conftest import RecordingEvents, booking_request, make_flight
from shared.errors import (
    AuthorizationError,
    DuplicateValueError,
    EventPublishError,
    NotFoundError,
    ValidationFailure,
)
from shared.models import BookingStatus, FareClass, FlightStatus, PaymentStatus, SeatClass
from svc_booking.lifecycle import BookingLifecycle, format_amount, generate_booking_code


def seats(repository, flight_id, seat_class=SeatClass.ECONOMY):
    flight = repository.flights[flight_id]
    fare = flight.fare_class(seat_class)
    return flight.available_seats, (fare.available_seats if fare else flight.unassigned_seats)


class TestBookingCode:

    def test_code_shape(self):
        code = generate_booking_code()
        assert re.fullmatch(r"BK[0-9A-Z]+", code)

    def test_code_encodes_timestamp_in_base36(self):
        assert generate_booking_code(now_ms=36 ** 3).startswith("BK1000")
        assert len(generate_booking_code(now_ms=35)) == len("BKZ") + 4

    def test_format_amount(self):
        assert format_amount(3000) == "₹3,000"
        assert format_amount(1234.5) == "₹1,234.50"


class TestCreateBooking:

    @pytest.mark.asyncio
    async def test_create_decrements_flight_and_class(self, repository, lifecycle, customer, events):
        flight = repository.add_flight(make_flight())
        assert seats(repository, flight.flight_id) == (10, 8)

        outcome = await lifecycle.create_booking(customer, booking_request(flight.flight_id, passengers=2))

        booking = outcome.booking
        assert booking.total_price == 6000
        assert booking.price == 3000
        assert booking.total_price == booking.price * booking.passengers
        assert booking.status == BookingStatus.CONFIRMED
        assert booking.payment_status == PaymentStatus.COMPLETED
        assert booking.user_id == customer.user_id
        assert booking.email == customer.email
        assert (booking.origin, booking.destination) == ("DEL", "BOM")
        assert booking.journey_date == flight.departure_time
        assert seats(repository, flight.flight_id) == (8, 6)
        assert outcome.message == "Booking created successfully"
        assert events.published == [
            ("BookingCreated", {"booking_id": booking.booking_id, "booking_code": booking.booking_code, "amount": 6000})
        ]

    @pytest.mark.asyncio
    async def test_missing_flight(self, repository, lifecycle, customer):
        with pytest.raises(NotFoundError, match="Flight not found"):
            await lifecycle.create_booking(customer, booking_request(99))
        assert repository.bookings == {}

    @pytest.mark.asyncio
    async def test_not_enough_seats_leaves_flight_untouched(self, repository, lifecycle, customer):
        flight = repository.add_flight(make_flight(economy_available=3))

        with pytest.raises(ValidationFailure, match="requested 4, only 3"):
            await lifecycle.create_booking(customer, booking_request(flight.flight_id, passengers=4))

        assert seats(repository, flight.flight_id) == (5, 3)
        assert repository.bookings == {}

    @pytest.mark.asyncio
    async def test_flight_total_below_passengers(self, repository, lifecycle, customer):
        flight = repository.add_flight(make_flight(total_seats=2, economy_seats=2))

        with pytest.raises(ValidationFailure, match="Not enough seats available"):
            await lifecycle.create_booking(customer, booking_request(flight.flight_id, passengers=3))
        assert seats(repository, flight.flight_id) == (2, 2)

    @pytest.mark.asyncio
    async def test_unoffered_class_uses_base_price_and_unassigned_pool(self, repository, lifecycle, customer):
        flight = repository.add_flight(make_flight())

        outcome = await lifecycle.create_booking(
            customer, booking_request(flight.flight_id, passengers=2, seat_class=SeatClass.BUSINESS)
        )

        assert outcome.booking.price == 2500
        assert outcome.booking.total_price == 5000
        stored = repository.flights[flight.flight_id]
        assert stored.unassigned_seats == 0
        assert stored.fare_class(SeatClass.ECONOMY).available_seats == 8
        assert stored.available_seats == 8

    @pytest.mark.asyncio
    async def test_unoffered_class_on_fully_allocated_flight(self, repository, lifecycle, customer):
        business = FareClass(class_name=SeatClass.BUSINESS, price=9000, allocated_seats=2, available_seats=2)
        flight = repository.add_flight(make_flight(total_seats=10, economy_seats=8, extra_classes=[business]))
        assert repository.flights[flight.flight_id].unassigned_seats == 0

        outcome = await lifecycle.create_booking(
            customer, booking_request(flight.flight_id, passengers=3, seat_class=SeatClass.FIRST_CLASS)
        )

        assert outcome.booking.price == 2500
        stored = repository.flights[flight.flight_id]
        assert stored.available_seats == 7
        assert stored.fare_class(SeatClass.ECONOMY).available_seats == 5

        await lifecycle.cancel_booking(customer, outcome.booking.booking_id)
        stored = repository.flights[flight.flight_id]
        assert stored.available_seats == 10
        assert stored.fare_class(SeatClass.ECONOMY).available_seats == 8

    @pytest.mark.asyncio
    async def test_unoffered_class_limited_by_flight_total(self, repository, lifecycle, customer):
        flight = repository.add_flight(make_flight(total_seats=4, economy_seats=4, economy_available=1))

        with pytest.raises(ValidationFailure, match="requested 2, only 1"):
            await lifecycle.create_booking(
                customer, booking_request(flight.flight_id, passengers=2, seat_class=SeatClass.FIRST_CLASS)
            )
        assert seats(repository, flight.flight_id) == (1, 1)

    @pytest.mark.asyncio
    async def test_booking_code_collision_retries(self, repository, lifecycle, customer, monkeypatch):
        flight = repository.add_flight(make_flight())
        codes = iter(["BKTAKEN0001", "BKTAKEN0001", "BKFRESH0002"])
        monkeypatch.setattr("svc_booking.lifecycle.generate_booking_code", lambda: next(codes))

        first = await lifecycle.create_booking(customer, booking_request(flight.flight_id, passengers=1))
        second = await lifecycle.create_booking(customer, booking_request(flight.flight_id, passengers=1))

        assert first.booking.booking_code == "BKTAKEN0001"
        assert second.booking.booking_code == "BKFRESH0002"
        assert seats(repository, flight.flight_id) == (8, 6)

    @pytest.mark.asyncio
    async def test_booking_code_collision_gives_up(self, repository, lifecycle, customer, monkeypatch):
        flight = repository.add_flight(make_flight())
        monkeypatch.setattr("svc_booking.lifecycle.generate_booking_code", lambda: "BKTAKEN0001")
        await lifecycle.create_booking(customer, booking_request(flight.flight_id, passengers=1))

        with pytest.raises(DuplicateValueError):
            await lifecycle.create_booking(customer, booking_request(flight.flight_id, passengers=1))
        assert len(repository.bookings) == 1
        assert seats(repository, flight.flight_id) == (9, 7)

    @pytest.mark.asyncio
    async def test_departed_flight_is_not_bookable(self, repository, lifecycle, customer):
        past = repository.add_flight(make_flight(code="AI1", departs_in=timedelta(hours=-1)))
        boarding = repository.add_flight(make_flight(code="AI2", status=FlightStatus.BOARDING))

        for flight in (past, boarding):
            with pytest.raises(ValidationFailure, match="not open for booking"):
                await lifecycle.create_booking(customer, booking_request(flight.flight_id))
        assert repository.bookings == {}

    @pytest.mark.asyncio
    async def test_lost_seat_race_rolls_back(self, repository, lifecycle, customer, monkeypatch):
        flight = repository.add_flight(make_flight())

        async def sold_out(flight_id, seat_class, count):
            return False

        monkeypatch.setattr(repository, "reserve_seats", sold_out)
        with pytest.raises(ValidationFailure):
            await lifecycle.create_booking(customer, booking_request(flight.flight_id))

        assert repository.bookings == {}
        assert repository.rollbacks == 1

    @pytest.mark.asyncio
    async def test_publish_failure_keeps_booking(self, repository, clock, customer):
        failing = RecordingEvents(error=EventPublishError("stream unavailable"))
        lifecycle = BookingLifecycle(repository, events=failing, clock=clock)
        flight = repository.add_flight(make_flight())

        outcome = await lifecycle.create_booking(customer, booking_request(flight.flight_id))

        assert outcome.booking.booking_id in repository.bookings
        assert seats(repository, flight.flight_id) == (8, 6)


class TestCancelBooking:

    @pytest.mark.asyncio
    async def test_book_then_cancel_restores_seats(self, repository, lifecycle, customer, events):
        flight = repository.add_flight(make_flight())
        booking = (await lifecycle.create_booking(customer, booking_request(flight.flight_id))).booking
        assert seats(repository, flight.flight_id) == (8, 6)

        outcome = await lifecycle.cancel_booking(customer, booking.booking_id)

        assert seats(repository, flight.flight_id) == (10, 8)
        stored = repository.bookings[booking.booking_id]
        assert stored.status == BookingStatus.CANCELLED
        assert stored.payment_status == PaymentStatus.REFUNDED
        assert "Refund will be processed within 5-7 business days" in outcome.message
        assert events.published[-1][0] == "BookingCancelled"
        assert events.published[-1][1]["refund_amount"] == 6000

    @pytest.mark.asyncio
    async def test_cancel_twice_fails_without_touching_seats(self, repository, lifecycle, customer):
        flight = repository.add_flight(make_flight())
        booking = (await lifecycle.create_booking(customer, booking_request(flight.flight_id))).booking
        await lifecycle.cancel_booking(customer, booking.booking_id)

        with pytest.raises(ValidationFailure, match="already cancelled"):
            await lifecycle.cancel_booking(customer, booking.booking_id)
        assert seats(repository, flight.flight_id) == (10, 8)

    @pytest.mark.asyncio
    async def test_completed_booking_cannot_be_cancelled(self, repository, lifecycle, customer, admin):
        flight = repository.add_flight(make_flight())
        booking = (await lifecycle.create_booking(customer, booking_request(flight.flight_id))).booking
        await lifecycle.update_status(admin, booking.booking_id, BookingStatus.COMPLETED)

        with pytest.raises(ValidationFailure, match="completed"):
            await lifecycle.cancel_booking(customer, booking.booking_id)
        assert seats(repository, flight.flight_id) == (8, 6)
        assert repository.bookings[booking.booking_id].status == BookingStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_only_owner_or_admin_may_cancel(self, repository, lifecycle, customer, other_customer, admin):
        flight = repository.add_flight(make_flight())
        booking = (await lifecycle.create_booking(customer, booking_request(flight.flight_id))).booking

        with pytest.raises(AuthorizationError, match="Not authorized to cancel this booking"):
            await lifecycle.cancel_booking(other_customer, booking.booking_id)
        assert seats(repository, flight.flight_id) == (8, 6)

        await lifecycle.cancel_booking(admin, booking.booking_id)
        assert repository.bookings[booking.booking_id].status == BookingStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_cancel_after_flight_deleted(self, repository, lifecycle, customer):
        flight = repository.add_flight(make_flight())
        booking = (await lifecycle.create_booking(customer, booking_request(flight.flight_id))).booking
        await repository.delete_flight(flight.flight_id)

        outcome = await lifecycle.cancel_booking(customer, booking.booking_id)
        assert outcome.booking.status == BookingStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_missing_booking(self, lifecycle, customer):
        with pytest.raises(NotFoundError, match="Booking not found"):
            await lifecycle.cancel_booking(customer, 42)


class TestStatusAndQueries:

    @pytest.mark.asyncio
    async def test_terminal_status_is_final(self, repository, lifecycle, customer, admin):
        flight = repository.add_flight(make_flight())
        booking = (await lifecycle.create_booking(customer, booking_request(flight.flight_id))).booking
        await lifecycle.update_status(admin, booking.booking_id, BookingStatus.COMPLETED)

        with pytest.raises(ValidationFailure, match="completed booking"):
            await lifecycle.update_status(admin, booking.booking_id, BookingStatus.CONFIRMED)

    @pytest.mark.asyncio
    async def test_status_update_to_cancelled_releases_seats(self, repository, lifecycle, customer):
        flight = repository.add_flight(make_flight())
        booking = (await lifecycle.create_booking(customer, booking_request(flight.flight_id))).booking

        outcome = await lifecycle.update_status(customer, booking.booking_id, BookingStatus.CANCELLED)

        assert outcome.booking.payment_status == PaymentStatus.REFUNDED
        assert seats(repository, flight.flight_id) == (10, 8)

    @pytest.mark.asyncio
    async def test_get_booking_requires_owner(self, repository, lifecycle, customer, other_customer, admin):
        flight = repository.add_flight(make_flight())
        booking = (await lifecycle.create_booking(customer, booking_request(flight.flight_id))).booking

        assert (await lifecycle.get_booking(customer, booking.booking_id)).booking_code == booking.booking_code
        assert (await lifecycle.get_booking(admin, booking.booking_id)).booking_id == booking.booking_id
        with pytest.raises(AuthorizationError):
            await lifecycle.get_booking(other_customer, booking.booking_id)

    @pytest.mark.asyncio
    async def test_listing(self, repository, lifecycle, customer, other_customer, admin):
        flight = repository.add_flight(make_flight(total_seats=20, economy_seats=20))
        await lifecycle.create_booking(customer, booking_request(flight.flight_id, passengers=1))
        await lifecycle.create_booking(other_customer, booking_request(flight.flight_id, passengers=1))

        mine = await lifecycle.list_my_bookings(customer)
        assert [b.user_id for b in mine] == [customer.user_id]
        assert len(await lifecycle.list_all_bookings(admin)) == 2
        with pytest.raises(AuthorizationError):
            await lifecycle.list_all_bookings(customer)
