"""
Booking lifecycle: create, cancel, reschedule and the queries around them.

Every mutation runs inside one repository transaction, so the booking write
and the seat counter moves commit or roll back together. Seat counters only
move through the repository's compare-and-swap ``reserve_seats``.
"""

import logging
import random
import string
import time
from datetime import datetime
from typing import Callable, List, Optional

from shared.errors import (
    AuthorizationError,
    DuplicateValueError,
    EventPublishError,
    NotFoundError,
    PersistenceError,
    ValidationFailure,
)
from shared.models import (
    Booking,
    BookingOutcome,
    BookingRequest,
    BookingStatus,
    BookingSummary,
    Caller,
    Flight,
    FlightQuery,
    FlightStatus,
    PaymentStatus,
    RescheduleOptions,
    utcnow,
)
from shared.repository import BOOKING_CODE_CONSTRAINT, BookingRepository

logger = logging.getLogger(__name__)

CURRENCY = "₹"
REFUND_WINDOW = "5-7 business days"
BOOKING_CODE_ATTEMPTS = 3
_BASE36 = string.digits + string.ascii_uppercase


def _to_base36(value: int) -> str:
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits)) or "0"


def generate_booking_code(now_ms: Optional[int] = None) -> str:
    """BK + base-36 millisecond timestamp + four random base-36 characters."""
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    suffix = "".join(random.choices(_BASE36, k=4))
    return f"BK{_to_base36(now_ms)}{suffix}"


def format_amount(amount: float) -> str:
    if float(amount).is_integer():
        return f"{CURRENCY}{int(amount):,}"
    return f"{CURRENCY}{amount:,.2f}"


class BookingLifecycle:
    def __init__(
        self,
        repository: BookingRepository,
        events=None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.repository = repository
        self.events = events
        self.clock = clock or utcnow

    async def _publish(self, event_type: str, payload: dict):
        if self.events is None:
            return
        try:
            await self.events.publish_event(event_type, payload)
        except (EventPublishError, PersistenceError) as e:
            # The booking is already committed; the event can be replayed from the outbox.
            logger.error(f"Failed to publish {event_type} for booking {payload.get('booking_id')}: {e.message}")

    @staticmethod
    def _authorize(caller: Caller, booking: Booking, action: str):
        if booking.user_id != caller.user_id and not caller.is_admin:
            raise AuthorizationError(f"Not authorized to {action} this booking")

    async def _load(self, repo: BookingRepository, booking_id: int, for_update: bool = False) -> Booking:
        booking = await repo.find_booking(booking_id, for_update=for_update)
        if booking is None:
            raise NotFoundError("Booking not found")
        return booking

    @staticmethod
    def _check_capacity(flight: Flight, booking_passengers: int, seat_class, message: str):
        left = flight.seats_left_for(seat_class)
        if flight.available_seats < booking_passengers or left < booking_passengers:
            raise ValidationFailure(
                f"{message}: requested {booking_passengers}, "
                f"only {min(left, flight.available_seats)} {seat_class.value} seat(s) left"
            )

    @staticmethod
    async def _insert_with_fresh_code(repo: BookingRepository, booking: Booking) -> Booking:
        for attempt in range(1, BOOKING_CODE_ATTEMPTS + 1):
            try:
                return await repo.insert_booking(booking)
            except DuplicateValueError as e:
                if e.constraint != BOOKING_CODE_CONSTRAINT or attempt == BOOKING_CODE_ATTEMPTS:
                    raise
                logger.warning(f"Booking code {booking.booking_code} already taken, generating another")
                booking = booking.model_copy(update={"booking_code": generate_booking_code()})

    async def create_booking(self, caller: Caller, request: BookingRequest) -> BookingOutcome:
        now = self.clock()
        async with self.repository.transaction() as repo:
            flight = await repo.find_flight(request.flight_id)
            if flight is None:
                raise NotFoundError("Flight not found")
            if not flight.is_bookable(now):
                raise ValidationFailure("Flight is not open for booking")
            self._check_capacity(flight, request.passengers, request.seat_class, "Not enough seats available")

            price = flight.price_for(request.seat_class)
            booking = Booking(
                booking_code=generate_booking_code(),
                user_id=caller.user_id,
                flight_id=flight.flight_id,
                flight_name=flight.flight_name,
                origin=flight.origin,
                destination=flight.destination,
                departure_time=flight.departure_time,
                journey_date=flight.departure_time,
                passengers=request.passengers,
                seat_class=request.seat_class,
                seats=request.seats,
                price=price,
                total_price=price * request.passengers,
                status=BookingStatus.CONFIRMED,
                payment_status=PaymentStatus.COMPLETED,
                payment_method=request.payment_method,
                booking_date=now,
                email=caller.email,
                mobile=request.mobile,
                special_requests=request.special_requests,
                extras=request.extras,
            )

            pool = flight.seat_pool(request.seat_class)
            if not await repo.reserve_seats(flight.flight_id, pool, request.passengers):
                # Another booking took the seats after we read the flight.
                raise ValidationFailure("Not enough seats available")
            booking = await self._insert_with_fresh_code(repo, booking)

        logger.info(
            f"Booking {booking.booking_code} created on flight {flight.flight_code} "
            f"for {booking.passengers} passenger(s), total {booking.total_price}"
        )
        await self._publish("BookingCreated", {
            "booking_id": booking.booking_id,
            "booking_code": booking.booking_code,
            "amount": booking.total_price,
        })
        return BookingOutcome(booking=booking, message="Booking created successfully")

    async def cancel_booking(self, caller: Caller, booking_id: int) -> BookingOutcome:
        async with self.repository.transaction() as repo:
            booking = await self._load(repo, booking_id, for_update=True)
            self._authorize(caller, booking, "cancel")
            if booking.status == BookingStatus.CANCELLED:
                raise ValidationFailure("Booking is already cancelled")
            if booking.status == BookingStatus.COMPLETED:
                raise ValidationFailure("Cannot cancel a completed booking")

            booking = booking.model_copy(update={
                "status": BookingStatus.CANCELLED,
                "payment_status": PaymentStatus.REFUNDED,
            })
            booking = await repo.save_booking(booking)

            flight = await repo.find_flight(booking.flight_id)
            if flight is not None:
                await repo.release_seats(flight.flight_id, flight.seat_pool(booking.seat_class), booking.passengers)
            else:
                logger.warning(
                    f"Flight {booking.flight_id} no longer exists; "
                    f"seats for cancelled booking {booking.booking_code} not restored"
                )

        logger.info(f"Booking {booking.booking_code} cancelled by {caller.user_id}")
        await self._publish("BookingCancelled", {
            "booking_id": booking.booking_id,
            "booking_code": booking.booking_code,
            "refund_amount": booking.total_price,
        })
        return BookingOutcome(
            booking=booking,
            message=f"Booking cancelled successfully. Refund will be processed within {REFUND_WINDOW}.",
        )

    async def reschedule_booking(self, caller: Caller, booking_id: int, new_flight_id: int) -> BookingOutcome:
        now = self.clock()
        async with self.repository.transaction() as repo:
            booking = await self._load(repo, booking_id, for_update=True)
            self._authorize(caller, booking, "reschedule")
            if booking.status == BookingStatus.CANCELLED:
                raise ValidationFailure("Cannot reschedule a cancelled booking")
            if booking.status == BookingStatus.COMPLETED:
                raise ValidationFailure("Cannot reschedule a completed booking")
            if booking.flight_id == new_flight_id:
                raise ValidationFailure("Please select a different flight to reschedule")

            new_flight = await repo.find_flight(new_flight_id)
            if new_flight is None:
                raise NotFoundError("New flight not found")
            self._check_capacity(
                new_flight, booking.passengers, booking.seat_class, "Not enough seats available on the new flight"
            )
            if new_flight.departure_time <= now:
                raise ValidationFailure("Cannot reschedule to a past flight")
            if new_flight.status != FlightStatus.SCHEDULED:
                raise ValidationFailure(f"Flight {new_flight.flight_code} is {new_flight.status.value}")

            old_flight = await repo.find_flight(booking.flight_id)
            if old_flight is not None:
                await repo.release_seats(
                    old_flight.flight_id, old_flight.seat_pool(booking.seat_class), booking.passengers
                )
            else:
                logger.warning(f"Original flight {booking.flight_id} of booking {booking.booking_code} is gone")

            price = new_flight.price_for(booking.seat_class)
            total_price = price * booking.passengers
            price_difference = total_price - booking.total_price

            pool = new_flight.seat_pool(booking.seat_class)
            if not await repo.reserve_seats(new_flight.flight_id, pool, booking.passengers):
                raise ValidationFailure("Not enough seats available on the new flight")

            booking = booking.model_copy(update={
                "flight_id": new_flight.flight_id,
                "flight_name": new_flight.flight_name,
                "origin": new_flight.origin,
                "destination": new_flight.destination,
                "departure_time": new_flight.departure_time,
                "journey_date": new_flight.departure_time,
                "price": price,
                "total_price": total_price,
            })
            booking = await repo.save_booking(booking)

        message = "Booking rescheduled successfully!"
        if price_difference > 0:
            message += f" Additional charge of {format_amount(price_difference)} will be processed."
        elif price_difference < 0:
            message += f" Refund of {format_amount(abs(price_difference))} will be processed."

        logger.info(
            f"Booking {booking.booking_code} moved to flight {new_flight.flight_code}, "
            f"price difference {price_difference}"
        )
        await self._publish("BookingRescheduled", {
            "booking_id": booking.booking_id,
            "booking_code": booking.booking_code,
            "price_difference": price_difference,
        })
        return BookingOutcome(booking=booking, message=message, price_difference=price_difference)

    async def reschedule_options(self, caller: Caller, booking_id: int) -> RescheduleOptions:
        booking = await self._load(self.repository, booking_id)
        self._authorize(caller, booking, "view reschedule options for")
        flights = await self.repository.find_flights(FlightQuery(
            origin=booking.origin,
            destination=booking.destination,
            status=FlightStatus.SCHEDULED,
            departs_after=self.clock(),
            min_available=booking.passengers,
            exclude_flight_id=booking.flight_id,
        ))
        return RescheduleOptions(
            flights=flights,
            current_booking=BookingSummary(
                passengers=booking.passengers,
                seat_class=booking.seat_class,
                total_price=booking.total_price,
            ),
        )

    async def get_booking(self, caller: Caller, booking_id: int) -> Booking:
        booking = await self._load(self.repository, booking_id)
        self._authorize(caller, booking, "access")
        return booking

    async def list_my_bookings(self, caller: Caller) -> List[Booking]:
        return await self.repository.list_bookings(user_id=caller.user_id)

    async def list_all_bookings(self, caller: Caller) -> List[Booking]:
        if not caller.is_admin:
            raise AuthorizationError("Admin access required")
        return await self.repository.list_bookings()

    async def update_status(self, caller: Caller, booking_id: int, status: BookingStatus) -> BookingOutcome:
        if status == BookingStatus.CANCELLED:
            return await self.cancel_booking(caller, booking_id)

        async with self.repository.transaction() as repo:
            booking = await self._load(repo, booking_id, for_update=True)
            self._authorize(caller, booking, "update")
            if booking.status != status:
                if booking.is_terminal:
                    raise ValidationFailure(f"Cannot change the status of a {booking.status.value} booking")
                booking = await repo.save_booking(booking.model_copy(update={"status": status}))
                logger.info(f"Booking {booking.booking_code} marked {status.value}")

        return BookingOutcome(booking=booking, message="Booking updated successfully")
