import logging
import random
from datetime import date, datetime, time, timedelta, timezone
from typing import Callable, List, Optional

from shared.errors import NotFoundError, ValidationFailure
from shared.models import (
    FareClass,
    Flight,
    FlightCreateRequest,
    FlightQuery,
    FlightSearchRequest,
    FlightStatus,
    FlightUpdateRequest,
    utcnow,
)
from shared.repository import BookingRepository

logger = logging.getLogger(__name__)


def generate_flight_code(airline: str) -> str:
    return f"{airline[:2].upper()}{random.randint(1000, 9999)}"


def day_window(day: date):
    start = datetime.combine(day, time.min, tzinfo=timezone.utc)
    return start, start + timedelta(days=1)


class FlightCatalog:
    def __init__(self, repository: BookingRepository, clock: Optional[Callable[[], datetime]] = None):
        self.repository = repository
        self.clock = clock or utcnow

    async def list_flights(
        self,
        origin: Optional[str] = None,
        destination: Optional[str] = None,
        on_date: Optional[date] = None,
        min_price: Optional[float] = None,
        max_price: Optional[float] = None,
    ) -> List[Flight]:
        query = FlightQuery(
            origin=origin.upper() if origin else None,
            destination=destination.upper() if destination else None,
            status=FlightStatus.SCHEDULED,
            min_price=min_price,
            max_price=max_price,
        )
        if on_date is not None:
            query.departs_from, query.departs_before = day_window(on_date)
        else:
            query.departs_from = self.clock()
        return await self.repository.find_flights(query)

    async def search(self, request: FlightSearchRequest) -> List[Flight]:
        start, end = day_window(request.departure_date)
        flights = await self.repository.find_flights(FlightQuery(
            origin=request.origin,
            destination=request.destination,
            status=FlightStatus.SCHEDULED,
            departs_from=start,
            departs_before=end,
            min_available=request.passengers,
        ))
        if request.seat_class is not None:
            flights = [f for f in flights if f.seats_left_for(request.seat_class) >= request.passengers]
        return flights

    async def get_flight(self, flight_id: int) -> Flight:
        flight = await self.repository.find_flight(flight_id)
        if flight is None:
            raise NotFoundError("Flight not found")
        return flight

    async def create_flight(self, request: FlightCreateRequest) -> Flight:
        classes = [
            FareClass(class_name=c.class_name, price=c.price, allocated_seats=c.seats, available_seats=c.seats)
            for c in request.classes
        ]
        flight = Flight(
            flight_id=0,
            flight_code=(request.flight_code or generate_flight_code(request.airline)).upper(),
            flight_name=request.flight_name,
            airline=request.airline,
            origin=request.origin,
            destination=request.destination,
            departure_time=request.departure_time,
            arrival_time=request.arrival_time,
            duration=request.duration,
            total_seats=request.total_seats,
            unassigned_seats=request.total_seats - sum(c.allocated_seats for c in classes),
            base_price=request.base_price,
            classes=classes,
            status=request.status,
            gate=request.gate,
            terminal=request.terminal,
            aircraft=request.aircraft,
        )
        flight = await self.repository.insert_flight(flight)
        logger.info(f"Flight {flight.flight_code} created with {flight.total_seats} seats")
        return flight

    async def update_flight(self, flight_id: int, request: FlightUpdateRequest) -> Flight:
        flight = await self.get_flight(flight_id)
        changes = request.model_dump(exclude_unset=True, exclude_none=True)
        candidate = flight.model_copy(update=changes)
        if candidate.arrival_time <= candidate.departure_time:
            raise ValidationFailure("Arrival time must be after departure time")
        updated = await self.repository.update_flight(candidate)
        if updated is None:
            raise NotFoundError("Flight not found")
        logger.info(f"Flight {flight.flight_code} updated: {sorted(changes)}")
        return updated

    async def delete_flight(self, flight_id: int):
        if not await self.repository.delete_flight(flight_id):
            raise NotFoundError("Flight not found")
        logger.info(f"Flight {flight_id} deleted")
