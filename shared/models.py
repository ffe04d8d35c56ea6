from datetime import date, datetime, timezone
from enum import Enum
from typing import List, Optional, Tuple
from pydantic import BaseModel, Field, computed_field, field_validator, model_validator


class FlightStatus(str, Enum):
    SCHEDULED = "scheduled"
    BOARDING = "boarding"
    DEPARTED = "departed"
    ARRIVED = "arrived"
    CANCELLED = "cancelled"
    DELAYED = "delayed"


class BookingStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    COMPLETED = "completed"

    @property
    def is_terminal(self) -> bool:
        return self in (BookingStatus.CANCELLED, BookingStatus.COMPLETED)


class PaymentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class SeatClass(str, Enum):
    ECONOMY = "economy"
    PREMIUM_ECONOMY = "premium-economy"
    BUSINESS = "business"
    FIRST_CLASS = "first-class"


class PaymentMethod(str, Enum):
    CREDIT_CARD = "credit-card"
    DEBIT_CARD = "debit-card"
    UPI = "upi"
    NET_BANKING = "net-banking"
    WALLET = "wallet"


class UserRole(str, Enum):
    CUSTOMER = "customer"
    ADMIN = "admin"


def as_utc(value: datetime) -> datetime:
    """Read naive datetimes as UTC so they compare with aware ones."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Caller(BaseModel):
    user_id: str
    role: UserRole = UserRole.CUSTOMER
    email: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN


class FareClass(BaseModel):
    class_name: SeatClass
    price: float = Field(..., ge=0)
    allocated_seats: int = Field(..., ge=0)
    available_seats: int = Field(..., ge=0)

    @model_validator(mode="after")
    def check_counter(self):
        if self.available_seats > self.allocated_seats:
            raise ValueError("available_seats cannot exceed allocated_seats")
        return self


class Flight(BaseModel):
    flight_id: int
    flight_code: str
    flight_name: str
    airline: str
    origin: str
    destination: str
    departure_time: datetime
    arrival_time: datetime
    duration: str
    total_seats: int = Field(..., ge=1)
    unassigned_seats: int = Field(..., ge=0, description="Seats not allocated to any fare class")
    base_price: float = Field(..., ge=0)
    classes: List[FareClass] = Field(default_factory=list)
    status: FlightStatus = FlightStatus.SCHEDULED
    gate: Optional[str] = None
    terminal: Optional[str] = None
    aircraft: Optional[str] = None

    @field_validator("departure_time", "arrival_time")
    @classmethod
    def aware(cls, v: datetime) -> datetime:
        return as_utc(v)

    @computed_field
    @property
    def available_seats(self) -> int:
        return self.unassigned_seats + sum(c.available_seats for c in self.classes)

    def fare_class(self, seat_class: SeatClass) -> Optional[FareClass]:
        for fare in self.classes:
            if fare.class_name == seat_class:
                return fare
        return None

    def price_for(self, seat_class: SeatClass) -> float:
        fare = self.fare_class(seat_class)
        return fare.price if fare else self.base_price

    def seats_left_for(self, seat_class: SeatClass) -> int:
        """Seats a booking in ``seat_class`` can draw from.

        Classes the flight does not offer are sold at the base price out of
        the whole flight, so only the flight total limits them.
        """
        fare = self.fare_class(seat_class)
        return fare.available_seats if fare else self.available_seats

    def seat_pool(self, seat_class: SeatClass) -> Optional[SeatClass]:
        return seat_class if self.fare_class(seat_class) else None

    @property
    def unassigned_capacity(self) -> int:
        return self.total_seats - sum(c.allocated_seats for c in self.classes)

    def draw_plan(self, count: int) -> Optional[List[Tuple[Optional[SeatClass], int]]]:
        """Split ``count`` seats of an unoffered class over the seat pools.

        The unassigned pool goes first, then the classes with the most seats
        left. Returns None when the flight total cannot cover ``count``.
        """
        if self.available_seats < count:
            return None
        plan = []
        taken = min(self.unassigned_seats, count)
        if taken:
            plan.append((None, taken))
            count -= taken
        for fare in sorted(self.classes, key=lambda c: c.available_seats, reverse=True):
            if not count:
                break
            taken = min(fare.available_seats, count)
            if taken:
                plan.append((fare.class_name, taken))
                count -= taken
        return plan

    def return_plan(self, count: int) -> List[Tuple[Optional[SeatClass], int]]:
        """Put ``count`` seats of an unoffered class back without overfilling a pool."""
        plan = []
        given = min(max(self.unassigned_capacity - self.unassigned_seats, 0), count)
        if given:
            plan.append((None, given))
            count -= given
        for fare in sorted(self.classes, key=lambda c: c.allocated_seats - c.available_seats, reverse=True):
            if not count:
                break
            given = min(fare.allocated_seats - fare.available_seats, count)
            if given:
                plan.append((fare.class_name, given))
                count -= given
        if count:
            plan.append((None, count))
        return plan

    def is_bookable(self, now: datetime) -> bool:
        return self.status == FlightStatus.SCHEDULED and self.departure_time > now


class FareClassInput(BaseModel):
    class_name: SeatClass
    price: float = Field(..., ge=0)
    seats: int = Field(..., ge=0)


def _route_code(v: str) -> str:
    v = v.strip().upper()
    if not v:
        raise ValueError("airport code is required")
    return v


class FlightCreateRequest(BaseModel):
    flight_code: Optional[str] = None
    flight_name: str = Field(..., min_length=1)
    airline: str = Field(..., min_length=2)
    origin: str
    destination: str
    departure_time: datetime
    arrival_time: datetime
    duration: Optional[str] = None
    total_seats: int = Field(..., ge=1)
    base_price: float = Field(..., ge=0)
    classes: List[FareClassInput] = Field(default_factory=list)
    status: FlightStatus = FlightStatus.SCHEDULED
    gate: Optional[str] = None
    terminal: Optional[str] = None
    aircraft: Optional[str] = None

    @field_validator("origin", "destination")
    @classmethod
    def route_code(cls, v: str) -> str:
        return _route_code(v)

    @field_validator("departure_time", "arrival_time")
    @classmethod
    def aware(cls, v: datetime) -> datetime:
        return as_utc(v)

    @model_validator(mode="after")
    def check_layout(self):
        if self.arrival_time <= self.departure_time:
            raise ValueError("arrival_time must be after departure_time")
        names = [c.class_name for c in self.classes]
        if len(names) != len(set(names)):
            raise ValueError("each fare class may only be listed once")
        if sum(c.seats for c in self.classes) > self.total_seats:
            raise ValueError("fare class seats exceed total_seats")
        if self.duration is None:
            minutes = int((self.arrival_time - self.departure_time).total_seconds() // 60)
            self.duration = f"{minutes // 60}h {minutes % 60}m"
        return self


class FlightUpdateRequest(BaseModel):
    flight_name: Optional[str] = None
    airline: Optional[str] = None
    departure_time: Optional[datetime] = None
    arrival_time: Optional[datetime] = None
    duration: Optional[str] = None
    base_price: Optional[float] = Field(None, ge=0)
    status: Optional[FlightStatus] = None
    gate: Optional[str] = None
    terminal: Optional[str] = None
    aircraft: Optional[str] = None

    @field_validator("departure_time", "arrival_time")
    @classmethod
    def aware(cls, v: Optional[datetime]) -> Optional[datetime]:
        return as_utc(v) if v is not None else v


class FlightSearchRequest(BaseModel):
    origin: str
    destination: str
    departure_date: date
    passengers: int = Field(1, ge=1, le=9)
    seat_class: Optional[SeatClass] = None

    @field_validator("origin", "destination")
    @classmethod
    def route_code(cls, v: str) -> str:
        return _route_code(v)


class FlightQuery(BaseModel):
    origin: Optional[str] = None
    destination: Optional[str] = None
    status: Optional[FlightStatus] = None
    departs_after: Optional[datetime] = None
    departs_from: Optional[datetime] = None
    departs_before: Optional[datetime] = None
    min_available: Optional[int] = None
    exclude_flight_id: Optional[int] = None
    min_price: Optional[float] = None
    max_price: Optional[float] = None

    def matches(self, flight: Flight) -> bool:
        if self.origin is not None and flight.origin != self.origin:
            return False
        if self.destination is not None and flight.destination != self.destination:
            return False
        if self.status is not None and flight.status != self.status:
            return False
        if self.departs_after is not None and not flight.departure_time > self.departs_after:
            return False
        if self.departs_from is not None and flight.departure_time < self.departs_from:
            return False
        if self.departs_before is not None and not flight.departure_time < self.departs_before:
            return False
        if self.min_available is not None and flight.available_seats < self.min_available:
            return False
        if self.exclude_flight_id is not None and flight.flight_id == self.exclude_flight_id:
            return False
        if self.min_price is not None and flight.base_price < self.min_price:
            return False
        if self.max_price is not None and flight.base_price > self.max_price:
            return False
        return True


class SeatAssignment(BaseModel):
    passenger_name: str = Field(..., min_length=1)
    passenger_age: int = Field(..., ge=0, le=120)
    seat_number: Optional[str] = None
    seat_preference: Optional[str] = None


class BookingExtras(BaseModel):
    meals: bool = False
    extra_baggage: bool = False
    insurance: bool = False


class BookingRequest(BaseModel):
    flight_id: int
    passengers: int = Field(..., ge=1, le=9)
    seat_class: SeatClass
    seats: List[SeatAssignment] = Field(default_factory=list)
    payment_method: PaymentMethod
    mobile: Optional[str] = None
    special_requests: Optional[str] = None
    extras: BookingExtras = Field(default_factory=BookingExtras)

    @model_validator(mode="after")
    def check_seats(self):
        if len(self.seats) > self.passengers:
            raise ValueError("more seat assignments than passengers")
        return self


class Booking(BaseModel):
    booking_id: Optional[int] = None
    booking_code: str
    user_id: str
    flight_id: int
    flight_name: Optional[str] = None
    origin: Optional[str] = None
    destination: Optional[str] = None
    departure_time: Optional[datetime] = None
    journey_date: Optional[datetime] = None
    passengers: int = Field(..., ge=1, le=9)
    seat_class: SeatClass
    seats: List[SeatAssignment] = Field(default_factory=list)
    price: float = Field(..., ge=0)
    total_price: float = Field(..., ge=0)
    status: BookingStatus = BookingStatus.CONFIRMED
    payment_status: PaymentStatus = PaymentStatus.COMPLETED
    payment_method: PaymentMethod
    booking_date: datetime = Field(default_factory=utcnow)
    email: Optional[str] = None
    mobile: Optional[str] = None
    special_requests: Optional[str] = None
    extras: BookingExtras = Field(default_factory=BookingExtras)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


class BookingStatusUpdate(BaseModel):
    status: BookingStatus


class RescheduleRequest(BaseModel):
    new_flight_id: int


class BookingOutcome(BaseModel):
    booking: Booking
    message: str
    price_difference: Optional[float] = None


class BookingSummary(BaseModel):
    passengers: int
    seat_class: SeatClass
    total_price: float


class RescheduleOptions(BaseModel):
    flights: List[Flight]
    current_booking: BookingSummary


class Event(BaseModel):
    event_id: str
    event_type: str
    payload: dict


class PaymentNotice(BaseModel):
    notice_id: Optional[int] = None
    booking_id: int
    event_id: str
    kind: str
    amount: float = Field(..., ge=0)
    status: str = "SCHEDULED"
    created_at: Optional[datetime] = None
