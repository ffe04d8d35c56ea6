import os
import uvicorn
import sys
import logging
from fastapi import Depends, FastAPI
from shared.auth import get_caller
from shared.database import Database
from shared.errors import install_error_handlers
from shared.event_handler import EventHandler
from shared.models import BookingRequest, BookingStatusUpdate, Caller, RescheduleRequest
from shared.repository import PostgresRepository
from svc_booking.lifecycle import BookingLifecycle

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app = FastAPI(title="Booking Service")
install_error_handlers(app)

db = Database()
event_handler = EventHandler(
    db=db,
    consumer_group="BookingService_group",
    service_name="BookingService",
    stream=os.getenv("BOOKING_STREAM", "booking_stream"),
    redis_host=os.getenv("REDIS_HOST", "localhost"),
    redis_port=int(os.getenv("REDIS_PORT", "6379")),
    redis_db=int(os.getenv("REDIS_DB", "0"))
)
lifecycle = BookingLifecycle(PostgresRepository(db), events=event_handler)


def get_lifecycle() -> BookingLifecycle:
    return lifecycle


@app.post("/bookings", status_code=201)
async def create_booking(
    request: BookingRequest,
    caller: Caller = Depends(get_caller),
    bookings: BookingLifecycle = Depends(get_lifecycle),
):
    outcome = await bookings.create_booking(caller, request)
    return {"success": True, "message": outcome.message, "data": outcome.booking}


@app.get("/bookings/my-bookings")
async def get_my_bookings(caller: Caller = Depends(get_caller), bookings: BookingLifecycle = Depends(get_lifecycle)):
    result = await bookings.list_my_bookings(caller)
    return {"success": True, "count": len(result), "data": result}


@app.get("/bookings")
async def get_all_bookings(caller: Caller = Depends(get_caller), bookings: BookingLifecycle = Depends(get_lifecycle)):
    result = await bookings.list_all_bookings(caller)
    return {"success": True, "count": len(result), "data": result}


@app.get("/bookings/{booking_id}")
async def get_booking(
    booking_id: int,
    caller: Caller = Depends(get_caller),
    bookings: BookingLifecycle = Depends(get_lifecycle),
):
    booking = await bookings.get_booking(caller, booking_id)
    return {"success": True, "data": booking}


@app.put("/bookings/{booking_id}")
async def update_booking(
    booking_id: int,
    request: BookingStatusUpdate,
    caller: Caller = Depends(get_caller),
    bookings: BookingLifecycle = Depends(get_lifecycle),
):
    outcome = await bookings.update_status(caller, booking_id, request.status)
    return {"success": True, "message": outcome.message, "data": outcome.booking}


@app.delete("/bookings/{booking_id}")
async def cancel_booking(
    booking_id: int,
    caller: Caller = Depends(get_caller),
    bookings: BookingLifecycle = Depends(get_lifecycle),
):
    outcome = await bookings.cancel_booking(caller, booking_id)
    return {"success": True, "message": outcome.message, "data": outcome.booking}


@app.get("/bookings/{booking_id}/reschedule-options")
async def get_reschedule_options(
    booking_id: int,
    caller: Caller = Depends(get_caller),
    bookings: BookingLifecycle = Depends(get_lifecycle),
):
    options = await bookings.reschedule_options(caller, booking_id)
    return {
        "success": True,
        "count": len(options.flights),
        "data": options.flights,
        "current_booking": options.current_booking,
    }


@app.put("/bookings/{booking_id}/reschedule")
async def reschedule_booking(
    booking_id: int,
    request: RescheduleRequest,
    caller: Caller = Depends(get_caller),
    bookings: BookingLifecycle = Depends(get_lifecycle),
):
    outcome = await bookings.reschedule_booking(caller, booking_id, request.new_flight_id)
    return {
        "success": True,
        "message": outcome.message,
        "data": outcome.booking,
        "price_difference": outcome.price_difference,
    }


@app.on_event("startup")
async def startup_event():
    await db.connect()
    await db.create_schema()


@app.on_event("shutdown")
async def shutdown_event():
    await db.disconnect()
    await event_handler.close()


if __name__ == "__main__":
    host, port = sys.argv[1].split(":")
    uvicorn.run("svc_booking.service:app", host=host, port=int(port), reload=True, log_level="debug")
