import os
import uvicorn
import asyncio
import sys
import logging
from fastapi import FastAPI
from shared.database import Database
from shared.errors import install_error_handlers
from shared.event_handler import EventHandler
from shared.models import Event, PaymentNotice
from svc_payment.notices import notice_for_event

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app = FastAPI(title="Payment Service")
install_error_handlers(app)

db = Database()
event_handler = EventHandler(
    db=db,
    consumer_group="PaymentService_group",
    service_name="PaymentService",
    stream=os.getenv("BOOKING_STREAM", "booking_stream"),
    redis_host=os.getenv("REDIS_HOST", "localhost"),
    redis_port=int(os.getenv("REDIS_PORT", "6379")),
    redis_db=int(os.getenv("REDIS_DB", "0"))
)


async def process_event(event: Event):
    notice = notice_for_event(event)
    if notice is None:
        logger.debug(f"No settlement needed for {event.event_type} {event.event_id}")
        return
    # Notices are only recorded here; settling them is done outside this system.
    sql = """
        INSERT INTO payment_notices (booking_id, event_id, kind, amount, status)
        VALUES ($1, $2, $3, $4, $5)
        ON CONFLICT (event_id) DO NOTHING
    """
    await db.execute_query(sql, notice.booking_id, notice.event_id, notice.kind, notice.amount, notice.status)
    logger.info(f"Recorded {notice.kind} notice of {notice.amount} for booking {notice.booking_id}")


@app.get("/payments/{booking_id}")
async def get_payment_notices(booking_id: int):
    sql = """
        SELECT notice_id, booking_id, event_id, kind, amount, status, created_at
        FROM payment_notices WHERE booking_id = $1 ORDER BY created_at
    """
    result = await db.execute_to_model(PaymentNotice, sql, booking_id)
    return {"success": True, "count": len(result), "data": result}


@app.on_event("startup")
async def startup_event():
    await db.connect()
    await db.create_schema()
    app.state.consumer = asyncio.create_task(event_handler.consume_events(process_event))


@app.on_event("shutdown")
async def shutdown_event():
    app.state.consumer.cancel()
    await db.disconnect()
    await event_handler.close()


if __name__ == "__main__":
    host, port = sys.argv[1].split(":")
    uvicorn.run("svc_payment.service:app", host=host, port=int(port), reload=True, log_level="debug")
