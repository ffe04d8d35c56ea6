import uvicorn
import sys
import logging
from datetime import date
from typing import Optional
from fastapi import Depends, FastAPI, Query
from shared.auth import require_admin
from shared.database import Database
from shared.errors import install_error_handlers
from shared.models import Caller, FlightCreateRequest, FlightSearchRequest, FlightUpdateRequest
from shared.repository import PostgresRepository
from svc_flight.catalog import FlightCatalog

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app = FastAPI(title="Flight Service")
install_error_handlers(app)

db = Database()
catalog = FlightCatalog(PostgresRepository(db))


def get_catalog() -> FlightCatalog:
    return catalog


@app.get("/flights")
async def get_flights(
    origin: Optional[str] = None,
    destination: Optional[str] = None,
    departure_date: Optional[date] = Query(None, alias="date"),
    min_price: Optional[float] = Query(None, ge=0),
    max_price: Optional[float] = Query(None, ge=0),
    flights: FlightCatalog = Depends(get_catalog),
):
    result = await flights.list_flights(origin, destination, departure_date, min_price, max_price)
    return {"success": True, "count": len(result), "data": result}


@app.post("/flights/search")
async def search_flights(request: FlightSearchRequest, flights: FlightCatalog = Depends(get_catalog)):
    result = await flights.search(request)
    return {"success": True, "count": len(result), "data": result}


@app.get("/flights/{flight_id}")
async def get_flight(flight_id: int, flights: FlightCatalog = Depends(get_catalog)):
    flight = await flights.get_flight(flight_id)
    return {"success": True, "data": flight}


@app.post("/flights", status_code=201)
async def create_flight(
    request: FlightCreateRequest,
    admin: Caller = Depends(require_admin),
    flights: FlightCatalog = Depends(get_catalog),
):
    flight = await flights.create_flight(request)
    return {"success": True, "message": "Flight created successfully", "data": flight}


@app.put("/flights/{flight_id}")
async def update_flight(
    flight_id: int,
    request: FlightUpdateRequest,
    admin: Caller = Depends(require_admin),
    flights: FlightCatalog = Depends(get_catalog),
):
    flight = await flights.update_flight(flight_id, request)
    return {"success": True, "message": "Flight updated successfully", "data": flight}


@app.delete("/flights/{flight_id}")
async def delete_flight(
    flight_id: int,
    admin: Caller = Depends(require_admin),
    flights: FlightCatalog = Depends(get_catalog),
):
    await flights.delete_flight(flight_id)
    return {"success": True, "message": "Flight deleted successfully"}


@app.on_event("startup")
async def startup_event():
    await db.connect()
    await db.create_schema()


@app.on_event("shutdown")
async def shutdown_event():
    await db.disconnect()


if __name__ == "__main__":
    host, port = sys.argv[1].split(":")
    uvicorn.run("svc_flight.service:app", host=host, port=int(port), reload=True, log_level="debug")
