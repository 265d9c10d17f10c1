from fastapi import APIRouter
from app.api.endpoints import bookings, payments

api_router = APIRouter()
api_router.include_router(bookings.router, prefix="/bookings", tags=["bookings"])
api_router.include_router(payments.router, prefix="/payments", tags=["payments"])

@api_router.get("/health")
def health_check():
    return {"status": "ok"}
