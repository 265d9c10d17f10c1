from pydantic import BaseModel
from typing import Optional


class ServiceSummary(BaseModel):
    """Service as embedded in a booking. Provider fields are blanked for customers until acceptance."""
    id: str
    title: str
    category: Optional[str] = None
    price: float
    duration_minutes: Optional[int] = None
    provider_id: Optional[str] = None
    provider_name: Optional[str] = None
    provider_phone: Optional[str] = None

    class Config:
        from_attributes = True
