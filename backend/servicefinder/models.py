from datetime import datetime, time
from typing import List, Literal, Optional

from pydantic import BaseModel, Field


BookingStatus = Literal["PENDING", "CONFIRMED", "IN_PROGRESS", "COMPLETED", "CANCELLED"]

DayName = Literal["Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday"]


class GeoPoint(BaseModel):
    latitude: float
    longitude: float


class BoundingBox(BaseModel):
    min_lat: float
    max_lat: float
    min_lon: float
    max_lon: float


class DistanceResponse(BaseModel):
    distance_km: float
    distance_miles: float


class Provider(BaseModel):
    id: str
    user_id: str
    business_name: str
    location: Optional[GeoPoint] = None
    service_radius_km: float = 50.0
    available: bool = True
    average_rating: Optional[float] = None
    rating_count: int = 0


class ProviderWithDistance(BaseModel):
    provider: Provider
    distance_km: float


class ServiceOffering(BaseModel):
    id: str
    provider_id: str
    name: str
    category: str
    price: float
    duration_minutes: Optional[int] = None
    location: Optional[GeoPoint] = None


class ProviderCreateRequest(BaseModel):
    user_id: str
    business_name: str
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    service_radius_km: float = Field(default=50.0, gt=0)


class ProviderAvailabilityRequest(BaseModel):
    user_id: str
    available: bool


class ServiceCreateRequest(BaseModel):
    actor_user_id: str
    name: str
    category: str
    price: float = Field(ge=0)
    duration_minutes: Optional[int] = Field(default=None, gt=0)
    latitude: Optional[float] = None
    longitude: Optional[float] = None


class RecurrenceRule(BaseModel):
    day_of_week: DayName
    start_time: time
    end_time: time


class Slot(BaseModel):
    id: str
    provider_id: str
    start: datetime
    end: datetime
    duration_minutes: int
    is_booked: bool = False
    is_recurring: bool = False
    recurrence: Optional[RecurrenceRule] = None
    notes: str = ""
    created_at: Optional[datetime] = None


class SlotCreateRequest(BaseModel):
    actor_user_id: str
    start: datetime
    end: datetime
    recurrence: Optional[RecurrenceRule] = None
    notes: str = ""


class TimeSlotTemplate(BaseModel):
    start_time: time
    end_time: time


class BulkSlotCreateRequest(BaseModel):
    actor_user_id: str
    start_date: datetime
    end_date: datetime
    days_of_week: List[DayName] = Field(min_length=1)
    time_slots: List[TimeSlotTemplate] = Field(min_length=1)
    notes: str = ""


class SlotActorRequest(BaseModel):
    actor_user_id: str


class AvailabilitySearchRequest(BaseModel):
    service_type: Optional[str] = None
    start_date: datetime
    end_date: datetime
    duration_minutes: Optional[int] = Field(default=None, ge=15)
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    radius_km: Optional[float] = None
    provider_id: Optional[str] = None
    limit: Optional[int] = 50
    sort_by_time: bool = True


class ServiceSummary(BaseModel):
    id: str
    name: str
    category: str
    price: float
    duration_minutes: Optional[int] = None


class SlotMatch(BaseModel):
    slot: Slot
    provider_id: str
    business_name: str
    distance_km: Optional[float] = None
    services: List[ServiceSummary] = Field(default_factory=list)


class Booking(BaseModel):
    id: str
    customer_id: str
    provider_id: str
    service_id: str
    slot_id: Optional[str] = None
    scheduled_at: datetime
    estimated_end: datetime
    actual_start: Optional[datetime] = None
    actual_end: Optional[datetime] = None
    status: BookingStatus = "PENDING"
    total_price: float
    notes: str = ""
    customer_address: Optional[str] = None
    customer_location: Optional[GeoPoint] = None
    cancellation_reason: Optional[str] = None
    cancelled_by: Optional[Literal["customer", "provider"]] = None
    cancelled_at: Optional[datetime] = None
    rated: bool = False
    created_at: Optional[datetime] = None


class BookingCreateRequest(BaseModel):
    customer_id: str
    service_id: str
    scheduled_at: datetime
    slot_id: Optional[str] = None
    notes: str = ""
    customer_address: Optional[str] = None
    customer_latitude: Optional[float] = None
    customer_longitude: Optional[float] = None


class BookingStatusUpdateRequest(BaseModel):
    actor_user_id: str
    status: BookingStatus
    cancellation_reason: Optional[str] = None
    actual_start: Optional[datetime] = None
    actual_end: Optional[datetime] = None


class BookingActionRequest(BaseModel):
    actor_user_id: str
    actual_start: Optional[datetime] = None
    actual_end: Optional[datetime] = None


class BookingCancelRequest(BaseModel):
    actor_user_id: str
    reason: str


class BookingRescheduleRequest(BaseModel):
    actor_user_id: str
    scheduled_at: datetime


class BookingStatusChange(BaseModel):
    id: str
    booking_id: str
    actor_user_id: str
    from_status: str
    to_status: str
    note: str = ""
    created_at: datetime


class RatingEligibility(BaseModel):
    booking_id: str
    eligible: bool
    reason: Optional[str] = None


class RatingCreateRequest(BaseModel):
    customer_id: str
    score: int = Field(ge=1, le=5)
    comment: str = ""


class RatingRecord(BaseModel):
    id: str
    booking_id: str
    provider_id: str
    customer_id: str
    score: int
    comment: str = ""
    created_at: datetime


class RatingSummary(BaseModel):
    provider_id: str
    average_rating: Optional[float] = None
    rating_count: int = 0

