"""Scheduling domain schemas - Pydantic models for validation"""

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator

from .time_calculator import DATE_PATTERN


class DateOptionResponse(BaseModel):
    value: str
    label: str


class SlotOptionResponse(BaseModel):
    value: str
    label: str


class AvailableDatesResponse(BaseModel):
    dates: list[DateOptionResponse]


class AvailableSlotsResponse(BaseModel):
    date: str
    slots: list[SlotOptionResponse]


class ReserveSlotRequest(BaseModel):
    """Schema for holding a slot while the deposit is paid"""

    name: str = Field(min_length=2)
    email: str
    phone: str = Field(min_length=7)
    service_id: str
    date: str
    time_slot: str
    location: Optional[str] = None
    notes: Optional[str] = None

    @field_validator("date")
    @classmethod
    def validate_date(cls, v: str) -> str:
        if not DATE_PATTERN.match(v or ""):
            raise ValueError("date must be YYYY-MM-DD")
        return v

    @field_validator("email")
    @classmethod
    def validate_email(cls, v: str) -> str:
        if "@" not in (v or ""):
            raise ValueError("A valid email is required")
        return v.strip()


class ReserveSlotResponse(BaseModel):
    booking_id: str
    status: str
    time_slot: str
    hold_expires_at: Optional[datetime] = None
    deposit_required: float
    final_price: float
    manage_token: str


class ManageActionRequest(BaseModel):
    """Self-service action posted to the manage endpoint"""

    action: Literal["reschedule", "transfer", "change_service"]
    # reschedule
    new_date: Optional[str] = None
    new_time_slot: Optional[str] = None
    # transfer
    new_name: Optional[str] = None
    new_email: Optional[str] = None
    new_phone: Optional[str] = None
    # change_service
    new_service_id: Optional[str] = None


class ManagePolicyResponse(BaseModel):
    is_past: bool
    hours_until: float
    within_24h: bool
    within_policy_window: bool
    can_manage: bool
    can_reschedule: bool
    can_cancel_policy: bool
    cancellation_policy_hours: int
    cancellation_cutoff_at: datetime


class ManagedBookingResponse(BaseModel):
    id: str
    name: str
    email: str
    phone: str
    service_id: str
    service_name: str
    date: str
    time_slot: str
    status: str
    original_price: float
    discount: float
    final_price: float
    deposit_required: float
    deposit: float
    paid_in_full: bool
    reschedule_history: list[dict] = Field(default_factory=list)
    policy: ManagePolicyResponse
