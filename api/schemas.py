"""API Schemas - Request and Response DTOs"""
from pydantic import BaseModel, Field, validator
from datetime import datetime, time
from decimal import Decimal
from uuid import UUID
from typing import Dict, List, Optional

from domain.enums import (
    AssignmentType, KeyCondition, KeyStatus, KeyType, Role, ResourceType, Weekday
)


def _to_local_naive(value: Optional[datetime]) -> Optional[datetime]:
    """Facility times are naive local; convert aware inputs to local time"""
    if value is not None and value.tzinfo is not None:
        return value.astimezone().replace(tzinfo=None)
    return value


# ============================================================================
# RESOURCE SCHEMAS
# ============================================================================

class OperatingHoursSchema(BaseModel):
    """Operating hours DTO; equal open and close times mean around the clock"""
    opens_at: time = time(6, 0)
    closes_at: time = time(23, 0)
    weekdays: List[Weekday] = [day for day in Weekday]


class CreateResourceRequest(BaseModel):
    """Create resource request DTO; omitted rules come from the type defaults"""
    name: str = Field(min_length=1, max_length=100)
    resource_type: ResourceType
    description: Optional[str] = None
    location: Optional[str] = None
    floor_number: Optional[int] = None
    capacity: Optional[int] = Field(None, ge=1)
    operating_hours: Optional[OperatingHoursSchema] = None
    default_duration_minutes: Optional[int] = Field(None, ge=1)
    min_duration_minutes: Optional[int] = Field(None, ge=1)
    max_duration_minutes: Optional[int] = Field(None, ge=1)
    advance_booking_hours: Optional[int] = Field(None, ge=0)
    max_advance_days: Optional[int] = Field(None, ge=1)
    max_reservations_per_user_per_day: Optional[int] = Field(None, ge=1)
    requires_approval: Optional[bool] = None
    cost_per_hour: Optional[Decimal] = Field(None, ge=0)
    deposit_required: Optional[Decimal] = Field(None, ge=0)
    requires_key: Optional[bool] = None
    key_location: Optional[str] = None
    key_instructions: Optional[str] = None


class UpdateResourceRequest(BaseModel):
    """Update resource request DTO; only fields sent are changed"""
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = None
    location: Optional[str] = None
    floor_number: Optional[int] = None
    capacity: Optional[int] = Field(None, ge=1)
    operating_hours: Optional[OperatingHoursSchema] = None
    default_duration_minutes: Optional[int] = Field(None, ge=1)
    min_duration_minutes: Optional[int] = Field(None, ge=1)
    max_duration_minutes: Optional[int] = Field(None, ge=1)
    advance_booking_hours: Optional[int] = Field(None, ge=0)
    max_advance_days: Optional[int] = Field(None, ge=1)
    max_reservations_per_user_per_day: Optional[int] = Field(None, ge=1)
    requires_approval: Optional[bool] = None
    cost_per_hour: Optional[Decimal] = Field(None, ge=0)
    deposit_required: Optional[Decimal] = Field(None, ge=0)
    requires_key: Optional[bool] = None
    key_location: Optional[str] = None
    key_instructions: Optional[str] = None
    next_maintenance: Optional[datetime] = None

    @validator('next_maintenance')
    def local_next_maintenance(cls, v):
        return _to_local_naive(v)


class ResourceResponse(BaseModel):
    """Resource response DTO"""
    resource_id: UUID
    name: str
    description: Optional[str] = None
    resource_type: str
    location: Optional[str] = None
    floor_number: Optional[int] = None
    capacity: Optional[int] = None
    is_active: bool
    operating_hours: OperatingHoursSchema
    default_duration_minutes: int
    min_duration_minutes: int
    max_duration_minutes: int
    advance_booking_hours: int
    max_advance_days: int
    max_reservations_per_user_per_day: int
    requires_approval: bool
    cost_per_hour: Decimal
    deposit_required: Decimal
    requires_key: bool
    key_location: Optional[str] = None
    key_instructions: Optional[str] = None
    next_maintenance: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime
    version: int


# ============================================================================
# RESERVATION SCHEMAS
# ============================================================================

class CreateReservationRequest(BaseModel):
    """Create reservation request DTO"""
    resource_id: UUID
    start_time: datetime
    end_time: datetime
    number_of_people: int = Field(default=1, ge=1)
    notes: Optional[str] = Field(None, max_length=500)

    @validator('start_time', 'end_time')
    def local_times(cls, v):
        return _to_local_naive(v)


class CancelReservationRequest(BaseModel):
    """Cancel reservation request DTO"""
    reason: str = "Cancelled by user"


class RejectReservationRequest(BaseModel):
    """Reject reservation request DTO"""
    reason: str = Field(min_length=1)


class KeyPickupRequest(BaseModel):
    """Key pickup request DTO; without key_id any free key of the resource is used"""
    key_id: Optional[UUID] = None
    deposit_paid: bool = False


class KeyReturnRequest(BaseModel):
    """Key return request DTO"""
    condition: KeyCondition = KeyCondition.GOOD
    notes: Optional[str] = None


class ReservationResponse(BaseModel):
    """Reservation response DTO"""
    reservation_id: UUID
    check_in_code: str
    resource_id: UUID
    user_id: UUID
    start_time: datetime
    end_time: datetime
    number_of_people: int
    notes: Optional[str] = None
    admin_notes: Optional[str] = None
    status: str
    payment_status: str
    total_cost: Decimal
    deposit_amount: Decimal
    late_fee: Decimal
    currency: str
    requires_key: bool
    key_picked_up: bool
    key_picked_up_at: Optional[datetime] = None
    key_returned: bool
    key_returned_at: Optional[datetime] = None
    key_assignment_id: Optional[UUID] = None
    cancellation_reason: Optional[str] = None
    checked_in_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime
    version: int


class MoneyResponse(BaseModel):
    """Money response DTO"""
    amount: Decimal
    currency: str


# ============================================================================
# KEY SCHEMAS
# ============================================================================

class CreateKeyRequest(BaseModel):
    """Create key request DTO"""
    key_code: str = Field(min_length=1, max_length=50)
    description: str = Field(min_length=1)
    key_type: KeyType
    room_number: Optional[str] = None
    associated_resource_id: Optional[UUID] = None
    replacement_cost: Optional[Decimal] = Field(None, ge=0)


class UpdateKeyRequest(BaseModel):
    """Update key request DTO; only fields sent are changed"""
    description: Optional[str] = Field(None, min_length=1)
    key_type: Optional[KeyType] = None
    room_number: Optional[str] = None
    associated_resource_id: Optional[UUID] = None
    replacement_cost: Optional[Decimal] = Field(None, ge=0)


class KeyNoteRequest(BaseModel):
    """Free-text reason for damage, out-of-service or retirement"""
    notes: Optional[str] = None


class KeyMaintenanceRequest(BaseModel):
    """Key maintenance request DTO"""
    next_due: Optional[datetime] = None
    notes: Optional[str] = None

    @validator('next_due')
    def local_next_due(cls, v):
        return _to_local_naive(v)


class KeyResponse(BaseModel):
    """Key response DTO"""
    key_id: UUID
    key_code: str
    description: str
    display_name: str
    key_type: str
    status: str
    room_number: Optional[str] = None
    associated_resource_id: Optional[UUID] = None
    security_level: int
    requires_deposit: bool
    deposit_amount: Decimal
    max_issue_duration_hours: int
    permanent_assignment: bool
    requires_admin_authorization: bool
    replacement_cost: Optional[Decimal] = None
    total_assignments: int
    lost_count: int
    needs_attention: bool
    last_maintenance: Optional[datetime] = None
    next_maintenance: Optional[datetime] = None
    maintenance_notes: Optional[str] = None
    admin_notes: Optional[str] = None
    version: int


class KeyStatisticsResponse(BaseModel):
    """Key statistics response DTO"""
    total: int
    by_status: Dict[KeyStatus, int]
    needing_attention: int
    total_lost_reports: int


# ============================================================================
# KEY ASSIGNMENT SCHEMAS
# ============================================================================

class IssueKeyRequest(BaseModel):
    """Issue key request DTO"""
    user_id: UUID
    assignment_type: AssignmentType = AssignmentType.TEMPORARY
    notes: Optional[str] = None
    deposit_paid: bool = False


class ExtendAssignmentRequest(BaseModel):
    """Extend assignment request DTO"""
    new_expected_return: datetime
    reason: str = Field(min_length=1)

    @validator('new_expected_return')
    def local_expected_return(cls, v):
        return _to_local_naive(v)


class KeyAssignmentResponse(BaseModel):
    """Key assignment response DTO"""
    assignment_id: UUID
    key_id: UUID
    key_type: str
    user_id: UUID
    issued_by: UUID
    returned_to: Optional[UUID] = None
    reservation_id: Optional[UUID] = None
    assignment_type: str
    status: str
    issued_at: datetime
    expected_return: Optional[datetime] = None
    returned_at: Optional[datetime] = None
    is_overdue: bool
    deposit_amount: Decimal
    deposit_paid: bool
    deposit_refunded: bool
    fine_amount: Decimal
    replacement_cost: Decimal
    condition_on_return: Optional[str] = None
    return_notes: Optional[str] = None
    extension_count: int
    reminder_sent_count: int
    total_amount_owed: Decimal
    currency: str
    version: int


class KeyHandoverResponse(BaseModel):
    """Reservation and key assignment after pickup or return"""
    reservation: ReservationResponse
    assignment: KeyAssignmentResponse


# ============================================================================
# SWEEP SCHEMAS
# ============================================================================

class SweepReportResponse(BaseModel):
    """Sweep report response DTO"""
    ran_at: datetime
    no_shows: int
    expired: int
    reservation_reminders: int
    overdue_flagged: int
    key_reminders: int


# ============================================================================
# AUTH SCHEMAS
# ============================================================================

class Token(BaseModel):
    """Token response DTO"""
    access_token: str
    token_type: str

class TokenData(BaseModel):
    """Token payload DTO"""
    username: Optional[str] = None

class UserResponse(BaseModel):
    """User response DTO"""
    user_id: UUID
    username: str
    email: Optional[str] = None
    full_name: Optional[str] = None
    role: Role
    disabled: bool
