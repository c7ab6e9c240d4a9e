import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import List, Optional
from uuid import UUID

from fastapi import FastAPI, HTTPException, Depends
from fastapi.security import OAuth2PasswordRequestForm

from api.schemas import (
    # Resource
    CreateResourceRequest, UpdateResourceRequest, ResourceResponse, OperatingHoursSchema,
    # Reservation
    CreateReservationRequest, CancelReservationRequest, RejectReservationRequest,
    KeyPickupRequest, KeyReturnRequest, ReservationResponse, MoneyResponse,
    # Key
    CreateKeyRequest, UpdateKeyRequest, KeyNoteRequest, KeyMaintenanceRequest, KeyResponse, KeyStatisticsResponse,
    # Key assignment
    IssueKeyRequest, ExtendAssignmentRequest, KeyAssignmentResponse, KeyHandoverResponse,
    # Sweep
    SweepReportResponse,
    # Auth
    Token, UserResponse
)

from api.dependencies import get_current_active_user, get_current_staff_user, fake_users_db, get_user
from infrastructure.security import verify_password, create_access_token, ACCESS_TOKEN_EXPIRE_MINUTES
from infrastructure.settings import get_settings
from infrastructure.logging_config import setup_logging
from infrastructure.notifications import LoggingNotificationSink
from domain.auth import User

from application.guards import Clock, require_owner_or_staff
from application.services import (
    ResourceCatalogService, ReservationSchedulerService, ReservationLifecycleService
)
from application.key_services import KeyInventoryService, KeyCustodyService
from application.reservation_keys import ReservationKeyService, KeyHandover
from application.sweep import SweepService
from infrastructure.repositories.in_memory_repositories import (
    InMemoryResourceRepository, InMemoryReservationRepository,
    InMemoryKeyRepository, InMemoryKeyAssignmentRepository
)
from domain.entities import Key, KeyAssignment, Reservation, Resource
from domain.enums import (
    AssignmentType, KeyStatus, KeyType, ReservationStatus, ResourceType
)
from domain.errors import (
    ConflictError, DomainError, NotFoundError, PermissionDeniedError,
    QuotaError, StateError, ValidationError
)
from domain.value_objects import OperatingHours

logger = logging.getLogger(__name__)

settings = get_settings()

# Initialize repositories
resource_repo = InMemoryResourceRepository()
reservation_repo = InMemoryReservationRepository()
key_repo = InMemoryKeyRepository()
assignment_repo = InMemoryKeyAssignmentRepository()
notification_sink = LoggingNotificationSink()


def build_sweep_service(clock: Clock = datetime.now) -> SweepService:
    return SweepService(
        reservation_repo,
        assignment_repo,
        key_repo,
        resource_repo=resource_repo,
        notifications=notification_sink,
        clock=clock,
        reservation_reminder=timedelta(minutes=settings.reservation_reminder_minutes),
        key_reminder_lead=timedelta(hours=settings.key_reminder_lead_hours),
        key_reminder_interval=timedelta(minutes=settings.key_reminder_interval_minutes),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging(settings)
    sweep_task = None
    if settings.sweep_interval_seconds > 0:
        sweep_task = asyncio.create_task(build_sweep_service().run_forever(settings.sweep_interval_seconds))
    logger.info("Reservation and key custody service started")
    yield
    if sweep_task is not None:
        sweep_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await sweep_task
    logger.info("Reservation and key custody service stopped")


app = FastAPI(
    title="Dormitory Resource Reservation & Key Custody API",
    description="Booking of shared dormitory resources with physical key custody, deposits and fines",
    version="1.0.0",
    lifespan=lifespan,
)

# Dependency injection
def get_clock() -> Clock:
    return datetime.now

def get_catalog_service(clock: Clock = Depends(get_clock)) -> ResourceCatalogService:
    return ResourceCatalogService(resource_repo, clock=clock)

def get_scheduler_service(clock: Clock = Depends(get_clock)) -> ReservationSchedulerService:
    return ReservationSchedulerService(resource_repo, reservation_repo, notification_sink, clock=clock)

def get_lifecycle_service(clock: Clock = Depends(get_clock)) -> ReservationLifecycleService:
    return ReservationLifecycleService(reservation_repo, resource_repo, notification_sink, clock=clock)

def get_custody_service(clock: Clock = Depends(get_clock)) -> KeyCustodyService:
    return KeyCustodyService(
        key_repo,
        assignment_repo,
        clock=clock,
        default_replacement_cost=settings.default_key_replacement_cost,
        currency=settings.currency,
    )

def get_inventory_service(
    clock: Clock = Depends(get_clock),
    custody: KeyCustodyService = Depends(get_custody_service),
) -> KeyInventoryService:
    return KeyInventoryService(key_repo, custody, clock=clock)

def get_reservation_key_service(
    clock: Clock = Depends(get_clock),
    custody: KeyCustodyService = Depends(get_custody_service),
) -> ReservationKeyService:
    return ReservationKeyService(reservation_repo, key_repo, custody, clock=clock)

def get_sweep_service(clock: Clock = Depends(get_clock)) -> SweepService:
    return build_sweep_service(clock)

# ============================================================================
# ERROR MAPPING
# ============================================================================

_STATUS_BY_ERROR = {
    ValidationError: 400,
    PermissionDeniedError: 403,
    NotFoundError: 404,
    ConflictError: 409,
    StateError: 409,
    QuotaError: 429,
}

def _to_http_exception(error: DomainError) -> HTTPException:
    """Translate a domain failure into an HTTP error carrying its details"""
    status_code = _STATUS_BY_ERROR.get(type(error), 400)
    return HTTPException(status_code=status_code, detail=error.to_dict())

# ============================================================================
# HEALTH & ENUM REFERENCE ENDPOINTS
# ============================================================================

@app.get("/api/health", tags=["Health"])
async def health_check():
    """Health check endpoint"""
    return {"status": "healthy", "message": "API is running"}

@app.get("/api/enums/resource-type", tags=["Enum Reference"])
async def get_resource_types():
    """Get all ResourceType enum values"""
    return {
        "values": [f"{item.name}" for item in ResourceType],
        "description": "Bookable resource types; each carries its own duration, quota and cost defaults"
    }

@app.get("/api/enums/reservation-status", tags=["Enum Reference"])
async def get_reservation_statuses():
    """Get all ReservationStatus enum values"""
    return {
        "values": [f"{item.name}" for item in ReservationStatus],
        "description": "Reservation status values: PENDING, CONFIRMED, CHECKED_IN, COMPLETED, CANCELLED, REJECTED, NO_SHOW, EXPIRED"
    }

@app.get("/api/enums/key-type", tags=["Enum Reference"])
async def get_key_types():
    """Get all KeyType enum values"""
    return {
        "values": [f"{item.name}" for item in KeyType],
        "description": "Key types; each carries a security level, deposit and maximum issue duration"
    }

@app.get("/api/enums/key-status", tags=["Enum Reference"])
async def get_key_statuses():
    """Get all KeyStatus enum values"""
    return {
        "values": [f"{item.name}" for item in KeyStatus],
        "description": "Key status values: AVAILABLE, RESERVED, ISSUED, LOST, DAMAGED, OUT_OF_SERVICE, RETIRED"
    }

@app.get("/api/enums/assignment-type", tags=["Enum Reference"])
async def get_assignment_types():
    """Get all AssignmentType enum values"""
    return {
        "values": [f"{item.name}" for item in AssignmentType],
        "description": "Assignment type values: PERMANENT, TEMPORARY, EMERGENCY"
    }

# ============================================================================
# AUTH ENDPOINTS
# ============================================================================

@app.post("/token", response_model=Token, tags=["Auth"])
async def login_for_access_token(form_data: OAuth2PasswordRequestForm = Depends()):
    user = get_user(fake_users_db, form_data.username)
    if not user or not verify_password(form_data.password, user.hashed_password):
        raise HTTPException(
            status_code=401,
            detail="Incorrect username or password",
            headers={"WWW-Authenticate": "Bearer"},
        )
    access_token_expires = timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
    access_token = create_access_token(
        data={"sub": user.username}, expires_delta=access_token_expires
    )
    return {"access_token": access_token, "token_type": "bearer"}

@app.get("/users/me", response_model=UserResponse, tags=["Auth"])
async def read_users_me(current_user: User = Depends(get_current_active_user)):
    return current_user

# ============================================================================
# RESOURCE ENDPOINTS
# ============================================================================

def _resource_fields(request, **dump_options) -> dict:
    fields = request.model_dump(**dump_options)
    if fields.get("operating_hours") is not None:
        fields["operating_hours"] = OperatingHours(**fields["operating_hours"])
    return fields

@app.post("/api/resources", response_model=ResourceResponse, status_code=201, tags=["Resources"])
async def create_resource(
    request: CreateResourceRequest,
    service: ResourceCatalogService = Depends(get_catalog_service),
    current_user: User = Depends(get_current_active_user)
):
    """Create bookable resource (admin)"""
    try:
        fields = _resource_fields(request, exclude_none=True)
        resource = await service.create_resource(current_user, **fields)
        return _resource_to_response(resource)
    except DomainError as e:
        raise _to_http_exception(e)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

@app.get("/api/resources", response_model=List[ResourceResponse], tags=["Resources"])
async def list_resources(
    resource_type: Optional[ResourceType] = None,
    active_only: bool = True,
    service: ResourceCatalogService = Depends(get_catalog_service),
    current_user: User = Depends(get_current_active_user)
):
    """List resources, optionally filtered by type"""
    resources = await service.list_resources(resource_type=resource_type, active_only=active_only)
    return [_resource_to_response(r) for r in resources]

@app.get("/api/resources/{resource_id}", response_model=ResourceResponse, tags=["Resources"])
async def get_resource(
    resource_id: UUID,
    service: ResourceCatalogService = Depends(get_catalog_service),
    current_user: User = Depends(get_current_active_user)
):
    """Get resource by ID"""
    try:
        return _resource_to_response(await service.get_resource(resource_id))
    except DomainError as e:
        raise _to_http_exception(e)

@app.put("/api/resources/{resource_id}", response_model=ResourceResponse, tags=["Resources"])
async def update_resource(
    resource_id: UUID,
    request: UpdateResourceRequest,
    service: ResourceCatalogService = Depends(get_catalog_service),
    current_user: User = Depends(get_current_active_user)
):
    """Update resource booking rules (admin)"""
    try:
        fields = _resource_fields(request, exclude_unset=True)
        resource = await service.update_resource(current_user, resource_id, **fields)
        return _resource_to_response(resource)
    except DomainError as e:
        raise _to_http_exception(e)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

@app.delete("/api/resources/{resource_id}", response_model=ResourceResponse, tags=["Resources"])
async def deactivate_resource(
    resource_id: UUID,
    service: ResourceCatalogService = Depends(get_catalog_service),
    current_user: User = Depends(get_current_active_user)
):
    """Deactivate resource (admin); existing reservations are kept"""
    try:
        return _resource_to_response(await service.deactivate_resource(current_user, resource_id))
    except DomainError as e:
        raise _to_http_exception(e)

@app.get("/api/resources/{resource_id}/availability", tags=["Resources"])
async def check_resource_availability(
    resource_id: UUID,
    at: Optional[datetime] = None,
    service: ResourceCatalogService = Depends(get_catalog_service),
    current_user: User = Depends(get_current_active_user)
):
    """Whether the resource is open and active at the given moment"""
    try:
        available = await service.is_available_at(resource_id, at)
        return {"resource_id": resource_id, "available": available}
    except DomainError as e:
        raise _to_http_exception(e)

@app.get("/api/resources/{resource_id}/reservations", response_model=List[ReservationResponse], tags=["Resources"])
async def list_resource_reservations(
    resource_id: UUID,
    start: datetime,
    end: datetime,
    service: ReservationSchedulerService = Depends(get_scheduler_service),
    current_user: User = Depends(get_current_active_user)
):
    """Reservations on the resource overlapping [start, end)"""
    try:
        reservations = await service.list_reservations(resource_id, start, end)
        return [_reservation_to_response(r) for r in reservations]
    except DomainError as e:
        raise _to_http_exception(e)

# ============================================================================
# RESERVATION ENDPOINTS
# ============================================================================

@app.post("/api/reservations", response_model=ReservationResponse, status_code=201, tags=["Reservations"])
async def create_reservation(
    request: CreateReservationRequest,
    service: ReservationSchedulerService = Depends(get_scheduler_service),
    current_user: User = Depends(get_current_active_user)
):
    """Book a resource for the current user"""
    try:
        reservation = await service.create_reservation(
            requester=current_user,
            resource_id=request.resource_id,
            start=request.start_time,
            end=request.end_time,
            number_of_people=request.number_of_people,
            notes=request.notes,
        )
        return _reservation_to_response(reservation)
    except DomainError as e:
        raise _to_http_exception(e)

@app.get("/api/reservations/mine", response_model=List[ReservationResponse], tags=["Reservations"])
async def get_my_reservations(
    service: ReservationLifecycleService = Depends(get_lifecycle_service),
    current_user: User = Depends(get_current_active_user)
):
    """Get all reservations of the current user"""
    reservations = await service.list_user_reservations(current_user.user_id)
    return [_reservation_to_response(r) for r in reservations]

@app.get("/api/reservations/pending", response_model=List[ReservationResponse], tags=["Reservations"])
async def get_pending_reservations(
    service: ReservationLifecycleService = Depends(get_lifecycle_service),
    current_user: User = Depends(get_current_active_user)
):
    """Reservations waiting for approval (staff)"""
    try:
        reservations = await service.list_pending_approvals(current_user)
        return [_reservation_to_response(r) for r in reservations]
    except DomainError as e:
        raise _to_http_exception(e)

@app.get("/api/reservations/upcoming", response_model=List[ReservationResponse], tags=["Reservations"])
async def get_upcoming_reservations(
    hours: int = 24,
    service: ReservationLifecycleService = Depends(get_lifecycle_service),
    current_user: User = Depends(get_current_staff_user)
):
    """Confirmed reservations starting within the next hours (staff)"""
    reservations = await service.list_upcoming(hours)
    return [_reservation_to_response(r) for r in reservations]

@app.get("/api/reservations/{reservation_id}", response_model=ReservationResponse, tags=["Reservations"])
async def get_reservation(
    reservation_id: UUID,
    service: ReservationLifecycleService = Depends(get_lifecycle_service),
    current_user: User = Depends(get_current_active_user)
):
    """Get reservation by ID (owner or staff)"""
    try:
        reservation = await service.get_reservation(reservation_id)
        require_owner_or_staff(current_user, reservation.user_id, "view")
        return _reservation_to_response(reservation)
    except DomainError as e:
        raise _to_http_exception(e)

@app.post("/api/reservations/{reservation_id}/cancel", response_model=ReservationResponse, tags=["Reservations"])
async def cancel_reservation(
    reservation_id: UUID,
    request: CancelReservationRequest,
    service: ReservationLifecycleService = Depends(get_lifecycle_service),
    current_user: User = Depends(get_current_active_user)
):
    """Cancel reservation before the cancellation deadline"""
    try:
        reservation = await service.cancel(current_user, reservation_id, request.reason)
        return _reservation_to_response(reservation)
    except DomainError as e:
        raise _to_http_exception(e)

@app.post("/api/reservations/{reservation_id}/approve", response_model=ReservationResponse, tags=["Reservations"])
async def approve_reservation(
    reservation_id: UUID,
    service: ReservationLifecycleService = Depends(get_lifecycle_service),
    current_user: User = Depends(get_current_active_user)
):
    """Approve pending reservation (staff)"""
    try:
        reservation = await service.approve(current_user, reservation_id)
        return _reservation_to_response(reservation)
    except DomainError as e:
        raise _to_http_exception(e)

@app.post("/api/reservations/{reservation_id}/reject", response_model=ReservationResponse, tags=["Reservations"])
async def reject_reservation(
    reservation_id: UUID,
    request: RejectReservationRequest,
    service: ReservationLifecycleService = Depends(get_lifecycle_service),
    current_user: User = Depends(get_current_active_user)
):
    """Reject pending reservation (staff)"""
    try:
        reservation = await service.reject(current_user, reservation_id, request.reason)
        return _reservation_to_response(reservation)
    except DomainError as e:
        raise _to_http_exception(e)

@app.post("/api/reservations/{reservation_id}/check-in", response_model=ReservationResponse, tags=["Reservations"])
async def check_in_reservation(
    reservation_id: UUID,
    service: ReservationLifecycleService = Depends(get_lifecycle_service),
    current_user: User = Depends(get_current_active_user)
):
    """Check in inside the check-in window"""
    try:
        reservation = await service.check_in(current_user, reservation_id)
        return _reservation_to_response(reservation)
    except DomainError as e:
        raise _to_http_exception(e)

@app.post("/api/reservations/{reservation_id}/complete", response_model=ReservationResponse, tags=["Reservations"])
async def complete_reservation(
    reservation_id: UUID,
    service: ReservationLifecycleService = Depends(get_lifecycle_service),
    current_user: User = Depends(get_current_active_user)
):
    """Complete checked-in reservation; late completion is charged"""
    try:
        reservation = await service.complete(current_user, reservation_id)
        return _reservation_to_response(reservation)
    except DomainError as e:
        raise _to_http_exception(e)

@app.post("/api/reservations/{reservation_id}/key-pickup", response_model=KeyHandoverResponse, tags=["Reservations"])
async def pick_up_reservation_key(
    reservation_id: UUID,
    request: KeyPickupRequest,
    service: ReservationKeyService = Depends(get_reservation_key_service),
    current_user: User = Depends(get_current_active_user)
):
    """Hand out the resource key and check the reservation in (staff)"""
    try:
        handover = await service.pick_up_key(
            current_user, reservation_id, key_id=request.key_id, deposit_paid=request.deposit_paid
        )
        return _handover_to_response(handover)
    except DomainError as e:
        raise _to_http_exception(e)

@app.post("/api/reservations/{reservation_id}/key-return", response_model=KeyHandoverResponse, tags=["Reservations"])
async def return_reservation_key(
    reservation_id: UUID,
    request: KeyReturnRequest,
    service: ReservationKeyService = Depends(get_reservation_key_service),
    current_user: User = Depends(get_current_active_user)
):
    """Take the key back and complete the reservation (staff)"""
    try:
        handover = await service.return_key_for_reservation(
            current_user, reservation_id, condition=request.condition, notes=request.notes
        )
        return _handover_to_response(handover)
    except DomainError as e:
        raise _to_http_exception(e)

# ============================================================================
# KEY ENDPOINTS
# ============================================================================

@app.post("/api/keys", response_model=KeyResponse, status_code=201, tags=["Keys"])
async def create_key(
    request: CreateKeyRequest,
    service: KeyInventoryService = Depends(get_inventory_service),
    current_user: User = Depends(get_current_active_user)
):
    """Register physical key (admin)"""
    try:
        key = await service.create_key(
            current_user,
            key_code=request.key_code,
            description=request.description,
            key_type=request.key_type,
            room_number=request.room_number,
            associated_resource_id=request.associated_resource_id,
            replacement_cost=request.replacement_cost,
        )
        return _key_to_response(key)
    except DomainError as e:
        raise _to_http_exception(e)

@app.get("/api/keys", response_model=List[KeyResponse], tags=["Keys"])
async def list_keys(
    status: Optional[KeyStatus] = None,
    key_type: Optional[KeyType] = None,
    service: KeyInventoryService = Depends(get_inventory_service),
    current_user: User = Depends(get_current_staff_user)
):
    """List keys, optionally filtered by status and type (staff)"""
    keys = await service.list_keys(status=status, key_type=key_type)
    return [_key_to_response(k) for k in keys]

@app.get("/api/keys/attention", response_model=List[KeyResponse], tags=["Keys"])
async def get_keys_needing_attention(
    service: KeyInventoryService = Depends(get_inventory_service),
    current_user: User = Depends(get_current_staff_user)
):
    """Lost, damaged, out-of-service or maintenance-overdue keys (staff)"""
    keys = await service.keys_needing_attention()
    return [_key_to_response(k) for k in keys]

@app.get("/api/keys/statistics", response_model=KeyStatisticsResponse, tags=["Keys"])
async def get_key_statistics(
    service: KeyInventoryService = Depends(get_inventory_service),
    current_user: User = Depends(get_current_staff_user)
):
    """Key inventory counts (staff)"""
    stats = await service.statistics()
    return KeyStatisticsResponse(**stats.model_dump())

@app.get("/api/keys/{key_id}", response_model=KeyResponse, tags=["Keys"])
async def get_key(
    key_id: UUID,
    service: KeyInventoryService = Depends(get_inventory_service),
    current_user: User = Depends(get_current_staff_user)
):
    """Get key by ID (staff)"""
    try:
        return _key_to_response(await service.get_key(key_id))
    except DomainError as e:
        raise _to_http_exception(e)

@app.put("/api/keys/{key_id}", response_model=KeyResponse, tags=["Keys"])
async def update_key(
    key_id: UUID,
    request: UpdateKeyRequest,
    service: KeyInventoryService = Depends(get_inventory_service),
    current_user: User = Depends(get_current_active_user)
):
    """Update key description, type or placement (admin)"""
    try:
        key = await service.update_key(current_user, key_id, **request.model_dump(exclude_unset=True))
        return _key_to_response(key)
    except DomainError as e:
        raise _to_http_exception(e)

@app.get("/api/keys/{key_id}/history", response_model=List[KeyAssignmentResponse], tags=["Keys"])
async def get_key_history(
    key_id: UUID,
    service: KeyCustodyService = Depends(get_custody_service),
    current_user: User = Depends(get_current_staff_user)
):
    """All assignments of a key, newest first (staff)"""
    assignments = await service.key_history(key_id)
    return [_assignment_to_response(a) for a in assignments]

@app.post("/api/keys/{key_id}/reserve", response_model=KeyResponse, tags=["Keys"])
async def reserve_key(
    key_id: UUID,
    service: KeyInventoryService = Depends(get_inventory_service),
    current_user: User = Depends(get_current_active_user)
):
    """Hold an available key for an upcoming handover (staff)"""
    try:
        return _key_to_response(await service.reserve_key(current_user, key_id))
    except DomainError as e:
        raise _to_http_exception(e)

@app.post("/api/keys/{key_id}/make-available", response_model=KeyResponse, tags=["Keys"])
async def make_key_available(
    key_id: UUID,
    service: KeyInventoryService = Depends(get_inventory_service),
    current_user: User = Depends(get_current_active_user)
):
    """Release a reserved, repaired or found key (staff)"""
    try:
        return _key_to_response(await service.make_available(current_user, key_id))
    except DomainError as e:
        raise _to_http_exception(e)

@app.post("/api/keys/{key_id}/report-damaged", response_model=KeyResponse, tags=["Keys"])
async def report_key_damaged(
    key_id: UUID,
    request: KeyNoteRequest,
    service: KeyInventoryService = Depends(get_inventory_service),
    current_user: User = Depends(get_current_active_user)
):
    """Report key damaged (staff)"""
    try:
        return _key_to_response(await service.report_damaged(current_user, key_id, request.notes))
    except DomainError as e:
        raise _to_http_exception(e)

@app.post("/api/keys/{key_id}/report-lost", response_model=KeyResponse, tags=["Keys"])
async def report_key_lost(
    key_id: UUID,
    service: KeyInventoryService = Depends(get_inventory_service),
    current_user: User = Depends(get_current_active_user)
):
    """Report key lost (staff); an issued key is charged to its holder"""
    try:
        return _key_to_response(await service.report_key_lost(current_user, key_id))
    except DomainError as e:
        raise _to_http_exception(e)

@app.post("/api/keys/{key_id}/out-of-service", response_model=KeyResponse, tags=["Keys"])
async def put_key_out_of_service(
    key_id: UUID,
    request: KeyNoteRequest,
    service: KeyInventoryService = Depends(get_inventory_service),
    current_user: User = Depends(get_current_active_user)
):
    """Take key out of service (admin)"""
    try:
        return _key_to_response(await service.put_out_of_service(current_user, key_id, request.notes))
    except DomainError as e:
        raise _to_http_exception(e)

@app.post("/api/keys/{key_id}/retire", response_model=KeyResponse, tags=["Keys"])
async def retire_key(
    key_id: UUID,
    request: KeyNoteRequest,
    service: KeyInventoryService = Depends(get_inventory_service),
    current_user: User = Depends(get_current_active_user)
):
    """Retire key permanently (admin)"""
    try:
        return _key_to_response(await service.retire(current_user, key_id, request.notes))
    except DomainError as e:
        raise _to_http_exception(e)

@app.post("/api/keys/{key_id}/maintenance", response_model=KeyResponse, tags=["Keys"])
async def record_key_maintenance(
    key_id: UUID,
    request: KeyMaintenanceRequest,
    service: KeyInventoryService = Depends(get_inventory_service),
    current_user: User = Depends(get_current_active_user)
):
    """Record maintenance and schedule the next one (staff)"""
    try:
        key = await service.record_maintenance(current_user, key_id, request.next_due, request.notes)
        return _key_to_response(key)
    except DomainError as e:
        raise _to_http_exception(e)

@app.post("/api/keys/{key_id}/issue", response_model=KeyAssignmentResponse, status_code=201, tags=["Keys"])
async def issue_key(
    key_id: UUID,
    request: IssueKeyRequest,
    service: KeyCustodyService = Depends(get_custody_service),
    current_user: User = Depends(get_current_active_user)
):
    """Issue key to a user (staff)"""
    try:
        assignment = await service.issue_key(
            current_user,
            key_id,
            request.user_id,
            assignment_type=request.assignment_type,
            notes=request.notes,
            deposit_paid=request.deposit_paid,
        )
        return _assignment_to_response(assignment)
    except DomainError as e:
        raise _to_http_exception(e)

# ============================================================================
# KEY ASSIGNMENT ENDPOINTS
# ============================================================================

@app.get("/api/key-assignments/active", response_model=List[KeyAssignmentResponse], tags=["Key Assignments"])
async def get_active_assignments(
    service: KeyCustodyService = Depends(get_custody_service),
    current_user: User = Depends(get_current_staff_user)
):
    """Keys currently out (staff)"""
    return [_assignment_to_response(a) for a in await service.list_active()]

@app.get("/api/key-assignments/overdue", response_model=List[KeyAssignmentResponse], tags=["Key Assignments"])
async def get_overdue_assignments(
    service: KeyCustodyService = Depends(get_custody_service),
    current_user: User = Depends(get_current_staff_user)
):
    """Keys past their expected return (staff)"""
    return [_assignment_to_response(a) for a in await service.list_overdue()]

@app.get("/api/key-assignments/mine", response_model=List[KeyAssignmentResponse], tags=["Key Assignments"])
async def get_my_assignments(
    service: KeyCustodyService = Depends(get_custody_service),
    current_user: User = Depends(get_current_active_user)
):
    """Key assignments of the current user"""
    return [_assignment_to_response(a) for a in await service.list_user_assignments(current_user.user_id)]

@app.get("/api/key-assignments/{assignment_id}", response_model=KeyAssignmentResponse, tags=["Key Assignments"])
async def get_assignment(
    assignment_id: UUID,
    service: KeyCustodyService = Depends(get_custody_service),
    current_user: User = Depends(get_current_active_user)
):
    """Get key assignment by ID (holder or staff)"""
    try:
        assignment = await service.get_assignment(assignment_id)
        if assignment.user_id != current_user.user_id and not current_user.is_staff:
            raise PermissionDeniedError("You can only view your own key assignments")
        return _assignment_to_response(assignment)
    except DomainError as e:
        raise _to_http_exception(e)

@app.post("/api/key-assignments/{assignment_id}/return", response_model=KeyAssignmentResponse, tags=["Key Assignments"])
async def return_key(
    assignment_id: UUID,
    request: KeyReturnRequest,
    service: ReservationKeyService = Depends(get_reservation_key_service),
    current_user: User = Depends(get_current_active_user)
):
    """Take back key (staff); completes the linked reservation if any"""
    try:
        assignment = await service.return_assignment(
            current_user, assignment_id, condition=request.condition, notes=request.notes
        )
        return _assignment_to_response(assignment)
    except DomainError as e:
        raise _to_http_exception(e)

@app.post("/api/key-assignments/{assignment_id}/report-lost", response_model=KeyAssignmentResponse, tags=["Key Assignments"])
async def report_assignment_lost(
    assignment_id: UUID,
    service: KeyCustodyService = Depends(get_custody_service),
    current_user: User = Depends(get_current_active_user)
):
    """Report issued key lost (holder or staff)"""
    try:
        return _assignment_to_response(await service.report_lost(current_user, assignment_id))
    except DomainError as e:
        raise _to_http_exception(e)

@app.post("/api/key-assignments/{assignment_id}/extend", response_model=KeyAssignmentResponse, tags=["Key Assignments"])
async def extend_assignment(
    assignment_id: UUID,
    request: ExtendAssignmentRequest,
    service: KeyCustodyService = Depends(get_custody_service),
    current_user: User = Depends(get_current_active_user)
):
    """Move the expected return later (staff)"""
    try:
        assignment = await service.extend(
            current_user, assignment_id, request.new_expected_return, request.reason
        )
        return _assignment_to_response(assignment)
    except DomainError as e:
        raise _to_http_exception(e)

@app.post("/api/key-assignments/{assignment_id}/deposit", response_model=KeyAssignmentResponse, tags=["Key Assignments"])
async def record_deposit_payment(
    assignment_id: UUID,
    service: KeyCustodyService = Depends(get_custody_service),
    current_user: User = Depends(get_current_active_user)
):
    """Record that the deposit was paid (staff)"""
    try:
        return _assignment_to_response(await service.record_deposit_payment(current_user, assignment_id))
    except DomainError as e:
        raise _to_http_exception(e)

@app.get("/api/key-assignments/{assignment_id}/amount-owed", response_model=MoneyResponse, tags=["Key Assignments"])
async def get_amount_owed(
    assignment_id: UUID,
    service: KeyCustodyService = Depends(get_custody_service),
    current_user: User = Depends(get_current_active_user)
):
    """Fine plus replacement minus refundable deposit, never negative"""
    try:
        assignment = await service.get_assignment(assignment_id)
        if assignment.user_id != current_user.user_id and not current_user.is_staff:
            raise PermissionDeniedError("You can only view your own key assignments")
        owed = await service.amount_owed(assignment_id)
        return {"amount": owed.amount, "currency": owed.currency}
    except DomainError as e:
        raise _to_http_exception(e)

# ============================================================================
# ADMIN ENDPOINTS
# ============================================================================

@app.post("/api/admin/sweep", response_model=SweepReportResponse, tags=["Admin"])
async def run_sweep(
    service: SweepService = Depends(get_sweep_service),
    current_user: User = Depends(get_current_staff_user)
):
    """Run the no-show / expiry / reminder sweep now (staff)"""
    report = await service.run()
    logger.info("Manual sweep triggered by %s", current_user.username)
    return SweepReportResponse(**report.model_dump())

# ============================================================================
# HELPER FUNCTIONS
# ============================================================================

def _resource_to_response(resource: Resource) -> ResourceResponse:
    """Convert Resource entity to ResourceResponse"""
    return ResourceResponse(
        resource_id=resource.resource_id,
        name=resource.name,
        description=resource.description,
        resource_type=resource.resource_type.value,
        location=resource.location,
        floor_number=resource.floor_number,
        capacity=resource.capacity,
        is_active=resource.is_active,
        operating_hours=OperatingHoursSchema(
            opens_at=resource.operating_hours.opens_at,
            closes_at=resource.operating_hours.closes_at,
            weekdays=resource.operating_hours.weekdays,
        ),
        default_duration_minutes=resource.default_duration_minutes,
        min_duration_minutes=resource.min_duration_minutes,
        max_duration_minutes=resource.max_duration_minutes,
        advance_booking_hours=resource.advance_booking_hours,
        max_advance_days=resource.max_advance_days,
        max_reservations_per_user_per_day=resource.max_reservations_per_user_per_day,
        requires_approval=resource.requires_approval,
        cost_per_hour=resource.cost_per_hour,
        deposit_required=resource.deposit_required,
        requires_key=resource.requires_key,
        key_location=resource.key_location,
        key_instructions=resource.key_instructions,
        next_maintenance=resource.next_maintenance,
        created_at=resource.created_at,
        updated_at=resource.updated_at,
        version=resource.version
    )

def _reservation_to_response(reservation: Reservation) -> ReservationResponse:
    """Convert Reservation entity to ReservationResponse"""
    return ReservationResponse(
        reservation_id=reservation.reservation_id,
        check_in_code=reservation.check_in_code,
        resource_id=reservation.resource_id,
        user_id=reservation.user_id,
        start_time=reservation.start,
        end_time=reservation.end,
        number_of_people=reservation.number_of_people,
        notes=reservation.notes,
        admin_notes=reservation.admin_notes,
        status=reservation.status.value,
        payment_status=reservation.payment_status.value,
        total_cost=reservation.total_cost,
        deposit_amount=reservation.deposit_amount,
        late_fee=reservation.late_fee,
        currency=settings.currency,
        requires_key=reservation.requires_key,
        key_picked_up=reservation.key_picked_up,
        key_picked_up_at=reservation.key_picked_up_at,
        key_returned=reservation.key_returned,
        key_returned_at=reservation.key_returned_at,
        key_assignment_id=reservation.key_assignment_id,
        cancellation_reason=reservation.cancellation_reason,
        checked_in_at=reservation.checked_in_at,
        completed_at=reservation.completed_at,
        created_at=reservation.created_at,
        updated_at=reservation.updated_at,
        version=reservation.version
    )

def _key_to_response(key: Key) -> KeyResponse:
    """Convert Key entity to KeyResponse"""
    return KeyResponse(
        key_id=key.key_id,
        key_code=key.key_code,
        description=key.description,
        display_name=key.display_name(),
        key_type=key.key_type.value,
        status=key.status.value,
        room_number=key.room_number,
        associated_resource_id=key.associated_resource_id,
        security_level=key.security_level,
        requires_deposit=key.requires_deposit,
        deposit_amount=key.deposit_amount,
        max_issue_duration_hours=key.max_issue_duration_hours,
        permanent_assignment=key.permanent_assignment,
        requires_admin_authorization=key.requires_admin_authorization,
        replacement_cost=key.replacement_cost,
        total_assignments=key.total_assignments,
        lost_count=key.lost_count,
        needs_attention=key.needs_attention(),
        last_maintenance=key.last_maintenance,
        next_maintenance=key.next_maintenance,
        maintenance_notes=key.maintenance_notes,
        admin_notes=key.admin_notes,
        version=key.version
    )

def _assignment_to_response(assignment: KeyAssignment) -> KeyAssignmentResponse:
    """Convert KeyAssignment entity to KeyAssignmentResponse"""
    return KeyAssignmentResponse(
        assignment_id=assignment.assignment_id,
        key_id=assignment.key_id,
        key_type=assignment.key_type.value,
        user_id=assignment.user_id,
        issued_by=assignment.issued_by,
        returned_to=assignment.returned_to,
        reservation_id=assignment.reservation_id,
        assignment_type=assignment.assignment_type.value,
        status=assignment.status.value,
        issued_at=assignment.issued_at,
        expected_return=assignment.expected_return,
        returned_at=assignment.returned_at,
        is_overdue=assignment.is_overdue,
        deposit_amount=assignment.deposit_amount,
        deposit_paid=assignment.deposit_paid,
        deposit_refunded=assignment.deposit_refunded,
        fine_amount=assignment.fine_amount,
        replacement_cost=assignment.replacement_cost,
        condition_on_return=assignment.condition_on_return.value if assignment.condition_on_return else None,
        return_notes=assignment.return_notes,
        extension_count=assignment.extension_count,
        reminder_sent_count=assignment.reminder_sent_count,
        total_amount_owed=assignment.total_amount_owed(),
        currency=settings.currency,
        version=assignment.version
    )

def _handover_to_response(handover: KeyHandover) -> KeyHandoverResponse:
    return KeyHandoverResponse(
        reservation=_reservation_to_response(handover.reservation),
        assignment=_assignment_to_response(handover.assignment),
    )

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
