"""Domain Entities - Aggregates"""
import secrets
import string
from pydantic import BaseModel, Field
from uuid import UUID, uuid4
from datetime import datetime, timedelta
from typing import Optional
from decimal import Decimal, ROUND_HALF_UP

from domain.enums import (
    AssignmentStatus, AssignmentType, KeyCondition, KeyStatus, KeyType,
    PaymentStatus, ReservationStatus, ResourceType
)
from domain.errors import StateError, ValidationError
from domain.policies import (
    ASSIGNMENT_TRANSITIONS, CANCELLATION_DEADLINE, CHECK_IN_CLOSES_AFTER_START,
    CHECK_IN_OPENS_BEFORE_START, DEFAULT_MAX_ADVANCE_DAYS, KEY_FINE_PER_UNIT,
    KEY_FINE_UNIT, KEY_TRANSITIONS, KEY_TYPE_DEFAULTS, LATE_FEE_PER_UNIT,
    LATE_FEE_UNIT, RESERVATION_TRANSITIONS, RESOURCE_TYPE_DEFAULTS,
    ensure_transition, is_terminal
)
from domain.value_objects import OperatingHours, TimeSlot

CENTS = Decimal("0.01")
CHECK_IN_CODE_ALPHABET = string.ascii_uppercase + string.digits


def _ceil_units(elapsed: timedelta, unit: timedelta) -> int:
    """Number of started ``unit`` periods in ``elapsed``"""
    if elapsed <= timedelta(0):
        return 0
    return -(-elapsed // unit)


class Resource(BaseModel):
    """Bookable Resource Aggregate

    Type defaults are copied in by :meth:`create` and afterwards live on the
    instance as plain fields.
    """

    # Identity
    resource_id: UUID = Field(default_factory=uuid4)
    name: str
    description: Optional[str] = None
    resource_type: ResourceType

    # Location
    location: Optional[str] = None
    floor_number: Optional[int] = None
    capacity: Optional[int] = Field(default=None, ge=1)
    is_active: bool = True

    # Availability
    operating_hours: OperatingHours = Field(default_factory=OperatingHours)

    # Booking rules
    default_duration_minutes: int
    min_duration_minutes: int
    max_duration_minutes: int
    advance_booking_hours: int = 0
    max_advance_days: int = DEFAULT_MAX_ADVANCE_DAYS
    max_reservations_per_user_per_day: int = 1
    requires_approval: bool = False

    # Pricing
    cost_per_hour: Decimal = Decimal("0")
    deposit_required: Decimal = Decimal("0")

    # Key handling
    requires_key: bool = True
    key_location: Optional[str] = "Reception"
    key_instructions: Optional[str] = None

    # Maintenance
    last_maintenance: Optional[datetime] = None
    next_maintenance: Optional[datetime] = None

    # Metadata
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)
    version: int = 1

    class Config:
        from_attributes = True

    # ==================== FACTORY METHOD ====================
    @staticmethod
    def create(
        name: str,
        resource_type: ResourceType,
        capacity: Optional[int] = None,
        location: Optional[str] = None,
        **overrides,
    ) -> "Resource":
        """Create resource from its type defaults plus explicit overrides"""
        defaults = RESOURCE_TYPE_DEFAULTS[resource_type]
        fields = dict(
            name=name,
            resource_type=resource_type,
            capacity=capacity,
            location=location,
            default_duration_minutes=defaults.default_duration_minutes,
            min_duration_minutes=defaults.min_duration_minutes,
            max_duration_minutes=defaults.max_duration_minutes,
            advance_booking_hours=defaults.min_advance_hours,
            max_reservations_per_user_per_day=defaults.max_reservations_per_day,
            requires_approval=defaults.requires_approval,
            cost_per_hour=defaults.cost_per_hour,
        )
        fields.update({k: v for k, v in overrides.items() if v is not None})
        resource = Resource(**fields)
        resource.validate_rules()
        return resource

    def validate_rules(self) -> None:
        """Check duration ordering and quota invariants"""
        if not (self.min_duration_minutes <= self.default_duration_minutes <= self.max_duration_minutes):
            raise ValidationError(
                "Durations must satisfy min <= default <= max",
                min_duration_minutes=self.min_duration_minutes,
                default_duration_minutes=self.default_duration_minutes,
                max_duration_minutes=self.max_duration_minutes,
            )
        if self.min_duration_minutes < 1:
            raise ValidationError("Minimum duration must be at least 1 minute")
        if self.max_reservations_per_user_per_day < 1:
            raise ValidationError(
                "Daily quota must be at least 1",
                max_reservations_per_user_per_day=self.max_reservations_per_user_per_day,
            )
        if self.cost_per_hour < 0 or self.deposit_required < 0:
            raise ValidationError("Cost and deposit must not be negative")
        if self.max_advance_days < 1:
            raise ValidationError("Maximum advance booking must be at least 1 day")

    def update(self, **changes) -> None:
        """Apply administrative changes and re-check invariants"""
        changes = {k: v for k, v in changes.items() if v is not None}
        self.model_copy(update=changes).validate_rules()
        for field, value in changes.items():
            setattr(self, field, value)
        self.updated_at = datetime.now()
        self.version += 1

    def deactivate(self) -> None:
        self.is_active = False
        self.updated_at = datetime.now()
        self.version += 1

    # ==================== QUERY METHODS ====================
    def is_available_at(self, moment: datetime) -> bool:
        return self.is_active and self.operating_hours.is_open_at(moment)

    def has_capacity_for(self, number_of_people: int) -> bool:
        return self.capacity is None or self.capacity >= number_of_people

    def requires_payment(self) -> bool:
        return self.cost_per_hour > 0 or self.deposit_required > 0

    def calculate_cost(self, slot: TimeSlot) -> Decimal:
        """Flat hourly cost for the slot, zero for free resources"""
        if self.cost_per_hour == 0:
            return Decimal("0.00")
        return (self.cost_per_hour * slot.duration_hours()).quantize(CENTS, rounding=ROUND_HALF_UP)

    def needs_maintenance(self, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now()
        return self.next_maintenance is not None and now > self.next_maintenance


class Reservation(BaseModel):
    """Reservation Aggregate Root Entity

    Mutated only through the transition methods below; every transition is
    checked against ``RESERVATION_TRANSITIONS``.
    """

    # Identity
    reservation_id: UUID = Field(default_factory=uuid4)
    check_in_code: str

    # References to other aggregates (lookup keys, not owned objects)
    resource_id: UUID
    user_id: UUID
    key_assignment_id: Optional[UUID] = None

    # Booking
    slot: TimeSlot
    number_of_people: int = Field(default=1, ge=1)
    notes: Optional[str] = None
    admin_notes: Optional[str] = None
    requires_key: bool = False

    # Status
    status: ReservationStatus = ReservationStatus.PENDING
    payment_status: PaymentStatus = PaymentStatus.PAID

    # Money
    total_cost: Decimal = Decimal("0")
    deposit_amount: Decimal = Decimal("0")
    late_fee: Decimal = Decimal("0")

    # Lifecycle timestamps
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)
    confirmed_at: Optional[datetime] = None
    checked_in_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    actual_end: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    approved_by: Optional[UUID] = None

    # Key pickup / return
    key_picked_up: bool = False
    key_picked_up_at: Optional[datetime] = None
    key_picked_up_by: Optional[str] = None
    key_returned: bool = False
    key_returned_at: Optional[datetime] = None
    key_returned_to: Optional[str] = None

    reminder_sent: bool = False
    version: int = 1

    class Config:
        from_attributes = True

    # ==================== FACTORY METHOD ====================
    @staticmethod
    def create(
        resource: Resource,
        user_id: UUID,
        slot: TimeSlot,
        number_of_people: int = 1,
        notes: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> "Reservation":
        """Create reservation priced from the resource; scheduling rules are checked by the caller"""
        now = now or datetime.now()
        cost = resource.calculate_cost(slot)
        deposit = resource.deposit_required
        total = cost + deposit
        status = ReservationStatus.PENDING if resource.requires_approval else ReservationStatus.CONFIRMED

        return Reservation(
            check_in_code=Reservation._generate_check_in_code(),
            resource_id=resource.resource_id,
            user_id=user_id,
            slot=slot,
            number_of_people=number_of_people,
            notes=notes,
            requires_key=resource.requires_key,
            status=status,
            payment_status=PaymentStatus.UNPAID if total > 0 else PaymentStatus.PAID,
            total_cost=total,
            deposit_amount=deposit,
            created_at=now,
            updated_at=now,
            confirmed_at=now if status == ReservationStatus.CONFIRMED else None,
        )

    # ==================== STATE TRANSITION METHODS ====================
    def approve(self, approver_id: UUID, now: Optional[datetime] = None) -> None:
        """PENDING -> CONFIRMED (administrative)"""
        now = now or datetime.now()
        self._transition(ReservationStatus.CONFIRMED, now)
        self.confirmed_at = now
        self.approved_by = approver_id

    def reject(self, reason: str, now: Optional[datetime] = None) -> None:
        now = now or datetime.now()
        self._transition(ReservationStatus.REJECTED, now)
        self.admin_notes = reason

    def cancel(self, reason: str, now: Optional[datetime] = None) -> None:
        now = now or datetime.now()
        if not self.can_be_cancelled(now):
            raise StateError(
                "Reservation can only be cancelled while pending or confirmed "
                "and before the cancellation deadline",
                current_status=self.status.value,
                cancellation_deadline=self.cancellation_deadline.isoformat(),
            )
        self._transition(ReservationStatus.CANCELLED, now)
        self.cancelled_at = now
        self.cancellation_reason = reason

    def check_in(self, now: Optional[datetime] = None) -> None:
        now = now or datetime.now()
        if self.status != ReservationStatus.CONFIRMED:
            raise StateError(
                f"Cannot check in with status {self.status.value}",
                current_status=self.status.value,
            )
        if not self.is_within_check_in_window(now):
            opens, closes = self.check_in_window()
            raise StateError(
                "Check-in is only possible inside the check-in window",
                window_opens=opens.isoformat(),
                window_closes=closes.isoformat(),
            )
        self._transition(ReservationStatus.CHECKED_IN, now)
        self.checked_in_at = now

    def complete(self, now: Optional[datetime] = None) -> Decimal:
        """CHECKED_IN -> COMPLETED; returns the late fee charged"""
        now = now or datetime.now()
        self._transition(ReservationStatus.COMPLETED, now)
        self.completed_at = now
        self.actual_end = now
        self.late_fee = self.calculate_late_fee(now)
        return self.late_fee

    def mark_no_show(self, now: Optional[datetime] = None) -> None:
        """CONFIRMED -> NO_SHOW; any deposit is forfeited"""
        now = now or datetime.now()
        self._transition(ReservationStatus.NO_SHOW, now)
        if self.deposit_amount > 0:
            self.payment_status = PaymentStatus.FORFEITED

    def expire(self, now: Optional[datetime] = None) -> None:
        """Closing a checked-in overstay records the late fee like complete()"""
        now = now or datetime.now()
        was_checked_in = self.status == ReservationStatus.CHECKED_IN
        self._transition(ReservationStatus.EXPIRED, now)
        if was_checked_in:
            self.actual_end = now
            self.late_fee = self.calculate_late_fee(now)

    def record_key_pickup(self, picked_up_by: str, assignment_id: UUID, now: Optional[datetime] = None) -> None:
        now = now or datetime.now()
        self.key_picked_up = True
        self.key_picked_up_at = now
        self.key_picked_up_by = picked_up_by
        self.key_assignment_id = assignment_id
        self._touch(now)

    def record_key_return(self, returned_to: str, now: Optional[datetime] = None) -> None:
        now = now or datetime.now()
        self.key_returned = True
        self.key_returned_at = now
        self.key_returned_to = returned_to
        self._touch(now)

    def mark_reminder_sent(self, now: Optional[datetime] = None) -> None:
        self.reminder_sent = True
        self._touch(now or datetime.now())

    # ==================== QUERY METHODS ====================
    @property
    def start(self) -> datetime:
        return self.slot.start

    @property
    def end(self) -> datetime:
        return self.slot.end

    @property
    def cancellation_deadline(self) -> datetime:
        return self.slot.start - CANCELLATION_DEADLINE

    def check_in_window(self):
        """Closed window ``[start - 15min, start + 30min]``"""
        return (
            self.slot.start - CHECK_IN_OPENS_BEFORE_START,
            self.slot.start + CHECK_IN_CLOSES_AFTER_START,
        )

    def is_within_check_in_window(self, now: datetime) -> bool:
        opens, closes = self.check_in_window()
        return opens <= now <= closes

    def can_be_cancelled(self, now: datetime) -> bool:
        if self.status not in (ReservationStatus.PENDING, ReservationStatus.CONFIRMED):
            return False
        return now < self.cancellation_deadline

    def can_check_in(self, now: datetime) -> bool:
        return self.status == ReservationStatus.CONFIRMED and self.is_within_check_in_window(now)

    def can_pick_up_key(self, now: datetime) -> bool:
        return self.requires_key and not self.key_picked_up and self.can_check_in(now)

    def needs_key_return(self) -> bool:
        return self.key_picked_up and not self.key_returned

    def is_active(self) -> bool:
        return self.status in (ReservationStatus.CONFIRMED, ReservationStatus.CHECKED_IN)

    def is_final(self) -> bool:
        return is_terminal(RESERVATION_TRANSITIONS, self.status)

    def is_overdue(self, now: datetime) -> bool:
        return self.is_active() and now > self.slot.end

    def overlaps(self, slot: TimeSlot) -> bool:
        return self.slot.overlaps(slot)

    def calculate_late_fee(self, actual_end: datetime) -> Decimal:
        """10 per started 30 minutes past the booked end"""
        units = _ceil_units(actual_end - self.slot.end, LATE_FEE_UNIT)
        return LATE_FEE_PER_UNIT * units

    # ==================== PRIVATE METHODS ====================
    def _transition(self, target: ReservationStatus, now: datetime) -> None:
        ensure_transition(RESERVATION_TRANSITIONS, self.status, target, "reservation")
        self.status = target
        self._touch(now)

    def _touch(self, now: datetime) -> None:
        self.updated_at = now
        self.version += 1

    @staticmethod
    def _generate_check_in_code() -> str:
        return ''.join(secrets.choice(CHECK_IN_CODE_ALPHABET) for _ in range(6))


class Key(BaseModel):
    """Physical Key Aggregate"""

    # Identity
    key_id: UUID = Field(default_factory=uuid4)
    key_code: str
    description: str
    key_type: KeyType
    status: KeyStatus = KeyStatus.AVAILABLE

    # Placement
    room_number: Optional[str] = None
    associated_resource_id: Optional[UUID] = None

    # Copied from the key type at creation
    security_level: int
    requires_deposit: bool = False
    deposit_amount: Decimal = Decimal("0")
    max_issue_duration_hours: int
    permanent_assignment: bool = False
    requires_admin_authorization: bool = False
    replacement_cost: Optional[Decimal] = None

    # Counters
    total_assignments: int = 0
    lost_count: int = 0

    # Maintenance / notes
    last_maintenance: Optional[datetime] = None
    next_maintenance: Optional[datetime] = None
    maintenance_notes: Optional[str] = None
    admin_notes: Optional[str] = None

    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)
    version: int = 1

    class Config:
        from_attributes = True

    # ==================== FACTORY METHOD ====================
    @staticmethod
    def create(
        key_code: str,
        description: str,
        key_type: KeyType,
        room_number: Optional[str] = None,
        associated_resource_id: Optional[UUID] = None,
        replacement_cost: Optional[Decimal] = None,
    ) -> "Key":
        if not key_code or not key_code.strip():
            raise ValidationError("Key code must not be empty")
        defaults = KEY_TYPE_DEFAULTS[key_type]
        return Key(
            key_code=key_code.strip(),
            description=description,
            key_type=key_type,
            room_number=room_number,
            associated_resource_id=associated_resource_id,
            security_level=defaults.security_level,
            requires_deposit=defaults.requires_deposit,
            deposit_amount=defaults.deposit_amount if defaults.requires_deposit else Decimal("0"),
            max_issue_duration_hours=defaults.max_issue_duration_hours,
            permanent_assignment=defaults.permanent_assignment,
            requires_admin_authorization=defaults.requires_admin_authorization,
            replacement_cost=replacement_cost,
        )

    def update(
        self,
        description: Optional[str] = None,
        key_type: Optional[KeyType] = None,
        room_number: Optional[str] = None,
        associated_resource_id: Optional[UUID] = None,
        replacement_cost: Optional[Decimal] = None,
    ) -> None:
        """Administrative edit; type defaults are re-applied only when the type changes"""
        if key_type is not None and key_type != self.key_type:
            if self.is_currently_issued():
                raise StateError("Cannot change the type of an issued key",
                                 key_code=self.key_code, current_status=self.status.value)
            defaults = KEY_TYPE_DEFAULTS[key_type]
            self.key_type = key_type
            self.security_level = defaults.security_level
            self.requires_deposit = defaults.requires_deposit
            self.deposit_amount = defaults.deposit_amount if defaults.requires_deposit else Decimal("0")
            self.max_issue_duration_hours = defaults.max_issue_duration_hours
            self.permanent_assignment = defaults.permanent_assignment
            self.requires_admin_authorization = defaults.requires_admin_authorization
        if description is not None:
            self.description = description
        if room_number is not None:
            self.room_number = room_number or None
        if associated_resource_id is not None:
            self.associated_resource_id = associated_resource_id
        if replacement_cost is not None:
            if replacement_cost < 0:
                raise ValidationError("Replacement cost cannot be negative")
            self.replacement_cost = replacement_cost
        self._touch()

    # ==================== STATE TRANSITION METHODS ====================
    def issue(self) -> None:
        if not self.can_be_issued():
            raise StateError(
                f"Key cannot be issued in current status: {self.status.value}",
                key_code=self.key_code,
                current_status=self.status.value,
            )
        self._transition(KeyStatus.ISSUED)
        self.total_assignments += 1

    def return_key(self) -> None:
        if self.status != KeyStatus.ISSUED:
            raise StateError("Key is not currently issued", key_code=self.key_code,
                             current_status=self.status.value)
        self._transition(KeyStatus.AVAILABLE)

    def report_lost(self) -> bool:
        """Returns False when the key is already lost; a repeat report changes nothing"""
        if self.status == KeyStatus.LOST:
            return False
        self._transition(KeyStatus.LOST)
        self.lost_count += 1
        return True

    def report_damaged(self, notes: Optional[str] = None) -> None:
        self._transition(KeyStatus.DAMAGED)
        self.maintenance_notes = notes

    def put_out_of_service(self, reason: Optional[str] = None) -> None:
        self._transition(KeyStatus.OUT_OF_SERVICE)
        self.admin_notes = reason

    def retire(self, reason: Optional[str] = None) -> None:
        self._transition(KeyStatus.RETIRED)
        self.admin_notes = reason

    def reserve(self) -> None:
        if self.status != KeyStatus.AVAILABLE:
            raise StateError("Can only reserve available keys", key_code=self.key_code,
                             current_status=self.status.value)
        self._transition(KeyStatus.RESERVED)

    def make_available(self) -> None:
        self._transition(KeyStatus.AVAILABLE)

    def record_maintenance(self, performed_at: datetime, next_due: Optional[datetime] = None,
                           notes: Optional[str] = None) -> None:
        self.last_maintenance = performed_at
        self.next_maintenance = next_due
        if notes:
            self.maintenance_notes = notes
        self._touch()

    # ==================== QUERY METHODS ====================
    def can_be_issued(self) -> bool:
        return self.status in (KeyStatus.AVAILABLE, KeyStatus.RESERVED)

    def is_currently_issued(self) -> bool:
        return self.status == KeyStatus.ISSUED

    def is_retired(self) -> bool:
        return is_terminal(KEY_TRANSITIONS, self.status)

    def needs_maintenance(self, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now()
        return self.next_maintenance is not None and now > self.next_maintenance

    def needs_attention(self, now: Optional[datetime] = None) -> bool:
        return self.status in (KeyStatus.LOST, KeyStatus.DAMAGED, KeyStatus.OUT_OF_SERVICE) \
            or self.needs_maintenance(now)

    def is_high_security(self) -> bool:
        return self.security_level >= 4

    def display_name(self) -> str:
        label = KEY_TYPE_DEFAULTS[self.key_type].display_name
        if self.room_number:
            return f"{label} - Room {self.room_number}"
        return f"{label} ({self.key_code})"

    # ==================== PRIVATE METHODS ====================
    def _transition(self, target: KeyStatus) -> None:
        ensure_transition(KEY_TRANSITIONS, self.status, target, "key")
        self.status = target
        self._touch()

    def _touch(self) -> None:
        self.updated_at = datetime.now()
        self.version += 1


class KeyAssignment(BaseModel):
    """Key custody record tying one Key to one holder for a period"""

    # Identity and references
    assignment_id: UUID = Field(default_factory=uuid4)
    key_id: UUID
    key_type: KeyType
    user_id: UUID
    issued_by: UUID
    returned_to: Optional[UUID] = None
    reservation_id: Optional[UUID] = None

    assignment_type: AssignmentType = AssignmentType.TEMPORARY
    status: AssignmentStatus = AssignmentStatus.ACTIVE

    # Timestamps
    issued_at: datetime = Field(default_factory=datetime.now)
    expected_return: Optional[datetime] = None
    returned_at: Optional[datetime] = None
    updated_at: datetime = Field(default_factory=datetime.now)
    is_overdue: bool = False

    # Money
    deposit_amount: Decimal = Decimal("0")
    deposit_paid: bool = False
    deposit_refunded: bool = False
    fine_amount: Decimal = Decimal("0")
    replacement_cost: Decimal = Decimal("0")

    # Notes and condition
    issue_notes: Optional[str] = None
    return_notes: Optional[str] = None
    condition_on_issue: KeyCondition = KeyCondition.GOOD
    condition_on_return: Optional[KeyCondition] = None
    special_conditions: Optional[str] = None

    # Tracking
    reminder_sent_count: int = 0
    last_reminder_sent: Optional[datetime] = None
    extension_count: int = 0
    version: int = 1

    class Config:
        from_attributes = True

    # ==================== FACTORY METHOD ====================
    @staticmethod
    def open(
        key: Key,
        user_id: UUID,
        issued_by: UUID,
        assignment_type: AssignmentType,
        now: datetime,
        deposit_amount: Optional[Decimal] = None,
        deposit_paid: bool = False,
        reservation_id: Optional[UUID] = None,
        notes: Optional[str] = None,
    ) -> "KeyAssignment":
        """Open an ACTIVE assignment for a key that has just been issued"""
        if deposit_amount is None:
            deposit_amount = key.deposit_amount if key.requires_deposit else Decimal("0")

        expected_return = None
        if assignment_type == AssignmentType.TEMPORARY:
            expected_return = now + timedelta(hours=key.max_issue_duration_hours)

        return KeyAssignment(
            key_id=key.key_id,
            key_type=key.key_type,
            user_id=user_id,
            issued_by=issued_by,
            reservation_id=reservation_id,
            assignment_type=assignment_type,
            issued_at=now,
            updated_at=now,
            expected_return=expected_return,
            deposit_amount=deposit_amount,
            deposit_paid=deposit_paid and deposit_amount > 0,
            issue_notes=notes,
        )

    # ==================== STATE TRANSITION METHODS ====================
    def return_key(
        self,
        returned_to: UUID,
        condition: KeyCondition,
        notes: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Decimal:
        """ACTIVE -> RETURNED; returns the overdue fine recorded"""
        now = now or datetime.now()
        self._require_active("return")

        self.fine_amount = self.calculate_overdue_fine(now)
        self.is_overdue = self.fine_amount > 0
        self.returned_at = now
        self.returned_to = returned_to
        self.condition_on_return = condition
        self.return_notes = notes

        if self.deposit_paid and not self.deposit_refunded:
            if condition == KeyCondition.GOOD and self.fine_amount == 0:
                self.deposit_refunded = True

        self._transition(AssignmentStatus.RETURNED, now)
        return self.fine_amount

    def report_lost(self, replacement_cost: Decimal, now: Optional[datetime] = None) -> None:
        """ACTIVE -> LOST; replacement is charged and the deposit forfeited"""
        now = now or datetime.now()
        self._require_active("report lost")
        self.replacement_cost = replacement_cost
        self.deposit_refunded = False
        self._transition(AssignmentStatus.LOST, now)

    def extend(self, new_expected_return: datetime, reason: str, now: Optional[datetime] = None) -> None:
        now = now or datetime.now()
        self._require_active("extend")
        if new_expected_return <= now:
            raise ValidationError(
                "New expected return must be in the future",
                new_expected_return=new_expected_return.isoformat(),
            )
        self.expected_return = new_expected_return
        self.extension_count += 1
        note = f"Extended until {new_expected_return.isoformat()} - Reason: {reason}"
        self.special_conditions = f"{self.special_conditions}; {note}" if self.special_conditions else note
        self._touch(now)

    def record_deposit_payment(self, now: Optional[datetime] = None) -> None:
        if self.deposit_amount <= 0:
            raise ValidationError("Assignment carries no deposit")
        if self.deposit_paid:
            raise StateError("Deposit already paid")
        self._require_active("take a deposit for")
        self.deposit_paid = True
        self._touch(now or datetime.now())

    def mark_overdue(self, now: datetime) -> bool:
        """Flag the assignment overdue; returns True only on the first flagging"""
        if self.is_overdue or not self.is_overdue_at(now):
            return False
        self.is_overdue = True
        self._touch(now)
        return True

    def send_reminder(self, now: datetime) -> None:
        self.reminder_sent_count += 1
        self.last_reminder_sent = now
        self._touch(now)

    # ==================== QUERY METHODS ====================
    def is_active(self) -> bool:
        return self.status == AssignmentStatus.ACTIVE

    def is_lost(self) -> bool:
        return self.status == AssignmentStatus.LOST

    def is_overdue_at(self, now: datetime) -> bool:
        return self.is_active() and self.expected_return is not None and now > self.expected_return

    def hours_overdue(self, now: datetime) -> int:
        if not self.is_overdue_at(now):
            return 0
        return int((now - self.expected_return).total_seconds() // 3600)

    def calculate_overdue_fine(self, now: datetime) -> Decimal:
        """10 per full or partial day past the current expected return"""
        if self.expected_return is None:
            return Decimal("0")
        return KEY_FINE_PER_UNIT * _ceil_units(now - self.expected_return, KEY_FINE_UNIT)

    def is_deposit_refundable(self) -> bool:
        if not self.deposit_paid or self.deposit_refunded or self.is_lost():
            return False
        if self.fine_amount > 0:
            return False
        if self.status == AssignmentStatus.RETURNED:
            return self.condition_on_return == KeyCondition.GOOD
        return True

    def total_amount_owed(self) -> Decimal:
        """fine + replacement (if lost) - refundable deposit, floored at zero"""
        total = self.fine_amount
        if self.is_lost():
            total += self.replacement_cost
        if self.is_deposit_refundable():
            total -= self.deposit_amount
        return max(total, Decimal("0"))

    def needs_reminder(self, now: datetime, lead: timedelta, interval: timedelta) -> bool:
        if not self.is_active() or self.expected_return is None:
            return False
        if now < self.expected_return - lead:
            return False
        return self.last_reminder_sent is None or self.last_reminder_sent <= now - interval

    # ==================== PRIVATE METHODS ====================
    def _require_active(self, action: str) -> None:
        if not self.is_active():
            raise StateError(
                f"Cannot {action} assignment with status {self.status.value}",
                current_status=self.status.value,
            )

    def _transition(self, target: AssignmentStatus, now: datetime) -> None:
        ensure_transition(ASSIGNMENT_TRANSITIONS, self.status, target, "key assignment")
        self.status = target
        self._touch(now)

    def _touch(self, now: datetime) -> None:
        self.updated_at = now
        self.version += 1
