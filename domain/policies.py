"""Domain Policies - per-type defaults, fee constants and transition tables

The per-type tables are consulted once when a Resource or Key is created and
the values are copied onto the instance.  Changing a table therefore never
alters records that already exist.
"""
from datetime import timedelta
from decimal import Decimal
from typing import Dict, FrozenSet, Mapping, Optional, TypeVar

from pydantic import BaseModel

from domain.enums import (
    AssignmentStatus, KeyStatus, KeyType, ReservationStatus, ResourceType
)
from domain.errors import StateError


# ==================== RESERVATION POLICY ====================
CANCELLATION_DEADLINE = timedelta(hours=2)
CHECK_IN_OPENS_BEFORE_START = timedelta(minutes=15)
CHECK_IN_CLOSES_AFTER_START = timedelta(minutes=30)

# Occupancy overrun: 10 per started 30 minutes past the booked end
LATE_FEE_UNIT = timedelta(minutes=30)
LATE_FEE_PER_UNIT = Decimal("10")

# A checked-in booking is closed by the sweep this long after its end
CHECKED_IN_OVERSTAY_GRACE = LATE_FEE_UNIT * 4

DEFAULT_MAX_ADVANCE_DAYS = 14

# Statuses that block the interval for other bookings
BLOCKING_STATUSES: FrozenSet[ReservationStatus] = frozenset({
    ReservationStatus.PENDING,
    ReservationStatus.CONFIRMED,
    ReservationStatus.CHECKED_IN,
})

# Statuses that do not count against the per-user daily quota
QUOTA_EXEMPT_STATUSES: FrozenSet[ReservationStatus] = frozenset({
    ReservationStatus.CANCELLED,
    ReservationStatus.REJECTED,
})

# ==================== KEY CUSTODY POLICY ====================
# Key non-return: 10 per started day past the expected return
KEY_FINE_UNIT = timedelta(hours=24)
KEY_FINE_PER_UNIT = Decimal("10")

DEFAULT_REPLACEMENT_COST = Decimal("100")


class ResourceTypeDefaults(BaseModel):
    """Defaults copied onto a Resource of a given type"""
    display_name: str
    default_duration_minutes: int
    max_duration_minutes: int
    max_reservations_per_day: int
    requires_approval: bool = False
    cost_per_hour: Decimal = Decimal("0")
    min_advance_hours: int = 0
    key_type: Optional[KeyType] = None

    @property
    def min_duration_minutes(self) -> int:
        return self.default_duration_minutes // 2

    class Config:
        frozen = True


class KeyTypeDefaults(BaseModel):
    """Defaults copied onto a Key of a given type"""
    display_name: str
    security_level: int
    deposit_amount: Decimal = Decimal("0")
    max_issue_duration_hours: int
    temporary_issue: bool = False
    permanent_assignment: bool = False
    requires_admin_authorization: bool = False

    @property
    def requires_deposit(self) -> bool:
        return self.security_level >= 3

    class Config:
        frozen = True


RESOURCE_TYPE_DEFAULTS: Dict[ResourceType, ResourceTypeDefaults] = {
    ResourceType.LAUNDRY: ResourceTypeDefaults(
        display_name="Laundry Room", default_duration_minutes=120, max_duration_minutes=240,
        max_reservations_per_day=2, key_type=KeyType.LAUNDRY,
    ),
    ResourceType.GAME_ROOM: ResourceTypeDefaults(
        display_name="Game Room", default_duration_minutes=60, max_duration_minutes=180,
        max_reservations_per_day=3, key_type=KeyType.GAME_ROOM,
    ),
    ResourceType.STUDY_ROOM: ResourceTypeDefaults(
        display_name="Study Room", default_duration_minutes=180, max_duration_minutes=480,
        max_reservations_per_day=2, key_type=KeyType.STUDY_ROOM,
    ),
    ResourceType.KITCHEN: ResourceTypeDefaults(
        display_name="Common Kitchen", default_duration_minutes=90, max_duration_minutes=180,
        max_reservations_per_day=2, key_type=KeyType.KITCHEN,
    ),
    ResourceType.CONFERENCE_ROOM: ResourceTypeDefaults(
        display_name="Conference Room", default_duration_minutes=60, max_duration_minutes=240,
        max_reservations_per_day=1, requires_approval=True, min_advance_hours=2,
        key_type=KeyType.OTHER,
    ),
    ResourceType.GYM: ResourceTypeDefaults(
        display_name="Gym", default_duration_minutes=90, max_duration_minutes=180,
        max_reservations_per_day=2, min_advance_hours=1, key_type=KeyType.GYM,
    ),
    ResourceType.RECREATION_ROOM: ResourceTypeDefaults(
        display_name="Recreation Room", default_duration_minutes=120, max_duration_minutes=240,
        max_reservations_per_day=1, min_advance_hours=1, key_type=KeyType.OTHER,
    ),
    ResourceType.STORAGE: ResourceTypeDefaults(
        display_name="Storage Space", default_duration_minutes=30, max_duration_minutes=60,
        max_reservations_per_day=1, requires_approval=True, key_type=KeyType.STORAGE,
    ),
    ResourceType.PARKING: ResourceTypeDefaults(
        display_name="Parking Spot", default_duration_minutes=1440, max_duration_minutes=10080,
        max_reservations_per_day=1, cost_per_hour=Decimal("2.00"),
    ),
    ResourceType.OTHER: ResourceTypeDefaults(
        display_name="Other", default_duration_minutes=60, max_duration_minutes=120,
        max_reservations_per_day=1, key_type=KeyType.OTHER,
    ),
}


KEY_TYPE_DEFAULTS: Dict[KeyType, KeyTypeDefaults] = {
    KeyType.ROOM: KeyTypeDefaults(
        display_name="Room Key", security_level=3, deposit_amount=Decimal("100"),
        max_issue_duration_hours=8760, permanent_assignment=True,
    ),
    KeyType.LAUNDRY: KeyTypeDefaults(
        display_name="Laundry Room Key", security_level=1, max_issue_duration_hours=4,
        temporary_issue=True,
    ),
    KeyType.GAME_ROOM: KeyTypeDefaults(
        display_name="Game Room Key", security_level=1, max_issue_duration_hours=8,
        temporary_issue=True,
    ),
    KeyType.STUDY_ROOM: KeyTypeDefaults(
        display_name="Study Room Key", security_level=1, max_issue_duration_hours=8,
        temporary_issue=True,
    ),
    KeyType.KITCHEN: KeyTypeDefaults(
        display_name="Kitchen Key", security_level=1, max_issue_duration_hours=3,
        temporary_issue=True,
    ),
    KeyType.GYM: KeyTypeDefaults(
        display_name="Gym Key", security_level=1, max_issue_duration_hours=2,
        temporary_issue=True,
    ),
    KeyType.STORAGE: KeyTypeDefaults(
        display_name="Storage Key", security_level=2, deposit_amount=Decimal("50"),
        max_issue_duration_hours=1, temporary_issue=True,
    ),
    KeyType.BUILDING_ENTRANCE: KeyTypeDefaults(
        display_name="Building Entrance Key", security_level=4, deposit_amount=Decimal("200"),
        max_issue_duration_hours=24, requires_admin_authorization=True,
    ),
    KeyType.FLOOR_ACCESS: KeyTypeDefaults(
        display_name="Floor Access Key", security_level=3, deposit_amount=Decimal("100"),
        max_issue_duration_hours=24, requires_admin_authorization=True,
    ),
    KeyType.MASTER: KeyTypeDefaults(
        display_name="Master Key", security_level=5, deposit_amount=Decimal("500"),
        max_issue_duration_hours=8, requires_admin_authorization=True,
    ),
    KeyType.OTHER: KeyTypeDefaults(
        display_name="Other Key", security_level=2, max_issue_duration_hours=4,
    ),
}


# ==================== TRANSITION TABLES ====================
RESERVATION_TRANSITIONS: Dict[ReservationStatus, FrozenSet[ReservationStatus]] = {
    ReservationStatus.PENDING: frozenset({
        ReservationStatus.CONFIRMED, ReservationStatus.REJECTED,
        ReservationStatus.CANCELLED, ReservationStatus.EXPIRED,
    }),
    ReservationStatus.CONFIRMED: frozenset({
        ReservationStatus.CHECKED_IN, ReservationStatus.CANCELLED,
        ReservationStatus.NO_SHOW, ReservationStatus.EXPIRED,
    }),
    ReservationStatus.CHECKED_IN: frozenset({
        ReservationStatus.COMPLETED, ReservationStatus.EXPIRED,
    }),
    ReservationStatus.COMPLETED: frozenset(),
    ReservationStatus.CANCELLED: frozenset(),
    ReservationStatus.REJECTED: frozenset(),
    ReservationStatus.NO_SHOW: frozenset(),
    ReservationStatus.EXPIRED: frozenset(),
}

# An ISSUED key leaves ISSUED only through its assignment (return or loss),
# so that ISSUED always matches exactly one ACTIVE assignment.
KEY_TRANSITIONS: Dict[KeyStatus, FrozenSet[KeyStatus]] = {
    KeyStatus.AVAILABLE: frozenset({
        KeyStatus.ISSUED, KeyStatus.RESERVED, KeyStatus.LOST,
        KeyStatus.DAMAGED, KeyStatus.OUT_OF_SERVICE, KeyStatus.RETIRED,
    }),
    KeyStatus.RESERVED: frozenset({
        KeyStatus.ISSUED, KeyStatus.AVAILABLE, KeyStatus.LOST,
        KeyStatus.DAMAGED, KeyStatus.OUT_OF_SERVICE, KeyStatus.RETIRED,
    }),
    KeyStatus.ISSUED: frozenset({
        KeyStatus.AVAILABLE, KeyStatus.LOST,
    }),
    KeyStatus.LOST: frozenset({
        KeyStatus.AVAILABLE, KeyStatus.DAMAGED,
        KeyStatus.OUT_OF_SERVICE, KeyStatus.RETIRED,
    }),
    KeyStatus.DAMAGED: frozenset({
        KeyStatus.AVAILABLE, KeyStatus.LOST,
        KeyStatus.OUT_OF_SERVICE, KeyStatus.RETIRED,
    }),
    KeyStatus.OUT_OF_SERVICE: frozenset({
        KeyStatus.AVAILABLE, KeyStatus.LOST,
        KeyStatus.DAMAGED, KeyStatus.RETIRED,
    }),
    KeyStatus.RETIRED: frozenset(),
}

ASSIGNMENT_TRANSITIONS: Dict[AssignmentStatus, FrozenSet[AssignmentStatus]] = {
    AssignmentStatus.ACTIVE: frozenset({
        AssignmentStatus.RETURNED, AssignmentStatus.LOST, AssignmentStatus.CANCELLED,
    }),
    AssignmentStatus.RETURNED: frozenset(),
    AssignmentStatus.LOST: frozenset(),
    AssignmentStatus.CANCELLED: frozenset(),
}


S = TypeVar("S")


def can_transition(table: Mapping[S, FrozenSet[S]], current: S, target: S) -> bool:
    return target in table.get(current, frozenset())


def ensure_transition(
    table: Mapping[S, FrozenSet[S]],
    current: S,
    target: S,
    entity: str,
) -> None:
    """Raise StateError unless ``current -> target`` is listed in ``table``"""
    if not can_transition(table, current, target):
        raise StateError(
            f"Cannot move {entity} from {current.value} to {target.value}",
            entity=entity,
            current_status=current.value,
            requested_status=target.value,
        )


def is_terminal(table: Mapping[S, FrozenSet[S]], status: S) -> bool:
    return not table.get(status)
