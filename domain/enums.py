"""Domain Enums"""
from enum import Enum


class ResourceType(str, Enum):
    LAUNDRY = "LAUNDRY"
    GAME_ROOM = "GAME_ROOM"
    STUDY_ROOM = "STUDY_ROOM"
    KITCHEN = "KITCHEN"
    CONFERENCE_ROOM = "CONFERENCE_ROOM"
    GYM = "GYM"
    RECREATION_ROOM = "RECREATION_ROOM"
    STORAGE = "STORAGE"
    PARKING = "PARKING"
    OTHER = "OTHER"


class ReservationStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    CHECKED_IN = "CHECKED_IN"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    REJECTED = "REJECTED"
    NO_SHOW = "NO_SHOW"
    EXPIRED = "EXPIRED"


class PaymentStatus(str, Enum):
    UNPAID = "UNPAID"
    PAID = "PAID"
    FORFEITED = "FORFEITED"


class KeyType(str, Enum):
    ROOM = "ROOM"
    LAUNDRY = "LAUNDRY"
    GAME_ROOM = "GAME_ROOM"
    STUDY_ROOM = "STUDY_ROOM"
    KITCHEN = "KITCHEN"
    GYM = "GYM"
    STORAGE = "STORAGE"
    BUILDING_ENTRANCE = "BUILDING_ENTRANCE"
    FLOOR_ACCESS = "FLOOR_ACCESS"
    MASTER = "MASTER"
    OTHER = "OTHER"


class KeyStatus(str, Enum):
    AVAILABLE = "AVAILABLE"
    RESERVED = "RESERVED"
    ISSUED = "ISSUED"
    LOST = "LOST"
    DAMAGED = "DAMAGED"
    OUT_OF_SERVICE = "OUT_OF_SERVICE"
    RETIRED = "RETIRED"


class AssignmentType(str, Enum):
    PERMANENT = "PERMANENT"
    TEMPORARY = "TEMPORARY"
    EMERGENCY = "EMERGENCY"


class AssignmentStatus(str, Enum):
    ACTIVE = "ACTIVE"
    RETURNED = "RETURNED"
    LOST = "LOST"
    CANCELLED = "CANCELLED"


class KeyCondition(str, Enum):
    GOOD = "Good"
    WORN = "Worn"
    DAMAGED = "Damaged"


class Weekday(int, Enum):
    # Matches datetime.weekday()
    MONDAY = 0
    TUESDAY = 1
    WEDNESDAY = 2
    THURSDAY = 3
    FRIDAY = 4
    SATURDAY = 5
    SUNDAY = 6


class Role(str, Enum):
    STUDENT = "STUDENT"
    RECEPTIONIST = "RECEPTIONIST"
    ADMIN = "ADMIN"


class NotificationKind(str, Enum):
    RESERVATION_CONFIRMED = "RESERVATION_CONFIRMED"
    RESERVATION_PENDING = "RESERVATION_PENDING"
    RESERVATION_REJECTED = "RESERVATION_REJECTED"
    RESERVATION_REMINDER = "RESERVATION_REMINDER"
    KEY_PICKUP_READY = "KEY_PICKUP_READY"
    KEY_OVERDUE = "KEY_OVERDUE"
