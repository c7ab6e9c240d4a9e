"""In-Memory Repository Implementations"""
import asyncio
from contextlib import asynccontextmanager
from datetime import date, datetime
from typing import AsyncIterator, Dict, Iterable, List, Optional
from uuid import UUID

from domain.repositories import (
    KeyAssignmentRepository, KeyRepository, ReservationRepository, ResourceRepository
)
from domain.entities import Key, KeyAssignment, Reservation, Resource
from domain.enums import AssignmentStatus, KeyStatus, KeyType, ReservationStatus, ResourceType
from domain.errors import NotFoundError


class _LockRegistry:
    """One asyncio.Lock per entity id, created on first use

    Locks are never pruned, so the registry grows with the number of
    resources or keys ever written, not with the number of requests.
    """

    def __init__(self):
        self._locks: Dict[UUID, asyncio.Lock] = {}

    @asynccontextmanager
    async def hold(self, entity_id: UUID) -> AsyncIterator[None]:
        lock = self._locks.setdefault(entity_id, asyncio.Lock())
        async with lock:
            yield


class InMemoryResourceRepository(ResourceRepository):
    """In-memory implementation of ResourceRepository"""

    def __init__(self):
        self._storage: Dict[UUID, Resource] = {}

    async def save(self, resource: Resource) -> Resource:
        self._storage[resource.resource_id] = resource
        return resource

    async def find_by_id(self, resource_id: UUID) -> Optional[Resource]:
        return self._storage.get(resource_id)

    async def find_all(
        self,
        resource_type: Optional[ResourceType] = None,
        active_only: bool = False,
    ) -> List[Resource]:
        return [
            r for r in self._storage.values()
            if (resource_type is None or r.resource_type == resource_type)
            and (not active_only or r.is_active)
        ]

    async def update(self, resource: Resource) -> Resource:
        if resource.resource_id in self._storage:
            self._storage[resource.resource_id] = resource
            return resource
        raise NotFoundError("Resource not found", resource_id=str(resource.resource_id))


class InMemoryReservationRepository(ReservationRepository):
    """In-memory implementation of ReservationRepository"""

    def __init__(self):
        self._storage: Dict[UUID, Reservation] = {}
        self._locks = _LockRegistry()

    def resource_lock(self, resource_id: UUID):
        return self._locks.hold(resource_id)

    async def save(self, reservation: Reservation) -> Reservation:
        self._storage[reservation.reservation_id] = reservation
        return reservation

    async def find_by_id(self, reservation_id: UUID) -> Optional[Reservation]:
        return self._storage.get(reservation_id)

    async def find_by_user(self, user_id: UUID) -> List[Reservation]:
        found = [r for r in self._storage.values() if r.user_id == user_id]
        return sorted(found, key=lambda r: r.start, reverse=True)

    async def find_overlapping(
        self,
        resource_id: UUID,
        start: datetime,
        end: datetime,
        statuses: Optional[Iterable[ReservationStatus]] = None,
    ) -> List[Reservation]:
        wanted = set(statuses) if statuses is not None else None
        found = [
            r for r in self._storage.values()
            if r.resource_id == resource_id
            and r.start < end and r.end > start
            and (wanted is None or r.status in wanted)
        ]
        return sorted(found, key=lambda r: r.start)

    async def count_for_user_on_day(
        self,
        user_id: UUID,
        resource_id: UUID,
        day: date,
        excluded_statuses: Iterable[ReservationStatus],
    ) -> int:
        excluded = set(excluded_statuses)
        return sum(
            1 for r in self._storage.values()
            if r.user_id == user_id
            and r.resource_id == resource_id
            and r.start.date() == day
            and r.status not in excluded
        )

    async def find_by_status(self, statuses: Iterable[ReservationStatus]) -> List[Reservation]:
        wanted = set(statuses)
        found = [r for r in self._storage.values() if r.status in wanted]
        return sorted(found, key=lambda r: r.start)

    async def update(self, reservation: Reservation) -> Reservation:
        if reservation.reservation_id in self._storage:
            self._storage[reservation.reservation_id] = reservation
            return reservation
        raise NotFoundError("Reservation not found", reservation_id=str(reservation.reservation_id))


class InMemoryKeyRepository(KeyRepository):
    """In-memory implementation of KeyRepository"""

    def __init__(self):
        self._storage: Dict[UUID, Key] = {}
        self._locks = _LockRegistry()

    def key_lock(self, key_id: UUID):
        return self._locks.hold(key_id)

    async def save(self, key: Key) -> Key:
        self._storage[key.key_id] = key
        return key

    async def find_by_id(self, key_id: UUID) -> Optional[Key]:
        return self._storage.get(key_id)

    async def find_by_code(self, key_code: str) -> Optional[Key]:
        for key in self._storage.values():
            if key.key_code == key_code:
                return key
        return None

    async def find_all(
        self,
        status: Optional[KeyStatus] = None,
        key_type: Optional[KeyType] = None,
    ) -> List[Key]:
        found = [
            k for k in self._storage.values()
            if (status is None or k.status == status)
            and (key_type is None or k.key_type == key_type)
        ]
        return sorted(found, key=lambda k: k.key_code)

    async def find_by_resource(self, resource_id: UUID) -> List[Key]:
        found = [k for k in self._storage.values() if k.associated_resource_id == resource_id]
        return sorted(found, key=lambda k: k.key_code)

    async def update(self, key: Key) -> Key:
        if key.key_id in self._storage:
            self._storage[key.key_id] = key
            return key
        raise NotFoundError("Key not found", key_id=str(key.key_id))


class InMemoryKeyAssignmentRepository(KeyAssignmentRepository):
    """In-memory implementation of KeyAssignmentRepository"""

    def __init__(self):
        self._storage: Dict[UUID, KeyAssignment] = {}

    async def save(self, assignment: KeyAssignment) -> KeyAssignment:
        self._storage[assignment.assignment_id] = assignment
        return assignment

    async def find_by_id(self, assignment_id: UUID) -> Optional[KeyAssignment]:
        return self._storage.get(assignment_id)

    async def find_by_user(self, user_id: UUID) -> List[KeyAssignment]:
        found = [a for a in self._storage.values() if a.user_id == user_id]
        return sorted(found, key=lambda a: a.issued_at, reverse=True)

    async def find_by_key(self, key_id: UUID) -> List[KeyAssignment]:
        found = [a for a in self._storage.values() if a.key_id == key_id]
        return sorted(found, key=lambda a: a.issued_at, reverse=True)

    async def find_by_status(self, status: AssignmentStatus) -> List[KeyAssignment]:
        return [a for a in self._storage.values() if a.status == status]

    async def find_active_by_user_and_key_type(self, user_id: UUID, key_type: KeyType) -> List[KeyAssignment]:
        return [
            a for a in self._storage.values()
            if a.user_id == user_id and a.key_type == key_type and a.status == AssignmentStatus.ACTIVE
        ]

    async def update(self, assignment: KeyAssignment) -> KeyAssignment:
        if assignment.assignment_id in self._storage:
            self._storage[assignment.assignment_id] = assignment
            return assignment
        raise NotFoundError("Key assignment not found", assignment_id=str(assignment.assignment_id))
