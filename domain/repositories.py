"""Domain Repository Interfaces

Writes that must not interleave are serialized through ``resource_lock`` and
``key_lock``: a caller holding the lock for a resource (or key) may check
state and then write, and no other writer for the same resource (or key)
runs in between.  Reads do not take the locks.
"""
from abc import ABC, abstractmethod
from datetime import date, datetime
from typing import AsyncContextManager, Iterable, List, Optional
from uuid import UUID

from domain.entities import Key, KeyAssignment, Reservation, Resource
from domain.enums import AssignmentStatus, KeyStatus, KeyType, ReservationStatus, ResourceType


class ResourceRepository(ABC):
    """Repository interface for Resource Aggregate"""

    @abstractmethod
    async def save(self, resource: Resource) -> Resource:
        pass

    @abstractmethod
    async def find_by_id(self, resource_id: UUID) -> Optional[Resource]:
        pass

    @abstractmethod
    async def find_all(
        self,
        resource_type: Optional[ResourceType] = None,
        active_only: bool = False,
    ) -> List[Resource]:
        pass

    @abstractmethod
    async def update(self, resource: Resource) -> Resource:
        pass


class ReservationRepository(ABC):
    """Repository interface for Reservation Aggregate"""

    @abstractmethod
    def resource_lock(self, resource_id: UUID) -> AsyncContextManager[None]:
        """Serialize check-then-write sequences for one resource"""

    @abstractmethod
    async def save(self, reservation: Reservation) -> Reservation:
        pass

    @abstractmethod
    async def find_by_id(self, reservation_id: UUID) -> Optional[Reservation]:
        pass

    @abstractmethod
    async def find_by_user(self, user_id: UUID) -> List[Reservation]:
        pass

    @abstractmethod
    async def find_overlapping(
        self,
        resource_id: UUID,
        start: datetime,
        end: datetime,
        statuses: Optional[Iterable[ReservationStatus]] = None,
    ) -> List[Reservation]:
        """Reservations on the resource with ``start < end`` and ``end > start``"""

    @abstractmethod
    async def count_for_user_on_day(
        self,
        user_id: UUID,
        resource_id: UUID,
        day: date,
        excluded_statuses: Iterable[ReservationStatus],
    ) -> int:
        pass

    @abstractmethod
    async def find_by_status(self, statuses: Iterable[ReservationStatus]) -> List[Reservation]:
        pass

    @abstractmethod
    async def update(self, reservation: Reservation) -> Reservation:
        pass


class KeyRepository(ABC):
    """Repository interface for Key Aggregate"""

    @abstractmethod
    def key_lock(self, key_id: UUID) -> AsyncContextManager[None]:
        """Serialize check-then-write sequences for one key"""

    @abstractmethod
    async def save(self, key: Key) -> Key:
        pass

    @abstractmethod
    async def find_by_id(self, key_id: UUID) -> Optional[Key]:
        pass

    @abstractmethod
    async def find_by_code(self, key_code: str) -> Optional[Key]:
        pass

    @abstractmethod
    async def find_all(
        self,
        status: Optional[KeyStatus] = None,
        key_type: Optional[KeyType] = None,
    ) -> List[Key]:
        pass

    @abstractmethod
    async def find_by_resource(self, resource_id: UUID) -> List[Key]:
        pass

    @abstractmethod
    async def update(self, key: Key) -> Key:
        pass


class KeyAssignmentRepository(ABC):
    """Repository interface for KeyAssignment records"""

    @abstractmethod
    async def save(self, assignment: KeyAssignment) -> KeyAssignment:
        pass

    @abstractmethod
    async def find_by_id(self, assignment_id: UUID) -> Optional[KeyAssignment]:
        pass

    @abstractmethod
    async def find_by_user(self, user_id: UUID) -> List[KeyAssignment]:
        pass

    @abstractmethod
    async def find_by_key(self, key_id: UUID) -> List[KeyAssignment]:
        pass

    @abstractmethod
    async def find_by_status(self, status: AssignmentStatus) -> List[KeyAssignment]:
        pass

    @abstractmethod
    async def find_active_by_user_and_key_type(self, user_id: UUID, key_type: KeyType) -> List[KeyAssignment]:
        pass

    @abstractmethod
    async def update(self, assignment: KeyAssignment) -> KeyAssignment:
        pass
