"""Application Services - Resource catalog and reservation use cases"""
import logging
from datetime import datetime, timedelta
from typing import List, Optional
from uuid import UUID

from domain.auth import User
from domain.entities import Reservation, Resource
from domain.enums import NotificationKind, ReservationStatus, ResourceType
from domain.errors import ConflictError, NotFoundError, QuotaError, ValidationError
from domain.notifications import Notification, NotificationSink
from domain.policies import BLOCKING_STATUSES, QUOTA_EXEMPT_STATUSES
from domain.repositories import ReservationRepository, ResourceRepository
from domain.value_objects import OperatingHours, TimeSlot
from application.guards import (
    Clock, notify_safely, require_admin, require_owner_or_staff, require_staff
)

logger = logging.getLogger(__name__)


class ResourceCatalogService:
    """Service for administering bookable resources"""

    def __init__(self, repository: ResourceRepository, clock: Clock = datetime.now):
        self.repository = repository
        self.clock = clock

    async def create_resource(
        self,
        actor: User,
        name: str,
        resource_type: ResourceType,
        capacity: Optional[int] = None,
        location: Optional[str] = None,
        **overrides,
    ) -> Resource:
        """Create a resource seeded from its type defaults"""
        require_admin(actor, "create resources")
        resource = Resource.create(
            name=name,
            resource_type=resource_type,
            capacity=capacity,
            location=location,
            **overrides,
        )
        await self.repository.save(resource)
        logger.info("Resource created: %s (%s) by %s", resource.name, resource.resource_type.value, actor.username)
        return resource

    async def get_resource(self, resource_id: UUID) -> Resource:
        resource = await self.repository.find_by_id(resource_id)
        if resource is None:
            raise NotFoundError("Resource not found", resource_id=str(resource_id))
        return resource

    async def list_resources(
        self,
        resource_type: Optional[ResourceType] = None,
        active_only: bool = True,
    ) -> List[Resource]:
        resources = await self.repository.find_all(resource_type=resource_type, active_only=active_only)
        return sorted(resources, key=lambda r: r.name)

    async def update_resource(self, actor: User, resource_id: UUID, **changes) -> Resource:
        require_admin(actor, "update resources")
        resource = await self.get_resource(resource_id)
        resource.update(**changes)
        await self.repository.update(resource)
        logger.info("Resource %s updated by %s: %s", resource.name, actor.username, sorted(changes))
        return resource

    async def deactivate_resource(self, actor: User, resource_id: UUID) -> Resource:
        require_admin(actor, "deactivate resources")
        resource = await self.get_resource(resource_id)
        resource.deactivate()
        await self.repository.update(resource)
        logger.info("Resource %s deactivated by %s", resource.name, actor.username)
        return resource

    async def is_available_at(self, resource_id: UUID, moment: Optional[datetime] = None) -> bool:
        resource = await self.get_resource(resource_id)
        return resource.is_available_at(moment or self.clock())

    async def resources_needing_maintenance(self) -> List[Resource]:
        now = self.clock()
        return [r for r in await self.repository.find_all() if r.needs_maintenance(now)]


class ReservationSchedulerService:
    """Validates booking requests and creates reservations

    The quota check, the conflict check and the insert run under the
    resource's write lock, so two overlapping requests for the same resource
    cannot both succeed.
    """

    def __init__(
        self,
        resource_repo: ResourceRepository,
        reservation_repo: ReservationRepository,
        notifications: Optional[NotificationSink] = None,
        clock: Clock = datetime.now,
    ):
        self.resource_repo = resource_repo
        self.reservation_repo = reservation_repo
        self.notifications = notifications
        self.clock = clock

    async def create_reservation(
        self,
        requester: User,
        resource_id: UUID,
        start: datetime,
        end: datetime,
        number_of_people: int = 1,
        notes: Optional[str] = None,
    ) -> Reservation:
        """Create a reservation after validation, quota and conflict checks"""
        now = self.clock()

        resource = await self.resource_repo.find_by_id(resource_id)
        if resource is None or not resource.is_active:
            raise NotFoundError("Resource not found or inactive", resource_id=str(resource_id))

        slot = self._validate_request(resource, start, end, number_of_people, now)

        async with self.reservation_repo.resource_lock(resource.resource_id):
            booked_today = await self.reservation_repo.count_for_user_on_day(
                requester.user_id, resource.resource_id, slot.start.date(), QUOTA_EXEMPT_STATUSES,
            )
            if booked_today >= resource.max_reservations_per_user_per_day:
                logger.info(
                    "Quota reached for %s on %s (%d/%d)",
                    requester.username, resource.name, booked_today,
                    resource.max_reservations_per_user_per_day,
                )
                raise QuotaError(
                    "Daily reservation limit reached for this resource",
                    limit=resource.max_reservations_per_user_per_day,
                    day=slot.start.date().isoformat(),
                )

            conflicts = await self.reservation_repo.find_overlapping(
                resource.resource_id, slot.start, slot.end, BLOCKING_STATUSES,
            )
            if conflicts:
                logger.info("Booking conflict on %s for %s - %s", resource.name, slot.start, slot.end)
                raise ConflictError(
                    "Resource is already booked for the requested time",
                    conflicting_reservation_ids=[str(r.reservation_id) for r in conflicts],
                )

            reservation = Reservation.create(
                resource=resource,
                user_id=requester.user_id,
                slot=slot,
                number_of_people=number_of_people,
                notes=notes,
                now=now,
            )
            await self.reservation_repo.save(reservation)

        logger.info(
            "Reservation %s created: %s %s - %s for %s (%s)",
            reservation.check_in_code, resource.name, slot.start, slot.end,
            requester.username, reservation.status.value,
        )
        await notify_safely(self.notifications, _booking_notification(reservation, resource))
        return reservation

    async def list_reservations(
        self,
        resource_id: UUID,
        start: datetime,
        end: datetime,
    ) -> List[Reservation]:
        """All reservations on the resource overlapping ``[start, end)``"""
        if end <= start:
            raise ValidationError("End time must be after start time")
        return await self.reservation_repo.find_overlapping(resource_id, start, end)

    def _validate_request(
        self,
        resource: Resource,
        start: datetime,
        end: datetime,
        number_of_people: int,
        now: datetime,
    ) -> TimeSlot:
        if start <= now:
            raise ValidationError("Start time must be in the future", start=start.isoformat())
        if end <= start:
            raise ValidationError("End time must be after start time",
                                  start=start.isoformat(), end=end.isoformat())

        slot = TimeSlot(start=start, end=end)
        shortest = timedelta(minutes=resource.min_duration_minutes)
        longest = timedelta(minutes=resource.max_duration_minutes)
        if slot.duration < shortest or slot.duration > longest:
            raise ValidationError(
                f"Duration must be between {resource.min_duration_minutes} and "
                f"{resource.max_duration_minutes} minutes",
                duration_seconds=int(slot.duration.total_seconds()),
            )

        if start < now + timedelta(hours=resource.advance_booking_hours):
            raise ValidationError(
                f"Reservations must be made at least {resource.advance_booking_hours} hours in advance",
                advance_booking_hours=resource.advance_booking_hours,
            )
        if start > now + timedelta(days=resource.max_advance_days):
            raise ValidationError(
                f"Reservations can be made at most {resource.max_advance_days} days in advance",
                max_advance_days=resource.max_advance_days,
            )

        if number_of_people < 1:
            raise ValidationError("Number of people must be at least 1")
        if not resource.has_capacity_for(number_of_people):
            raise ValidationError(
                "Number of people exceeds resource capacity",
                capacity=resource.capacity, number_of_people=number_of_people,
            )

        if not resource.operating_hours.covers(slot):
            raise ValidationError(
                "Requested time is outside the resource's operating hours",
                **_describe_hours(resource.operating_hours),
            )
        return slot


class ReservationLifecycleService:
    """Drives reservations through approval, cancellation, check-in and completion"""

    def __init__(
        self,
        reservation_repo: ReservationRepository,
        resource_repo: Optional[ResourceRepository] = None,
        notifications: Optional[NotificationSink] = None,
        clock: Clock = datetime.now,
    ):
        self.reservation_repo = reservation_repo
        self.resource_repo = resource_repo
        self.notifications = notifications
        self.clock = clock

    async def get_reservation(self, reservation_id: UUID) -> Reservation:
        reservation = await self.reservation_repo.find_by_id(reservation_id)
        if reservation is None:
            raise NotFoundError("Reservation not found", reservation_id=str(reservation_id))
        return reservation

    async def list_user_reservations(self, user_id: UUID) -> List[Reservation]:
        return await self.reservation_repo.find_by_user(user_id)

    async def list_pending_approvals(self, actor: User) -> List[Reservation]:
        require_staff(actor, "review pending reservations")
        return await self.reservation_repo.find_by_status([ReservationStatus.PENDING])

    async def list_upcoming(self, hours: int = 24) -> List[Reservation]:
        """Confirmed reservations starting within the next ``hours``"""
        now = self.clock()
        horizon = now + timedelta(hours=hours)
        confirmed = await self.reservation_repo.find_by_status([ReservationStatus.CONFIRMED])
        return [r for r in confirmed if now <= r.start <= horizon]

    async def approve(self, actor: User, reservation_id: UUID) -> Reservation:
        require_staff(actor, "approve reservations")
        now = self.clock()
        reservation = await self.get_reservation(reservation_id)
        async with self.reservation_repo.resource_lock(reservation.resource_id):
            reservation = await self.get_reservation(reservation_id)
            reservation.approve(actor.user_id, now)
            await self.reservation_repo.update(reservation)

        logger.info("Reservation %s approved by %s", reservation.check_in_code, actor.username)
        resource = await self._find_resource(reservation.resource_id)
        await notify_safely(self.notifications, _booking_notification(reservation, resource))
        return reservation

    async def reject(self, actor: User, reservation_id: UUID, reason: str) -> Reservation:
        require_staff(actor, "reject reservations")
        now = self.clock()
        reservation = await self.get_reservation(reservation_id)
        async with self.reservation_repo.resource_lock(reservation.resource_id):
            reservation = await self.get_reservation(reservation_id)
            reservation.reject(reason, now)
            await self.reservation_repo.update(reservation)

        logger.info("Reservation %s rejected by %s: %s", reservation.check_in_code, actor.username, reason)
        await notify_safely(self.notifications, Notification(
            kind=NotificationKind.RESERVATION_REJECTED,
            user_id=reservation.user_id,
            title="Reservation rejected",
            message=f"Your reservation {reservation.check_in_code} was rejected: {reason}",
            payload={"reservation_id": str(reservation.reservation_id)},
        ))
        return reservation

    async def cancel(self, actor: User, reservation_id: UUID, reason: Optional[str] = None) -> Reservation:
        now = self.clock()
        reservation = await self.get_reservation(reservation_id)
        require_owner_or_staff(actor, reservation.user_id, "cancel")
        async with self.reservation_repo.resource_lock(reservation.resource_id):
            reservation = await self.get_reservation(reservation_id)
            reservation.cancel(reason or "Cancelled by user", now)
            await self.reservation_repo.update(reservation)

        logger.info("Reservation %s cancelled by %s", reservation.check_in_code, actor.username)
        return reservation

    async def check_in(self, actor: User, reservation_id: UUID) -> Reservation:
        now = self.clock()
        reservation = await self.get_reservation(reservation_id)
        require_owner_or_staff(actor, reservation.user_id, "check in to")
        async with self.reservation_repo.resource_lock(reservation.resource_id):
            reservation = await self.get_reservation(reservation_id)
            reservation.check_in(now)
            await self.reservation_repo.update(reservation)

        logger.info("Reservation %s checked in at %s", reservation.check_in_code, now)
        return reservation

    async def complete(self, actor: User, reservation_id: UUID) -> Reservation:
        """CHECKED_IN -> COMPLETED, charging a late fee for overrun"""
        now = self.clock()
        reservation = await self.get_reservation(reservation_id)
        require_owner_or_staff(actor, reservation.user_id, "complete")
        async with self.reservation_repo.resource_lock(reservation.resource_id):
            reservation = await self.get_reservation(reservation_id)
            late_fee = reservation.complete(now)
            await self.reservation_repo.update(reservation)

        if late_fee > 0:
            logger.warning("Reservation %s completed late; late fee %s", reservation.check_in_code, late_fee)
        else:
            logger.info("Reservation %s completed", reservation.check_in_code)
        return reservation

    async def _find_resource(self, resource_id: UUID) -> Optional[Resource]:
        if self.resource_repo is None:
            return None
        return await self.resource_repo.find_by_id(resource_id)


def _booking_notification(reservation: Reservation, resource: Optional[Resource]) -> Notification:
    name = resource.name if resource else "resource"
    when = f"{reservation.start:%Y-%m-%d %H:%M} - {reservation.end:%H:%M}"
    if reservation.status == ReservationStatus.PENDING:
        return Notification(
            kind=NotificationKind.RESERVATION_PENDING,
            user_id=reservation.user_id,
            title="Reservation awaiting approval",
            message=f"Your booking of {name} for {when} is waiting for staff approval",
            payload={"reservation_id": str(reservation.reservation_id)},
        )
    message = f"Your booking of {name} for {when} is confirmed. Check-in code: {reservation.check_in_code}"
    if reservation.requires_key and resource and resource.key_location:
        message += f". Collect the key at {resource.key_location}"
    return Notification(
        kind=NotificationKind.RESERVATION_CONFIRMED,
        user_id=reservation.user_id,
        title="Reservation confirmed",
        message=message,
        payload={
            "reservation_id": str(reservation.reservation_id),
            "check_in_code": reservation.check_in_code,
            "total_cost": str(reservation.total_cost),
        },
    )


def _describe_hours(hours: OperatingHours) -> dict:
    return {
        "opens_at": hours.opens_at.isoformat(),
        "closes_at": hours.closes_at.isoformat(),
        "weekdays": [day.name for day in hours.weekdays],
    }
