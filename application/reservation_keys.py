"""Key pickup and return tied to a reservation

This is the only service that reads both a Reservation and its
KeyAssignment.  Lock order is always resource lock first, then key lock.
"""
import logging
from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel

from domain.auth import User
from domain.entities import Key, KeyAssignment, Reservation
from domain.enums import AssignmentType, KeyCondition, ReservationStatus
from domain.errors import ConflictError, NotFoundError, StateError, ValidationError
from domain.repositories import KeyRepository, ReservationRepository
from application.guards import Clock, require_staff
from application.key_services import KeyCustodyService

logger = logging.getLogger(__name__)


class KeyHandover(BaseModel):
    """Reservation and key assignment after a paired transition"""
    reservation: Reservation
    assignment: KeyAssignment


class ReservationKeyService:
    """Couples reservation check-in/completion to key issue/return"""

    def __init__(
        self,
        reservation_repo: ReservationRepository,
        key_repo: KeyRepository,
        custody: KeyCustodyService,
        clock: Clock = datetime.now,
    ):
        self.reservation_repo = reservation_repo
        self.key_repo = key_repo
        self.custody = custody
        self.clock = clock

    async def pick_up_key(
        self,
        actor: User,
        reservation_id: UUID,
        key_id: Optional[UUID] = None,
        deposit_paid: bool = False,
    ) -> KeyHandover:
        """Issue the resource's key and check the reservation in"""
        require_staff(actor, "hand out keys")
        reservation = await self._get_reservation(reservation_id)

        async with self.reservation_repo.resource_lock(reservation.resource_id):
            reservation = await self._get_reservation(reservation_id)
            now = self.clock()
            if reservation.status != ReservationStatus.CONFIRMED:
                raise StateError(
                    f"Cannot pick up a key for a reservation with status {reservation.status.value}",
                    current_status=reservation.status.value,
                )
            if not reservation.requires_key:
                raise StateError("This reservation does not use a key")
            if reservation.key_picked_up:
                raise StateError("Key has already been picked up", picked_up_at=reservation.key_picked_up_at.isoformat())
            if not reservation.is_within_check_in_window(now):
                opens, closes = reservation.check_in_window()
                raise StateError(
                    "Keys can only be picked up inside the check-in window",
                    window_opens=opens.isoformat(),
                    window_closes=closes.isoformat(),
                )

            key = await self._choose_key(reservation, key_id)
            assignment = await self.custody.issue_key(
                actor,
                key.key_id,
                reservation.user_id,
                assignment_type=AssignmentType.TEMPORARY,
                notes=f"Reservation {reservation.check_in_code}",
                deposit_paid=deposit_paid,
                deposit_amount=reservation.deposit_amount if reservation.deposit_amount > 0 else None,
                reservation_id=reservation.reservation_id,
            )

            reservation.record_key_pickup(actor.display_name, assignment.assignment_id, now)
            reservation.check_in(now)
            await self.reservation_repo.update(reservation)

        logger.info(
            "Key %s picked up for reservation %s; reservation checked in",
            key.key_code, reservation.check_in_code,
        )
        return KeyHandover(reservation=reservation, assignment=assignment)

    async def return_key_for_reservation(
        self,
        actor: User,
        reservation_id: UUID,
        condition: KeyCondition = KeyCondition.GOOD,
        notes: Optional[str] = None,
    ) -> KeyHandover:
        """Take the key back and complete a checked-in reservation"""
        require_staff(actor, "take back keys")
        reservation = await self._get_reservation(reservation_id)

        async with self.reservation_repo.resource_lock(reservation.resource_id):
            reservation = await self._get_reservation(reservation_id)
            if not reservation.needs_key_return():
                raise StateError(
                    "No key is outstanding for this reservation",
                    key_picked_up=reservation.key_picked_up,
                    key_returned=reservation.key_returned,
                )

            assignment = await self.custody.return_key(actor, reservation.key_assignment_id, condition, notes)

            now = self.clock()
            reservation.record_key_return(actor.display_name, now)
            if reservation.status == ReservationStatus.CHECKED_IN:
                reservation.complete(now)
            await self.reservation_repo.update(reservation)

        logger.info(
            "Key returned for reservation %s (status %s, late fee %s, key fine %s)",
            reservation.check_in_code, reservation.status.value, reservation.late_fee, assignment.fine_amount,
        )
        return KeyHandover(reservation=reservation, assignment=assignment)

    async def return_assignment(
        self,
        actor: User,
        assignment_id: UUID,
        condition: KeyCondition = KeyCondition.GOOD,
        notes: Optional[str] = None,
    ) -> KeyAssignment:
        """Return any assignment, completing its reservation when it has one"""
        assignment = await self.custody.get_assignment(assignment_id)
        if assignment.reservation_id is None:
            return await self.custody.return_key(actor, assignment_id, condition, notes)

        reservation = await self.reservation_repo.find_by_id(assignment.reservation_id)
        if reservation is None or reservation.key_assignment_id != assignment_id:
            return await self.custody.return_key(actor, assignment_id, condition, notes)
        handover = await self.return_key_for_reservation(actor, reservation.reservation_id, condition, notes)
        return handover.assignment

    async def _choose_key(self, reservation: Reservation, key_id: Optional[UUID]) -> Key:
        if key_id is not None:
            key = await self.key_repo.find_by_id(key_id)
            if key is None:
                raise NotFoundError("Key not found", key_id=str(key_id))
            if key.associated_resource_id != reservation.resource_id:
                raise ValidationError(
                    "Key does not belong to the reserved resource",
                    key_code=key.key_code,
                    resource_id=str(reservation.resource_id),
                )
            return key

        keys = await self.key_repo.find_by_resource(reservation.resource_id)
        if not keys:
            raise NotFoundError("No key is registered for this resource", resource_id=str(reservation.resource_id))
        for key in keys:
            if key.can_be_issued():
                return key
        raise ConflictError(
            "Every key for this resource is currently unavailable",
            key_codes=[k.key_code for k in keys],
        )

    async def _get_reservation(self, reservation_id: UUID) -> Reservation:
        reservation = await self.reservation_repo.find_by_id(reservation_id)
        if reservation is None:
            raise NotFoundError("Reservation not found", reservation_id=str(reservation_id))
        return reservation
