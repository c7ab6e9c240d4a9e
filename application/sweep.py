"""Periodic sweep over reservations and key assignments

Every step moves an entity only out of the state it is expected to be in,
so overlapping or repeated runs leave already-handled rows untouched.
"""
import asyncio
import logging
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from pydantic import BaseModel

from domain.entities import KeyAssignment, Reservation
from domain.enums import AssignmentStatus, NotificationKind, ReservationStatus
from domain.notifications import Notification, NotificationSink
from domain.policies import CHECKED_IN_OVERSTAY_GRACE
from domain.repositories import (
    KeyAssignmentRepository, KeyRepository, ReservationRepository, ResourceRepository
)
from application.guards import Clock, notify_safely

logger = logging.getLogger(__name__)


class SweepReport(BaseModel):
    ran_at: datetime
    no_shows: int = 0
    expired: int = 0
    reservation_reminders: int = 0
    overdue_flagged: int = 0
    key_reminders: int = 0

    def total_changes(self) -> int:
        return (self.no_shows + self.expired + self.reservation_reminders
                + self.overdue_flagged + self.key_reminders)


class SweepService:
    def __init__(
        self,
        reservation_repo: ReservationRepository,
        assignment_repo: KeyAssignmentRepository,
        key_repo: KeyRepository,
        resource_repo: Optional[ResourceRepository] = None,
        notifications: Optional[NotificationSink] = None,
        clock: Clock = datetime.now,
        reservation_reminder: timedelta = timedelta(minutes=60),
        key_reminder_lead: timedelta = timedelta(hours=2),
        key_reminder_interval: timedelta = timedelta(minutes=60),
    ):
        self.reservation_repo = reservation_repo
        self.assignment_repo = assignment_repo
        self.key_repo = key_repo
        self.resource_repo = resource_repo
        self.notifications = notifications
        self.clock = clock
        self.reservation_reminder = reservation_reminder
        self.key_reminder_lead = key_reminder_lead
        self.key_reminder_interval = key_reminder_interval

    async def run(self, now: Optional[datetime] = None) -> SweepReport:
        now = now or self.clock()
        report = SweepReport(ran_at=now)
        outbox: List[Notification] = []

        candidates = await self.reservation_repo.find_by_status(
            [ReservationStatus.PENDING, ReservationStatus.CONFIRMED, ReservationStatus.CHECKED_IN]
        )
        for candidate in candidates:
            async with self.reservation_repo.resource_lock(candidate.resource_id):
                reservation = await self.reservation_repo.find_by_id(candidate.reservation_id)
                if reservation is None:
                    continue
                outcome, notification = await self._sweep_reservation(reservation, now)
                if outcome is None:
                    continue
                await self.reservation_repo.update(reservation)
            setattr(report, outcome, getattr(report, outcome) + 1)
            if notification is not None:
                outbox.append(notification)

        for candidate in await self.assignment_repo.find_by_status(AssignmentStatus.ACTIVE):
            async with self.key_repo.key_lock(candidate.key_id):
                assignment = await self.assignment_repo.find_by_id(candidate.assignment_id)
                if assignment is None or not assignment.is_active():
                    continue
                flagged = assignment.mark_overdue(now)
                remind = assignment.needs_reminder(now, self.key_reminder_lead, self.key_reminder_interval)
                if remind:
                    assignment.send_reminder(now)
                if not (flagged or remind):
                    continue
                await self.assignment_repo.update(assignment)
            if flagged:
                report.overdue_flagged += 1
                logger.warning("Key assignment %s is overdue since %s", assignment.assignment_id,
                               assignment.expected_return)
            if remind:
                report.key_reminders += 1
                outbox.append(_key_reminder(assignment, now))

        for notification in outbox:
            await notify_safely(self.notifications, notification)

        if report.total_changes():
            logger.info(
                "Sweep at %s: %d no-shows, %d expired, %d reminders, %d overdue keys, %d key reminders",
                now, report.no_shows, report.expired, report.reservation_reminders,
                report.overdue_flagged, report.key_reminders,
            )
        return report

    async def run_forever(self, interval_seconds: float) -> None:
        """Run the sweep every ``interval_seconds`` until cancelled"""
        logger.info("Sweep timer started, every %s seconds", interval_seconds)
        while True:
            try:
                await self.run()
            except Exception:
                logger.exception("Sweep run failed")
            await asyncio.sleep(interval_seconds)

    async def _sweep_reservation(
        self, reservation: Reservation, now: datetime
    ) -> Tuple[Optional[str], Optional[Notification]]:
        if reservation.status == ReservationStatus.PENDING and now >= reservation.start:
            reservation.expire(now)
            logger.info("Pending reservation %s expired without approval", reservation.check_in_code)
            return "expired", None

        if reservation.status == ReservationStatus.CONFIRMED and now >= reservation.end:
            reservation.mark_no_show(now)
            logger.info("Reservation %s marked no-show", reservation.check_in_code)
            if reservation.deposit_amount > 0:
                logger.warning("Deposit %s forfeited for no-show %s",
                               reservation.deposit_amount, reservation.check_in_code)
            return "no_shows", None

        if (reservation.status == ReservationStatus.CHECKED_IN
                and now >= reservation.end + CHECKED_IN_OVERSTAY_GRACE):
            if reservation.needs_key_return():
                # closed by the key return; the assignment gets overdue reminders
                return None, None
            reservation.expire(now)
            logger.warning("Checked-in reservation %s expired past its end; late fee %s",
                           reservation.check_in_code, reservation.late_fee)
            return "expired", None

        if (reservation.status == ReservationStatus.CONFIRMED and not reservation.reminder_sent
                and reservation.start - self.reservation_reminder <= now < reservation.start):
            reservation.mark_reminder_sent(now)
            return "reservation_reminders", await self._reservation_reminder(reservation)

        return None, None

    async def _reservation_reminder(self, reservation: Reservation) -> Notification:
        resource = None
        if self.resource_repo is not None:
            resource = await self.resource_repo.find_by_id(reservation.resource_id)
        name = resource.name if resource else "your resource"
        when = f"{reservation.start:%H:%M}"

        if reservation.requires_key and not reservation.key_picked_up:
            where = resource.key_location if resource and resource.key_location else "reception"
            return Notification(
                kind=NotificationKind.KEY_PICKUP_READY,
                user_id=reservation.user_id,
                title="Key ready for pickup",
                message=f"Your booking of {name} starts at {when}. Collect the key at {where} "
                        f"with code {reservation.check_in_code}",
                payload={"reservation_id": str(reservation.reservation_id)},
            )
        return Notification(
            kind=NotificationKind.RESERVATION_REMINDER,
            user_id=reservation.user_id,
            title="Upcoming reservation",
            message=f"Your booking of {name} starts at {when}",
            payload={"reservation_id": str(reservation.reservation_id)},
        )


def _key_reminder(assignment: KeyAssignment, now: datetime) -> Notification:
    if assignment.is_overdue_at(now):
        message = (f"Your key was due back at {assignment.expected_return:%Y-%m-%d %H:%M}. "
                   f"Current fine: {assignment.calculate_overdue_fine(now)}")
    else:
        message = f"Please return your key by {assignment.expected_return:%Y-%m-%d %H:%M}"
    return Notification(
        kind=NotificationKind.KEY_OVERDUE,
        user_id=assignment.user_id,
        title="Key return reminder",
        message=message,
        payload={"assignment_id": str(assignment.assignment_id)},
    )
