"""Application Services - Key inventory and key custody use cases"""
import logging
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel

from domain.auth import User
from domain.entities import Key, KeyAssignment
from domain.enums import AssignmentStatus, AssignmentType, KeyCondition, KeyStatus, KeyType
from domain.errors import ConflictError, NotFoundError, PermissionDeniedError, StateError
from domain.policies import DEFAULT_REPLACEMENT_COST
from domain.repositories import KeyAssignmentRepository, KeyRepository
from domain.value_objects import Money
from application.guards import Clock, require_admin, require_staff

logger = logging.getLogger(__name__)


class KeyStatistics(BaseModel):
    """Inventory counts for the key dashboard"""
    total: int
    by_status: Dict[KeyStatus, int]
    needing_attention: int
    total_lost_reports: int


class KeyInventoryService:
    """Service for the physical key catalog and its status machine"""

    def __init__(self, key_repo: KeyRepository, custody: "KeyCustodyService", clock: Clock = datetime.now):
        self.key_repo = key_repo
        self.custody = custody
        self.clock = clock

    async def create_key(
        self,
        actor: User,
        key_code: str,
        description: str,
        key_type: KeyType,
        room_number: Optional[str] = None,
        associated_resource_id: Optional[UUID] = None,
        replacement_cost: Optional[Decimal] = None,
    ) -> Key:
        require_admin(actor, "register keys")
        key = Key.create(
            key_code=key_code,
            description=description,
            key_type=key_type,
            room_number=room_number,
            associated_resource_id=associated_resource_id,
            replacement_cost=replacement_cost,
        )
        if await self.key_repo.find_by_code(key.key_code) is not None:
            raise ConflictError("Key code already exists", key_code=key.key_code)
        await self.key_repo.save(key)
        logger.info("Key %s (%s) registered by %s", key.key_code, key.key_type.value, actor.username)
        return key

    async def get_key(self, key_id: UUID) -> Key:
        key = await self.key_repo.find_by_id(key_id)
        if key is None:
            raise NotFoundError("Key not found", key_id=str(key_id))
        return key

    async def get_key_by_code(self, key_code: str) -> Key:
        key = await self.key_repo.find_by_code(key_code)
        if key is None:
            raise NotFoundError("Key not found", key_code=key_code)
        return key

    async def list_keys(
        self,
        status: Optional[KeyStatus] = None,
        key_type: Optional[KeyType] = None,
    ) -> List[Key]:
        return await self.key_repo.find_all(status=status, key_type=key_type)

    async def keys_needing_attention(self) -> List[Key]:
        now = self.clock()
        return [k for k in await self.key_repo.find_all() if k.needs_attention(now)]

    async def statistics(self) -> KeyStatistics:
        now = self.clock()
        keys = await self.key_repo.find_all()
        by_status = {status: 0 for status in KeyStatus}
        for key in keys:
            by_status[key.status] += 1
        return KeyStatistics(
            total=len(keys),
            by_status=by_status,
            needing_attention=sum(1 for k in keys if k.needs_attention(now)),
            total_lost_reports=sum(k.lost_count for k in keys),
        )

    async def reserve_key(self, actor: User, key_id: UUID) -> Key:
        require_staff(actor, "reserve keys")
        key = await self._mutate(key_id, lambda k: k.reserve())
        logger.info("Key %s reserved by %s", key.key_code, actor.username)
        return key

    async def make_available(self, actor: User, key_id: UUID) -> Key:
        """Back to AVAILABLE; also used when a lost key turns up"""
        require_staff(actor, "release keys")
        key = await self._mutate(key_id, lambda k: k.make_available())
        logger.info("Key %s made available by %s", key.key_code, actor.username)
        return key

    async def report_damaged(self, actor: User, key_id: UUID, notes: Optional[str] = None) -> Key:
        require_staff(actor, "report damaged keys")
        key = await self._mutate(key_id, lambda k: k.report_damaged(notes))
        logger.warning("Key %s reported damaged by %s: %s", key.key_code, actor.username, notes)
        return key

    async def put_out_of_service(self, actor: User, key_id: UUID, reason: Optional[str] = None) -> Key:
        require_admin(actor, "take keys out of service")
        key = await self._mutate(key_id, lambda k: k.put_out_of_service(reason))
        logger.warning("Key %s put out of service by %s: %s", key.key_code, actor.username, reason)
        return key

    async def retire(self, actor: User, key_id: UUID, reason: Optional[str] = None) -> Key:
        require_admin(actor, "retire keys")
        key = await self._mutate(key_id, lambda k: k.retire(reason))
        logger.info("Key %s retired by %s", key.key_code, actor.username)
        return key

    async def update_key(
        self,
        actor: User,
        key_id: UUID,
        description: Optional[str] = None,
        key_type: Optional[KeyType] = None,
        room_number: Optional[str] = None,
        associated_resource_id: Optional[UUID] = None,
        replacement_cost: Optional[Decimal] = None,
    ) -> Key:
        require_admin(actor, "update keys")
        key = await self._mutate(key_id, lambda k: k.update(
            description=description,
            key_type=key_type,
            room_number=room_number,
            associated_resource_id=associated_resource_id,
            replacement_cost=replacement_cost,
        ))
        logger.info("Key %s updated by %s", key.key_code, actor.username)
        return key

    async def report_key_lost(self, actor: User, key_id: UUID) -> Key:
        """Report a key lost; an issued key is charged to its active assignment"""
        require_staff(actor, "report keys lost")
        key = await self.get_key(key_id)
        if key.is_currently_issued():
            assignment = await self.custody.active_assignment_for_key(key_id)
            if assignment is not None:
                await self.custody.report_lost(actor, assignment.assignment_id)
                return await self.get_key(key_id)

        was_lost = key.status == KeyStatus.LOST

        def lose(key: Key) -> None:
            if key.is_currently_issued():
                raise StateError("Key was issued while the loss was being reported",
                                 key_code=key.key_code)
            key.report_lost()

        key = await self._mutate(key_id, lose)
        if was_lost:
            logger.info("Key %s already reported lost", key.key_code)
        else:
            logger.warning("Key %s reported lost by %s", key.key_code, actor.username)
        return key

    async def record_maintenance(
        self,
        actor: User,
        key_id: UUID,
        next_due: Optional[datetime] = None,
        notes: Optional[str] = None,
    ) -> Key:
        require_staff(actor, "record key maintenance")
        now = self.clock()
        key = await self._mutate(key_id, lambda k: k.record_maintenance(now, next_due, notes))
        logger.info("Maintenance recorded for key %s, next due %s", key.key_code, next_due)
        return key

    async def _mutate(self, key_id: UUID, change) -> Key:
        async with self.key_repo.key_lock(key_id):
            key = await self.get_key(key_id)
            change(key)
            await self.key_repo.update(key)
        return key


class KeyCustodyService:
    """Issues and takes back keys, keeping the fine and deposit ledger

    Every write that touches a key's status runs under that key's lock, so
    the key is ISSUED exactly while one ACTIVE assignment exists for it.
    """

    def __init__(
        self,
        key_repo: KeyRepository,
        assignment_repo: KeyAssignmentRepository,
        clock: Clock = datetime.now,
        default_replacement_cost: Decimal = DEFAULT_REPLACEMENT_COST,
        currency: str = "PLN",
    ):
        self.key_repo = key_repo
        self.assignment_repo = assignment_repo
        self.clock = clock
        self.default_replacement_cost = default_replacement_cost
        self.currency = currency

    async def issue_key(
        self,
        actor: User,
        key_id: UUID,
        user_id: UUID,
        assignment_type: AssignmentType = AssignmentType.TEMPORARY,
        notes: Optional[str] = None,
        deposit_paid: bool = False,
        deposit_amount: Optional[Decimal] = None,
        reservation_id: Optional[UUID] = None,
    ) -> KeyAssignment:
        require_staff(actor, "issue keys")
        now = self.clock()

        async with self.key_repo.key_lock(key_id):
            key = await self.key_repo.find_by_id(key_id)
            if key is None:
                raise NotFoundError("Key not found", key_id=str(key_id))
            if key.requires_admin_authorization and not actor.is_admin:
                raise PermissionDeniedError(
                    "This key type requires administrator authorization",
                    key_code=key.key_code, key_type=key.key_type.value,
                )
            if not key.can_be_issued():
                raise StateError(
                    f"Key cannot be issued in current status: {key.status.value}",
                    key_code=key.key_code, current_status=key.status.value,
                )
            if key.permanent_assignment:
                held = await self.assignment_repo.find_active_by_user_and_key_type(user_id, key.key_type)
                if held:
                    raise ConflictError(
                        "User already holds an active assignment of this key type",
                        key_type=key.key_type.value,
                        assignment_id=str(held[0].assignment_id),
                    )

            key.issue()
            assignment = KeyAssignment.open(
                key=key,
                user_id=user_id,
                issued_by=actor.user_id,
                assignment_type=assignment_type,
                now=now,
                deposit_amount=deposit_amount,
                deposit_paid=deposit_paid,
                reservation_id=reservation_id,
                notes=notes,
            )
            await self.assignment_repo.save(assignment)
            await self.key_repo.update(key)

        logger.info(
            "Key %s issued to %s by %s (%s, expected back %s, deposit %s)",
            key.key_code, user_id, actor.username, assignment_type.value,
            assignment.expected_return, assignment.deposit_amount,
        )
        return assignment

    async def return_key(
        self,
        actor: User,
        assignment_id: UUID,
        condition: KeyCondition = KeyCondition.GOOD,
        notes: Optional[str] = None,
    ) -> KeyAssignment:
        """ACTIVE -> RETURNED; records the overdue fine before releasing the key"""
        require_staff(actor, "take back keys")
        now = self.clock()
        assignment = await self.get_assignment(assignment_id)

        async with self.key_repo.key_lock(assignment.key_id):
            assignment = await self.get_assignment(assignment_id)
            fine = assignment.return_key(actor.user_id, condition, notes, now)
            await self.assignment_repo.update(assignment)

            key = await self.key_repo.find_by_id(assignment.key_id)
            if key is None:
                raise NotFoundError("Key not found", key_id=str(assignment.key_id))
            key.return_key()
            await self.key_repo.update(key)

        if fine > 0:
            logger.warning("Key %s returned late by %s; fine %s", key.key_code, assignment.user_id, fine)
        else:
            logger.info("Key %s returned to %s in %s condition", key.key_code, actor.username, condition.value)
        if assignment.deposit_paid and not assignment.deposit_refunded:
            logger.info("Deposit %s retained for assignment %s", assignment.deposit_amount, assignment.assignment_id)
        return assignment

    async def report_lost(self, actor: User, assignment_id: UUID) -> KeyAssignment:
        """ACTIVE -> LOST; charges replacement and forfeits the deposit"""
        now = self.clock()
        assignment = await self.get_assignment(assignment_id)
        if actor.user_id != assignment.user_id and not actor.is_staff:
            raise PermissionDeniedError("You can only report your own keys lost", username=actor.username)

        async with self.key_repo.key_lock(assignment.key_id):
            assignment = await self.get_assignment(assignment_id)
            key = await self.key_repo.find_by_id(assignment.key_id)
            if key is None:
                raise NotFoundError("Key not found", key_id=str(assignment.key_id))

            cost = key.replacement_cost if key.replacement_cost is not None else self.default_replacement_cost
            assignment.report_lost(cost, now)
            await self.assignment_repo.update(assignment)

            key.report_lost()
            await self.key_repo.update(key)

        logger.warning(
            "Key %s reported lost by %s; replacement %s, deposit %s forfeited",
            key.key_code, actor.username, cost, assignment.deposit_amount,
        )
        return assignment

    async def extend(
        self,
        actor: User,
        assignment_id: UUID,
        new_expected_return: datetime,
        reason: str,
    ) -> KeyAssignment:
        require_staff(actor, "extend key assignments")
        now = self.clock()
        assignment = await self.get_assignment(assignment_id)
        async with self.key_repo.key_lock(assignment.key_id):
            assignment = await self.get_assignment(assignment_id)
            assignment.extend(new_expected_return, reason, now)
            await self.assignment_repo.update(assignment)

        logger.info("Assignment %s extended until %s: %s", assignment_id, new_expected_return, reason)
        return assignment

    async def record_deposit_payment(self, actor: User, assignment_id: UUID) -> KeyAssignment:
        require_staff(actor, "take deposits")
        now = self.clock()
        assignment = await self.get_assignment(assignment_id)
        async with self.key_repo.key_lock(assignment.key_id):
            assignment = await self.get_assignment(assignment_id)
            assignment.record_deposit_payment(now)
            await self.assignment_repo.update(assignment)

        logger.info("Deposit %s paid for assignment %s", assignment.deposit_amount, assignment_id)
        return assignment

    async def get_assignment(self, assignment_id: UUID) -> KeyAssignment:
        assignment = await self.assignment_repo.find_by_id(assignment_id)
        if assignment is None:
            raise NotFoundError("Key assignment not found", assignment_id=str(assignment_id))
        return assignment

    async def active_assignment_for_key(self, key_id: UUID) -> Optional[KeyAssignment]:
        for assignment in await self.assignment_repo.find_by_key(key_id):
            if assignment.is_active():
                return assignment
        return None

    async def list_active(self) -> List[KeyAssignment]:
        return await self.assignment_repo.find_by_status(AssignmentStatus.ACTIVE)

    async def list_overdue(self) -> List[KeyAssignment]:
        now = self.clock()
        return [a for a in await self.list_active() if a.is_overdue_at(now)]

    async def list_user_assignments(self, user_id: UUID) -> List[KeyAssignment]:
        return await self.assignment_repo.find_by_user(user_id)

    async def key_history(self, key_id: UUID) -> List[KeyAssignment]:
        return await self.assignment_repo.find_by_key(key_id)

    async def amount_owed(self, assignment_id: UUID) -> Money:
        assignment = await self.get_assignment(assignment_id)
        return Money(amount=assignment.total_amount_owed(), currency=self.currency)
