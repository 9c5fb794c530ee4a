"""Bulk rescheduling with per-batch atomicity and stored rollback data."""

import logging
import uuid
from datetime import date, datetime, timezone
from time import perf_counter
from typing import ClassVar, Optional, Sequence

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from therapy_scheduler.config import Settings, get_settings
from therapy_scheduler.core.models import BulkOperationLog, TherapySession
from therapy_scheduler.core.repository import (
    AvailabilityRepository,
    BulkOperationLogRepository,
    TherapySessionRepository,
    as_uuid,
    availability_to_domain,
    restore_session,
    session_to_domain,
    snapshot_session,
)
from therapy_scheduler.observability.logger import ObservabilityLogger
from therapy_scheduler.scheduling.conflicts import ConflictDetector
from therapy_scheduler.scheduling.models import (
    BulkOperationType,
    BulkReschedulingRequest,
    BulkReschedulingResult,
    BulkSessionOutcome,
    OperationProgress,
    OperationStatus,
    PriorityLevel,
    RollbackResult,
    ScheduledSession,
    SessionCategory,
    TherapistAvailability,
)
from therapy_scheduler.scheduling.timeslots import daterange

logger = logging.getLogger(__name__)

MIN_REASON_LENGTH = 5
MODIFIABLE_FIELDS = {"therapist_id", "room_id", "notes", "priority", "category"}


def _is_uuid(value) -> bool:
    try:
        as_uuid(value)
    except ValueError:
        return False
    return True


class OperationNotFoundError(LookupError):
    """No operation log exists for the given id."""


class RollbackRefusedError(RuntimeError):
    """The operation has no rollback left to execute."""


class BulkReschedulingEngine:
    """Applies reschedule / cancel / modify operations to many sessions.

    Each batch runs inside a SAVEPOINT: a batch that fails is rolled back on
    its own and every session in it is reported failed, while earlier
    batches stay applied. The pre-change state of every target session is
    stored on the operation log so the whole operation can be undone once.
    """

    _active_operations: ClassVar[set[str]] = set()

    def __init__(
        self,
        db: AsyncSession,
        settings: Optional[Settings] = None,
        detector: Optional[ConflictDetector] = None,
        observability: Optional[ObservabilityLogger] = None,
        today: Optional[date] = None,
    ) -> None:
        self.db = db
        self.settings = settings or get_settings()
        self.detector = detector or ConflictDetector.from_settings(self.settings)
        self.observability = observability
        self._today = today
        self.sessions = TherapySessionRepository(db)
        self.logs = BulkOperationLogRepository(db)
        self.availability = AvailabilityRepository(db)

    @property
    def today(self) -> date:
        return self._today or date.today()

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate_request(self, request: BulkReschedulingRequest) -> list[str]:
        errors: list[str] = []
        if not request.session_ids:
            errors.append("At least one session id is required")
        if len(request.session_ids) > self.settings.max_bulk_sessions:
            errors.append(
                f"At most {self.settings.max_bulk_sessions} sessions can be processed in one operation"
            )
        if len(request.reason.strip()) < MIN_REASON_LENGTH:
            errors.append(f"Reason must be at least {MIN_REASON_LENGTH} characters")
        if request.new_therapist_id and not _is_uuid(request.new_therapist_id):
            errors.append("new_therapist_id must be a valid UUID")

        if request.operation_type == BulkOperationType.RESCHEDULE:
            window = request.new_date_range
            if window is None:
                errors.append("new_date_range is required for reschedule operations")
            else:
                if window.start_date >= window.end_date:
                    errors.append("new_date_range start_date must be before end_date")
                if window.start_date <= self.today:
                    errors.append("new_date_range must start in the future")

        if request.operation_type == BulkOperationType.MODIFY:
            if not request.modifications and not request.new_therapist_id:
                errors.append("modify operations need modifications or new_therapist_id")
            unknown = set(request.modifications) - MODIFIABLE_FIELDS
            if unknown:
                errors.append(f"Unsupported modification fields: {', '.join(sorted(unknown))}")
            errors.extend(self._modification_value_errors(request))
        return errors

    @staticmethod
    def _modification_value_errors(request: BulkReschedulingRequest) -> list[str]:
        errors: list[str] = []
        mods = request.modifications
        if "therapist_id" in mods and not _is_uuid(mods["therapist_id"]):
            errors.append("therapist_id must be a valid UUID")
        if "priority" in mods:
            try:
                PriorityLevel(mods["priority"])
            except ValueError:
                errors.append(f"Invalid priority: {mods['priority']!r}")
        if "category" in mods:
            try:
                SessionCategory(mods["category"])
            except ValueError:
                errors.append(f"Invalid category: {mods['category']!r}")
        return errors

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute(self, request: BulkReschedulingRequest) -> BulkReschedulingResult:
        """Run a bulk operation. A repeated ``request_id`` replays the stored result."""
        if self.observability is None:
            return await self._execute(request)

        with self.observability.engine_run(
            "bulk_reschedule",
            subject_id=request.request_id,
            input_count=len(request.session_ids),
        ) as event:
            result = await self._execute(request)
            event.output_count = result.successful_count
            event.success = result.success
            event.metadata = {
                "operation_id": result.operation_id,
                "operation_type": request.operation_type.value,
                "replayed": result.replayed,
            }
            return result

    async def _execute(self, request: BulkReschedulingRequest) -> BulkReschedulingResult:
        started = perf_counter()
        operation_id = f"bulk_{uuid.uuid4().hex[:16]}"

        errors = self.validate_request(request)
        if errors:
            return BulkReschedulingResult(
                operation_id=operation_id,
                success=False,
                status=OperationStatus.FAILED,
                total_sessions=len(request.session_ids),
                errors=errors,
            )

        if request.request_id:
            previous = await self.logs.get_by_request_id(request.request_id)
            if previous is not None:
                logger.info("Replaying bulk request %s (operation %s)", request.request_id, previous.operation_id)
                return self._result_from_log(previous, replayed=True)

        if len(self._active_operations) >= self.settings.max_concurrent_bulk_operations:
            return BulkReschedulingResult(
                operation_id=operation_id,
                success=False,
                status=OperationStatus.FAILED,
                total_sessions=len(request.session_ids),
                errors=["Maximum number of concurrent bulk operations reached"],
            )

        self._active_operations.add(operation_id)
        try:
            return await self._run(operation_id, request, started)
        finally:
            self._active_operations.discard(operation_id)

    async def _run(self, operation_id: str, request: BulkReschedulingRequest, started: float) -> BulkReschedulingResult:
        outcomes: list[BulkSessionOutcome] = []

        target_ids = []
        for raw in request.session_ids:
            try:
                target_ids.append(as_uuid(raw))
            except ValueError:
                outcomes.append(BulkSessionOutcome(session_id=raw, success=False, message="Invalid session id"))

        rows = sorted(
            await self.sessions.get_many(target_ids),
            key=lambda r: (r.scheduled_date, r.start_time, str(r.id)),
        )
        found = {r.id for r in rows}
        for missing in (i for i in target_ids if i not in found):
            outcomes.append(BulkSessionOutcome(session_id=str(missing), success=False, message="Session not found"))

        log = await self.logs.create(
            operation_id=operation_id,
            request_id=request.request_id,
            operation_type=request.operation_type.value,
            status=OperationStatus.IN_PROGRESS.value,
            total_sessions=len(request.session_ids),
            operation_data=request.model_dump(mode="json"),
            rollback_data=[snapshot_session(r) for r in rows],
            rollback_available=False,
            current_step="backup_created",
            initiated_by=request.initiated_by,
        )

        pool, availability = await self._calendar(request, rows)

        batch_size = self.settings.bulk_batch_size
        batches = [rows[i:i + batch_size] for i in range(0, len(rows), batch_size)]
        for number, batch in enumerate(batches, start=1):
            pool_size = len(pool)
            batch_ids = [str(r.id) for r in batch]
            batch_outcomes: list[BulkSessionOutcome] = []
            try:
                async with self.db.begin_nested():
                    for row in batch:
                        batch_outcomes.append(self._apply(row, request, pool, availability))
            except SQLAlchemyError as e:
                logger.error("Bulk operation %s batch %d rolled back: %s", operation_id, number, e)
                del pool[pool_size:]
                batch_outcomes = [
                    BulkSessionOutcome(session_id=i, success=False, message=f"Batch rolled back: {e}")
                    for i in batch_ids
                ]
            outcomes.extend(batch_outcomes)

            log.processed_sessions = len(outcomes)
            log.successful_sessions = sum(1 for o in outcomes if o.success)
            log.failed_sessions = len(outcomes) - log.successful_sessions
            log.progress_percentage = round(number / len(batches) * 100, 2)
            log.current_step = f"batch {number}/{len(batches)}"
            await self.db.flush()

        successful = sum(1 for o in outcomes if o.success)
        status = OperationStatus.COMPLETED if successful or not outcomes else OperationStatus.FAILED
        result = BulkReschedulingResult(
            operation_id=operation_id,
            success=status == OperationStatus.COMPLETED and successful == len(outcomes),
            status=status,
            total_sessions=len(request.session_ids),
            successful_count=successful,
            failed_count=len(outcomes) - successful,
            outcomes=outcomes,
            errors=[f"{o.session_id}: {o.message}" for o in outcomes if not o.success],
            rollback_available=successful > 0,
            processing_time_ms=(perf_counter() - started) * 1000,
        )

        log.status = status.value
        log.processed_sessions = len(outcomes)
        log.successful_sessions = successful
        log.failed_sessions = result.failed_count
        log.progress_percentage = 100.0
        log.current_step = "completed" if status == OperationStatus.COMPLETED else "failed"
        log.rollback_available = result.rollback_available
        log.error_details = result.errors or None
        log.results = result.model_dump(mode="json")
        log.processing_time_ms = result.processing_time_ms
        log.completed_at = datetime.now(timezone.utc)
        await self.db.flush()

        logger.info(
            "Bulk %s %s: %d/%d sessions succeeded",
            request.operation_type.value, operation_id, successful, len(outcomes),
        )
        return result

    async def _calendar(
        self, request: BulkReschedulingRequest, rows: Sequence[TherapySession]
    ) -> tuple[list[ScheduledSession], list[TherapistAvailability]]:
        """Sessions and availability the operation must stay clear of."""
        if request.operation_type == BulkOperationType.RESCHEDULE:
            window = request.new_date_range
            date_from, date_to = window.start_date, window.end_date
        elif rows:
            date_from = min(r.scheduled_date for r in rows)
            date_to = max(r.scheduled_date for r in rows)
        else:
            return [], []

        target_ids = {r.id for r in rows}
        pool = [
            session_to_domain(r)
            for r in await self.sessions.list_active_in_range(date_from, date_to)
            if r.id not in target_ids
        ]
        if request.operation_type == BulkOperationType.CANCEL:
            return pool, []
        availability = [availability_to_domain(a) for a in await self.availability.list_all()]
        return pool, availability

    def _apply(self, row, request, pool, availability) -> BulkSessionOutcome:
        if request.operation_type == BulkOperationType.RESCHEDULE:
            return self._reschedule(row, request, pool, availability)
        if request.operation_type == BulkOperationType.CANCEL:
            return self._cancel(row, request)
        return self._modify(row, request, pool, availability)

    def _reschedule(self, row, request, pool, availability) -> BulkSessionOutcome:
        session = session_to_domain(row)
        if not session.is_active:
            return BulkSessionOutcome(session_id=session.id, success=False, message=f"Session is {session.status.value}")

        therapist_id = request.new_therapist_id or session.therapist_id
        preferred = session.start_time if request.preserve_time_preferences else None
        window = request.new_date_range

        placed = None
        for day in daterange(window.start_date, window.end_date):
            placed = self.detector.find_free_slot(
                session, day, pool, availability,
                preferred_start=preferred, therapist_id=therapist_id,
            )
            if placed is not None:
                break
        if placed is None:
            pool.append(session)
            return BulkSessionOutcome(
                session_id=session.id, success=False,
                message="No available slot in the requested date range",
            )

        row.scheduled_date = placed.scheduled_date
        row.start_time = placed.start_time
        row.end_time = placed.end_time
        row.therapist_id = as_uuid(placed.therapist_id)
        row.status = "scheduled"
        row.reschedule_count = (row.reschedule_count or 0) + 1
        row.reschedule_reason = request.reason
        row.updated_at = datetime.now(timezone.utc)
        pool.append(placed)
        return BulkSessionOutcome(
            session_id=session.id,
            success=True,
            message="Rescheduled",
            new_date=placed.scheduled_date,
            new_start_time=placed.start_time,
            new_therapist_id=placed.therapist_id,
        )

    @staticmethod
    def _cancel(row, request) -> BulkSessionOutcome:
        if row.status == "cancelled":
            return BulkSessionOutcome(session_id=str(row.id), success=False, message="Session already cancelled")
        note = f"Cancelled: {request.reason}"
        row.status = "cancelled"
        row.notes = f"{row.notes}\n\n{note}" if row.notes else note
        row.updated_at = datetime.now(timezone.utc)
        return BulkSessionOutcome(session_id=str(row.id), success=True, message="Cancelled")

    def _modify(self, row, request, pool, availability) -> BulkSessionOutcome:
        session = session_to_domain(row)
        changes = dict(request.modifications)
        if request.new_therapist_id:
            changes["therapist_id"] = request.new_therapist_id

        updated = session.model_copy(update={
            k: v for k, v in changes.items() if k in ("therapist_id", "room_id")
        })
        if not self.detector.is_slot_clear(updated, pool, availability):
            pool.append(session)
            return BulkSessionOutcome(
                session_id=session.id, success=False,
                message="Modification would create a scheduling conflict",
            )

        if "therapist_id" in changes:
            row.therapist_id = as_uuid(changes["therapist_id"])
        if "room_id" in changes:
            row.room_id = changes["room_id"]
        if "notes" in changes:
            row.notes = changes["notes"]
        if "priority" in changes:
            row.priority = int(PriorityLevel(changes["priority"]))
        if "category" in changes:
            row.category = SessionCategory(changes["category"]).value
        row.updated_at = datetime.now(timezone.utc)
        pool.append(updated)
        return BulkSessionOutcome(
            session_id=session.id,
            success=True,
            message="Modified",
            new_therapist_id=str(row.therapist_id),
        )

    # ------------------------------------------------------------------
    # Status / rollback
    # ------------------------------------------------------------------

    async def get_status(self, operation_id: str) -> OperationProgress:
        log = await self.logs.get_by_operation_id(operation_id)
        if log is None:
            raise OperationNotFoundError(operation_id)
        return OperationProgress(
            operation_id=log.operation_id,
            operation_type=log.operation_type,
            status=OperationStatus(log.status),
            total_sessions=log.total_sessions,
            processed_sessions=log.processed_sessions,
            successful_sessions=log.successful_sessions,
            failed_sessions=log.failed_sessions,
            progress_percentage=log.progress_percentage,
            current_step=log.current_step,
            rollback_available=log.rollback_available,
            rollback_executed=log.rollback_executed,
            created_at=log.created_at,
            completed_at=log.completed_at,
        )

    async def rollback(self, operation_id: str) -> RollbackResult:
        """Restore every session touched by *operation_id*. Allowed once."""
        log = await self.logs.get_by_operation_id(operation_id)
        if log is None:
            raise OperationNotFoundError(operation_id)
        if log.rollback_executed:
            raise RollbackRefusedError(f"Operation {operation_id} has already been rolled back")
        if not log.rollback_available:
            raise RollbackRefusedError(f"Operation {operation_id} has nothing to roll back")

        snapshots = {s["id"]: s for s in log.rollback_data or []}
        async with self.db.begin_nested():
            rows = await self.sessions.get_many([as_uuid(i) for i in snapshots])
            for row in rows:
                restore_session(row, snapshots[str(row.id)])
            log.status = OperationStatus.ROLLED_BACK.value
            log.rollback_executed = True
            log.rollback_available = False
            log.current_step = "rolled_back"

        logger.info("Rolled back bulk operation %s (%d sessions)", operation_id, len(rows))
        if self.observability is not None:
            self.observability.log_rollback(operation_id, "bulk", len(rows))
        return RollbackResult(
            operation_id=operation_id,
            success=True,
            restored_count=len(rows),
            message=f"Restored {len(rows)} sessions",
        )

    @staticmethod
    def _result_from_log(log: BulkOperationLog, replayed: bool = False) -> BulkReschedulingResult:
        if log.results:
            result = BulkReschedulingResult.model_validate(log.results)
        else:
            result = BulkReschedulingResult(
                operation_id=log.operation_id,
                success=False,
                status=OperationStatus(log.status),
                total_sessions=log.total_sessions,
                successful_count=log.successful_sessions,
                failed_count=log.failed_sessions,
            )
        return result.model_copy(update={
            "replayed": replayed,
            "status": OperationStatus(log.status),
            "rollback_available": log.rollback_available,
        })
