"""
Task Lifecycle Engine.

Owns every change to a task's status, its worker counters and its escrow
bookkeeping. Changes are read-modify-write cycles retried when the store
reports a concurrent write. Fund movements that close a task (fee collection
and refund) are made only by the caller whose write moved the task into its
terminal status, or by an explicit settlement retry.

State machine:
    open        → in_progress, cancelled, expired, paused
    in_progress → completed, cancelled, expired, paused
    paused      → open, in_progress (resume), cancelled (admin removal)
    completed, cancelled, expired are terminal
"""
import uuid
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Dict, Optional, Tuple

from taskblitz.config import config
from taskblitz.errors import (
    CapacityReached, ConcurrentModification, InvalidTransition, MarketplaceError,
    NotCancellable, NotFound, ReviewInProgress, Unauthorized, ValidationError,
)
from taskblitz.fees import CENT, calculate_escrow_amount, calculate_fee_due
from taskblitz.ledger import Ledger, LockHandle, Receipt
from taskblitz.locks import KeyedLocks
from taskblitz.logging import log_admin_activity, logger
from taskblitz.models import (
    SYSTEM_ACTOR, Actor, ReviewOutcome, Submission, SubmissionStatus, SubmissionType, Task, TaskSpec,
    TaskStatus, Transaction, TransactionType, utcnow,
)
from taskblitz.repository import Repository

MAX_WRITE_ATTEMPTS = 5

ALLOWED_TRANSITIONS = {
    TaskStatus.OPEN: frozenset({TaskStatus.IN_PROGRESS, TaskStatus.CANCELLED, TaskStatus.EXPIRED, TaskStatus.PAUSED}),
    TaskStatus.IN_PROGRESS: frozenset({TaskStatus.COMPLETED, TaskStatus.CANCELLED, TaskStatus.EXPIRED, TaskStatus.PAUSED}),
    TaskStatus.PAUSED: frozenset({TaskStatus.OPEN, TaskStatus.IN_PROGRESS, TaskStatus.CANCELLED}),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.CANCELLED: frozenset(),
    TaskStatus.EXPIRED: frozenset(),
}


def can_transition(current: str, target: str) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def transition(task: Task, target: str, now: datetime) -> None:
    """Move task to target status in place. Raises InvalidTransition."""
    if not can_transition(task.status, target):
        raise InvalidTransition(f"Task {task.task_id} cannot go from {task.status} to {target}",
                                status=task.status, target=target)
    task.status = target
    task.updated_at = now


class TaskLifecycleEngine:
    """Guards task status, worker counters and escrow bookkeeping."""

    def __init__(self, repository: Repository, ledger: Ledger, settings=config, locks: KeyedLocks = None):
        self.repository = repository
        self.ledger = ledger
        self.settings = settings
        self.locks = locks or KeyedLocks()

    # =========================================================================
    # Reads and writes
    # =========================================================================

    def get_task(self, task_id: str) -> Task:
        task = self.repository.get_task(task_id)
        if task is None:
            raise NotFound(f"Task {task_id} not found")
        return task

    def update_task(self, task_id: str, mutate: Callable[[Task], bool]) -> Tuple[Task, bool]:
        """
        Apply mutate to a fresh copy of the task and write it back.

        mutate changes the task in place and returns False when there is
        nothing to write; it may raise to abort. The cycle is retried when
        another writer got there first.

        Returns:
            tuple: (stored task, whether a write happened)
        """
        for attempt in range(1, MAX_WRITE_ATTEMPTS + 1):
            task = self.get_task(task_id)
            version = task.version
            if not mutate(task):
                return task, False
            try:
                return self.repository.update_task(task, version), True
            except ConcurrentModification:
                logger.warning(f"Task {task_id} changed during update (attempt {attempt}), retrying")
        raise ConcurrentModification(f"Task {task_id} kept changing; gave up after {MAX_WRITE_ATTEMPTS} attempts")

    def lock_handle(self, task: Task) -> LockHandle:
        return LockHandle(task.escrow_handle, task.requester_id, task.escrow_amount)

    def record_transaction(self, task: Task, kind: str, receipt: Receipt) -> Transaction:
        """Log a ledger movement against task, keyed by its receipt so a replayed movement is logged once."""
        transaction = Transaction(
            transaction_id=receipt.receipt_id,
            task_id=task.task_id,
            kind=kind,
            amount=receipt.amount,
            counterparty=receipt.counterparty,
            recorded_at=receipt.recorded_at,
            reference_id=receipt.reference or receipt.handle_id,
        )
        self.repository.record_transaction(transaction)
        return transaction

    # =========================================================================
    # Creation
    # =========================================================================

    def validate_spec(self, spec: TaskSpec, now: datetime) -> TaskSpec:
        """Check requester input and fill defaults. Raises ValidationError."""
        if not spec.title or not spec.title.strip():
            raise ValidationError('Task title is required')

        payment = spec.payment_per_task
        if not isinstance(payment, Decimal):
            payment = Decimal(str(payment))
        if not payment.is_finite() or payment <= 0:
            raise ValidationError('paymentPerTask must be positive')
        if payment < self.settings.MINIMUM_TASK_PAYMENT:
            raise ValidationError(f"paymentPerTask must be at least {self.settings.MINIMUM_TASK_PAYMENT}")
        if payment != payment.quantize(CENT):
            raise ValidationError('paymentPerTask cannot have fractions of a cent')

        if isinstance(spec.workers_needed, bool) or not isinstance(spec.workers_needed, int) or spec.workers_needed <= 0:
            raise ValidationError('workersNeeded must be a positive integer')

        deadline = spec.deadline or now + timedelta(days=self.settings.DEFAULT_TASK_DURATION_DAYS)
        if deadline <= now:
            raise ValidationError('deadline must be in the future')

        if spec.submission_type not in SubmissionType.ALL:
            raise ValidationError(f"Unknown submission type: {spec.submission_type}")

        limit = spec.rejection_limit_percentage
        if limit is None:
            limit = self.settings.REJECTION_LIMIT_PERCENTAGE
        if isinstance(limit, bool) or not isinstance(limit, int) or not 0 <= limit <= 100:
            raise ValidationError('rejectionLimitPercentage must be an integer between 0 and 100')

        return TaskSpec(
            title=spec.title.strip(),
            payment_per_task=payment,
            workers_needed=spec.workers_needed,
            deadline=deadline,
            description=spec.description,
            category=spec.category,
            submission_type=spec.submission_type,
            rejection_limit_percentage=limit,
        )

    def create_task(self, spec: TaskSpec, requester: Actor, now: datetime = None) -> Task:
        """
        Create a task with its escrow locked.

        The escrow is locked first; if the lock fails nothing is persisted.
        If persisting fails after a successful lock, the escrow is refunded
        before the error propagates.

        Raises:
            ValidationError, InsufficientFunds, LedgerUnavailable
        """
        now = now or utcnow()
        spec = self.validate_spec(spec, now)
        fee_percentage = self.settings.PLATFORM_FEE_PERCENTAGE
        escrow_amount = calculate_escrow_amount(spec.payment_per_task, spec.workers_needed, fee_percentage)

        handle = self.ledger.lock_funds(requester.user_id, escrow_amount)

        task = Task(
            task_id=str(uuid.uuid4()),
            requester_id=requester.user_id,
            title=spec.title,
            description=spec.description,
            category=spec.category,
            submission_type=spec.submission_type,
            payment_per_task=spec.payment_per_task,
            workers_needed=spec.workers_needed,
            rejection_limit_percentage=spec.rejection_limit_percentage,
            escrow_amount=escrow_amount,
            escrow_handle=handle.handle_id,
            platform_fee_percentage=fee_percentage,
            deadline=spec.deadline,
            created_at=now,
            updated_at=now,
        )

        try:
            task = self.repository.insert_task(task)
        except Exception:
            logger.error(f"Persisting task failed after locking escrow {handle.handle_id}; refunding")
            self.ledger.refund_remainder(handle, requester.user_id)
            raise

        self.repository.record_transaction(Transaction(
            transaction_id=str(uuid.uuid4()),
            task_id=task.task_id,
            kind=TransactionType.LOCK,
            amount=escrow_amount,
            counterparty=requester.user_id,
            recorded_at=now,
            reference_id=handle.handle_id,
        ))
        logger.info(f"Created task {task.task_id} for {requester.user_id}: "
                    f"{task.workers_needed} x {task.payment_per_task}, escrow {escrow_amount}")
        return task

    # =========================================================================
    # Counters (applied in place; the caller persists)
    # =========================================================================

    def record_approval(self, task: Task, payout: Decimal, now: datetime) -> bool:
        """
        Count one approved worker on task.

        Returns:
            True if this approval completed the task
        """
        if task.workers_completed >= task.workers_needed:
            raise CapacityReached(f"Task {task.task_id} already has {task.workers_needed} approved workers")
        task.workers_completed += 1
        task.amount_released += payout
        task.updated_at = now
        # A paused task completes when it is resumed
        if task.workers_completed == task.workers_needed and task.is_active:
            transition(task, TaskStatus.COMPLETED, now)
            return True
        return False

    def record_rejection(self, task: Task, now: datetime) -> None:
        task.workers_rejected += 1
        task.updated_at = now

    def mark_in_progress(self, task_id: str, now: datetime = None) -> Task:
        """Note that a task has its first submission."""
        now = now or utcnow()

        def mutate(task: Task) -> bool:
            if task.status == TaskStatus.OPEN:
                transition(task, TaskStatus.IN_PROGRESS, now)
                return True
            if task.status == TaskStatus.PAUSED and task.paused_from == TaskStatus.OPEN:
                task.paused_from = TaskStatus.IN_PROGRESS
                task.updated_at = now
                return True
            return False

        task, _ = self.update_task(task_id, mutate)
        return task

    # =========================================================================
    # Requester and admin actions
    # =========================================================================

    def cancel(self, task_id: str, actor: Actor, now: datetime = None) -> Task:
        """
        Cancel a task and refund the escrow not already paid out.

        Raises:
            Unauthorized: actor is not the requester
            NotCancellable: task is not open or in progress
            ReviewInProgress: an approval is mid-payout
        """
        now = now or utcnow()
        with self.locks.hold(task_id):
            task = self.get_task(task_id)
            if actor.user_id != task.requester_id:
                raise Unauthorized(f"Only the requester can cancel task {task_id}")

            if task.status == TaskStatus.CANCELLED and not task.settled:
                logger.info(f"Retrying refund for cancelled task {task_id}")
                return self.settle(task_id, now)

            def mutate(t: Task) -> bool:
                if not t.is_active:
                    raise NotCancellable(f"Task {task_id} is {t.status}", status=t.status)
                self._refuse_if_reserved(t)
                transition(t, TaskStatus.CANCELLED, now)
                return True

            task, _ = self.update_task(task_id, mutate)
            logger.info(f"Task {task_id} cancelled by {actor.user_id} "
                        f"after {task.workers_completed}/{task.workers_needed} approvals")
            return self.settle(task_id, now)

    def pause(self, task_id: str, actor: Actor, now: datetime = None) -> Task:
        """Admin moderation: block new submissions. Pending submissions stay reviewable."""
        now = now or utcnow()
        self._require_admin(actor, 'pause', task_id)

        def mutate(task: Task) -> bool:
            previous = task.status
            transition(task, TaskStatus.PAUSED, now)
            task.paused_from = previous
            return True

        with self.locks.hold(task_id):
            task, _ = self.update_task(task_id, mutate)
        log_admin_activity(actor.user_id, 'pause_task', task_id, pausedFrom=task.paused_from)
        return task

    def resume(self, task_id: str, actor: Actor, now: datetime = None) -> Task:
        """Admin moderation: reopen a paused task, completing it if it filled up while paused."""
        now = now or utcnow()
        self._require_admin(actor, 'resume', task_id)

        def mutate(task: Task) -> bool:
            if task.status != TaskStatus.PAUSED:
                raise InvalidTransition(f"Task {task_id} is not paused", status=task.status)
            full = task.workers_completed >= task.workers_needed
            target = TaskStatus.IN_PROGRESS if full else (task.paused_from or TaskStatus.OPEN)
            transition(task, target, now)
            task.paused_from = None
            if full:
                transition(task, TaskStatus.COMPLETED, now)
            return True

        with self.locks.hold(task_id):
            task, _ = self.update_task(task_id, mutate)
            log_admin_activity(actor.user_id, 'resume_task', task_id, status=task.status)
            if task.status == TaskStatus.COMPLETED:
                return self.settle(task_id, now)
        return task

    def remove(self, task_id: str, actor: Actor, reason: str, now: datetime = None) -> Task:
        """
        Admin moderation: take down an open, in-progress or paused task.

        The task ends cancelled with the reason recorded on it, and its escrow
        is settled as for a requester cancellation. Work already approved
        stays paid. Calling again on a removed task whose refund failed
        retries the settlement.

        Raises:
            Unauthorized: actor is not an admin
            ValidationError: no reason given
            NotCancellable: task already completed, cancelled or expired
            ReviewInProgress: an approval is mid-payout
        """
        now = now or utcnow()
        self._require_admin(actor, 'remove', task_id)
        reason = reason.strip() if isinstance(reason, str) else ''
        if not reason:
            raise ValidationError('A reason is required to remove a task')

        with self.locks.hold(task_id):
            task = self.get_task(task_id)
            if task.status == TaskStatus.CANCELLED and not task.settled:
                logger.info(f"Retrying refund for cancelled task {task_id}")
                return self.settle(task_id, now)

            def mutate(t: Task) -> bool:
                if t.is_terminal:
                    raise NotCancellable(f"Task {task_id} is {t.status}", status=t.status)
                self._refuse_if_reserved(t)
                transition(t, TaskStatus.CANCELLED, now)
                t.paused_from = None
                t.removal_reason = reason
                return True

            task, _ = self.update_task(task_id, mutate)
            log_admin_activity(actor.user_id, 'remove_task', task_id, reason=reason,
                               workersCompleted=task.workers_completed)
            return self.settle(task_id, now)

    def _require_admin(self, actor: Actor, action: str, task_id: str) -> None:
        if not actor.is_admin:
            logger.warning(f"Non-admin {actor.user_id} tried to {action} task {task_id}")
            raise Unauthorized(f"Only admins can {action} tasks")

    def _refuse_if_reserved(self, task: Task) -> None:
        if task.reservations:
            raise ReviewInProgress(f"Task {task.task_id} has approvals in flight; retry shortly",
                                   submissions=sorted(task.reservations))

    # =========================================================================
    # Expiry and settlement
    # =========================================================================

    def expire_if_past_deadline(self, task_id: str, now: datetime = None) -> Task:
        """
        Expire an open or in-progress task whose deadline has passed and refund its escrow.

        Safe to call repeatedly: the refund follows only the write that moved
        the task to expired.
        """
        now = now or utcnow()

        def mutate(task: Task) -> bool:
            if not task.is_active or now <= task.deadline:
                return False
            self._refuse_if_reserved(task)
            transition(task, TaskStatus.EXPIRED, now)
            return True

        with self.locks.hold(task_id):
            task, expired = self.update_task(task_id, mutate)
            if not expired:
                return task
            logger.info(f"Task {task_id} expired with {task.workers_completed}/{task.workers_needed} approvals")
            return self.settle(task_id, now)

    def settle(self, task_id: str, now: datetime = None) -> Task:
        """
        Close out the escrow of a terminal task.

        Pays the platform wallet the fee earned on approved work (when a
        platform wallet is configured), refunds the remainder to the
        requester, then closes any submission still pending. Fee and refund
        are referenced per task and logged before the task is marked
        settled, so a settlement retried after any failed step replays the
        same receipts instead of moving or losing funds.
        """
        now = now or utcnow()
        task = self.get_task(task_id)
        if not task.is_terminal or task.settled:
            return task

        handle = self.lock_handle(task)
        platform_wallet = self.settings.PLATFORM_WALLET_ID
        fee_due = calculate_fee_due(task.payment_per_task, task.workers_completed, task.platform_fee_percentage)

        if platform_wallet and fee_due > task.fees_collected:
            receipt = self.ledger.release_funds(handle, platform_wallet, fee_due - task.fees_collected,
                                                reference=f"fee:{task_id}")
            self.record_transaction(task, TransactionType.FEE, receipt)

            def collect(t: Task) -> bool:
                if t.fees_collected >= fee_due:
                    return False
                t.amount_released += fee_due - t.fees_collected
                t.fees_collected = fee_due
                t.updated_at = now
                return True

            task, _ = self.update_task(task_id, collect)
            logger.info(f"Collected platform fee {receipt.amount} on task {task_id}")

        refund = self.ledger.refund_remainder(handle, task.requester_id, reference=f"refund:{task_id}")
        if refund.amount > 0:
            self.record_transaction(task, TransactionType.REFUND, refund)

        def finish(t: Task) -> bool:
            if t.settled:
                return False
            t.amount_released += refund.amount
            t.settled = True
            t.updated_at = now
            return True

        task, _ = self.update_task(task_id, finish)
        logger.info(f"Settled task {task_id} ({task.status}): refunded {refund.amount} to {task.requester_id}")

        if self.close_leftovers(task_id, now):
            task = self.get_task(task_id)
        return task

    def close_submission(self, task_id: str, submission_id: str, reviewer_id: str, outcome: str,
                         now: datetime = None) -> Optional[Submission]:
        """
        Reject a pending submission of a terminal task.

        Counters and escrow are left alone: the task no longer has a slot or
        funds for it.

        Returns:
            The closed submission, or None if it had already left pending

        Raises:
            InvalidTransition: the task is still open, in progress or paused
        """
        now = now or utcnow()
        for attempt in range(1, MAX_WRITE_ATTEMPTS + 1):
            task = self.get_task(task_id)
            submission = self.repository.get_submission(submission_id)
            if submission is None or submission.task_id != task_id:
                raise NotFound(f"Submission {submission_id} not found")
            if not task.is_terminal:
                raise InvalidTransition(f"Task {task_id} is {task.status}; its submissions are reviewed, not closed",
                                        status=task.status)
            if not submission.is_pending:
                return None

            task_version, submission_version = task.version, submission.version
            submission.status = SubmissionStatus.REJECTED
            submission.outcome = outcome
            submission.reviewed_by = reviewer_id
            submission.reviewed_at = now
            task.updated_at = now
            try:
                _, closed = self.repository.save_review(task, task_version, submission, submission_version)
            except ConcurrentModification:
                logger.warning(f"Submission {submission_id} changed while closing (attempt {attempt}), retrying")
                continue
            logger.info(f"Closed submission {submission_id} of {task.status} task {task_id} as {outcome}")
            return closed
        raise ConcurrentModification(f"Submission {submission_id} kept changing; gave up after {MAX_WRITE_ATTEMPTS} attempts")

    def close_leftovers(self, task_id: str, now: datetime = None) -> int:
        """Close every submission still pending on a terminal task. Returns how many were closed."""
        # Failures are left for the review sweep, which closes leftovers on a later run
        try:
            pending = [s for s in self.repository.list_submissions(task_id) if s.is_pending]
        except MarketplaceError as e:
            logger.warning(f"Could not list leftover submissions of task {task_id}: {e}")
            return 0

        closed = 0
        for submission in pending:
            try:
                if self.close_submission(task_id, submission.submission_id, SYSTEM_ACTOR.user_id,
                                         ReviewOutcome.CLOSED, now):
                    closed += 1
            except MarketplaceError as e:
                logger.warning(f"Could not close submission {submission.submission_id} of task {task_id}: {e}")
        return closed

    def sweep_expired(self, now: datetime = None) -> Dict[str, int]:
        """
        Expire overdue tasks and retry settlement of terminal tasks whose refund failed.

        A failure on one task is logged and counted; the sweep moves on to the next.

        Returns:
            Counters for the scheduled handler
        """
        now = now or utcnow()
        result = {'checked': 0, 'expired': 0, 'settled': 0, 'failed': 0}

        for task in self.repository.list_tasks_by_status(TaskStatus.ACTIVE):
            if now <= task.deadline:
                continue
            result['checked'] += 1
            try:
                task = self.expire_if_past_deadline(task.task_id, now)
                if task.status == TaskStatus.EXPIRED:
                    result['expired'] += 1
            except MarketplaceError as e:
                logger.warning(f"Could not expire task {task.task_id}: {e}")
                result['failed'] += 1
            except Exception:
                logger.exception(f"Unexpected error expiring task {task.task_id}")
                result['failed'] += 1

        for task in self.repository.list_unsettled_tasks():
            try:
                with self.locks.hold(task.task_id):
                    self.settle(task.task_id, now)
                result['settled'] += 1
            except MarketplaceError as e:
                logger.error(f"Settlement retry failed for task {task.task_id}: {e}")
                result['failed'] += 1
            except Exception:
                logger.exception(f"Unexpected error settling task {task.task_id}")
                result['failed'] += 1

        logger.info(f"Expiry sweep: {result}")
        return result
