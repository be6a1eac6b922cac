"""
Tests for the task lifecycle: creation, cancellation, moderation, expiry and settlement.
"""
import threading
import time
from datetime import timedelta
from decimal import Decimal
from unittest.mock import patch

import pytest
from botocore.exceptions import ClientError

from taskblitz.errors import (
    ConcurrentModification, InsufficientFunds, InvalidTransition, LedgerUnavailable, NotCancellable,
    ReviewInProgress, StoreUnavailable, TaskNotAcceptingSubmissions, Unauthorized, ValidationError,
)
from taskblitz.lifecycle import can_transition
from taskblitz.locks import KeyedLocks
from taskblitz.models import (
    ReviewOutcome, SubmissionStatus, TaskSpec, TaskStatus, TransactionType, format_timestamp,
)
from taskblitz.service import Marketplace


def submit(marketplace, task, worker, now):
    return marketplace.submit_work(task.task_id, worker, {'type': 'text', 'text': 'cat'}, now)


class TestCreateTask:
    """Tests for task creation and escrow locking."""

    def test_locks_escrow_with_fee(self, make_task, ledger, repository, requester):
        task = make_task()

        assert task.status == TaskStatus.OPEN
        assert task.escrow_amount == Decimal('22.00')
        assert ledger.get_balance(requester.user_id) == Decimal('978.00')
        kinds = [t.kind for t in repository.list_transactions(task.task_id)]
        assert kinds == [TransactionType.LOCK]

    def test_insufficient_funds_creates_nothing(self, make_task, repository):
        with pytest.raises(InsufficientFunds):
            make_task(payment_per_task=Decimal('600.00'))

        assert repository.list_tasks_by_status(TaskStatus.ACTIVE) == []

    def test_ledger_unavailable_creates_nothing(self, make_task, ledger, repository):
        ledger.fail_next('lock')

        with pytest.raises(LedgerUnavailable):
            make_task()

        assert repository.list_tasks_by_status(TaskStatus.ACTIVE) == []

    def test_failed_insert_refunds_escrow(self, make_task, ledger, repository, requester):
        with patch.object(repository, 'insert_task', side_effect=RuntimeError('table missing')):
            with pytest.raises(RuntimeError):
                make_task()

        assert ledger.get_balance(requester.user_id) == Decimal('1000.00')

    @pytest.mark.parametrize('overrides', [
        {'payment_per_task': Decimal('0')},
        {'payment_per_task': Decimal('-1.00')},
        {'payment_per_task': Decimal('0.05')},
        {'payment_per_task': Decimal('1.005')},
        {'payment_per_task': Decimal('NaN')},
        {'workers_needed': 0},
        {'title': '   '},
        {'submission_type': 'video'},
        {'rejection_limit_percentage': 101},
    ])
    def test_invalid_request_rejected_before_locking(self, make_task, ledger, overrides):
        with pytest.raises(ValidationError):
            make_task(**overrides)

        assert ledger.calls(TransactionType.LOCK) == []

    def test_deadline_must_be_in_future(self, make_task, now):
        with pytest.raises(ValidationError):
            make_task(deadline=now)

    def test_defaults(self, marketplace, requester, now):
        spec = TaskSpec(title='Transcribe', payment_per_task=Decimal('1.00'), workers_needed=1)
        task = marketplace.create_task(spec, requester, now)

        assert task.deadline == now + timedelta(days=7)
        assert task.rejection_limit_percentage == 30

    def test_task_request_from_body(self):
        spec = TaskSpec.from_dict({
            'title': 'Tag photos',
            'paymentPerTask': 0.5,
            'workersNeeded': '3',
            'deadline': '2025-04-01T00:00:00Z',
            'submissionType': 'url',
        })

        assert spec.payment_per_task == Decimal('0.5')
        assert spec.workers_needed == 3
        assert spec.submission_type == 'url'
        assert format_timestamp(spec.deadline).startswith('2025-04-01T00:00:00')

    def test_task_request_bad_number(self):
        with pytest.raises(ValidationError):
            TaskSpec.from_dict({'title': 'x', 'paymentPerTask': 'ten', 'workersNeeded': 1})

    @pytest.mark.parametrize('field, value', [
        ('workersNeeded', 2.7),
        ('workersNeeded', '2.7'),
        ('workersNeeded', True),
        ('workersNeeded', None),
        ('workersNeeded', 'Infinity'),
        ('rejectionLimitPercentage', 12.5),
    ])
    def test_task_request_rejects_fractional_counts(self, field, value):
        body = {'title': 'x', 'paymentPerTask': '1.00', 'workersNeeded': 1, field: value}

        with pytest.raises(ValidationError):
            TaskSpec.from_dict(body)

    def test_task_request_accepts_whole_float(self):
        spec = TaskSpec.from_dict({'title': 'x', 'paymentPerTask': '1.00', 'workersNeeded': 3.0,
                                   'rejectionLimitPercentage': '40'})

        assert spec.workers_needed == 3
        assert spec.rejection_limit_percentage == 40


class TestStateMachine:

    def test_allowed_transitions(self):
        assert can_transition(TaskStatus.OPEN, TaskStatus.PAUSED)
        assert can_transition(TaskStatus.IN_PROGRESS, TaskStatus.COMPLETED)
        assert can_transition(TaskStatus.PAUSED, TaskStatus.IN_PROGRESS)
        assert can_transition(TaskStatus.PAUSED, TaskStatus.CANCELLED)

    def test_forbidden_transitions(self):
        assert not can_transition(TaskStatus.OPEN, TaskStatus.COMPLETED)
        assert not can_transition(TaskStatus.PAUSED, TaskStatus.COMPLETED)
        for terminal in TaskStatus.TERMINAL:
            for target in (TaskStatus.OPEN, TaskStatus.IN_PROGRESS, TaskStatus.PAUSED):
                assert not can_transition(terminal, target)


class TestCancel:
    """Tests for cancellation refunds."""

    def test_refunds_unallocated_escrow(self, marketplace, make_task, ledger, requester, workers, now):
        # $5 x 3 at 10% -> escrow $16.50; one approval pays $5; refund $11.50
        task = make_task(payment_per_task=Decimal('5.00'), workers_needed=3)
        submission = submit(marketplace, task, workers[0], now)
        marketplace.approve_submission(submission.submission_id, requester, now)

        task = marketplace.cancel_task(task.task_id, requester, now)

        assert task.status == TaskStatus.CANCELLED
        assert task.settled
        assert [r.amount for r in ledger.calls(TransactionType.REFUND)] == [Decimal('11.50')]
        assert ledger.get_balance(workers[0].user_id) == Decimal('5.00')
        assert ledger.get_balance(requester.user_id) == Decimal('995.00')
        assert ledger.remaining(marketplace.lifecycle.lock_handle(task)) == Decimal('0')

    def test_only_requester_can_cancel(self, marketplace, make_task, worker, now):
        task = make_task()

        with pytest.raises(Unauthorized):
            marketplace.cancel_task(task.task_id, worker, now)

    def test_terminal_task_not_cancellable(self, marketplace, make_task, requester, now):
        task = make_task()
        marketplace.cancel_task(task.task_id, requester, now)

        with pytest.raises(NotCancellable):
            marketplace.cancel_task(task.task_id, requester, now)

    def test_paused_task_not_cancellable(self, marketplace, make_task, requester, admin, now):
        task = make_task()
        marketplace.pause_task(task.task_id, admin, now)

        with pytest.raises(NotCancellable):
            marketplace.cancel_task(task.task_id, requester, now)

    def test_failed_refund_is_retried_by_second_cancel(self, marketplace, make_task, ledger, requester, now):
        task = make_task()
        ledger.fail_next('refund')

        with pytest.raises(LedgerUnavailable):
            marketplace.cancel_task(task.task_id, requester, now)

        stored = marketplace.get_task(task.task_id)
        assert stored.status == TaskStatus.CANCELLED
        assert not stored.settled

        task = marketplace.cancel_task(task.task_id, requester, now)
        assert task.settled
        assert ledger.get_balance(requester.user_id) == Decimal('1000.00')

    def test_refused_while_approval_in_flight(self, marketplace, make_task, repository, requester, now):
        task = make_task()
        task.reservations['sub-1'] = {'at': format_timestamp(now), 'outcome': 'Approved', 'reviewerId': 'r'}
        repository.update_task(task, task.version)

        with pytest.raises(ReviewInProgress) as exc:
            marketplace.cancel_task(task.task_id, requester, now)

        assert isinstance(exc.value, ConcurrentModification)
        assert marketplace.get_task(task.task_id).status == TaskStatus.OPEN


class TestModeration:
    """Tests for admin pause and resume."""

    def test_pause_blocks_new_submissions(self, marketplace, make_task, admin, worker, now):
        task = make_task()
        task = marketplace.pause_task(task.task_id, admin, now)

        assert task.status == TaskStatus.PAUSED
        assert task.paused_from == TaskStatus.OPEN
        with pytest.raises(TaskNotAcceptingSubmissions):
            submit(marketplace, task, worker, now)

    def test_non_admin_cannot_moderate(self, marketplace, make_task, requester, now):
        task = make_task()

        with pytest.raises(Unauthorized):
            marketplace.pause_task(task.task_id, requester, now)
        with pytest.raises(Unauthorized):
            marketplace.resume_task(task.task_id, requester, now)

    def test_resume_restores_previous_status(self, marketplace, make_task, admin, workers, now):
        task = make_task()
        submit(marketplace, task, workers[0], now)
        marketplace.pause_task(task.task_id, admin, now)

        task = marketplace.resume_task(task.task_id, admin, now)

        assert task.status == TaskStatus.IN_PROGRESS
        assert task.paused_from is None

    def test_resume_requires_paused_task(self, marketplace, make_task, admin, now):
        task = make_task()

        with pytest.raises(InvalidTransition):
            marketplace.resume_task(task.task_id, admin, now)

    def test_cannot_pause_terminal_task(self, marketplace, make_task, requester, admin, now):
        task = make_task()
        marketplace.cancel_task(task.task_id, requester, now)

        with pytest.raises(InvalidTransition):
            marketplace.pause_task(task.task_id, admin, now)

    def test_task_filled_while_paused_completes_on_resume(
            self, marketplace, make_task, ledger, requester, admin, workers, now):
        task = make_task(workers_needed=1)
        submission = submit(marketplace, task, workers[0], now)
        marketplace.pause_task(task.task_id, admin, now)

        result = marketplace.approve_submission(submission.submission_id, requester, now)
        assert result.task.status == TaskStatus.PAUSED
        assert ledger.calls(TransactionType.REFUND) == []

        task = marketplace.resume_task(task.task_id, admin, now)

        assert task.status == TaskStatus.COMPLETED
        assert task.settled
        assert [r.amount for r in ledger.calls(TransactionType.REFUND)] == [Decimal('1.00')]


class TestRemove:
    """Tests for admin removal of a task."""

    def test_removes_and_refunds(self, marketplace, make_task, ledger, requester, admin, workers, now):
        task = make_task()
        approved = submit(marketplace, task, workers[0], now)
        marketplace.approve_submission(approved.submission_id, requester, now)
        leftover = submit(marketplace, task, workers[1], now)

        with patch('taskblitz.lifecycle.log_admin_activity') as log_admin_activity:
            task = marketplace.remove_task(task.task_id, admin, 'Spam listing', now)

        assert task.status == TaskStatus.CANCELLED
        assert task.removal_reason == 'Spam listing'
        assert task.settled
        # $22 escrow, $10 already paid to the approved worker
        assert [r.amount for r in ledger.calls(TransactionType.REFUND)] == [Decimal('12.00')]
        assert ledger.get_balance(requester.user_id) == Decimal('990.00')
        assert ledger.get_balance(workers[0].user_id) == Decimal('10.00')
        log_admin_activity.assert_called_once_with(admin.user_id, 'remove_task', task.task_id,
                                                   reason='Spam listing', workersCompleted=1)
        closed = marketplace.get_submission(leftover.submission_id, admin)
        assert closed.status == SubmissionStatus.REJECTED
        assert closed.outcome == ReviewOutcome.CLOSED

    def test_removes_paused_task(self, marketplace, make_task, ledger, requester, admin, now):
        task = make_task()
        marketplace.pause_task(task.task_id, admin, now)

        task = marketplace.remove_task(task.task_id, admin, 'Policy violation', now)

        assert task.status == TaskStatus.CANCELLED
        assert task.paused_from is None
        assert task.settled
        assert ledger.get_balance(requester.user_id) == Decimal('1000.00')

    def test_admin_only(self, marketplace, make_task, requester, now):
        task = make_task()

        with pytest.raises(Unauthorized):
            marketplace.remove_task(task.task_id, requester, 'Mine anyway', now)

        assert marketplace.get_task(task.task_id).status == TaskStatus.OPEN

    @pytest.mark.parametrize('reason', [None, '', '   '])
    def test_reason_required(self, marketplace, make_task, admin, now, reason):
        task = make_task()

        with pytest.raises(ValidationError):
            marketplace.remove_task(task.task_id, admin, reason, now)

    def test_terminal_task_not_removable(self, marketplace, make_task, requester, admin, now):
        task = make_task()
        marketplace.cancel_task(task.task_id, requester, now)

        with pytest.raises(NotCancellable):
            marketplace.remove_task(task.task_id, admin, 'Too late', now)

    def test_refused_while_approval_in_flight(self, marketplace, make_task, repository, admin, now):
        task = make_task()
        task.reservations['sub-1'] = {'at': format_timestamp(now), 'outcome': 'Approved', 'reviewerId': 'r'}
        repository.update_task(task, task.version)

        with pytest.raises(ReviewInProgress):
            marketplace.remove_task(task.task_id, admin, 'Spam', now)

        assert marketplace.get_task(task.task_id).status == TaskStatus.OPEN

    def test_failed_refund_is_retried(self, marketplace, make_task, ledger, requester, admin, now):
        task = make_task()
        ledger.fail_next('refund')

        with pytest.raises(LedgerUnavailable):
            marketplace.remove_task(task.task_id, admin, 'Spam', now)
        assert not marketplace.get_task(task.task_id).settled

        task = marketplace.remove_task(task.task_id, admin, 'Spam', now)

        assert task.settled
        assert ledger.get_balance(requester.user_id) == Decimal('1000.00')


class TestExpiry:
    """Tests for deadline expiry."""

    def test_expires_and_refunds_once(self, marketplace, make_task, ledger, requester, now):
        task = make_task()
        later = now + timedelta(days=8)

        task = marketplace.lifecycle.expire_if_past_deadline(task.task_id, later)
        again = marketplace.lifecycle.expire_if_past_deadline(task.task_id, later)

        assert task.status == TaskStatus.EXPIRED
        assert again.status == TaskStatus.EXPIRED
        assert len(ledger.calls(TransactionType.REFUND)) == 1
        assert ledger.get_balance(requester.user_id) == Decimal('1000.00')

    def test_not_expired_before_deadline(self, marketplace, make_task, now):
        task = make_task()

        task = marketplace.lifecycle.expire_if_past_deadline(task.task_id, now + timedelta(days=6))

        assert task.status == TaskStatus.OPEN

    def test_paused_task_does_not_expire(self, marketplace, make_task, admin, now):
        task = make_task()
        marketplace.pause_task(task.task_id, admin, now)

        task = marketplace.lifecycle.expire_if_past_deadline(task.task_id, now + timedelta(days=8))

        assert task.status == TaskStatus.PAUSED

    def test_expired_task_refuses_submissions(self, marketplace, make_task, worker, now):
        task = make_task()
        marketplace.sweep_expired_tasks(now + timedelta(days=8))

        with pytest.raises(TaskNotAcceptingSubmissions):
            submit(marketplace, task, worker, now + timedelta(days=8))

    def test_sweep_counts_and_retries_settlement(self, marketplace, make_task, ledger, now):
        first = make_task()
        second = make_task(deadline=now + timedelta(days=30))
        later = now + timedelta(days=8)
        ledger.fail_next('refund')
        ledger.fail_next('refund')

        result = marketplace.sweep_expired_tasks(later)

        # Status moved; both refund attempts failed and are left for the next run
        assert result == {'checked': 1, 'expired': 0, 'settled': 0, 'failed': 2}
        assert marketplace.get_task(first.task_id).status == TaskStatus.EXPIRED
        assert not marketplace.get_task(first.task_id).settled

        result = marketplace.sweep_expired_tasks(later)

        assert result == {'checked': 0, 'expired': 0, 'settled': 1, 'failed': 0}
        assert marketplace.get_task(first.task_id).settled
        assert marketplace.get_task(second.task_id).status == TaskStatus.OPEN

    def test_store_error_on_one_task_does_not_stop_the_sweep(self, marketplace, make_task, repository, now):
        first = make_task()
        second = make_task()
        later = now + timedelta(days=8)
        real_update = repository.update_task
        errors = iter([ClientError({'Error': {'Code': 'ProvisionedThroughputExceededException',
                                              'Message': 'Rate exceeded'}}, 'PutItem')])

        def throttled_once(task, expected_version):
            error = next(errors, None)
            if error:
                raise error
            return real_update(task, expected_version)

        with patch.object(repository, 'update_task', side_effect=throttled_once):
            result = marketplace.sweep_expired_tasks(later)

        assert result == {'checked': 2, 'expired': 1, 'settled': 0, 'failed': 1}
        assert marketplace.get_task(first.task_id).status == TaskStatus.OPEN
        assert marketplace.get_task(second.task_id).status == TaskStatus.EXPIRED
        assert marketplace.get_task(second.task_id).settled

        result = marketplace.sweep_expired_tasks(later)

        assert result == {'checked': 1, 'expired': 1, 'settled': 0, 'failed': 0}
        assert marketplace.get_task(first.task_id).settled

    def test_settlement_retry_reads_only_unsettled_tasks(self, marketplace, make_task, repository, ledger,
                                                         requester, now):
        done = make_task()
        marketplace.cancel_task(done.task_id, requester, now)
        stuck = make_task()
        ledger.fail_next('refund')
        with pytest.raises(LedgerUnavailable):
            marketplace.cancel_task(stuck.task_id, requester, now)

        assert [t.task_id for t in repository.list_unsettled_tasks()] == [stuck.task_id]
        with patch.object(repository, 'list_tasks_by_status', wraps=repository.list_tasks_by_status) as by_status:
            result = marketplace.sweep_expired_tasks(now)

        assert result == {'checked': 0, 'expired': 0, 'settled': 1, 'failed': 0}
        assert [c.args[0] for c in by_status.call_args_list] == [TaskStatus.ACTIVE]
        assert repository.list_unsettled_tasks() == []


class TestSettlement:
    """Tests for fee collection and refunds when a task closes."""

    def test_completion_refunds_fee_without_platform_wallet(
            self, marketplace, make_task, ledger, requester, workers, now):
        # $10 x 2 at 10% -> escrow $22; pay $20; refund $2
        task = make_task()
        for worker in workers[:2]:
            submission = submit(marketplace, task, worker, now)
            marketplace.approve_submission(submission.submission_id, requester, now)

        task = marketplace.get_task(task.task_id)
        assert task.status == TaskStatus.COMPLETED
        assert task.amount_released == Decimal('22.00')
        assert [r.amount for r in ledger.calls(TransactionType.RELEASE)] == [Decimal('10.00')] * 2
        assert [r.amount for r in ledger.calls(TransactionType.REFUND)] == [Decimal('2.00')]

    def test_platform_wallet_collects_fee(self, repository, ledger, settings, requester, workers, now):
        settings.PLATFORM_WALLET_ID = 'platform'
        marketplace = Marketplace(repository, ledger, settings)
        spec = TaskSpec(title='Survey', payment_per_task=Decimal('5.00'), workers_needed=3,
                        deadline=now + timedelta(days=1))
        task = marketplace.create_task(spec, requester, now)
        submission = submit(marketplace, task, workers[0], now)
        marketplace.approve_submission(submission.submission_id, requester, now)

        task = marketplace.cancel_task(task.task_id, requester, now)

        assert ledger.get_balance('platform') == Decimal('0.50')
        assert task.fees_collected == Decimal('0.50')
        assert [r.amount for r in ledger.calls(TransactionType.REFUND)] == [Decimal('11.00')]
        kinds = [t.kind for t in repository.list_transactions(task.task_id)]
        assert kinds == [TransactionType.LOCK, TransactionType.RELEASE, TransactionType.FEE, TransactionType.REFUND]

    def test_refund_is_recorded_when_settled_write_fails(self, marketplace, make_task, repository, ledger,
                                                          requester, now):
        task = make_task()
        real_update = repository.update_task

        def refuse_settled(t, expected_version):
            if t.settled:
                raise StoreUnavailable('Could not update task', code='InternalServerError')
            return real_update(t, expected_version)

        with patch.object(repository, 'update_task', side_effect=refuse_settled):
            with pytest.raises(StoreUnavailable):
                marketplace.cancel_task(task.task_id, requester, now)

        stored = marketplace.get_task(task.task_id)
        assert stored.status == TaskStatus.CANCELLED
        assert not stored.settled

        task = marketplace.cancel_task(task.task_id, requester, now)

        assert task.settled
        assert task.amount_released == task.escrow_amount == Decimal('22.00')
        assert len(ledger.calls(TransactionType.REFUND)) == 1
        refunds = [t for t in repository.list_transactions(task.task_id) if t.kind == TransactionType.REFUND]
        assert [(t.amount, t.reference_id) for t in refunds] == [(Decimal('22.00'), f"refund:{task.task_id}")]
        assert ledger.get_balance(requester.user_id) == Decimal('1000.00')

    def test_fee_is_recorded_when_collect_write_fails(self, repository, ledger, settings, requester, workers, now):
        settings.PLATFORM_WALLET_ID = 'platform'
        marketplace = Marketplace(repository, ledger, settings)
        spec = TaskSpec(title='Survey', payment_per_task=Decimal('5.00'), workers_needed=3,
                        deadline=now + timedelta(days=1))
        task = marketplace.create_task(spec, requester, now)
        submission = submit(marketplace, task, workers[0], now)
        marketplace.approve_submission(submission.submission_id, requester, now)
        real_update = repository.update_task

        def refuse_fee(t, expected_version):
            if t.fees_collected:
                raise StoreUnavailable('Could not update task')
            return real_update(t, expected_version)

        with patch.object(repository, 'update_task', side_effect=refuse_fee):
            with pytest.raises(StoreUnavailable):
                marketplace.cancel_task(task.task_id, requester, now)

        result = marketplace.sweep_expired_tasks(now)

        task = marketplace.get_task(task.task_id)
        assert result['settled'] == 1
        assert task.settled
        assert task.fees_collected == Decimal('0.50')
        assert task.amount_released == task.escrow_amount
        assert ledger.get_balance('platform') == Decimal('0.50')
        kinds = [t.kind for t in repository.list_transactions(task.task_id)]
        assert kinds == [TransactionType.LOCK, TransactionType.RELEASE, TransactionType.FEE, TransactionType.REFUND]


class TestKeyedLocks:
    """Tests for the per-task lock registry."""

    def test_entry_dropped_after_release(self):
        locks = KeyedLocks()

        with locks.hold('task-1'):
            with locks.hold('task-1'):
                assert len(locks) == 1
            assert len(locks) == 1

        assert len(locks) == 0

    def test_waiting_thread_gets_the_same_lock(self):
        locks = KeyedLocks()
        order = []

        def second():
            with locks.hold('task-1'):
                order.append('second')

        with locks.hold('task-1'):
            thread = threading.Thread(target=second)
            thread.start()
            for _ in range(200):
                if locks._locks['task-1'].users == 2:
                    break
                time.sleep(0.005)
            order.append('first')
        thread.join(timeout=5)

        assert order == ['first', 'second']
        assert len(locks) == 0

    def test_engine_leaves_no_locks_behind(self, marketplace, make_task, requester, workers, now):
        task = make_task()
        submission = submit(marketplace, task, workers[0], now)
        marketplace.approve_submission(submission.submission_id, requester, now)
        marketplace.cancel_task(task.task_id, requester, now)
        marketplace.sweep_expired_tasks(now + timedelta(days=8))

        assert len(marketplace.lifecycle.locks) == 0
