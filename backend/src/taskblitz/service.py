"""
Marketplace facade used by the Lambda handlers and scheduled jobs.

Wires the lifecycle and review engines to one repository and one ledger.
Handlers obtain the process-wide instance with get_marketplace(), which
builds the DynamoDB-backed stack on first use.
"""
from datetime import datetime, timedelta
from typing import Dict, List

from taskblitz.config import config
from taskblitz.dynamo import DynamoRepository
from taskblitz.errors import NotFound, Unauthorized
from taskblitz.ledger import Ledger
from taskblitz.lifecycle import TaskLifecycleEngine
from taskblitz.locks import KeyedLocks
from taskblitz.models import Actor, Submission, Task, TaskSpec, Transaction, utcnow
from taskblitz.repository import Repository
from taskblitz.review import RejectionStatus, ReviewResult, SubmissionReviewEngine, rejection_status
from taskblitz.wallets import WalletLedger


class Marketplace:
    """Entry point for every marketplace operation."""

    def __init__(self, repository: Repository, ledger: Ledger, settings=config):
        self.repository = repository
        self.ledger = ledger
        self.settings = settings
        self.lifecycle = TaskLifecycleEngine(repository, ledger, settings, KeyedLocks())
        self.review = SubmissionReviewEngine(repository, ledger, self.lifecycle, settings)

    # Tasks

    def create_task(self, spec: TaskSpec, requester: Actor, now: datetime = None) -> Task:
        return self.lifecycle.create_task(spec, requester, now)

    def get_task(self, task_id: str) -> Task:
        return self.lifecycle.get_task(task_id)

    def cancel_task(self, task_id: str, actor: Actor, now: datetime = None) -> Task:
        return self.lifecycle.cancel(task_id, actor, now)

    def pause_task(self, task_id: str, actor: Actor, now: datetime = None) -> Task:
        return self.lifecycle.pause(task_id, actor, now)

    def resume_task(self, task_id: str, actor: Actor, now: datetime = None) -> Task:
        return self.lifecycle.resume(task_id, actor, now)

    def remove_task(self, task_id: str, actor: Actor, reason: str, now: datetime = None) -> Task:
        return self.lifecycle.remove(task_id, actor, reason, now)

    def get_rejection_status(self, task_id: str) -> RejectionStatus:
        return rejection_status(self.get_task(task_id))

    def list_submissions(self, task_id: str, actor: Actor) -> List[Submission]:
        """Submissions of a task, visible to its requester and admins."""
        task = self.get_task(task_id)
        if actor.user_id != task.requester_id and not actor.is_admin:
            raise Unauthorized(f"Only the requester can list submissions of task {task_id}")
        return self.repository.list_submissions(task_id)

    def list_transactions(self, task_id: str, actor: Actor) -> List[Transaction]:
        task = self.get_task(task_id)
        if actor.user_id != task.requester_id and not actor.is_admin:
            raise Unauthorized(f"Only the requester can view the escrow of task {task_id}")
        return self.repository.list_transactions(task_id)

    # Submissions

    def submit_work(self, task_id: str, worker: Actor, payload, now: datetime = None) -> Submission:
        return self.review.submit(task_id, worker, payload, now)

    def get_submission(self, submission_id: str, actor: Actor) -> Submission:
        submission = self.review.get_submission(submission_id)
        if actor.user_id == submission.worker_id or actor.is_admin:
            return submission
        if actor.user_id == self.get_task(submission.task_id).requester_id:
            return submission
        # Hide other workers' submissions entirely
        raise NotFound(f"Submission {submission_id} not found")

    def approve_submission(self, submission_id: str, reviewer: Actor, now: datetime = None) -> ReviewResult:
        return self.review.approve(submission_id, reviewer, now)

    def reject_submission(self, submission_id: str, reviewer: Actor, now: datetime = None) -> ReviewResult:
        return self.review.reject(submission_id, reviewer, now)

    # Scheduled jobs

    def sweep_expired_tasks(self, now: datetime = None) -> Dict[str, int]:
        return self.lifecycle.sweep_expired(now or utcnow())

    def sweep_stale_submissions(self, now: datetime = None) -> Dict[str, int]:
        """Auto-approve submissions pending past the review timeout and recover stalled approvals."""
        now = now or utcnow()
        recovered = self.review.recover_reservations(now)
        timeout = timedelta(hours=self.settings.AUTO_APPROVAL_TIMEOUT_HOURS)
        result = self.review.review_pending_older_than(timeout, now)
        result['recovered'] = recovered['recovered']
        result['failed'] += recovered['failed']
        return result


_marketplace = None


def build_marketplace(settings=config) -> Marketplace:
    return Marketplace(DynamoRepository(), WalletLedger(), settings)


def get_marketplace() -> Marketplace:
    """Get or create the process-wide marketplace."""
    global _marketplace
    if _marketplace is None:
        _marketplace = build_marketplace()
    return _marketplace
