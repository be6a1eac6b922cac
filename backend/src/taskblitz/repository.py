"""
Store interface for tasks, submissions and escrow transactions, plus an
in-memory implementation.

Updates are optimistic: callers pass the version they read and the store
refuses the write with ConcurrentModification if the record moved on.
"""
import copy
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from taskblitz.errors import ConcurrentModification, DuplicateSubmission
from taskblitz.models import Submission, SubmissionStatus, Task, Transaction


class Repository(ABC):
    """Narrow persistence interface used by the engines."""

    @abstractmethod
    def insert_task(self, task: Task) -> Task:
        ...

    @abstractmethod
    def get_task(self, task_id: str) -> Optional[Task]:
        ...

    @abstractmethod
    def update_task(self, task: Task, expected_version: int) -> Task:
        """Write task if the stored version equals expected_version; returns the stored copy."""

    @abstractmethod
    def insert_submission(self, submission: Submission) -> Submission:
        """Insert submission; DuplicateSubmission if the (task, worker) pair already exists."""

    @abstractmethod
    def get_submission(self, submission_id: str) -> Optional[Submission]:
        ...

    @abstractmethod
    def save_review(self, task: Task, task_version: int,
                    submission: Submission, submission_version: int) -> Tuple[Task, Submission]:
        """Write a task and one of its submissions atomically, both guarded by version."""

    @abstractmethod
    def list_submissions(self, task_id: str) -> List[Submission]:
        ...

    @abstractmethod
    def list_tasks_by_status(self, statuses: Iterable[str]) -> List[Task]:
        ...

    @abstractmethod
    def list_unsettled_tasks(self) -> List[Task]:
        """Terminal tasks whose escrow has not been settled yet."""

    @abstractmethod
    def list_pending_submissions(self, submitted_before: datetime) -> List[Submission]:
        ...

    @abstractmethod
    def record_transaction(self, transaction: Transaction) -> None:
        """Record an escrow movement; recording the same transaction_id again is a no-op."""

    @abstractmethod
    def list_transactions(self, task_id: str) -> List[Transaction]:
        ...


class InMemoryRepository(Repository):
    """Dict-backed store. Hands out copies so callers never share its records."""

    def __init__(self):
        self._lock = threading.Lock()
        self._tasks: Dict[str, Task] = {}
        self._submissions: Dict[str, Submission] = {}
        self._pairs: Dict[str, str] = {}
        self._transactions: Dict[str, Transaction] = {}

    def insert_task(self, task: Task) -> Task:
        with self._lock:
            if task.task_id in self._tasks:
                raise ConcurrentModification(f"Task {task.task_id} already exists")
            self._tasks[task.task_id] = copy.deepcopy(task)
            return copy.deepcopy(task)

    def get_task(self, task_id: str) -> Optional[Task]:
        with self._lock:
            task = self._tasks.get(task_id)
            return copy.deepcopy(task) if task else None

    def update_task(self, task: Task, expected_version: int) -> Task:
        with self._lock:
            self._check_task(task, expected_version)
            return self._write_task(task, expected_version)

    def insert_submission(self, submission: Submission) -> Submission:
        with self._lock:
            if submission.pair_key in self._pairs:
                raise DuplicateSubmission(
                    f"Worker {submission.worker_id} already submitted to task {submission.task_id}",
                    submissionId=self._pairs[submission.pair_key],
                )
            self._pairs[submission.pair_key] = submission.submission_id
            self._submissions[submission.submission_id] = copy.deepcopy(submission)
            return copy.deepcopy(submission)

    def get_submission(self, submission_id: str) -> Optional[Submission]:
        with self._lock:
            submission = self._submissions.get(submission_id)
            return copy.deepcopy(submission) if submission else None

    def save_review(self, task: Task, task_version: int,
                    submission: Submission, submission_version: int) -> Tuple[Task, Submission]:
        with self._lock:
            self._check_task(task, task_version)
            self._check_submission(submission, submission_version)
            return (self._write_task(task, task_version),
                    self._write_submission(submission, submission_version))

    def list_submissions(self, task_id: str) -> List[Submission]:
        with self._lock:
            return sorted(
                (copy.deepcopy(s) for s in self._submissions.values() if s.task_id == task_id),
                key=lambda s: s.submitted_at,
            )

    def list_tasks_by_status(self, statuses: Iterable[str]) -> List[Task]:
        wanted = set(statuses)
        with self._lock:
            return [copy.deepcopy(t) for t in self._tasks.values() if t.status in wanted]

    def list_unsettled_tasks(self) -> List[Task]:
        with self._lock:
            return [copy.deepcopy(t) for t in self._tasks.values() if t.is_terminal and not t.settled]

    def list_pending_submissions(self, submitted_before: datetime) -> List[Submission]:
        with self._lock:
            return sorted(
                (copy.deepcopy(s) for s in self._submissions.values()
                 if s.status == SubmissionStatus.PENDING and s.submitted_at <= submitted_before),
                key=lambda s: s.submitted_at,
            )

    def record_transaction(self, transaction: Transaction) -> None:
        with self._lock:
            self._transactions.setdefault(transaction.transaction_id, copy.deepcopy(transaction))

    def list_transactions(self, task_id: str) -> List[Transaction]:
        with self._lock:
            return [copy.deepcopy(t) for t in self._transactions.values() if t.task_id == task_id]

    # -------------------------------------------------------------------------
    # Must be called with self._lock held
    # -------------------------------------------------------------------------

    def _check_task(self, task: Task, expected_version: int) -> None:
        stored = self._tasks.get(task.task_id)
        if stored is None or stored.version != expected_version:
            raise ConcurrentModification(f"Task {task.task_id} changed (expected version {expected_version})")

    def _check_submission(self, submission: Submission, expected_version: int) -> None:
        stored = self._submissions.get(submission.submission_id)
        if stored is None or stored.version != expected_version:
            raise ConcurrentModification(
                f"Submission {submission.submission_id} changed (expected version {expected_version})"
            )

    def _write_task(self, task: Task, expected_version: int) -> Task:
        stored = copy.deepcopy(task)
        stored.version = expected_version + 1
        self._tasks[task.task_id] = stored
        return copy.deepcopy(stored)

    def _write_submission(self, submission: Submission, expected_version: int) -> Submission:
        stored = copy.deepcopy(submission)
        stored.version = expected_version + 1
        self._submissions[submission.submission_id] = stored
        return copy.deepcopy(stored)
