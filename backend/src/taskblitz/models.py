"""
Data models and status constants for the TaskBlitz marketplace.
Based on the task lifecycle: Open → InProgress → Completed, with Paused, Cancelled and Expired side exits.

Records map to DynamoDB items with camelCase attribute names, Decimal money
and ISO-8601 UTC timestamps.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional, Tuple, Union

from taskblitz.errors import ValidationError


class TaskStatus:
    """Task lifecycle statuses."""
    OPEN = 'open'
    IN_PROGRESS = 'in_progress'
    COMPLETED = 'completed'
    PAUSED = 'paused'
    CANCELLED = 'cancelled'
    EXPIRED = 'expired'

    ACTIVE = frozenset({OPEN, IN_PROGRESS})
    TERMINAL = frozenset({COMPLETED, CANCELLED, EXPIRED})


class SubmissionStatus:
    """Submission review statuses."""
    PENDING = 'pending'
    APPROVED = 'approved'
    REJECTED = 'rejected'


class ReviewOutcome:
    """How a submission left the pending state."""
    APPROVED = 'Approved'
    REJECTED = 'Rejected'
    AUTO_APPROVED_OVER_LIMIT = 'AutoApprovedOverLimit'
    AUTO_APPROVED_BY_TIMEOUT = 'AutoApprovedByTimeout'
    # Left pending when its task reached a terminal status
    CLOSED = 'ClosedWithTask'

    APPROVALS = frozenset({APPROVED, AUTO_APPROVED_OVER_LIMIT, AUTO_APPROVED_BY_TIMEOUT})


class TransactionType:
    """Escrow movements recorded against a task."""
    LOCK = 'lock'
    RELEASE = 'release'
    FEE = 'fee'
    REFUND = 'refund'


class SubmissionType:
    """Kinds of work a task accepts."""
    TEXT = 'text'
    URL = 'url'
    FILE = 'file'

    ALL = frozenset({TEXT, URL, FILE})


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat(timespec='microseconds')


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp; naive values are taken as UTC."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace('Z', '+00:00'))
    except ValueError:
        raise ValidationError(f"Invalid timestamp: {value}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# =============================================================================
# Submission payloads
# =============================================================================

@dataclass(frozen=True)
class TextPayload:
    text: str
    kind = SubmissionType.TEXT

    def to_dict(self) -> Dict[str, str]:
        return {'type': self.kind, 'text': self.text}


@dataclass(frozen=True)
class UrlPayload:
    url: str
    kind = SubmissionType.URL

    def to_dict(self) -> Dict[str, str]:
        return {'type': self.kind, 'url': self.url}


@dataclass(frozen=True)
class FileRefPayload:
    file_url: str
    kind = SubmissionType.FILE

    def to_dict(self) -> Dict[str, str]:
        return {'type': self.kind, 'fileUrl': self.file_url}


Payload = Union[TextPayload, UrlPayload, FileRefPayload]


def payload_from_dict(data: Dict[str, Any]) -> Payload:
    """
    Build a submission payload from its tagged dict form.

    Args:
        data: {"type": "text", "text": ...} | {"type": "url", "url": ...} |
              {"type": "file", "fileUrl": ...}

    Returns:
        The matching payload variant

    Raises:
        ValidationError: unknown type, missing field, or fields of another type present
    """
    if not isinstance(data, dict):
        raise ValidationError('Submission payload must be an object')

    kind = data.get('type')
    fields = {
        SubmissionType.TEXT: ('text', TextPayload),
        SubmissionType.URL: ('url', UrlPayload),
        SubmissionType.FILE: ('fileUrl', FileRefPayload),
    }
    if kind not in fields:
        raise ValidationError(f"Unknown submission type: {kind}")

    key, payload_cls = fields[kind]
    value = data.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"Submission of type '{kind}' requires a non-empty '{key}'")

    extra = [k for k in data if k not in ('type', key)]
    if extra:
        raise ValidationError(f"Unexpected fields for '{kind}' submission: {', '.join(sorted(extra))}")

    if kind in (SubmissionType.URL, SubmissionType.FILE) and not value.startswith(('http://', 'https://')):
        raise ValidationError(f"'{key}' must be an http(s) URL")

    return payload_cls(value.strip())


# =============================================================================
# Records
# =============================================================================

@dataclass(frozen=True)
class Actor:
    """Authenticated caller of a core operation."""
    user_id: str
    groups: Tuple[str, ...] = ()

    @property
    def is_admin(self) -> bool:
        return 'admin' in self.groups

    @property
    def is_system(self) -> bool:
        return 'system' in self.groups


SYSTEM_ACTOR = Actor('system', ('system',))


def _integer(value: Any, name: str) -> int:
    """Parse a whole number from a request field; 2.7 and "2.7" are rejected, 3.0 is not."""
    if isinstance(value, bool):
        raise ValidationError(f'{name} must be an integer')
    try:
        number = Decimal(str(value))
        if not number.is_finite() or number != number.to_integral_value():
            raise ValidationError(f'{name} must be an integer')
    except ArithmeticError:
        raise ValidationError(f'{name} must be an integer')
    return int(number)


@dataclass
class TaskSpec:
    """Requester input for a new task."""
    title: str
    payment_per_task: Decimal
    workers_needed: int
    deadline: Optional[datetime] = None
    description: str = ''
    category: str = ''
    submission_type: str = SubmissionType.TEXT
    rejection_limit_percentage: Optional[int] = None

    @classmethod
    def from_dict(cls, body: Dict[str, Any]) -> 'TaskSpec':
        try:
            payment = Decimal(str(body.get('paymentPerTask')))
        except ArithmeticError:
            raise ValidationError('paymentPerTask must be a number')
        workers_needed = _integer(body.get('workersNeeded'), 'workersNeeded')

        limit = body.get('rejectionLimitPercentage')
        if limit is not None:
            limit = _integer(limit, 'rejectionLimitPercentage')

        return cls(
            title=str(body.get('title') or ''),
            payment_per_task=payment,
            workers_needed=workers_needed,
            deadline=parse_timestamp(body.get('deadline')),
            description=str(body.get('description') or ''),
            category=str(body.get('category') or ''),
            submission_type=body.get('submissionType', SubmissionType.TEXT),
            rejection_limit_percentage=limit,
        )


@dataclass
class Task:
    task_id: str
    requester_id: str
    title: str
    payment_per_task: Decimal
    workers_needed: int
    escrow_amount: Decimal
    platform_fee_percentage: Decimal
    rejection_limit_percentage: int
    deadline: datetime
    created_at: datetime
    escrow_handle: str
    submission_type: str = SubmissionType.TEXT
    description: str = ''
    category: str = ''
    status: str = TaskStatus.OPEN
    workers_completed: int = 0
    workers_rejected: int = 0
    amount_released: Decimal = Decimal('0')
    fees_collected: Decimal = Decimal('0')
    # submissionId -> {'at': iso timestamp, 'outcome': ..., 'reviewerId': ...}
    reservations: Dict[str, Dict[str, str]] = field(default_factory=dict)
    paused_from: Optional[str] = None
    removal_reason: Optional[str] = None
    settled: bool = False
    updated_at: Optional[datetime] = None
    version: int = 0

    @property
    def is_active(self) -> bool:
        return self.status in TaskStatus.ACTIVE

    @property
    def is_terminal(self) -> bool:
        return self.status in TaskStatus.TERMINAL

    @property
    def remaining_escrow(self) -> Decimal:
        return self.escrow_amount - self.amount_released

    @property
    def slots_remaining(self) -> int:
        return self.workers_needed - self.workers_completed

    def to_item(self) -> Dict[str, Any]:
        item = {
            'taskId': self.task_id,
            'requesterId': self.requester_id,
            'title': self.title,
            'description': self.description,
            'category': self.category,
            'submissionType': self.submission_type,
            'paymentPerTask': self.payment_per_task,
            'workersNeeded': self.workers_needed,
            'workersCompleted': self.workers_completed,
            'workersRejected': self.workers_rejected,
            'rejectionLimitPercentage': self.rejection_limit_percentage,
            'escrowAmount': self.escrow_amount,
            'escrowHandle': self.escrow_handle,
            'platformFeePercentage': self.platform_fee_percentage,
            'amountReleased': self.amount_released,
            'feesCollected': self.fees_collected,
            'reservations': dict(self.reservations),
            'status': self.status,
            'pausedFrom': self.paused_from,
            'removalReason': self.removal_reason,
            'settled': self.settled,
            'deadline': format_timestamp(self.deadline),
            'createdAt': format_timestamp(self.created_at),
            'updatedAt': format_timestamp(self.updated_at),
            'version': self.version,
        }
        # Sparse key of SettlementIndex; absent once the escrow is closed out
        if self.is_terminal and not self.settled:
            item['settlementPending'] = self.status
        return item

    def to_dict(self) -> Dict[str, Any]:
        """API view of the task, without escrow internals."""
        view = self.to_item()
        for key in ('escrowHandle', 'reservations', 'version', 'settlementPending'):
            view.pop(key, None)
        view['slotsRemaining'] = self.slots_remaining
        view['remainingEscrow'] = self.remaining_escrow
        return view

    @classmethod
    def from_item(cls, item: Dict[str, Any]) -> 'Task':
        return cls(
            task_id=item['taskId'],
            requester_id=item['requesterId'],
            title=item.get('title', ''),
            description=item.get('description', ''),
            category=item.get('category', ''),
            submission_type=item.get('submissionType', SubmissionType.TEXT),
            payment_per_task=Decimal(str(item['paymentPerTask'])),
            workers_needed=int(item['workersNeeded']),
            workers_completed=int(item.get('workersCompleted', 0)),
            workers_rejected=int(item.get('workersRejected', 0)),
            rejection_limit_percentage=int(item['rejectionLimitPercentage']),
            escrow_amount=Decimal(str(item['escrowAmount'])),
            escrow_handle=item['escrowHandle'],
            platform_fee_percentage=Decimal(str(item['platformFeePercentage'])),
            amount_released=Decimal(str(item.get('amountReleased', 0))),
            fees_collected=Decimal(str(item.get('feesCollected', 0))),
            reservations={k: dict(v) for k, v in (item.get('reservations') or {}).items()},
            status=item['status'],
            paused_from=item.get('pausedFrom'),
            removal_reason=item.get('removalReason'),
            settled=bool(item.get('settled', False)),
            deadline=parse_timestamp(item['deadline']),
            created_at=parse_timestamp(item['createdAt']),
            updated_at=parse_timestamp(item.get('updatedAt')),
            version=int(item.get('version', 0)),
        )


@dataclass
class Submission:
    submission_id: str
    task_id: str
    worker_id: str
    payload: Payload
    submitted_at: datetime
    status: str = SubmissionStatus.PENDING
    reviewed_at: Optional[datetime] = None
    reviewed_by: Optional[str] = None
    outcome: Optional[str] = None
    version: int = 0

    @property
    def is_pending(self) -> bool:
        return self.status == SubmissionStatus.PENDING

    @property
    def pair_key(self) -> str:
        return f"{self.task_id}#{self.worker_id}"

    def to_item(self) -> Dict[str, Any]:
        return {
            'submissionId': self.submission_id,
            'submissionKey': self.pair_key,
            'taskId': self.task_id,
            'workerId': self.worker_id,
            'payload': self.payload.to_dict(),
            'status': self.status,
            'outcome': self.outcome,
            'reviewedBy': self.reviewed_by,
            'submittedAt': format_timestamp(self.submitted_at),
            'reviewedAt': format_timestamp(self.reviewed_at),
            'version': self.version,
        }

    def to_dict(self) -> Dict[str, Any]:
        view = self.to_item()
        view.pop('submissionKey')
        view.pop('version')
        return view

    @classmethod
    def from_item(cls, item: Dict[str, Any]) -> 'Submission':
        return cls(
            submission_id=item['submissionId'],
            task_id=item['taskId'],
            worker_id=item['workerId'],
            payload=payload_from_dict(dict(item['payload'])),
            status=item['status'],
            outcome=item.get('outcome'),
            reviewed_by=item.get('reviewedBy'),
            submitted_at=parse_timestamp(item['submittedAt']),
            reviewed_at=parse_timestamp(item.get('reviewedAt')),
            version=int(item.get('version', 0)),
        )


@dataclass
class Transaction:
    transaction_id: str
    task_id: str
    kind: str
    amount: Decimal
    counterparty: str
    recorded_at: datetime
    reference_id: Optional[str] = None

    def to_item(self) -> Dict[str, Any]:
        return {
            'transactionId': self.transaction_id,
            'taskId': self.task_id,
            'type': self.kind,
            'amount': self.amount,
            'counterparty': self.counterparty,
            'referenceId': self.reference_id,
            'createdAt': format_timestamp(self.recorded_at),
        }

    @classmethod
    def from_item(cls, item: Dict[str, Any]) -> 'Transaction':
        return cls(
            transaction_id=item['transactionId'],
            task_id=item['taskId'],
            kind=item['type'],
            amount=Decimal(str(item['amount'])),
            counterparty=item['counterparty'],
            reference_id=item.get('referenceId'),
            recorded_at=parse_timestamp(item['createdAt']),
        )
