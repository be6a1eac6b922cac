"""
Escrow ledger interface and in-memory reference implementation.

A ledger locks a requester's funds against a task, releases them to workers
one payout at a time, and refunds whatever is left. Ledger calls are remote
and fallible: the core never retries them itself. Releases carry an
idempotency reference so a retried approval cannot pay twice.
"""
import threading
import time
import uuid
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional

from taskblitz.errors import EscrowOverdraft, InsufficientFunds, LedgerUnavailable, NotFound, ValidationError
from taskblitz.logging import logger
from taskblitz.models import TransactionType, utcnow

ZERO = Decimal('0')


@dataclass(frozen=True)
class LockHandle:
    handle_id: str
    payer: str
    amount: Decimal


@dataclass(frozen=True)
class Receipt:
    receipt_id: str
    handle_id: str
    kind: str
    counterparty: str
    amount: Decimal
    recorded_at: datetime
    reference: Optional[str] = None


class Ledger(ABC):
    """Settlement rail contract consumed by the marketplace core."""

    @abstractmethod
    def lock_funds(self, payer: str, amount: Decimal) -> LockHandle:
        """Move amount from payer into a new escrow. Raises InsufficientFunds or LedgerUnavailable."""

    @abstractmethod
    def release_funds(self, handle: LockHandle, payee: str, amount: Decimal,
                      reference: Optional[str] = None) -> Receipt:
        """
        Pay amount out of escrow to payee. Raises LedgerUnavailable.

        A second call with the same reference returns the original receipt
        without moving funds.
        """

    @abstractmethod
    def refund_remainder(self, handle: LockHandle, payer: str,
                         reference: Optional[str] = None) -> Receipt:
        """
        Return everything left in escrow to payer. An empty escrow yields a zero receipt.

        Like release_funds, a repeated reference returns the original receipt.
        """

    @abstractmethod
    def remaining(self, handle: LockHandle) -> Decimal:
        """Funds still held in escrow."""

    @abstractmethod
    def deposit(self, wallet_id: str, amount: Decimal) -> Decimal:
        """Credit a wallet; returns the new balance."""

    @abstractmethod
    def get_balance(self, wallet_id: str) -> Decimal:
        ...


class InMemoryLedger(Ledger):
    """
    Thread-safe in-process ledger.

    Wallet balances and escrows live in dicts. Failures can be injected per
    operation with fail_next() and calls can be slowed with delay to widen
    race windows in tests.
    """

    def __init__(self, balances: Dict[str, Decimal] = None, delay: float = 0.0):
        self._lock = threading.Lock()
        self._balances = defaultdict(lambda: ZERO)
        for wallet_id, amount in (balances or {}).items():
            self._balances[wallet_id] = Decimal(str(amount))
        self._escrows: Dict[str, Decimal] = {}
        self._by_reference: Dict[tuple, Receipt] = {}
        self._failures: Dict[str, List[Exception]] = defaultdict(list)
        self.receipts: List[Receipt] = []
        self.delay = delay

    # -------------------------------------------------------------------------
    # Wallets
    # -------------------------------------------------------------------------

    def deposit(self, wallet_id: str, amount: Decimal) -> Decimal:
        if amount <= 0:
            raise ValidationError('Amount must be positive')
        with self._lock:
            self._balances[wallet_id] += Decimal(str(amount))
            return self._balances[wallet_id]

    def get_balance(self, wallet_id: str) -> Decimal:
        with self._lock:
            return self._balances[wallet_id]

    def fail_next(self, operation: str, error: Exception = None) -> None:
        """Make the next call to operation ('lock', 'release', 'refund') raise error."""
        self._failures[operation].append(error or LedgerUnavailable('Injected ledger failure'))

    def calls(self, kind: str) -> List[Receipt]:
        return [r for r in self.receipts if r.kind == kind]

    # -------------------------------------------------------------------------
    # Ledger contract
    # -------------------------------------------------------------------------

    def lock_funds(self, payer: str, amount: Decimal) -> LockHandle:
        self._before('lock')
        with self._lock:
            if self._balances[payer] < amount:
                raise InsufficientFunds(f"Wallet {payer} cannot cover {amount}",
                                        balance=str(self._balances[payer]), required=str(amount))
            handle = LockHandle(str(uuid.uuid4()), payer, amount)
            self._balances[payer] -= amount
            self._escrows[handle.handle_id] = amount
            self._record(handle, TransactionType.LOCK, payer, amount)
        logger.info(f"Locked {amount} from {payer} in escrow {handle.handle_id}")
        return handle

    def release_funds(self, handle: LockHandle, payee: str, amount: Decimal,
                      reference: Optional[str] = None) -> Receipt:
        self._before('release')
        with self._lock:
            if reference is not None and (handle.handle_id, reference) in self._by_reference:
                return self._by_reference[(handle.handle_id, reference)]
            held = self._held(handle)
            if amount > held:
                raise EscrowOverdraft(f"Release of {amount} exceeds {held} held in escrow {handle.handle_id}")
            self._escrows[handle.handle_id] = held - amount
            self._balances[payee] += amount
            receipt = self._record(handle, TransactionType.RELEASE, payee, amount, reference)
        logger.info(f"Released {amount} from escrow {handle.handle_id} to {payee}")
        return receipt

    def refund_remainder(self, handle: LockHandle, payer: str,
                         reference: Optional[str] = None) -> Receipt:
        self._before('refund')
        with self._lock:
            if reference is not None and (handle.handle_id, reference) in self._by_reference:
                return self._by_reference[(handle.handle_id, reference)]
            held = self._held(handle)
            self._escrows[handle.handle_id] = ZERO
            self._balances[payer] += held
            receipt = self._record(handle, TransactionType.REFUND, payer, held, reference)
        logger.info(f"Refunded {held} from escrow {handle.handle_id} to {payer}")
        return receipt

    def remaining(self, handle: LockHandle) -> Decimal:
        with self._lock:
            return self._held(handle)

    # -------------------------------------------------------------------------

    def _before(self, operation: str) -> None:
        if self.delay:
            time.sleep(self.delay)
        with self._lock:
            if self._failures[operation]:
                raise self._failures[operation].pop(0)

    def _held(self, handle: LockHandle) -> Decimal:
        if handle.handle_id not in self._escrows:
            raise NotFound(f"Unknown escrow {handle.handle_id}")
        return self._escrows[handle.handle_id]

    def _record(self, handle: LockHandle, kind: str, counterparty: str, amount: Decimal,
                reference: Optional[str] = None) -> Receipt:
        receipt = Receipt(
            receipt_id=str(uuid.uuid4()),
            handle_id=handle.handle_id,
            kind=kind,
            counterparty=counterparty,
            amount=amount,
            recorded_at=utcnow(),
            reference=reference,
        )
        if reference is not None:
            self._by_reference[(handle.handle_id, reference)] = receipt
        self.receipts.append(receipt)
        return receipt
