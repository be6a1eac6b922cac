"""
DynamoDB wallet ledger.

Wallet balances live in the wallets table. Each escrow is its own wallet row
(ESCROW#<handleId>) and each payout leaves a receipt row
(RECEIPT#<handleId>#<reference>). Every movement is one transact_write_items
call with a conditional debit, so a balance never goes negative and a release
never overdraws its escrow.
"""
import uuid
from decimal import Decimal
from typing import Any, Dict, List, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from taskblitz.config import config
from taskblitz.errors import EscrowOverdraft, InsufficientFunds, LedgerUnavailable, ValidationError
from taskblitz.ledger import Ledger, LockHandle, Receipt
from taskblitz.logging import logger
from taskblitz.models import TransactionType, format_timestamp, parse_timestamp, utcnow

ESCROW_PREFIX = 'ESCROW#'
RECEIPT_PREFIX = 'RECEIPT#'
MAXIMUM_DEPOSIT = Decimal('10000')
REFUND_ATTEMPTS = 3


def cancellation_codes(error: ClientError) -> Optional[List[str]]:
    """Per-item failure codes of a cancelled transaction, or None for other errors."""
    if error.response.get('Error', {}).get('Code') != 'TransactionCanceledException':
        return None
    return [reason.get('Code', 'None') for reason in error.response.get('CancellationReasons', [])]


def condition_failed(codes: Optional[List[str]], index: int) -> bool:
    return bool(codes) and len(codes) > index and codes[index] == 'ConditionalCheckFailed'


class WalletLedger(Ledger):
    """Ledger backed by the wallets table."""

    def __init__(self, table_name: str = None, client=None):
        self.table_name = table_name or config.WALLETS_TABLE
        self._client = client

    @property
    def client(self):
        """Get or create the DynamoDB client."""
        if self._client is None:
            self._client = boto3.client('dynamodb', region_name=config.AWS_REGION)
        return self._client

    # =========================================================================
    # Wallets
    # =========================================================================

    def deposit(self, wallet_id: str, amount: Decimal) -> Decimal:
        """
        Credit a wallet (mock deposit, no external payment provider).

        Returns:
            New wallet balance
        """
        if amount <= 0:
            raise ValidationError('Amount must be positive')
        if amount > MAXIMUM_DEPOSIT:
            raise ValidationError(f'Maximum deposit is ${MAXIMUM_DEPOSIT}')
        try:
            response = self.client.update_item(
                TableName=self.table_name,
                Key={'walletId': {'S': wallet_id}},
                UpdateExpression='ADD balance :amount SET updatedAt = :ts',
                ExpressionAttributeValues={
                    ':amount': {'N': str(amount)},
                    ':ts': {'S': format_timestamp(utcnow())}
                },
                ReturnValues='ALL_NEW'
            )
        except (ClientError, BotoCoreError) as e:
            raise LedgerUnavailable(f"Deposit to {wallet_id} failed: {e}") from e
        return Decimal(response['Attributes']['balance']['N'])

    def get_balance(self, wallet_id: str) -> Decimal:
        item = self._get(wallet_id)
        return Decimal(item['balance']['N']) if item and 'balance' in item else Decimal('0')

    # =========================================================================
    # Ledger contract
    # =========================================================================

    def lock_funds(self, payer: str, amount: Decimal) -> LockHandle:
        handle = LockHandle(str(uuid.uuid4()), payer, amount)
        timestamp = format_timestamp(utcnow())

        try:
            self.client.transact_write_items(
                TransactItems=[
                    # Debit the requester (with balance check)
                    {
                        'Update': {
                            'TableName': self.table_name,
                            'Key': {'walletId': {'S': payer}},
                            'UpdateExpression': 'SET balance = balance - :amount, updatedAt = :ts',
                            'ConditionExpression': 'balance >= :amount',
                            'ExpressionAttributeValues': {
                                ':amount': {'N': str(amount)},
                                ':ts': {'S': timestamp}
                            }
                        }
                    },
                    # Open the escrow wallet
                    {
                        'Put': {
                            'TableName': self.table_name,
                            'Item': {
                                'walletId': {'S': ESCROW_PREFIX + handle.handle_id},
                                'balance': {'N': str(amount)},
                                'lockedAmount': {'N': str(amount)},
                                'payer': {'S': payer},
                                'createdAt': {'S': timestamp}
                            },
                            'ConditionExpression': 'attribute_not_exists(walletId)'
                        }
                    }
                ]
            )
        except ClientError as e:
            codes = cancellation_codes(e)
            if condition_failed(codes, 0):
                raise InsufficientFunds(f"Wallet {payer} cannot cover {amount}", required=str(amount))
            raise LedgerUnavailable(f"Escrow lock failed: {e}") from e
        except BotoCoreError as e:
            raise LedgerUnavailable(f"Escrow lock failed: {e}") from e

        logger.info(f"Locked {amount} from {payer} in escrow {handle.handle_id}")
        return handle

    def release_funds(self, handle: LockHandle, payee: str, amount: Decimal,
                      reference: Optional[str] = None) -> Receipt:
        receipt_key = f"{RECEIPT_PREFIX}{handle.handle_id}#{reference or uuid.uuid4()}"
        receipt = Receipt(
            receipt_id=str(uuid.uuid4()),
            handle_id=handle.handle_id,
            kind=TransactionType.RELEASE,
            counterparty=payee,
            amount=amount,
            recorded_at=utcnow(),
            reference=reference,
        )

        try:
            self.client.transact_write_items(
                TransactItems=[
                    self._debit_escrow(handle, 'SET balance = balance - :amount', 'balance >= :amount', amount),
                    self._credit(payee, amount),
                    self._put_receipt(receipt_key, receipt),
                ]
            )
        except ClientError as e:
            codes = cancellation_codes(e)
            if condition_failed(codes, 2):
                # Same reference already paid out
                existing = self._get(receipt_key)
                if existing:
                    logger.info(f"Release {reference} on escrow {handle.handle_id} already applied")
                    return self._receipt_from_item(existing)
            if condition_failed(codes, 0):
                raise EscrowOverdraft(f"Release of {amount} exceeds escrow {handle.handle_id}")
            raise LedgerUnavailable(f"Release from escrow {handle.handle_id} failed: {e}") from e
        except BotoCoreError as e:
            raise LedgerUnavailable(f"Release from escrow {handle.handle_id} failed: {e}") from e

        logger.info(f"Released {amount} from escrow {handle.handle_id} to {payee}")
        return receipt

    def refund_remainder(self, handle: LockHandle, payer: str,
                         reference: Optional[str] = None) -> Receipt:
        receipt_key = f"{RECEIPT_PREFIX}{handle.handle_id}#{reference or 'refund#' + str(uuid.uuid4())}"
        if reference is not None:
            existing = self._get(receipt_key)
            if existing:
                logger.info(f"Refund {reference} on escrow {handle.handle_id} already applied")
                return self._receipt_from_item(existing)

        for _ in range(REFUND_ATTEMPTS):
            held = self.remaining(handle)
            receipt = Receipt(
                receipt_id=str(uuid.uuid4()),
                handle_id=handle.handle_id,
                kind=TransactionType.REFUND,
                counterparty=payer,
                amount=held,
                recorded_at=utcnow(),
                reference=reference,
            )
            if held <= 0:
                return receipt

            try:
                # Drain exactly what was read; a concurrent movement fails the condition
                self.client.transact_write_items(
                    TransactItems=[
                        self._debit_escrow(handle, 'SET balance = :zero', 'balance = :amount', held),
                        self._credit(payer, held),
                        self._put_receipt(receipt_key, receipt),
                    ]
                )
            except ClientError as e:
                codes = cancellation_codes(e)
                if condition_failed(codes, 2):
                    existing = self._get(receipt_key)
                    if existing:
                        logger.info(f"Refund {reference} on escrow {handle.handle_id} already applied")
                        return self._receipt_from_item(existing)
                if condition_failed(codes, 0):
                    logger.warning(f"Escrow {handle.handle_id} changed during refund, re-reading")
                    continue
                raise LedgerUnavailable(f"Refund of escrow {handle.handle_id} failed: {e}") from e
            except BotoCoreError as e:
                raise LedgerUnavailable(f"Refund of escrow {handle.handle_id} failed: {e}") from e

            logger.info(f"Refunded {held} from escrow {handle.handle_id} to {payer}")
            return receipt

        raise LedgerUnavailable(f"Escrow {handle.handle_id} kept changing during refund")

    def remaining(self, handle: LockHandle) -> Decimal:
        item = self._get(ESCROW_PREFIX + handle.handle_id)
        if not item:
            raise LedgerUnavailable(f"Escrow {handle.handle_id} not found")
        return Decimal(item['balance']['N'])

    # =========================================================================
    # Transaction items
    # =========================================================================

    def _debit_escrow(self, handle: LockHandle, update: str, condition: str, amount: Decimal) -> Dict[str, Any]:
        values = {':amount': {'N': str(amount)}}
        if ':zero' in update:
            values[':zero'] = {'N': '0'}
        return {
            'Update': {
                'TableName': self.table_name,
                'Key': {'walletId': {'S': ESCROW_PREFIX + handle.handle_id}},
                'UpdateExpression': update,
                'ConditionExpression': condition,
                'ExpressionAttributeValues': values
            }
        }

    def _credit(self, wallet_id: str, amount: Decimal) -> Dict[str, Any]:
        return {
            'Update': {
                'TableName': self.table_name,
                'Key': {'walletId': {'S': wallet_id}},
                'UpdateExpression': 'ADD balance :amount SET updatedAt = :ts',
                'ExpressionAttributeValues': {
                    ':amount': {'N': str(amount)},
                    ':ts': {'S': format_timestamp(utcnow())}
                }
            }
        }

    def _put_receipt(self, key: str, receipt: Receipt) -> Dict[str, Any]:
        item = {
            'walletId': {'S': key},
            'receiptId': {'S': receipt.receipt_id},
            'handleId': {'S': receipt.handle_id},
            'type': {'S': receipt.kind},
            'counterparty': {'S': receipt.counterparty},
            'amount': {'N': str(receipt.amount)},
            'createdAt': {'S': format_timestamp(receipt.recorded_at)}
        }
        if receipt.reference:
            item['referenceId'] = {'S': receipt.reference}
        return {
            'Put': {
                'TableName': self.table_name,
                'Item': item,
                'ConditionExpression': 'attribute_not_exists(walletId)'
            }
        }

    def _get(self, wallet_id: str) -> Optional[Dict[str, Any]]:
        try:
            response = self.client.get_item(
                TableName=self.table_name,
                Key={'walletId': {'S': wallet_id}},
                ConsistentRead=True
            )
        except (ClientError, BotoCoreError) as e:
            raise LedgerUnavailable(f"Could not read wallet {wallet_id}: {e}") from e
        return response.get('Item')

    @staticmethod
    def _receipt_from_item(item: Dict[str, Any]) -> Receipt:
        return Receipt(
            receipt_id=item['receiptId']['S'],
            handle_id=item['handleId']['S'],
            kind=item['type']['S'],
            counterparty=item['counterparty']['S'],
            amount=Decimal(item['amount']['N']),
            recorded_at=parse_timestamp(item['createdAt']['S']),
            reference=item.get('referenceId', {}).get('S'),
        )
