"""
Tests for the DynamoDB wallet ledger with a mocked low-level client.
"""
from decimal import Decimal
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError

from taskblitz.errors import EscrowOverdraft, InsufficientFunds, LedgerUnavailable, ValidationError
from taskblitz.ledger import LockHandle
from taskblitz.wallets import WalletLedger

HANDLE = LockHandle('escrow-1', 'requester-1', Decimal('22.00'))


def cancelled(*reasons):
    return ClientError(
        {
            'Error': {'Code': 'TransactionCanceledException', 'Message': 'Transaction cancelled'},
            'CancellationReasons': [{'Code': r} for r in reasons],
        },
        'TransactWriteItems'
    )


@pytest.fixture
def client():
    return MagicMock()


@pytest.fixture
def wallets(client):
    return WalletLedger(table_name='wallets', client=client)


class TestLockFunds:

    def test_debits_payer_and_opens_escrow(self, wallets, client):
        handle = wallets.lock_funds('requester-1', Decimal('22.00'))

        debit, escrow = client.transact_write_items.call_args.kwargs['TransactItems']
        assert debit['Update']['ConditionExpression'] == 'balance >= :amount'
        assert debit['Update']['ExpressionAttributeValues'][':amount'] == {'N': '22.00'}
        assert escrow['Put']['Item']['walletId'] == {'S': f'ESCROW#{handle.handle_id}'}
        assert handle.amount == Decimal('22.00')

    def test_insufficient_balance(self, wallets, client):
        client.transact_write_items.side_effect = cancelled('ConditionalCheckFailed', 'None')

        with pytest.raises(InsufficientFunds):
            wallets.lock_funds('requester-1', Decimal('22.00'))

    def test_network_failure(self, wallets, client):
        client.transact_write_items.side_effect = EndpointConnectionError(endpoint_url='https://dynamodb')

        with pytest.raises(LedgerUnavailable):
            wallets.lock_funds('requester-1', Decimal('22.00'))


class TestReleaseFunds:

    def test_pays_worker_with_receipt(self, wallets, client):
        receipt = wallets.release_funds(HANDLE, 'worker-1', Decimal('10.00'), reference='sub-1')

        debit, credit, record = client.transact_write_items.call_args.kwargs['TransactItems']
        assert debit['Update']['Key'] == {'walletId': {'S': 'ESCROW#escrow-1'}}
        assert credit['Update']['Key'] == {'walletId': {'S': 'worker-1'}}
        assert record['Put']['Item']['walletId'] == {'S': 'RECEIPT#escrow-1#sub-1'}
        assert receipt.amount == Decimal('10.00')

    def test_repeated_reference_returns_first_receipt(self, wallets, client):
        client.transact_write_items.side_effect = cancelled('None', 'None', 'ConditionalCheckFailed')
        client.get_item.return_value = {'Item': {
            'walletId': {'S': 'RECEIPT#escrow-1#sub-1'},
            'receiptId': {'S': 'receipt-1'},
            'handleId': {'S': 'escrow-1'},
            'type': {'S': 'release'},
            'counterparty': {'S': 'worker-1'},
            'amount': {'N': '10.00'},
            'createdAt': {'S': '2025-03-01T12:00:00.000000+00:00'},
            'referenceId': {'S': 'sub-1'},
        }}

        receipt = wallets.release_funds(HANDLE, 'worker-1', Decimal('10.00'), reference='sub-1')

        assert receipt.receipt_id == 'receipt-1'
        assert receipt.reference == 'sub-1'

    def test_overdraft(self, wallets, client):
        client.transact_write_items.side_effect = cancelled('ConditionalCheckFailed', 'None', 'None')

        with pytest.raises(EscrowOverdraft):
            wallets.release_funds(HANDLE, 'worker-1', Decimal('50.00'), reference='sub-1')

    def test_throttled(self, wallets, client):
        client.transact_write_items.side_effect = cancelled('None', 'ThrottlingError', 'None')

        with pytest.raises(LedgerUnavailable):
            wallets.release_funds(HANDLE, 'worker-1', Decimal('10.00'), reference='sub-1')


class TestRefundRemainder:

    def test_drains_escrow(self, wallets, client):
        client.get_item.return_value = {'Item': {'walletId': {'S': 'ESCROW#escrow-1'}, 'balance': {'N': '12.00'}}}

        receipt = wallets.refund_remainder(HANDLE, 'requester-1')

        debit, credit, _ = client.transact_write_items.call_args.kwargs['TransactItems']
        assert debit['Update']['ConditionExpression'] == 'balance = :amount'
        assert credit['Update']['Key'] == {'walletId': {'S': 'requester-1'}}
        assert receipt.amount == Decimal('12.00')

    def test_empty_escrow_gives_zero_receipt(self, wallets, client):
        client.get_item.return_value = {'Item': {'walletId': {'S': 'ESCROW#escrow-1'}, 'balance': {'N': '0'}}}

        receipt = wallets.refund_remainder(HANDLE, 'requester-1')

        assert receipt.amount == Decimal('0')
        client.transact_write_items.assert_not_called()

    def test_rereads_after_concurrent_movement(self, wallets, client):
        client.get_item.side_effect = [
            {'Item': {'balance': {'N': '12.00'}}},
            {'Item': {'balance': {'N': '2.00'}}},
        ]
        client.transact_write_items.side_effect = [cancelled('ConditionalCheckFailed', 'None', 'None'), {}]

        receipt = wallets.refund_remainder(HANDLE, 'requester-1')

        assert receipt.amount == Decimal('2.00')
        assert client.transact_write_items.call_count == 2


class TestDeposit:

    def test_returns_new_balance(self, wallets, client):
        client.update_item.return_value = {'Attributes': {'balance': {'N': '150.00'}}}

        assert wallets.deposit('requester-1', Decimal('50.00')) == Decimal('150.00')

    @pytest.mark.parametrize('amount', [Decimal('0'), Decimal('-5'), Decimal('10000.01')])
    def test_rejects_bad_amounts(self, wallets, client, amount):
        with pytest.raises(ValidationError):
            wallets.deposit('requester-1', amount)

        client.update_item.assert_not_called()
