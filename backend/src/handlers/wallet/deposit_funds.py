"""
Deposit Funds Handler - Mock payment deposit.
POST /wallet/deposit
"""
from decimal import Decimal, InvalidOperation

from taskblitz.auth import get_actor
from taskblitz.errors import MarketplaceError, ValidationError
from taskblitz.logging import log_event, logger
from taskblitz.service import get_marketplace
from taskblitz.utils import error_response, format_response, parse_body


def handler(event, context):
    """
    POST /wallet/deposit
    Body: { "amount": 100.00 }

    Mock deposit - in production this would integrate with Stripe/PayPal.
    """
    log_event(event)
    try:
        user = get_actor(event)
        if user is None:
            return format_response(401, {'error': 'Unauthorized', 'message': 'Missing identity'})

        amount = parse_body(event).get('amount')
        if amount is None:
            raise ValidationError('Missing amount')
        try:
            amount = Decimal(str(amount))
        except InvalidOperation:
            raise ValidationError('Invalid amount format')
        if not amount.is_finite() or amount != amount.quantize(Decimal('0.01')):
            raise ValidationError('Amount must be a whole number of cents')

        new_balance = get_marketplace().ledger.deposit(user.user_id, amount)
        logger.info(f"Deposited {amount} to {user.user_id}")

        return format_response(200, {
            'message': 'Deposit successful',
            'depositedAmount': amount,
            'newBalance': new_balance
        })

    except MarketplaceError as e:
        return error_response(e)
    except Exception as e:
        logger.exception(f"Error depositing funds: {e}")
        return format_response(500, {'error': 'InternalError', 'message': 'Internal Server Error'})
