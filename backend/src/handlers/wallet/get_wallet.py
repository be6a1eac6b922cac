from taskblitz.auth import get_actor
from taskblitz.errors import MarketplaceError
from taskblitz.logging import logger
from taskblitz.service import get_marketplace
from taskblitz.utils import error_response, format_response


def handler(event, context):
    """
    Handler to get current user's wallet balance.
    GET /wallet
    """
    try:
        user = get_actor(event)
        if user is None:
            return format_response(401, {'error': 'Unauthorized', 'message': 'Missing identity'})

        balance = get_marketplace().ledger.get_balance(user.user_id)

        return format_response(200, {
            "walletId": user.user_id,
            "balance": balance,
            "currency": "USD"
        })

    except MarketplaceError as e:
        return error_response(e)
    except Exception as e:
        logger.exception(f"Error getting wallet: {e}")
        return format_response(500, {"error": "InternalError", "message": "Internal Server Error"})
