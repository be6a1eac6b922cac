"""
Request parsing and response rendering shared by the Lambda handlers.
"""
import json
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict

from taskblitz.errors import MarketplaceError, ValidationError

CORS_HEADERS = {
    'Access-Control-Allow-Origin': '*',
    'Access-Control-Allow-Credentials': True,
    'Content-Type': 'application/json'
}


class DecimalEncoder(json.JSONEncoder):
    """
    JSON encoder for Decimal and datetime values.

    Decimals are always sent as strings so money keeps its exact digits;
    counts are plain ints in the records and never reach this encoder.
    """

    def default(self, o):
        if isinstance(o, Decimal):
            return str(o)
        if isinstance(o, datetime):
            return o.isoformat()
        return super().default(o)


def format_response(
    status_code: int,
    body: Any,
    headers: Dict[str, str] = None
) -> Dict[str, Any]:
    """
    Build an API Gateway proxy response.

    Args:
        status_code: HTTP status code
        body: JSON-serializable body; Decimals and datetimes are encoded
        headers: Extra headers, merged over the CORS defaults

    Returns:
        Lambda proxy integration response
    """
    return {
        'statusCode': status_code,
        'headers': {**CORS_HEADERS, **(headers or {})},
        'body': json.dumps(body, cls=DecimalEncoder)
    }


def error_response(error: MarketplaceError) -> Dict[str, Any]:
    """Render a marketplace error with its own status code."""
    headers = {'Retry-After': '1'} if error.retryable else None
    return format_response(error.status_code, error.to_dict(), headers)


def parse_body(event: dict) -> dict:
    """
    Parse the JSON body of an API Gateway event.

    Raises:
        ValidationError: body is not a JSON object
    """
    body = event.get('body') or '{}'
    if isinstance(body, dict):
        return body
    try:
        parsed = json.loads(body)
    except (json.JSONDecodeError, TypeError):
        raise ValidationError('Request body must be valid JSON')
    if not isinstance(parsed, dict):
        raise ValidationError('Request body must be a JSON object')
    return parsed


def get_path_param(event: dict, param_name: str) -> str:
    """Read a required path parameter (ValidationError if the route did not supply it)."""
    value = (event.get('pathParameters') or {}).get(param_name)
    if not value:
        raise ValidationError(f'Missing path parameter: {param_name}')
    return value
