"""
Caller identity from the Cognito authorizer attached to API Gateway events.
"""
from typing import List, Optional

from taskblitz.models import Actor

# Granted to scheduled jobs only; a token claiming it is ignored
RESERVED_GROUPS = ('system',)


def _claims(event: dict) -> dict:
    try:
        return event['requestContext']['authorizer']['claims'] or {}
    except (KeyError, TypeError):
        return {}


def get_user_sub(event: dict) -> Optional[str]:
    """
    Read the caller's Cognito user id.

    Args:
        event: API Gateway Lambda proxy event

    Returns:
        The ``sub`` claim, or None for an anonymous request
    """
    return _claims(event).get('sub') or None


def get_user_groups(event: dict) -> List[str]:
    """Cognito groups of the caller (requester, worker, admin)."""
    groups = _claims(event).get('cognito:groups') or []
    # API Gateway flattens the list claim into a comma separated string
    if isinstance(groups, str):
        groups = groups.split(',')
    return [g.strip() for g in groups if g and g.strip()]


def get_actor(event: dict) -> Optional[Actor]:
    """Build the calling Actor, or None if the request carries no identity."""
    user_id = get_user_sub(event)
    if not user_id:
        return None
    return Actor(user_id, tuple(g for g in get_user_groups(event) if g not in RESERVED_GROUPS))
