"""
Expire Tasks Handler.
Triggered by EventBridge scheduler every 5 minutes.

Expires open and in-progress tasks past their deadline, refunds their unspent
escrow, and retries refunds that failed on earlier runs.
"""
from taskblitz.logging import logger
from taskblitz.service import get_marketplace


def handler(event, context):
    logger.info("Running task expiration check...")
    result = get_marketplace().sweep_expired_tasks()
    logger.info(f"Checked {result['checked']} overdue tasks, expired {result['expired']}, "
                f"settled {result['settled']}, failed {result['failed']}")
    return result
