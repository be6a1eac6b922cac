"""
Auto-Approve Submissions Handler.
Triggered by EventBridge scheduler every hour.

Approves submissions left pending longer than AUTO_APPROVAL_TIMEOUT_HOURS so
workers are paid even when the requester never reviews.
"""
from taskblitz.config import config
from taskblitz.logging import logger
from taskblitz.service import get_marketplace


def handler(event, context):
    logger.info(f"Auto-approving submissions pending over {config.AUTO_APPROVAL_TIMEOUT_HOURS}h...")
    result = get_marketplace().sweep_stale_submissions()
    logger.info(f"Checked {result['checked']}, approved {result['approved']}, "
                f"skipped {result['skipped']}, failed {result['failed']}")
    return result
