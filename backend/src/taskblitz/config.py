"""
Configuration module for the marketplace core and its Lambda handlers.
Loads all environment variables needed by the platform.
"""
import os
from decimal import Decimal


class Config:
    """Centralized configuration from environment variables."""

    # AWS Region
    AWS_REGION = os.environ.get('AWS_REGION', 'us-east-1')

    # DynamoDB Tables
    TASKS_TABLE = os.environ.get('TASKS_TABLE', '')
    SUBMISSIONS_TABLE = os.environ.get('SUBMISSIONS_TABLE', '')
    WALLETS_TABLE = os.environ.get('WALLETS_TABLE', '')
    TRANSACTIONS_TABLE = os.environ.get('TRANSACTIONS_TABLE', '')

    # Escrow and fees
    PLATFORM_FEE_PERCENTAGE = Decimal(os.environ.get('PLATFORM_FEE_PERCENTAGE', '10'))
    PLATFORM_WALLET_ID = os.environ.get('PLATFORM_WALLET_ID', '')  # Empty = fee stays in escrow
    MINIMUM_TASK_PAYMENT = Decimal(os.environ.get('MINIMUM_TASK_PAYMENT', '0.10'))

    # Review policy
    REJECTION_LIMIT_PERCENTAGE = int(os.environ.get('REJECTION_LIMIT_PERCENTAGE', '30'))
    AUTO_APPROVAL_TIMEOUT_HOURS = int(os.environ.get('AUTO_APPROVAL_TIMEOUT_HOURS', '72'))
    RESERVATION_LEASE_SECONDS = int(os.environ.get('RESERVATION_LEASE_SECONDS', '300'))

    # Task defaults
    DEFAULT_TASK_DURATION_DAYS = int(os.environ.get('DEFAULT_TASK_DURATION_DAYS', '7'))

    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')


config = Config()
