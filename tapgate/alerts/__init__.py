"""
Alerts module for tapgate.

Desktop notifications for repeated verification failures and bypasses.
"""

from .notifier import Notifier, APP_NAME

__all__ = [
    'Notifier',
    'APP_NAME',
]
