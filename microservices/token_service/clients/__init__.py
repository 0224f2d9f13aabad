"""
Token Service Clients

HTTP clients for the services token_service calls.
"""

from .notification_client import NotificationClient

__all__ = ["NotificationClient"]
