# Services Module for the Escrow Ledger
# Contains the business logic services

from services.notification_service import NotificationService, NotificationType

__all__ = [
    'NotificationService',
    'NotificationType',
]
