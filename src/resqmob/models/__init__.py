"""
Data models for ResQMob
"""

from .alert import (
    Alert,
    AlertStatus,
    AlertType,
    DeliveryChannel,
    DeliveryOutcome,
    EmergencyContact,
    GeoPoint,
    NotificationRecord,
    Responder,
    ResponderStatus,
    UserRef,
)

__all__ = [
    'Alert',
    'AlertStatus',
    'AlertType',
    'DeliveryChannel',
    'DeliveryOutcome',
    'EmergencyContact',
    'GeoPoint',
    'NotificationRecord',
    'Responder',
    'ResponderStatus',
    'UserRef',
]
