"""
SOS alert lifecycle and fan-out engine
"""

from .alert_lifecycle import AlertLifecycleController
from .alert_store import AlertStore, InMemoryAlertStore, SqliteAlertStore
from .errors import (
    ConflictError, DispatchError, InvalidTransitionError, LocationUnavailableError,
    NotFoundError, PermissionDeniedError, SOSError
)
from .escalation_scheduler import EscalationScheduler
from .factory import SOSEngine, build_engine
from .geo_index import GeoIndex, haversine_distance
from .notification_dispatcher import DispatchReport, NotificationDispatcher
from .responder_tracker import ResponderTracker
from .settings import SOSSettings

__all__ = [
    'AlertLifecycleController',
    'AlertStore',
    'InMemoryAlertStore',
    'SqliteAlertStore',
    'ConflictError',
    'DispatchError',
    'InvalidTransitionError',
    'LocationUnavailableError',
    'NotFoundError',
    'PermissionDeniedError',
    'SOSError',
    'EscalationScheduler',
    'SOSEngine',
    'build_engine',
    'GeoIndex',
    'haversine_distance',
    'DispatchReport',
    'NotificationDispatcher',
    'ResponderTracker',
    'SOSSettings',
]
