"""
SOS data models for ResQMob

Defines the alert, responder and notification structures shared by the
SOS engine components.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
import uuid


class AlertType(Enum):
    """Emergency alert types"""
    MEDICAL = "medical"
    FIRE = "fire"
    POLICE = "police"
    GENERAL = "general"
    ACCIDENT = "accident"
    VIOLENCE = "violence"


class AlertStatus(Enum):
    """Alert lifecycle status"""
    ACTIVE = "active"
    RESOLVED = "resolved"
    FALSE_ALARM = "false_alarm"

    @property
    def is_terminal(self) -> bool:
        return self is not AlertStatus.ACTIVE


class ResponderStatus(Enum):
    """Responder state"""
    RESPONDING = "responding"
    ARRIVED = "arrived"
    HELPING = "helping"
    UNAVAILABLE = "unavailable"


class DeliveryChannel(Enum):
    """Notification delivery channel"""
    PUSH = "push"
    SMS = "sms"


class DeliveryOutcome(Enum):
    """Result of a single notification delivery"""
    DELIVERED = "delivered"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class GeoPoint:
    """A position on the Earth's surface"""
    latitude: float
    longitude: float
    accuracy: Optional[float] = None
    address: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {'latitude': self.latitude, 'longitude': self.longitude}
        if self.accuracy is not None:
            data['accuracy'] = self.accuracy
        if self.address:
            data['address'] = self.address
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'GeoPoint':
        return cls(
            latitude=float(data['latitude']),
            longitude=float(data['longitude']),
            accuracy=data.get('accuracy'),
            address=data.get('address'),
        )


@dataclass
class UserRef:
    """User as seen by the SOS engine"""
    user_id: str
    name: str = ""
    location: Optional[GeoPoint] = None
    location_updated_at: Optional[datetime] = None
    push_token: Optional[str] = None
    notifications_enabled: bool = True

    @property
    def display_name(self) -> str:
        return self.name or "Someone"


@dataclass
class EmergencyContact:
    """Emergency contact of an alert owner"""
    name: str
    phone: str
    relationship: str = ""
    is_primary: bool = False
    notification_enabled: bool = True


@dataclass
class Responder:
    """A user assisting with an alert"""
    user_id: str
    alert_id: str
    status: ResponderStatus = ResponderStatus.RESPONDING
    distance_meters: float = 0.0
    eta_minutes: Optional[int] = None
    estimated_arrival: Optional[datetime] = None
    updated_at: datetime = field(default_factory=datetime.utcnow)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'user_id': self.user_id,
            'alert_id': self.alert_id,
            'status': self.status.value,
            'distance_meters': self.distance_meters,
            'eta_minutes': self.eta_minutes,
            'estimated_arrival': self.estimated_arrival.isoformat() if self.estimated_arrival else None,
            'updated_at': self.updated_at.isoformat(),
        }


@dataclass
class Alert:
    """SOS alert"""
    owner_id: str
    alert_type: AlertType
    urgency_level: int
    location: GeoPoint
    notification_radius: float
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: AlertStatus = AlertStatus.ACTIVE
    message: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.utcnow)
    resolved_at: Optional[datetime] = None
    escalation_level: int = 1
    responders: List[Responder] = field(default_factory=list)
    responder_count: int = 0
    confirmations: int = 1
    is_anonymous: bool = False
    media_urls: List[str] = field(default_factory=list)
    chat_room_id: Optional[str] = None
    updated_at: datetime = field(default_factory=datetime.utcnow)
    last_activity_at: datetime = field(default_factory=datetime.utcnow)

    def is_active(self) -> bool:
        """Check if alert is still active"""
        return self.status == AlertStatus.ACTIVE

    def get_responder(self, user_id: str) -> Optional[Responder]:
        for responder in self.responders:
            if responder.user_id == user_id:
                return responder
        return None

    def touch(self, when: Optional[datetime] = None):
        """Record activity on the alert"""
        when = when or datetime.utcnow()
        self.updated_at = when
        self.last_activity_at = when

    def to_dict(self) -> Dict[str, Any]:
        """Convert alert to dictionary"""
        return {
            'id': self.id,
            'owner_id': None if self.is_anonymous else self.owner_id,
            'type': self.alert_type.value,
            'urgency_level': self.urgency_level,
            'status': self.status.value,
            'location': self.location.to_dict(),
            'message': self.message,
            'created_at': self.created_at.isoformat(),
            'resolved_at': self.resolved_at.isoformat() if self.resolved_at else None,
            'escalation_level': self.escalation_level,
            'notification_radius': self.notification_radius,
            'responders': [r.to_dict() for r in self.responders],
            'responder_count': self.responder_count,
            'confirmations': self.confirmations,
            'is_anonymous': self.is_anonymous,
            'media_urls': list(self.media_urls),
            'chat_room_id': self.chat_room_id,
        }


@dataclass
class NotificationRecord:
    """Outcome of one notification delivery, kept for observability"""
    recipient: str
    alert_id: str
    channel: DeliveryChannel
    outcome: DeliveryOutcome
    title: str = ""
    error: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.utcnow)

    @property
    def failed(self) -> bool:
        return self.outcome == DeliveryOutcome.FAILED
