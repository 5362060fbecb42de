"""
SOS engine tunables
"""

from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, Optional


@dataclass
class SOSSettings:
    """Engine tunables, read from the ``sos`` configuration section"""
    base_radius_meters: float = 1000.0
    escalation_interval_seconds: float = 180.0
    max_escalation_level: int = 5
    escalation_growth_factor: float = 0.5
    responder_speed_kmh: float = 30.0
    location_timeout_seconds: float = 10.0
    query_timeout_seconds: float = 5.0
    dispatch_concurrency: int = 20
    alert_expiry_hours: Optional[float] = 24.0
    expiry_check_interval_seconds: float = 300.0
    max_location_age_hours: Optional[float] = 24.0
    nearby_alerts_radius_meters: float = 10000.0

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'SOSSettings':
        data = data or {}
        known = {name for name in cls.__dataclass_fields__}
        return cls(**{key: value for key, value in data.items() if key in known})

    @classmethod
    def from_config(cls, config_manager) -> 'SOSSettings':
        return cls.from_dict(config_manager.get_section('sos'))

    def initial_radius(self, urgency_level: int) -> float:
        return self.base_radius_meters * urgency_level

    def escalated_radius(self, current_radius: float, escalation_level: int) -> float:
        return current_radius * (1 + escalation_level * self.escalation_growth_factor)

    @property
    def alert_expiry(self) -> Optional[timedelta]:
        if self.alert_expiry_hours is None:
            return None
        return timedelta(hours=self.alert_expiry_hours)

    @property
    def max_location_age(self) -> Optional[timedelta]:
        if self.max_location_age_hours is None:
            return None
        return timedelta(hours=self.max_location_age_hours)
