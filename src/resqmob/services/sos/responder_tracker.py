"""
Responder Tracker

Records responder status changes against an alert. Distance and ETA are
recomputed from the responder's current position on every update.
"""

import asyncio
import logging
import math
from datetime import datetime, timedelta
from typing import Optional

from resqmob.models.alert import Alert, GeoPoint, Responder, ResponderStatus
from .alert_store import AlertStore
from .collaborators import UserDirectory
from .errors import NotFoundError
from .geo_index import distance_between
from .notification_dispatcher import NotificationDispatcher
from .settings import SOSSettings


def estimate_eta_minutes(distance_meters: float, speed_kmh: float = 30.0) -> int:
    """Minutes to cover the distance at the given average speed, rounded up"""
    return math.ceil(distance_meters / (speed_kmh * 1000) * 60)


class ResponderTracker:
    """Responder state transitions for SOS alerts"""

    def __init__(self, store: AlertStore, directory: UserDirectory,
                 dispatcher: NotificationDispatcher, settings: SOSSettings):
        self.logger = logging.getLogger(__name__)
        self.store = store
        self.directory = directory
        self.dispatcher = dispatcher
        self.settings = settings

    async def respond(self, alert_id: str, user_id: str, status: ResponderStatus,
                      location: Optional[GeoPoint] = None) -> Responder:
        """
        Record a user's response to an alert

        Args:
            alert_id: Alert being responded to
            user_id: Responding user
            status: New responder status
            location: Responder position; the last known position is used when omitted

        Returns:
            The stored responder entry

        Raises:
            NotFoundError: Alert missing or no longer active
        """
        alert = await self.store.get(alert_id)
        if not alert.is_active():
            raise NotFoundError(f"Alert {alert_id} is no longer active")

        if location is None:
            location = await self._last_known_location(user_id)

        if location is None:
            self.logger.warning(f"No location for responder {user_id}, using distance 0")
            distance = 0.0
        else:
            distance = distance_between(location, alert.location)

        now = datetime.utcnow()
        responder = Responder(
            user_id=user_id,
            alert_id=alert_id,
            status=status,
            distance_meters=distance,
            updated_at=now,
        )
        if status == ResponderStatus.RESPONDING:
            responder.eta_minutes = estimate_eta_minutes(distance, self.settings.responder_speed_kmh)
            responder.estimated_arrival = now + timedelta(minutes=responder.eta_minutes)

        updated = await self.store.upsert_responder(alert_id, responder)
        stored = updated.get_responder(user_id)

        self.logger.info(
            f"User {user_id} is {status.value} to alert {alert_id} "
            f"({distance:.0f}m away, {updated.responder_count} responders)"
        )

        await self._notify_owner(updated, user_id, status)
        return stored

    async def _last_known_location(self, user_id: str) -> Optional[GeoPoint]:
        try:
            user = await asyncio.wait_for(
                self.directory.get_user(user_id),
                timeout=self.settings.query_timeout_seconds
            )
        except asyncio.TimeoutError:
            self.logger.warning(f"Location lookup timed out for responder {user_id}")
            return None
        except Exception as e:
            self.logger.warning(f"Location lookup failed for responder {user_id}: {e}")
            return None
        return user.location if user else None

    async def _notify_owner(self, alert: Alert, user_id: str, status: ResponderStatus):
        try:
            user = await self.directory.get_user(user_id)
        except Exception as e:
            self.logger.warning(f"Could not load responder {user_id}: {e}")
            user = None

        name = user.display_name if user else None
        report = await self.dispatcher.notify_owner(alert, name, status)
        if report.error:
            self.logger.warning(f"Owner notification failed: {report.error}")
