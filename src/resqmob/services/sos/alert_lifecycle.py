"""
SOS Alert Lifecycle Controller

Top-level state machine of an alert: none -> active -> resolved | false_alarm.
Orchestrates creation (locate, persist, notify nearby users and emergency
contacts, open the coordination room, start escalation), responses,
manual escalation, resolution and the inactivity expiry sweep.

Alert state is always committed before notifications go out; notification
failures are logged and never undo a state change.
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from resqmob.core.logging import LogContext, get_structured_logger
from resqmob.models.alert import Alert, AlertStatus, AlertType, GeoPoint, Responder, ResponderStatus
from .alert_store import AlertStore
from .collaborators import ChatRoomCreator, LocationResolver, ReverseGeocoder
from .errors import LocationUnavailableError
from .escalation_scheduler import EscalationScheduler
from .geo_index import GeoIndex, distance_between
from .notification_dispatcher import DispatchReport, NotificationDispatcher
from .responder_tracker import ResponderTracker
from .settings import SOSSettings


MIN_URGENCY = 1
MAX_URGENCY = 5


class AlertLifecycleController:
    """Entry point for every SOS operation"""

    def __init__(self, store: AlertStore, geo_index: GeoIndex,
                 dispatcher: NotificationDispatcher, scheduler: EscalationScheduler,
                 tracker: ResponderTracker, location_resolver: LocationResolver,
                 settings: SOSSettings,
                 chat_rooms: Optional[ChatRoomCreator] = None,
                 geocoder: Optional[ReverseGeocoder] = None):
        self.logger = logging.getLogger(__name__)
        self.audit = get_structured_logger('services.sos.audit')
        self.store = store
        self.geo_index = geo_index
        self.dispatcher = dispatcher
        self.scheduler = scheduler
        self.tracker = tracker
        self.location_resolver = location_resolver
        self.settings = settings
        self.chat_rooms = chat_rooms
        self.geocoder = geocoder

        self.stats = {
            'alerts_created': 0,
            'alerts_resolved': 0,
            'alerts_expired': 0,
            'responses': 0,
            'dispatch_warnings': 0,
        }

        self._running = False
        self._expiry_task: Optional[asyncio.Task] = None

    async def start(self):
        """Start escalation and the inactivity sweep, re-arming timers of active alerts"""
        if self._running:
            return

        self._running = True
        await self.scheduler.start()

        active = await self.store.list_active()
        for alert in active:
            self.scheduler.register(alert)
        if active:
            self.logger.info(f"Resumed escalation for {len(active)} active alerts")

        if self.settings.alert_expiry is not None:
            self._expiry_task = asyncio.create_task(self._expiry_loop())

        self.logger.info("SOS lifecycle controller started")

    async def stop(self):
        """Stop background work and close transports"""
        self._running = False

        if self._expiry_task:
            self._expiry_task.cancel()
            try:
                await self._expiry_task
            except asyncio.CancelledError:
                pass
            self._expiry_task = None

        await self.scheduler.stop()
        await self.dispatcher.close()
        self.logger.info("SOS lifecycle controller stopped")

    async def create_alert(self, owner_id: str, alert_type: Union[AlertType, str],
                           urgency_level: int, message: Optional[str] = None,
                           is_anonymous: bool = False,
                           media_urls: Optional[List[str]] = None) -> Alert:
        """
        Raise a new SOS alert

        Args:
            owner_id: User raising the alert
            alert_type: Emergency type
            urgency_level: 1 (lowest) to 5 (highest)
            message: Optional free text
            is_anonymous: Hide the owner's identity from other users
            media_urls: Attached media references

        Returns:
            The created alert

        Raises:
            ValueError: Invalid type or urgency
            LocationUnavailableError: Position could not be resolved, nothing persisted
            ConflictError: Owner already has an active alert
        """
        alert_type = AlertType(alert_type)
        if isinstance(urgency_level, bool) or not isinstance(urgency_level, int) \
                or not MIN_URGENCY <= urgency_level <= MAX_URGENCY:
            raise ValueError(f"Urgency level must be between {MIN_URGENCY} and {MAX_URGENCY}, got {urgency_level}")

        location = await self._resolve_location(owner_id)
        if not location.address and self.geocoder is not None:
            location.address = await self._reverse_geocode(location)

        alert = Alert(
            owner_id=owner_id,
            alert_type=alert_type,
            urgency_level=urgency_level,
            location=location,
            notification_radius=self.settings.initial_radius(urgency_level),
            message=message,
            is_anonymous=is_anonymous,
            media_urls=list(media_urls or []),
        )
        alert = await self.store.create(alert)
        self.stats['alerts_created'] += 1

        self.logger.critical(
            f"SOS ALERT {alert.id}: {alert.alert_type.value.upper()} urgency {alert.urgency_level} "
            f"from {owner_id} at {location.latitude:.6f}, {location.longitude:.6f}"
        )
        with LogContext(self.audit, alert_id=alert.id, owner_id=owner_id) as log:
            log.critical("sos_alert_created", alert_type=alert.alert_type.value,
                         urgency_level=alert.urgency_level,
                         notification_radius=alert.notification_radius)

        recipients = await self._find_recipients(alert)
        if recipients:
            self._warn_on_failures(await self.dispatcher.notify_users(alert, recipients, is_escalation=False))
        self._warn_on_failures(await self.dispatcher.notify_contacts(owner_id, alert))

        alert = await self._open_chat_room(alert)
        self.scheduler.register(alert)
        return alert

    async def respond_to_alert(self, alert_id: str, user_id: str,
                               status: Union[ResponderStatus, str],
                               location: Optional[GeoPoint] = None) -> Responder:
        """Record a responder status; NotFoundError when the alert is missing or not active"""
        status = ResponderStatus(status)
        responder = await self.tracker.respond(alert_id, user_id, status, location)
        self.stats['responses'] += 1

        with LogContext(self.audit, alert_id=alert_id, user_id=user_id) as log:
            log.info("sos_response", status=status.value,
                     distance_meters=round(responder.distance_meters, 1),
                     eta_minutes=responder.eta_minutes)
        return responder

    async def resolve_alert(self, alert_id: str, owner_id: str,
                            status: Union[AlertStatus, str]) -> Alert:
        """
        Resolve an alert as its owner

        Raises:
            NotFoundError: Unknown alert
            PermissionDeniedError: Caller is not the owner
            InvalidTransitionError: Alert not active or status not terminal
        """
        status = AlertStatus(status)
        alert = await self.store.resolve(alert_id, owner_id, status)
        await self.scheduler.deregister(alert_id)
        self.stats['alerts_resolved'] += 1

        self.logger.info(f"Alert {alert_id} marked {status.value} by owner")
        with LogContext(self.audit, alert_id=alert_id, owner_id=owner_id) as log:
            log.info("sos_alert_resolved", status=status.value, responders=alert.responder_count)

        self._warn_on_failures(await self.dispatcher.notify_responders(alert, status))
        return alert

    async def escalate_alert(self, alert_id: str) -> Alert:
        """Manual escalation, same effect as a timer firing"""
        return await self.scheduler.escalate_now(alert_id)

    async def get_alert(self, alert_id: str) -> Alert:
        return await self.store.get(alert_id)

    async def get_user_alerts(self, owner_id: str) -> List[Alert]:
        return await self.store.list_by_owner(owner_id)

    async def get_active_alerts_near(self, latitude: float, longitude: float,
                                     radius_meters: Optional[float] = None) -> List[Alert]:
        """Active alerts whose origin lies within the radius, nearest first"""
        if radius_meters is None:
            radius_meters = self.settings.nearby_alerts_radius_meters
        center = GeoPoint(latitude=latitude, longitude=longitude)

        nearby = []
        for alert in await self.store.list_active():
            distance = distance_between(center, alert.location)
            if distance <= radius_meters:
                nearby.append((distance, alert))

        nearby.sort(key=lambda item: item[0])
        return [alert for _, alert in nearby]

    async def expire_inactive_alerts(self, now: Optional[datetime] = None) -> List[Alert]:
        """Auto-resolve active alerts with no activity within the expiry window"""
        expiry = self.settings.alert_expiry
        if expiry is None:
            return []

        cutoff = (now or datetime.utcnow()) - expiry
        expired = []
        for alert in await self.store.list_active():
            if alert.last_activity_at >= cutoff:
                continue

            resolved = await self.store.expire(alert.id, cutoff)
            if resolved is None:
                continue

            await self.scheduler.deregister(alert.id)
            self.stats['alerts_expired'] += 1
            self.logger.warning(
                f"Alert {alert.id} auto-resolved after {self.settings.alert_expiry_hours}h without activity"
            )
            self._warn_on_failures(await self.dispatcher.notify_responders(resolved, AlertStatus.RESOLVED))
            expired.append(resolved)

        return expired

    async def _expiry_loop(self):
        """Background inactivity sweep"""
        interval = self.settings.expiry_check_interval_seconds
        while self._running:
            try:
                await asyncio.sleep(interval)
                await self.expire_inactive_alerts()
            except asyncio.CancelledError:
                break
            except Exception as e:
                self.logger.error(f"Error in alert expiry sweep: {e}")

    async def _resolve_location(self, owner_id: str) -> GeoPoint:
        try:
            location = await asyncio.wait_for(
                self.location_resolver.get_current_location(owner_id),
                timeout=self.settings.location_timeout_seconds
            )
        except LocationUnavailableError:
            raise
        except asyncio.TimeoutError:
            raise LocationUnavailableError(
                f"Location of {owner_id} not resolved within {self.settings.location_timeout_seconds}s"
            )
        except Exception as e:
            raise LocationUnavailableError(f"Location of {owner_id} could not be resolved: {e}") from e

        if location is None:
            raise LocationUnavailableError(f"No location for {owner_id}")
        return GeoPoint(location.latitude, location.longitude, location.accuracy, location.address)

    async def _reverse_geocode(self, location: GeoPoint) -> Optional[str]:
        try:
            return await asyncio.wait_for(
                self.geocoder.reverse_geocode(location.latitude, location.longitude),
                timeout=self.settings.location_timeout_seconds
            )
        except Exception as e:
            self.logger.warning(f"Reverse geocoding failed: {e}")
            return None

    async def _find_recipients(self, alert: Alert):
        try:
            return await asyncio.wait_for(
                self.geo_index.find_within_radius(
                    alert.location, alert.notification_radius, requester_id=alert.owner_id
                ),
                timeout=self.settings.query_timeout_seconds
            )
        except asyncio.TimeoutError:
            self.stats['dispatch_warnings'] += 1
            self.logger.warning(
                f"Nearby user query timed out for alert {alert.id}, nearby users not notified"
            )
            return []
        except Exception as e:
            self.stats['dispatch_warnings'] += 1
            self.logger.warning(
                f"Nearby user query failed for alert {alert.id}, nearby users not notified: {e}"
            )
            return []

    async def _open_chat_room(self, alert: Alert) -> Alert:
        if self.chat_rooms is None:
            return alert
        try:
            room_id = await self.chat_rooms.create_room(alert)
            return await self.store.set_chat_room(alert.id, room_id)
        except Exception as e:
            self.logger.error(f"Error creating emergency chat room for alert {alert.id}: {e}")
            return alert

    def _warn_on_failures(self, report: DispatchReport):
        error = report.error
        if error is not None:
            self.stats['dispatch_warnings'] += 1
            self.logger.warning(str(error))

    async def get_service_status(self) -> Dict[str, Any]:
        """Controller status summary"""
        active = await self.store.list_active()
        return {
            'running': self._running,
            'active_alerts': len(active),
            'stats': dict(self.stats),
            'notifications': dict(self.dispatcher.stats),
            'escalation': self.scheduler.get_status(),
        }
