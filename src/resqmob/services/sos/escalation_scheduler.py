"""
Escalation Scheduler

Widens the notification radius of unresolved alerts over time:
- One background task per active alert, firing every escalation interval
- Each firing grows the radius, commits the new level through the alert
  store and notifies only the users in the newly covered ring
- Stops at the maximum escalation level or when the alert is deregistered

Deregistration cancels the alert's task and waits for any in-progress
firing, so once it returns no further escalation of that alert can be
observed.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Optional

from resqmob.models.alert import Alert
from .alert_store import AlertStore
from .errors import InvalidTransitionError, NotFoundError
from .geo_index import GeoIndex
from .notification_dispatcher import NotificationDispatcher
from .settings import SOSSettings


class RegistrationState(Enum):
    """Escalation timer state"""
    SCHEDULED = "scheduled"
    FIRING = "firing"
    STOPPED = "stopped"


@dataclass
class EscalationRegistration:
    """Timer bookkeeping for one alert"""
    alert_id: str
    state: RegistrationState = RegistrationState.SCHEDULED
    next_fire_at: Optional[datetime] = None
    firings: int = 0
    suppressed: int = 0
    task: Optional[asyncio.Task] = None
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    @property
    def stopped(self) -> bool:
        return self.state == RegistrationState.STOPPED


class EscalationScheduler:
    """Manages per-alert escalation timers"""

    def __init__(self, store: AlertStore, geo_index: GeoIndex,
                 dispatcher: NotificationDispatcher, settings: SOSSettings):
        self.logger = logging.getLogger(__name__)
        self.store = store
        self.geo_index = geo_index
        self.dispatcher = dispatcher
        self.settings = settings

        self.registrations: Dict[str, EscalationRegistration] = {}
        self.total_firings = 0
        self.query_failures = 0
        self._running = False

    async def start(self):
        """Mark the scheduler running"""
        if self._running:
            return
        self._running = True
        self.logger.info(
            f"Escalation scheduler started (interval {self.settings.escalation_interval_seconds}s, "
            f"max level {self.settings.max_escalation_level})"
        )

    async def stop(self):
        """Cancel every escalation timer"""
        self._running = False
        for alert_id in list(self.registrations):
            await self.deregister(alert_id)
        self.logger.info("Escalation scheduler stopped")

    def register(self, alert: Alert) -> EscalationRegistration:
        """
        Start the escalation timer for an active alert

        Registering an alert that is already registered returns the
        existing registration.
        """
        existing = self.registrations.get(alert.id)
        if existing is not None and not existing.stopped:
            return existing

        registration = EscalationRegistration(alert_id=alert.id)
        if alert.escalation_level >= self.settings.max_escalation_level:
            registration.state = RegistrationState.STOPPED
            self.logger.debug(f"Alert {alert.id} already at max escalation level, no timer started")
            return registration

        registration.next_fire_at = datetime.utcnow() + timedelta(
            seconds=self.settings.escalation_interval_seconds
        )
        registration.task = asyncio.create_task(self._run(registration))
        self.registrations[alert.id] = registration

        self.logger.debug(f"Registered alert {alert.id} for escalation")
        return registration

    async def deregister(self, alert_id: str) -> bool:
        """
        Stop escalating an alert

        Returns:
            True if the alert had a registration
        """
        registration = self.registrations.pop(alert_id, None)
        if registration is None:
            return False

        registration.state = RegistrationState.STOPPED
        task = registration.task
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        # Wait out a manual escalation still holding the lock
        async with registration.lock:
            pass

        self.logger.debug(f"Deregistered alert {alert_id} from escalation")
        return True

    def is_registered(self, alert_id: str) -> bool:
        registration = self.registrations.get(alert_id)
        return registration is not None and not registration.stopped

    async def escalate_now(self, alert_id: str) -> Alert:
        """
        Escalate immediately, serialized with the alert's timer firings

        Returns the alert unchanged when it is already at the maximum level.

        Raises:
            NotFoundError: Unknown alert
            InvalidTransitionError: Alert is no longer active
        """
        registration = self.registrations.get(alert_id) or EscalationRegistration(alert_id=alert_id)
        return await self._fire(registration)

    async def _run(self, registration: EscalationRegistration):
        """Timer loop for one alert"""
        interval = self.settings.escalation_interval_seconds

        while not registration.stopped:
            await asyncio.sleep(interval)
            if registration.stopped:
                break

            try:
                await self._fire(registration)
            except (NotFoundError, InvalidTransitionError) as e:
                self.logger.info(f"Stopping escalation of alert {registration.alert_id}: {e}")
                registration.state = RegistrationState.STOPPED
            except Exception as e:
                self.logger.error(f"Escalation firing failed for alert {registration.alert_id}: {e}")

            if not registration.stopped:
                registration.next_fire_at = datetime.utcnow() + timedelta(seconds=interval)

        if self.registrations.get(registration.alert_id) is registration:
            del self.registrations[registration.alert_id]

    async def _fire(self, registration: EscalationRegistration) -> Alert:
        """One escalation step"""
        async with registration.lock:
            alert_id = registration.alert_id
            alert = await self.store.get(alert_id)

            if registration.stopped and registration.task is not None:
                return alert
            if not alert.is_active():
                raise InvalidTransitionError(f"Alert {alert_id} is {alert.status.value}, cannot escalate")

            max_level = self.settings.max_escalation_level
            if alert.escalation_level >= max_level:
                registration.state = RegistrationState.STOPPED
                self.logger.debug(f"Alert {alert_id} is at max escalation level {max_level}")
                return alert

            registration.state = RegistrationState.FIRING
            previous_radius = alert.notification_radius
            new_radius = self.settings.escalated_radius(previous_radius, alert.escalation_level)
            updated = await self.store.update_escalation(alert_id, alert.escalation_level + 1, new_radius)

            registration.firings += 1
            self.total_firings += 1
            self.logger.warning(
                f"Alert {alert_id} escalated to level {updated.escalation_level}, "
                f"radius {previous_radius:.0f}m -> {new_radius:.0f}m"
            )

            if self._suppressed(registration):
                return updated

            try:
                recipients = await asyncio.wait_for(
                    self.geo_index.find_within_radius(
                        updated.location, new_radius,
                        exclude_radius_meters=previous_radius,
                        requester_id=updated.owner_id
                    ),
                    timeout=self.settings.query_timeout_seconds
                )
            except asyncio.TimeoutError:
                self.query_failures += 1
                self.logger.warning(f"Nearby query timed out while escalating alert {alert_id}")
                recipients = []
            except Exception as e:
                self.query_failures += 1
                self.logger.warning(f"Nearby query failed while escalating alert {alert_id}: {e}")
                recipients = []

            if self._suppressed(registration):
                return updated

            if recipients:
                report = await self.dispatcher.notify_users(updated, recipients, is_escalation=True)
                if report.error:
                    self.logger.warning(f"Escalation dispatch incomplete: {report.error}")

            if updated.escalation_level >= max_level:
                registration.state = RegistrationState.STOPPED
                self.logger.info(f"Alert {alert_id} reached max escalation level {max_level}")
            else:
                registration.state = RegistrationState.SCHEDULED

            return updated

    def _suppressed(self, registration: EscalationRegistration) -> bool:
        """A firing whose registration was stopped mid-way sends nothing"""
        if registration.stopped and registration.task is not None:
            registration.suppressed += 1
            self.logger.info(f"Escalation notifications suppressed for alert {registration.alert_id}")
            return True
        return False

    def get_status(self) -> Dict[str, Any]:
        """Scheduler status summary"""
        return {
            'running': self._running,
            'registered': len(self.registrations),
            'total_firings': self.total_firings,
            'query_failures': self.query_failures,
            'alerts': {
                alert_id: {
                    'state': reg.state.value,
                    'firings': reg.firings,
                    'next_fire_at': reg.next_fire_at.isoformat() if reg.next_fire_at else None,
                }
                for alert_id, reg in self.registrations.items()
            }
        }
