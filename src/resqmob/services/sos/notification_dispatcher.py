"""
Notification Dispatcher for SOS alerts

Fans alert notifications out to nearby users, emergency contacts, the
alert owner and responders:
- Push notifications through the Expo push API
- SMS to emergency contacts through an HTTP gateway
- Per-recipient outcomes collected into a DispatchReport and a notification log

A failure for one recipient never affects the others and never changes
alert state. Callers log the report's DispatchError as a warning.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import aiohttp

from resqmob.models.alert import (
    Alert, AlertStatus, DeliveryChannel, DeliveryOutcome, NotificationRecord,
    ResponderStatus, UserRef
)
from .collaborators import ContactsStore, UserDirectory
from .errors import DispatchError


class NotificationTransportError(Exception):
    """A single delivery was rejected by the transport"""
    pass


class NotificationTransport(ABC):
    """Delivers one message to one address (push token or phone number)"""

    channel: DeliveryChannel = DeliveryChannel.PUSH

    @abstractmethod
    async def send(self, address: str, title: str, body: str,
                   data: Optional[Dict[str, Any]] = None) -> None:
        """Deliver the message or raise NotificationTransportError"""
        pass

    async def close(self):
        pass


class _HTTPTransport(NotificationTransport):
    """Shared aiohttp session handling for HTTP transports"""

    def __init__(self, url: str, timeout: float = 10.0):
        self.url = url
        self.timeout = timeout
        self.session: Optional[aiohttp.ClientSession] = None

    async def _ensure_session(self):
        """Ensure HTTP session is created"""
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession()

    async def _post(self, payload: Dict[str, Any], headers: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        await self._ensure_session()
        try:
            async with self.session.post(
                self.url,
                json=payload,
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            ) as response:
                if response.status >= 400:
                    raise NotificationTransportError(f"HTTP {response.status} from {self.url}")
                if response.content_type == 'application/json':
                    return await response.json()
                return {}
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise NotificationTransportError(f"Request to {self.url} failed: {e}")

    async def close(self):
        if self.session and not self.session.closed:
            await self.session.close()


class ExpoPushTransport(_HTTPTransport):
    """Push notifications through the Expo push API"""

    channel = DeliveryChannel.PUSH

    def __init__(self, url: str = "https://exp.host/--/api/v2/push/send", timeout: float = 10.0):
        super().__init__(url, timeout)

    async def send(self, address: str, title: str, body: str,
                   data: Optional[Dict[str, Any]] = None) -> None:
        data = data or {}
        message = {
            'to': address,
            'sound': 'default',
            'title': title,
            'body': body,
            'data': data,
            'priority': data.get('priority', 'normal'),
            'badge': 1,
        }
        headers = {
            'Accept': 'application/json',
            'Accept-Encoding': 'gzip, deflate',
        }

        result = await self._post(message, headers)

        # Expo answers 200 with a per-ticket error status
        ticket = result.get('data') if isinstance(result, dict) else None
        if isinstance(ticket, dict) and ticket.get('status') == 'error':
            raise NotificationTransportError(ticket.get('message', 'push ticket error'))


class HttpSmsTransport(_HTTPTransport):
    """SMS through a generic HTTP gateway accepting {to, message}"""

    channel = DeliveryChannel.SMS

    def __init__(self, url: str, api_key: str = "", timeout: float = 10.0):
        super().__init__(url, timeout)
        self.api_key = api_key

    async def send(self, address: str, title: str, body: str,
                   data: Optional[Dict[str, Any]] = None) -> None:
        headers = {}
        if self.api_key:
            headers['Authorization'] = f"Bearer {self.api_key}"
        await self._post({'to': address, 'message': body}, headers)


class LoggingTransport(NotificationTransport):
    """Writes messages to the log instead of delivering them"""

    def __init__(self, channel: DeliveryChannel = DeliveryChannel.PUSH):
        self.channel = channel
        self.logger = logging.getLogger(__name__)

    async def send(self, address: str, title: str, body: str,
                   data: Optional[Dict[str, Any]] = None) -> None:
        self.logger.info(f"[{self.channel.value}] to {address}: {title} - {body}")


class NotificationLog(ABC):
    """Append-only record of delivery outcomes"""

    @abstractmethod
    async def append(self, records: List[NotificationRecord]) -> None:
        pass

    @abstractmethod
    async def get_records(self, alert_id: Optional[str] = None) -> List[NotificationRecord]:
        pass


class InMemoryNotificationLog(NotificationLog):

    def __init__(self):
        self.records: List[NotificationRecord] = []

    async def append(self, records: List[NotificationRecord]) -> None:
        self.records.extend(records)

    async def get_records(self, alert_id: Optional[str] = None) -> List[NotificationRecord]:
        if alert_id is None:
            return list(self.records)
        return [r for r in self.records if r.alert_id == alert_id]


@dataclass
class DispatchReport:
    """Per-recipient outcomes of one fan-out"""
    alert_id: str
    records: List[NotificationRecord] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.records)

    @property
    def delivered(self) -> List[NotificationRecord]:
        return [r for r in self.records if r.outcome == DeliveryOutcome.DELIVERED]

    @property
    def skipped(self) -> List[NotificationRecord]:
        return [r for r in self.records if r.outcome == DeliveryOutcome.SKIPPED]

    @property
    def failures(self) -> List[NotificationRecord]:
        return [r for r in self.records if r.failed]

    @property
    def error(self) -> Optional[DispatchError]:
        """DispatchError describing the failed recipients, None when all succeeded"""
        failures = self.failures
        if not failures:
            return None
        return DispatchError(self.alert_id, [r.recipient for r in failures], self.total)

    def merge(self, other: 'DispatchReport') -> 'DispatchReport':
        return DispatchReport(self.alert_id, self.records + other.records)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'alert_id': self.alert_id,
            'total': self.total,
            'delivered': len(self.delivered),
            'skipped': len(self.skipped),
            'failed': len(self.failures),
        }


@dataclass
class _Outgoing:
    recipient: str
    title: str
    body: str
    data: Dict[str, Any]


class NotificationDispatcher:
    """Sends SOS notifications; failures are collected, never raised"""

    def __init__(self, directory: UserDirectory, contacts: ContactsStore,
                 push_transport: NotificationTransport,
                 sms_transport: NotificationTransport,
                 notification_log: Optional[NotificationLog] = None,
                 concurrency: int = 20):
        self.logger = logging.getLogger(__name__)
        self.directory = directory
        self.contacts = contacts
        self.push_transport = push_transport
        self.sms_transport = sms_transport
        self.notification_log = notification_log or InMemoryNotificationLog()
        self._semaphore = asyncio.Semaphore(max(1, concurrency))

        self.stats = {'delivered': 0, 'failed': 0, 'skipped': 0}

    async def notify_users(self, alert: Alert, recipients: List[UserRef],
                           is_escalation: bool = False) -> DispatchReport:
        """
        Push an alert to nearby users

        Args:
            alert: The alert being announced
            recipients: Users returned by the radius query
            is_escalation: Whether this fan-out follows a radius escalation
        """
        title = 'ESCALATED EMERGENCY ALERT' if is_escalation else 'EMERGENCY ALERT NEARBY'
        body = f"{alert.alert_type.value.upper()} emergency reported nearby. Tap to help."
        data = {
            'alert_id': alert.id,
            'alert_type': alert.alert_type.value,
            'urgency_level': alert.urgency_level,
            'location': alert.location.to_dict(),
            'type': 'sos_alert',
            'priority': 'high',
        }

        outgoing = [_Outgoing(user.user_id, title, body, data) for user in recipients]
        return await self._push(alert.id, outgoing, known_users={u.user_id: u for u in recipients})

    async def notify_contacts(self, owner_id: str, alert: Alert) -> DispatchReport:
        """SMS every emergency contact of the owner that has notifications enabled"""
        try:
            contacts = await self.contacts.get_contacts(owner_id)
        except Exception as e:
            self.logger.warning(f"Could not load emergency contacts for {owner_id}: {e}")
            return DispatchReport(alert.id)

        address = alert.location.address or 'Location shared'
        outgoing = []
        for contact in contacts:
            if not contact.notification_enabled:
                continue
            body = (
                f"EMERGENCY ALERT: {contact.name} has sent an SOS alert. "
                f"Location: {address}. Please check the ResQMob app for details."
            )
            outgoing.append(_Outgoing(contact.phone, 'EMERGENCY ALERT', body, {'alert_id': alert.id}))

        return await self._dispatch(alert.id, self.sms_transport, DeliveryChannel.SMS,
                                    [(item, item.recipient) for item in outgoing])

    async def notify_owner(self, alert: Alert, responder_name: Optional[str],
                           status: ResponderStatus) -> DispatchReport:
        """Tell the alert owner that someone is responding"""
        body = f"{responder_name or 'Someone'} is {status.value} to your emergency alert."
        data = {'alert_id': alert.id, 'type': 'sos_response'}
        return await self._push(alert.id, [_Outgoing(alert.owner_id, 'Help is Coming!', body, data)])

    async def notify_responders(self, alert: Alert, resolution_status: AlertStatus) -> DispatchReport:
        """Tell every responder how the alert ended"""
        if resolution_status == AlertStatus.RESOLVED:
            title = 'Emergency Resolved'
            body = 'The emergency has been resolved. Thank you for your help!'
        else:
            title = 'False Alarm'
            body = 'This was a false alarm. Thank you for your quick response!'

        data = {'alert_id': alert.id, 'type': 'sos_resolution'}
        outgoing = [_Outgoing(r.user_id, title, body, data) for r in alert.responders]
        return await self._push(alert.id, outgoing)

    async def _push(self, alert_id: str, outgoing: List[_Outgoing],
                    known_users: Optional[Dict[str, UserRef]] = None) -> DispatchReport:
        """Resolve push tokens, skipping users who cannot or do not want to receive pushes"""
        known_users = known_users or {}
        deliverable = []
        unsent = []

        for item in outgoing:
            user = known_users.get(item.recipient)
            if user is None or user.push_token is None:
                try:
                    user = await self.directory.get_user(item.recipient) or user
                except Exception as e:
                    self.logger.warning(f"User lookup failed for {item.recipient}: {e}")
                    unsent.append(self._record(item, alert_id, DeliveryChannel.PUSH,
                                                DeliveryOutcome.FAILED, str(e)))
                    continue

            if user is None or not user.push_token or not user.notifications_enabled:
                unsent.append(self._record(item, alert_id, DeliveryChannel.PUSH, DeliveryOutcome.SKIPPED))
                continue
            deliverable.append((item, user.push_token))

        report = await self._dispatch(alert_id, self.push_transport, DeliveryChannel.PUSH,
                                      deliverable, pre_recorded=unsent)
        return report

    async def _dispatch(self, alert_id: str, transport: NotificationTransport,
                        channel: DeliveryChannel, deliverable: List,
                        pre_recorded: Optional[List[NotificationRecord]] = None) -> DispatchReport:
        records = list(pre_recorded or [])

        if deliverable:
            results = await asyncio.gather(*[
                self._send_one(alert_id, transport, channel, item, address)
                for item, address in deliverable
            ])
            records.extend(results)

        report = DispatchReport(alert_id, records)
        for record in records:
            self.stats[record.outcome.value] += 1

        if records:
            try:
                await self.notification_log.append(records)
            except Exception as e:
                self.logger.error(f"Failed to write notification log for alert {alert_id}: {e}")

        return report

    async def _send_one(self, alert_id: str, transport: NotificationTransport,
                        channel: DeliveryChannel, item: _Outgoing, address: str) -> NotificationRecord:
        async with self._semaphore:
            try:
                await transport.send(address, item.title, item.body, item.data)
                return self._record(item, alert_id, channel, DeliveryOutcome.DELIVERED)
            except Exception as e:
                self.logger.debug(f"{channel.value} delivery to {item.recipient} failed: {e}")
                return self._record(item, alert_id, channel, DeliveryOutcome.FAILED, str(e))

    def _record(self, item: _Outgoing, alert_id: str, channel: DeliveryChannel,
                outcome: DeliveryOutcome, error: Optional[str] = None) -> NotificationRecord:
        return NotificationRecord(
            recipient=item.recipient,
            alert_id=alert_id,
            channel=channel,
            outcome=outcome,
            title=item.title,
            error=error,
        )

    async def close(self):
        """Close transport sessions"""
        await self.push_transport.close()
        await self.sms_transport.close()
