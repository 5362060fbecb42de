"""
SOS engine assembly

Wires stores, collaborators, transports and background managers for the
configured persistence backend.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from resqmob.core.config import ConfigurationManager
from resqmob.core.database import DatabaseManager
from resqmob.models.alert import DeliveryChannel
from .alert_lifecycle import AlertLifecycleController
from .alert_store import AlertStore, InMemoryAlertStore, SqliteAlertStore
from .collaborators import (
    ChatRoomCreator, ContactsStore, DirectoryLocationResolver, InMemoryChatRoomCreator,
    InMemoryContactsStore, InMemoryUserDirectory, LocationResolver,
    NominatimReverseGeocoder, UserDirectory
)
from .escalation_scheduler import EscalationScheduler
from .geo_index import GeoIndex
from .notification_dispatcher import (
    ExpoPushTransport, HttpSmsTransport, InMemoryNotificationLog, LoggingTransport,
    NotificationDispatcher, NotificationLog, NotificationTransport
)
from .responder_tracker import ResponderTracker
from .settings import SOSSettings
from .sqlite_backend import (
    SqliteChatRoomCreator, SqliteContactsStore, SqliteNotificationLog, SqliteUserDirectory
)


logger = logging.getLogger(__name__)


@dataclass
class SOSEngine:
    """A wired SOS engine and the collaborators behind it"""
    controller: AlertLifecycleController
    directory: UserDirectory
    contacts: ContactsStore
    notification_log: NotificationLog
    database: Optional[DatabaseManager] = None

    async def start(self):
        await self.controller.start()

    async def stop(self):
        await self.controller.stop()
        if self.database is not None:
            self.database.close()


def build_push_transport(config_manager: ConfigurationManager) -> NotificationTransport:
    push = config_manager.get_section('notifications').get('push', {})
    if push.get('enabled', True) and push.get('url'):
        return ExpoPushTransport(push['url'], timeout=push.get('timeout', 10))
    logger.info("Push delivery disabled, logging push notifications instead")
    return LoggingTransport(DeliveryChannel.PUSH)


def build_sms_transport(config_manager: ConfigurationManager) -> NotificationTransport:
    sms = config_manager.get_section('notifications').get('sms', {})
    if sms.get('enabled', False) and sms.get('url'):
        return HttpSmsTransport(sms['url'], api_key=sms.get('api_key', ''), timeout=sms.get('timeout', 10))
    logger.info("SMS gateway not configured, logging SMS notifications instead")
    return LoggingTransport(DeliveryChannel.SMS)


def build_engine(config_manager: ConfigurationManager,
                 database: Optional[DatabaseManager] = None,
                 location_resolver: Optional[LocationResolver] = None,
                 push_transport: Optional[NotificationTransport] = None,
                 sms_transport: Optional[NotificationTransport] = None) -> SOSEngine:
    """
    Build the SOS engine for the configured backend

    Args:
        config_manager: Loaded configuration
        database: Database to use with the sqlite backend; created from
            the database section when omitted
        location_resolver: Defaults to the user directory's last known positions
        push_transport: Overrides the configured push transport
        sms_transport: Overrides the configured SMS transport
    """
    settings = SOSSettings.from_config(config_manager)
    backend = config_manager.get_database_backend()

    store: AlertStore
    directory: UserDirectory
    contacts: ContactsStore
    chat_rooms: ChatRoomCreator
    notification_log: NotificationLog

    if backend == 'sqlite':
        if database is None:
            database = DatabaseManager(
                config_manager.get('database.path', 'data/resqmob.db'),
                config_manager.get('database.max_connections', 10)
            )
        store = SqliteAlertStore(database)
        directory = SqliteUserDirectory(database)
        contacts = SqliteContactsStore(database)
        chat_rooms = SqliteChatRoomCreator(database)
        notification_log = SqliteNotificationLog(database)
    else:
        store = InMemoryAlertStore()
        directory = InMemoryUserDirectory()
        contacts = InMemoryContactsStore()
        chat_rooms = InMemoryChatRoomCreator()
        notification_log = InMemoryNotificationLog()

    geocoder = None
    geocoding = config_manager.get_section('geocoding')
    if geocoding.get('enabled'):
        geocoder = NominatimReverseGeocoder(geocoding.get('url'), timeout=geocoding.get('timeout', 5))

    geo_index = GeoIndex(directory, max_location_age=settings.max_location_age)
    dispatcher = NotificationDispatcher(
        directory,
        contacts,
        push_transport or build_push_transport(config_manager),
        sms_transport or build_sms_transport(config_manager),
        notification_log=notification_log,
        concurrency=settings.dispatch_concurrency,
    )
    scheduler = EscalationScheduler(store, geo_index, dispatcher, settings)
    tracker = ResponderTracker(store, directory, dispatcher, settings)

    controller = AlertLifecycleController(
        store=store,
        geo_index=geo_index,
        dispatcher=dispatcher,
        scheduler=scheduler,
        tracker=tracker,
        location_resolver=location_resolver or DirectoryLocationResolver(directory),
        settings=settings,
        chat_rooms=chat_rooms,
        geocoder=geocoder,
    )

    logger.info(f"SOS engine built with {backend} backend")
    return SOSEngine(controller, directory, contacts, notification_log, database)
