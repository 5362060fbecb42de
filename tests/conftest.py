"""
Global pytest configuration and fixtures for ResQMob testing.
"""
import sys
from pathlib import Path

import pytest
import pytest_asyncio

# Add src and the project root to Python path
project_root = Path(__file__).parent.parent
for path in (project_root / "src", project_root):
    if str(path) not in sys.path:
        sys.path.insert(0, str(path))

from resqmob.core.database import DatabaseManager
from resqmob.models.alert import DeliveryChannel, EmergencyContact, GeoPoint
from resqmob.services.sos.alert_lifecycle import AlertLifecycleController
from resqmob.services.sos.alert_store import InMemoryAlertStore, SqliteAlertStore
from resqmob.services.sos.collaborators import (
    DirectoryLocationResolver, InMemoryChatRoomCreator, InMemoryContactsStore, InMemoryUserDirectory
)
from resqmob.services.sos.escalation_scheduler import EscalationScheduler
from resqmob.services.sos.geo_index import GeoIndex
from resqmob.services.sos.notification_dispatcher import InMemoryNotificationLog, NotificationDispatcher
from resqmob.services.sos.responder_tracker import ResponderTracker
from resqmob.services.sos.settings import SOSSettings
from tests.mocks.sos_mocks import RecordingTransport
from tests.utils import ORIGIN, add_user, offset_north


def pytest_configure(config):
    config.addinivalue_line("markers", "unit: fast isolated tests")
    config.addinivalue_line("markers", "integration: tests wiring the whole engine")
    config.addinivalue_line("markers", "slow: tests that wait on real timers")


@pytest.fixture
def sos_settings():
    """Engine settings with escalation effectively manual"""
    return SOSSettings(
        escalation_interval_seconds=3600,
        location_timeout_seconds=0.5,
        query_timeout_seconds=0.5,
        expiry_check_interval_seconds=3600,
    )


@pytest.fixture
def directory():
    return InMemoryUserDirectory()


@pytest.fixture
def contacts():
    store = InMemoryContactsStore()
    store.add_contact("owner", EmergencyContact(name="Rahim", phone="+8801700000001", relationship="brother"))
    return store


@pytest.fixture
def push_transport():
    return RecordingTransport(DeliveryChannel.PUSH)


@pytest.fixture
def sms_transport():
    return RecordingTransport(DeliveryChannel.SMS)


@pytest.fixture
def notification_log():
    return InMemoryNotificationLog()


@pytest.fixture
def memory_store():
    return InMemoryAlertStore()


@pytest.fixture
def database(tmp_path):
    db = DatabaseManager(str(tmp_path / "resqmob_test.db"), max_connections=5)
    yield db
    db.close()


@pytest.fixture(params=["memory", "sqlite"])
def alert_store(request, tmp_path):
    """Both AlertStore implementations"""
    if request.param == "memory":
        yield InMemoryAlertStore()
        return
    db = DatabaseManager(str(tmp_path / "alerts.db"), max_connections=5)
    yield SqliteAlertStore(db)
    db.close()


@pytest.fixture
def geo_index(directory, sos_settings):
    return GeoIndex(directory, max_location_age=sos_settings.max_location_age)


@pytest.fixture
def dispatcher(directory, contacts, push_transport, sms_transport, notification_log):
    return NotificationDispatcher(directory, contacts, push_transport, sms_transport,
                                  notification_log=notification_log, concurrency=5)


@pytest.fixture
def chat_rooms():
    return InMemoryChatRoomCreator()


@pytest_asyncio.fixture
async def scheduler(memory_store, geo_index, dispatcher, sos_settings):
    scheduler = EscalationScheduler(memory_store, geo_index, dispatcher, sos_settings)
    yield scheduler
    await scheduler.stop()


@pytest.fixture
def tracker(memory_store, directory, dispatcher, sos_settings):
    return ResponderTracker(memory_store, directory, dispatcher, sos_settings)


@pytest_asyncio.fixture
async def controller(memory_store, geo_index, dispatcher, scheduler, tracker, directory,
                     chat_rooms, sos_settings):
    controller = AlertLifecycleController(
        store=memory_store,
        geo_index=geo_index,
        dispatcher=dispatcher,
        scheduler=scheduler,
        tracker=tracker,
        location_resolver=DirectoryLocationResolver(directory),
        settings=sos_settings,
        chat_rooms=chat_rooms,
    )
    yield controller
    await controller.stop()


@pytest_asyncio.fixture
async def neighbourhood(directory):
    """Owner at the origin and users at increasing distances north of it"""
    await add_user(directory, "owner", ORIGIN, name="Owner")
    await add_user(directory, "near_500", offset_north(ORIGIN, 500), name="Karim")
    await add_user(directory, "near_2500", offset_north(ORIGIN, 2500), name="Nadia")
    await add_user(directory, "ring_4000", offset_north(ORIGIN, 4000), name="Tanvir")
    await add_user(directory, "far_6000", offset_north(ORIGIN, 6000), name="Sadia")
    await add_user(directory, "remote", GeoPoint(22.3569, 91.7832), name="Chattogram")
    return directory
