"""
Unit tests for EscalationScheduler
"""

import asyncio
import pytest
from unittest.mock import AsyncMock

from resqmob.models.alert import Alert, AlertStatus, AlertType
from resqmob.services.sos.errors import InvalidTransitionError, NotFoundError
from resqmob.services.sos.escalation_scheduler import EscalationScheduler, RegistrationState
from resqmob.services.sos.settings import SOSSettings
from tests.mocks.sos_mocks import BlockingGeoIndex, push_token
from tests.utils import ORIGIN, AsyncTestHelper


async def create_alert(store, urgency: int = 3) -> Alert:
    return await store.create(Alert(
        owner_id="owner",
        alert_type=AlertType.MEDICAL,
        urgency_level=urgency,
        location=ORIGIN,
        notification_radius=1000.0 * urgency,
    ))


@pytest.fixture
def fast_settings():
    return SOSSettings(escalation_interval_seconds=0.05, query_timeout_seconds=0.5)


class TestManualEscalation:

    @pytest.mark.asyncio
    async def test_first_escalation_widens_radius(self, scheduler, memory_store, neighbourhood, push_transport):
        alert = await create_alert(memory_store)

        escalated = await scheduler.escalate_now(alert.id)

        assert escalated.escalation_level == 2
        assert escalated.notification_radius == pytest.approx(4500.0)
        assert (await memory_store.get(alert.id)).notification_radius == pytest.approx(4500.0)

    @pytest.mark.asyncio
    async def test_only_new_ring_notified(self, scheduler, memory_store, neighbourhood, push_transport):
        alert = await create_alert(memory_store)

        await scheduler.escalate_now(alert.id)
        assert push_transport.addresses() == [push_token("ring_4000")]
        assert push_transport.titles() == ["ESCALATED EMERGENCY ALERT"]

        await scheduler.escalate_now(alert.id)
        assert push_transport.addresses()[1:] == [push_token("far_6000")]

    @pytest.mark.asyncio
    async def test_radius_growth_sequence(self, scheduler, memory_store, neighbourhood):
        alert = await create_alert(memory_store)
        radii = [alert.notification_radius]
        for _ in range(4):
            radii.append((await scheduler.escalate_now(alert.id)).notification_radius)

        assert radii == pytest.approx([3000.0, 4500.0, 9000.0, 22500.0, 67500.0])
        assert radii == sorted(radii)

    @pytest.mark.asyncio
    async def test_max_level_is_a_no_op(self, scheduler, memory_store, neighbourhood, push_transport):
        alert = await create_alert(memory_store)
        for _ in range(4):
            await scheduler.escalate_now(alert.id)
        sent_before = len(push_transport.sent)

        unchanged = await scheduler.escalate_now(alert.id)

        assert unchanged.escalation_level == 5
        assert unchanged.notification_radius == pytest.approx(67500.0)
        assert len(push_transport.sent) == sent_before

    @pytest.mark.asyncio
    async def test_resolved_alert_cannot_escalate(self, scheduler, memory_store):
        alert = await create_alert(memory_store)
        await memory_store.resolve(alert.id, "owner", AlertStatus.RESOLVED)

        with pytest.raises(InvalidTransitionError):
            await scheduler.escalate_now(alert.id)

    @pytest.mark.asyncio
    async def test_unknown_alert(self, scheduler):
        with pytest.raises(NotFoundError):
            await scheduler.escalate_now("missing")

    @pytest.mark.asyncio
    async def test_nobody_in_ring(self, scheduler, memory_store, directory, push_transport):
        alert = await create_alert(memory_store)
        escalated = await scheduler.escalate_now(alert.id)
        assert escalated.escalation_level == 2
        assert push_transport.sent == []

    @pytest.mark.asyncio
    async def test_nearby_query_failure_keeps_escalation(self, scheduler, memory_store, neighbourhood,
                                                         directory, push_transport):
        alert = await create_alert(memory_store)
        directory.users_in_box = AsyncMock(side_effect=RuntimeError("database is locked"))

        escalated = await scheduler.escalate_now(alert.id)

        assert escalated.escalation_level == 2
        assert (await memory_store.get(alert.id)).notification_radius == pytest.approx(4500.0)
        assert push_transport.sent == []
        assert scheduler.get_status()['query_failures'] == 1


class TestRegistration:

    @pytest.mark.asyncio
    async def test_register_and_deregister(self, scheduler, memory_store):
        alert = await create_alert(memory_store)

        registration = scheduler.register(alert)
        assert scheduler.is_registered(alert.id)
        assert registration.state == RegistrationState.SCHEDULED
        assert scheduler.register(alert) is registration

        assert await scheduler.deregister(alert.id) is True
        assert not scheduler.is_registered(alert.id)
        assert registration.task.done()
        assert await scheduler.deregister(alert.id) is False

    @pytest.mark.asyncio
    async def test_alert_at_max_level_not_scheduled(self, scheduler, memory_store):
        alert = await create_alert(memory_store)
        alert.escalation_level = 5

        registration = scheduler.register(alert)
        assert registration.stopped
        assert registration.task is None
        assert not scheduler.is_registered(alert.id)

    @pytest.mark.asyncio
    async def test_status(self, scheduler, memory_store):
        await scheduler.start()
        alert = await create_alert(memory_store)
        scheduler.register(alert)

        status = scheduler.get_status()
        assert status['running'] is True
        assert status['registered'] == 1
        assert status['alerts'][alert.id]['state'] == "scheduled"
        assert status['alerts'][alert.id]['next_fire_at'] is not None

    @pytest.mark.asyncio
    async def test_stop_cancels_all_timers(self, scheduler, memory_store):
        alert = await create_alert(memory_store)
        registration = scheduler.register(alert)

        await scheduler.stop()
        assert scheduler.registrations == {}
        assert registration.task.done()


@pytest.mark.slow
class TestTimers:
    """Real timer firings with a short interval"""

    @pytest.mark.asyncio
    async def test_timer_escalates_until_max_level(self, memory_store, geo_index, dispatcher,
                                                   neighbourhood, fast_settings):
        scheduler = EscalationScheduler(memory_store, geo_index, dispatcher, fast_settings)
        alert = await create_alert(memory_store)
        scheduler.register(alert)

        async def at_max_level():
            return (await memory_store.get(alert.id)).escalation_level == 5

        for _ in range(100):
            if await at_max_level():
                break
            await asyncio.sleep(0.02)

        assert await at_max_level()
        assert await AsyncTestHelper.wait_for_condition(lambda: not scheduler.is_registered(alert.id))
        assert scheduler.total_firings == 4
        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_timer_stops_when_alert_resolved_elsewhere(self, memory_store, geo_index, dispatcher,
                                                             fast_settings):
        scheduler = EscalationScheduler(memory_store, geo_index, dispatcher, fast_settings)
        alert = await create_alert(memory_store)
        scheduler.register(alert)
        await memory_store.resolve(alert.id, "owner", AlertStatus.RESOLVED)

        assert await AsyncTestHelper.wait_for_condition(lambda: not scheduler.is_registered(alert.id))
        assert (await memory_store.get(alert.id)).escalation_level == 1
        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_deregister_during_firing_sends_nothing(self, memory_store, geo_index, dispatcher,
                                                          neighbourhood, push_transport, fast_settings):
        blocking = BlockingGeoIndex(geo_index)
        scheduler = EscalationScheduler(memory_store, blocking, dispatcher, fast_settings)
        alert = await create_alert(memory_store)
        scheduler.register(alert)

        await asyncio.wait_for(blocking.entered.wait(), timeout=1.0)
        await scheduler.deregister(alert.id)
        blocking.release.set()
        await asyncio.sleep(0.2)

        assert push_transport.sent == []
        assert (await memory_store.get(alert.id)).escalation_level == 2
        assert scheduler.total_firings == 1


class TestDeregisterBarrier:

    @pytest.mark.asyncio
    async def test_manual_firing_in_progress_is_suppressed(self, scheduler, memory_store, geo_index,
                                                           neighbourhood, push_transport):
        blocking = BlockingGeoIndex(geo_index)
        scheduler.geo_index = blocking
        alert = await create_alert(memory_store)
        registration = scheduler.register(alert)

        firing = asyncio.create_task(scheduler.escalate_now(alert.id))
        await asyncio.wait_for(blocking.entered.wait(), timeout=1.0)

        deregistering = asyncio.create_task(scheduler.deregister(alert.id))
        await asyncio.sleep(0.01)
        assert not deregistering.done()

        blocking.release.set()
        escalated = await firing
        assert await deregistering is True

        assert escalated.escalation_level == 2
        assert registration.suppressed == 1
        assert push_transport.sent == []
