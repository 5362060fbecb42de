"""
Unit tests for ResponderTracker
"""

import pytest
from datetime import timedelta
from unittest.mock import AsyncMock

from resqmob.models.alert import Alert, AlertStatus, AlertType, ResponderStatus
from resqmob.services.sos.errors import NotFoundError
from resqmob.services.sos.responder_tracker import estimate_eta_minutes
from tests.mocks.sos_mocks import push_token
from tests.utils import ORIGIN, add_user, offset_north


async def create_alert(store) -> Alert:
    return await store.create(Alert(
        owner_id="owner",
        alert_type=AlertType.ACCIDENT,
        urgency_level=2,
        location=ORIGIN,
        notification_radius=2000.0,
    ))


class TestEstimateEta:

    @pytest.mark.parametrize("distance,expected", [
        (0, 0),
        (1, 1),
        (499, 1),
        (501, 2),
        (5900, 12),
        (15000, 30),
    ])
    def test_default_speed(self, distance, expected):
        assert estimate_eta_minutes(distance) == expected

    def test_custom_speed(self):
        assert estimate_eta_minutes(5900, speed_kmh=60) == 6


class TestRespond:

    @pytest.mark.asyncio
    async def test_responding_sets_distance_and_eta(self, tracker, memory_store, directory):
        await add_user(directory, "owner", ORIGIN)
        alert = await create_alert(memory_store)

        responder = await tracker.respond(alert.id, "karim", ResponderStatus.RESPONDING,
                                          location=offset_north(ORIGIN, 5900))

        assert responder.distance_meters == pytest.approx(5900, abs=0.01)
        assert responder.eta_minutes == 12
        assert responder.estimated_arrival - responder.updated_at == timedelta(minutes=12)
        assert (await memory_store.get(alert.id)).responder_count == 1

    @pytest.mark.asyncio
    async def test_last_known_location_used(self, tracker, memory_store, neighbourhood):
        alert = await create_alert(memory_store)

        responder = await tracker.respond(alert.id, "near_2500", ResponderStatus.RESPONDING)

        assert responder.distance_meters == pytest.approx(2500, abs=0.01)
        assert responder.eta_minutes == estimate_eta_minutes(responder.distance_meters)

    @pytest.mark.asyncio
    async def test_unknown_location_counts_as_zero_distance(self, tracker, memory_store):
        alert = await create_alert(memory_store)

        responder = await tracker.respond(alert.id, "stranger", ResponderStatus.RESPONDING)

        assert responder.distance_meters == 0.0
        assert responder.eta_minutes == 0

    @pytest.mark.asyncio
    async def test_directory_failure_counts_as_zero_distance(self, tracker, memory_store, neighbourhood,
                                                             directory):
        alert = await create_alert(memory_store)
        directory.get_user = AsyncMock(side_effect=RuntimeError("database is locked"))

        responder = await tracker.respond(alert.id, "near_500", ResponderStatus.RESPONDING)

        assert responder.distance_meters == 0.0
        assert responder.eta_minutes == 0
        assert (await memory_store.get(alert.id)).responder_count == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [
        ResponderStatus.ARRIVED, ResponderStatus.HELPING, ResponderStatus.UNAVAILABLE
    ])
    async def test_eta_only_while_responding(self, tracker, memory_store, neighbourhood, status):
        alert = await create_alert(memory_store)

        responder = await tracker.respond(alert.id, "near_500", status)

        assert responder.status == status
        assert responder.eta_minutes is None
        assert responder.estimated_arrival is None

    @pytest.mark.asyncio
    async def test_status_change_updates_in_place(self, tracker, memory_store, neighbourhood):
        alert = await create_alert(memory_store)

        first = await tracker.respond(alert.id, "near_500", ResponderStatus.RESPONDING)
        second = await tracker.respond(alert.id, "near_500", ResponderStatus.ARRIVED,
                                       location=offset_north(ORIGIN, 10))

        stored = await memory_store.get(alert.id)
        assert stored.responder_count == 1
        assert second.id == first.id
        assert second.status == ResponderStatus.ARRIVED
        assert second.distance_meters == pytest.approx(10, abs=0.01)

    @pytest.mark.asyncio
    async def test_owner_notified(self, tracker, memory_store, neighbourhood, push_transport):
        alert = await create_alert(memory_store)

        await tracker.respond(alert.id, "near_500", ResponderStatus.RESPONDING)

        assert push_transport.addresses("Help is Coming!") == [push_token("owner")]
        assert push_transport.sent[0].body == "Karim is responding to your emergency alert."

    @pytest.mark.asyncio
    async def test_nameless_responder(self, tracker, memory_store, neighbourhood, push_transport):
        alert = await create_alert(memory_store)

        await tracker.respond(alert.id, "stranger", ResponderStatus.RESPONDING)

        assert push_transport.sent[0].body == "Someone is responding to your emergency alert."

    @pytest.mark.asyncio
    async def test_failed_owner_notification_keeps_response(self, tracker, memory_store, neighbourhood,
                                                            push_transport):
        push_transport.fail_for.add(push_token("owner"))
        alert = await create_alert(memory_store)

        responder = await tracker.respond(alert.id, "near_500", ResponderStatus.RESPONDING)

        assert responder.user_id == "near_500"
        assert (await memory_store.get(alert.id)).responder_count == 1

    @pytest.mark.asyncio
    async def test_resolved_alert_rejected(self, tracker, memory_store, neighbourhood, push_transport):
        alert = await create_alert(memory_store)
        await memory_store.resolve(alert.id, "owner", AlertStatus.RESOLVED)

        with pytest.raises(NotFoundError):
            await tracker.respond(alert.id, "near_500", ResponderStatus.RESPONDING)
        assert push_transport.sent == []

    @pytest.mark.asyncio
    async def test_unknown_alert(self, tracker):
        with pytest.raises(NotFoundError):
            await tracker.respond("missing", "near_500", ResponderStatus.RESPONDING)
