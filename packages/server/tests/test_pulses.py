"""
Integration tests for the pulse and alert lifecycle.

Tests cover:
- Creating pulses and alerts with cards, channels and recipients
- Full-replacement updates and the card diff check
- Atomicity when a step fails mid-transaction
- Delete cascades and alert unsubscribe
- Lifecycle events through the outbox
- Mutations that follow reads on the same session
"""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest
from pydantic import ValidationError
from sqlmodel import select
from structlog.testing import capture_logs

import pulses.services.pulses as pulse_service
from conftest import ALICE, BOB, CARD_A, CARD_B, CARD_C, DAVE, email_channel, slack_channel
from pulses.core.database import transaction
from pulses.core.permissions import Principal
from pulses.models.channel import PulseChannel, PulseChannelRecipient
from pulses.models.event import Event
from pulses.models.pulse import Pulse
from pulses.models.pulse_card import PulseCard
from pulses.services.cards import get_card_ids
from pulses.services.hydration import retrieve_alert, retrieve_pulse, retrieve_pulses
from pulses.services.permissions import PulsePermissions
from pulses.services.pulses import (
    create_alert,
    create_pulse,
    delete_notification,
    unsubscribe_from_alert,
    update_alert,
    update_pulse,
)
from pulses_shared.schemas.common import EVENT_SUBSCRIPTION_CREATED, EVENT_SUBSCRIPTION_UPDATED
from pulses_shared.schemas.pulses import AlertFields


async def _weekly(factory, publisher, **overrides):
    kwargs = {
        "name": "Weekly",
        "creator_id": ALICE,
        "card_ids": [CARD_B, CARD_A, CARD_C],
        "channels": [email_channel({"email": "a@x.com"})],
    }
    kwargs.update(overrides)
    async with factory() as session:
        return await create_pulse(session, publisher=publisher, **kwargs)


async def _rows_alert(factory, publisher, card_id=CARD_B, channels=None, creator_id=ALICE):
    async with factory() as session:
        return await create_alert(
            session,
            {"name": "Signups alert", "alert_condition": "rows", "alert_first_only": True},
            creator_id=creator_id,
            card_id=card_id,
            channels=channels if channels is not None else [email_channel({"id": BOB}, {"id": DAVE})],
            publisher=publisher,
        )


async def _count(factory, model, *criteria) -> int:
    async with factory() as session:
        return len((await session.execute(select(model).where(*criteria))).scalars().all())


# ---------------------------------------------------------------------------
# Create
# ---------------------------------------------------------------------------


class TestCreatePulse:
    @pytest.mark.asyncio
    async def test_weekly_pulse(self, seeded, publisher):
        view = await _weekly(seeded, publisher)

        assert view.name == "Weekly"
        assert view.creator_id == ALICE
        assert view.creator.common_name == "Alice Adams"
        assert view.skip_if_empty is False
        assert [c.id for c in view.cards] == [CARD_B, CARD_A, CARD_C]
        (channel,) = view.channels
        assert channel.channel_type.value == "email"
        assert channel.schedule_hour == 8
        assert [r.email for r in channel.recipients] == ["a@x.com"]
        assert "alert_condition" not in view.model_dump()

        async with seeded() as session:
            assert await get_card_ids(session, view.id) == [CARD_B, CARD_A, CARD_C]

    @pytest.mark.asyncio
    async def test_pulse_with_no_channels(self, seeded, publisher):
        view = await _weekly(seeded, publisher, channels=[])
        assert view.channels == []

    @pytest.mark.asyncio
    async def test_empty_card_list_rejected(self, seeded, publisher):
        with pytest.raises(ValueError):
            await _weekly(seeded, publisher, card_ids=[])
        assert await _count(seeded, Pulse) == 0

    @pytest.mark.asyncio
    async def test_blank_name_rejected(self, seeded, publisher):
        with pytest.raises(ValueError):
            await _weekly(seeded, publisher, name="   ")
        assert await _count(seeded, Pulse) == 0

    @pytest.mark.asyncio
    async def test_name_stored_stripped(self, seeded, publisher):
        view = await _weekly(seeded, publisher, name="  Weekly  ")
        assert view.name == "Weekly"

    @pytest.mark.asyncio
    async def test_non_integer_card_ids_rejected(self, seeded, publisher):
        with pytest.raises(ValueError):
            await _weekly(seeded, publisher, card_ids=["5"])
        assert await _count(seeded, Pulse) == 0

    @pytest.mark.asyncio
    async def test_channel_without_type_rejected(self, seeded, publisher):
        with pytest.raises(ValueError):
            await _weekly(seeded, publisher, channels=[{"schedule_type": "daily"}])
        assert await _count(seeded, Pulse) == 0

    @pytest.mark.asyncio
    async def test_failure_mid_transaction_leaves_nothing(self, seeded, publisher, monkeypatch):
        monkeypatch.setattr(
            pulse_service, "update_pulse_channels", AsyncMock(side_effect=RuntimeError("boom"))
        )
        with pytest.raises(RuntimeError):
            await _weekly(seeded, publisher)

        assert await _count(seeded, Pulse) == 0
        assert await _count(seeded, PulseCard) == 0
        assert await _count(seeded, Event) == 0
        assert publisher.history == []


class TestCreateAlert:
    @pytest.mark.asyncio
    async def test_rows_alert(self, seeded, publisher):
        view = await _rows_alert(seeded, publisher)

        assert view.alert_condition.value == "rows"
        assert view.alert_first_only is True
        assert view.skip_if_empty is True
        assert view.card.id == CARD_B
        assert "cards" not in view.model_dump()
        (channel,) = view.channels
        assert [r.id for r in channel.recipients] == [BOB, DAVE]

    @pytest.mark.asyncio
    async def test_accepts_alert_fields_model(self, seeded, publisher):
        async with seeded() as session:
            view = await create_alert(
                session,
                AlertFields(alert_condition="goal", alert_above_goal=True),
                creator_id=ALICE,
                card_id=CARD_C,
                channels=[slack_channel()],
                publisher=publisher,
            )
        assert view.name is None
        assert view.alert_above_goal is True
        assert view.alert_first_only is False

    @pytest.mark.asyncio
    async def test_missing_condition_rejected(self, seeded, publisher):
        async with seeded() as session:
            with pytest.raises(ValidationError):
                await create_alert(session, {"name": "x"}, ALICE, CARD_B, [], publisher=publisher)
        assert await _count(seeded, Pulse) == 0


# ---------------------------------------------------------------------------
# Update
# ---------------------------------------------------------------------------


class TestUpdatePulse:
    @pytest.mark.asyncio
    async def test_full_replacement(self, seeded, publisher):
        created = await _weekly(seeded, publisher, channels=[email_channel({"email": "a@x.com"}), slack_channel()])

        async with seeded() as session:
            view = await update_pulse(
                session,
                {
                    "id": created.id,
                    "name": "Monday digest",
                    "cards": [CARD_C, CARD_B],
                    "channels": [email_channel({"id": BOB}, schedule_type="weekly", schedule_day="mon")],
                    "skip_if_empty": True,
                },
                publisher=publisher,
                actor_id=ALICE,
            )

        assert view.name == "Monday digest"
        assert view.skip_if_empty is True
        assert [c.id for c in view.cards] == [CARD_C, CARD_B]
        (channel,) = view.channels
        assert channel.schedule_day.value == "mon"
        assert [r.id for r in channel.recipients] == [BOB]

    @pytest.mark.asyncio
    async def test_unchanged_cards_not_rewritten(self, seeded, publisher, monkeypatch):
        created = await _weekly(seeded, publisher)
        spy = AsyncMock(wraps=pulse_service.update_pulse_cards)
        monkeypatch.setattr(pulse_service, "update_pulse_cards", spy)

        async with seeded() as session:
            await update_pulse(
                session,
                {"id": created.id, "name": "Weekly", "cards": [c.model_dump() for c in created.cards]},
                publisher=publisher,
            )
        spy.assert_not_awaited()

        async with seeded() as session:
            view = await update_pulse(
                session,
                {"id": created.id, "name": "Weekly", "cards": [CARD_A, CARD_B, CARD_C]},
                publisher=publisher,
            )
        spy.assert_awaited_once()
        assert [c.id for c in view.cards] == [CARD_A, CARD_B, CARD_C]

    @pytest.mark.asyncio
    async def test_missing_pulse_returns_none(self, seeded, publisher):
        async with seeded() as session:
            view = await update_pulse(
                session, {"id": 404, "name": "x", "cards": [CARD_A]}, publisher=publisher
            )
        assert view is None

    @pytest.mark.asyncio
    async def test_alert_id_not_updatable_as_pulse(self, seeded, publisher):
        alert = await _rows_alert(seeded, publisher)
        async with seeded() as session:
            view = await update_pulse(
                session, {"id": alert.id, "name": "x", "cards": [CARD_A]}, publisher=publisher
            )
        assert view is None
        async with seeded() as session:
            assert (await retrieve_alert(session, alert.id)).name == "Signups alert"

    @pytest.mark.asyncio
    async def test_empty_cards_rejected(self, seeded, publisher):
        created = await _weekly(seeded, publisher)
        async with seeded() as session:
            with pytest.raises(ValueError):
                await update_pulse(session, {"id": created.id, "name": "x", "cards": []}, publisher=publisher)

    @pytest.mark.asyncio
    async def test_failure_rolls_back_base_fields(self, seeded, publisher, monkeypatch):
        created = await _weekly(seeded, publisher)
        monkeypatch.setattr(
            pulse_service, "update_pulse_channels", AsyncMock(side_effect=RuntimeError("boom"))
        )
        async with seeded() as session:
            with pytest.raises(RuntimeError):
                await update_pulse(
                    session,
                    {"id": created.id, "name": "Renamed", "cards": [CARD_A]},
                    publisher=publisher,
                )

        async with seeded() as session:
            view = await retrieve_pulse(session, created.id)
        assert view.name == "Weekly"
        assert [c.id for c in view.cards] == [CARD_B, CARD_A, CARD_C]


class TestUpdateAlert:
    @pytest.mark.asyncio
    async def test_update_alert(self, seeded, publisher):
        created = await _rows_alert(seeded, publisher)
        async with seeded() as session:
            view = await update_alert(
                session,
                {
                    "id": created.id,
                    "name": "Churn goal",
                    "alert_condition": "goal",
                    "alert_above_goal": False,
                    "card": {"id": CARD_C},
                    "channels": [slack_channel()],
                },
                publisher=publisher,
            )

        assert view.alert_condition.value == "goal"
        assert view.alert_above_goal is False
        assert view.card.id == CARD_C
        assert [c.channel_type.value for c in view.channels] == ["slack"]

    @pytest.mark.asyncio
    async def test_pulse_id_not_updatable_as_alert(self, seeded, publisher):
        pulse = await _weekly(seeded, publisher)
        async with seeded() as session:
            view = await update_alert(
                session,
                {"id": pulse.id, "alert_condition": "rows", "card": CARD_A},
                publisher=publisher,
            )
        assert view is None
        async with seeded() as session:
            assert await retrieve_pulse(session, pulse.id) is not None


# ---------------------------------------------------------------------------
# Delete and unsubscribe
# ---------------------------------------------------------------------------


class TestDelete:
    @pytest.mark.asyncio
    async def test_delete_cascades(self, seeded, publisher):
        view = await _weekly(seeded, publisher, channels=[email_channel({"id": BOB}), slack_channel()])
        channel_ids = [c.id for c in view.channels]

        async with seeded() as session:
            assert await delete_notification(session, view.id) is True

        assert await _count(seeded, Pulse, Pulse.id == view.id) == 0
        assert await _count(seeded, PulseCard, PulseCard.pulse_id == view.id) == 0
        assert await _count(seeded, PulseChannel, PulseChannel.pulse_id == view.id) == 0
        assert await _count(
            seeded, PulseChannelRecipient, PulseChannelRecipient.pulse_channel_id.in_(channel_ids)
        ) == 0

    @pytest.mark.asyncio
    async def test_delete_leaves_other_pulses(self, seeded, publisher):
        keep = await _weekly(seeded, publisher, name="Keep")
        drop = await _weekly(seeded, publisher, name="Drop")
        async with seeded() as session:
            await delete_notification(session, drop.id)
        async with seeded() as session:
            kept = await retrieve_pulse(session, keep.id)
        assert [c.id for c in kept.cards] == [CARD_B, CARD_A, CARD_C]
        assert len(kept.channels) == 1

    @pytest.mark.asyncio
    async def test_delete_missing(self, seeded):
        async with seeded() as session:
            assert await delete_notification(session, 404) is False


class TestUnsubscribe:
    @pytest.mark.asyncio
    async def test_removes_only_that_user(self, seeded, publisher):
        alert = await _rows_alert(seeded, publisher)
        async with seeded() as session:
            assert await unsubscribe_from_alert(session, alert.id, BOB) == 1

        async with seeded() as session:
            view = await retrieve_alert(session, alert.id)
        assert [r.id for r in view.channels[0].recipients] == [DAVE]

    @pytest.mark.asyncio
    async def test_no_match_logs_warning(self, seeded, publisher):
        alert = await _rows_alert(seeded, publisher, channels=[email_channel({"id": BOB})])
        with capture_logs() as logs:
            async with seeded() as session:
                removed = await unsubscribe_from_alert(session, alert.id, DAVE)

        assert removed == 0
        assert any(
            entry["event"] == "alert.unsubscribe_no_match" and entry["log_level"] == "warning"
            for entry in logs
        )
        async with seeded() as session:
            view = await retrieve_alert(session, alert.id)
        assert [r.id for r in view.channels[0].recipients] == [BOB]

    @pytest.mark.asyncio
    async def test_pulses_are_not_alerts(self, seeded, publisher):
        pulse = await _weekly(seeded, publisher, channels=[email_channel({"id": BOB})])
        async with seeded() as session:
            assert await unsubscribe_from_alert(session, pulse.id, BOB) == 0

    @pytest.mark.asyncio
    async def test_rejects_non_integer_ids(self, seeded):
        async with seeded() as session:
            with pytest.raises(ValueError):
                await unsubscribe_from_alert(session, "3", BOB)


# ---------------------------------------------------------------------------
# Lifecycle events
# ---------------------------------------------------------------------------


class TestLifecycleEvents:
    @pytest.mark.asyncio
    async def test_create_publishes_event(self, seeded, publisher):
        view = await _weekly(seeded, publisher)

        ((event_type, payload),) = publisher.history
        assert event_type == EVENT_SUBSCRIPTION_CREATED
        assert payload["id"] == view.id
        assert payload["name"] == "Weekly"

        async with seeded() as session:
            (event,) = (await session.execute(select(Event))).scalars().all()
        assert event.actor_id == ALICE
        assert event.dispatched_at is not None

    @pytest.mark.asyncio
    async def test_update_publishes_event(self, seeded, publisher):
        created = await _rows_alert(seeded, publisher)
        async with seeded() as session:
            await update_alert(
                session,
                {"id": created.id, "alert_condition": "rows", "card": CARD_B},
                publisher=publisher,
                actor_id=BOB,
            )
        assert [t for t, _ in publisher.history] == [EVENT_SUBSCRIPTION_CREATED, EVENT_SUBSCRIPTION_UPDATED]

    @pytest.mark.asyncio
    async def test_missing_update_publishes_nothing(self, seeded, publisher):
        async with seeded() as session:
            await update_pulse(session, {"id": 404, "name": "x", "cards": [CARD_A]}, publisher=publisher)
        assert publisher.history == []

    @pytest.mark.asyncio
    async def test_publisher_failure_keeps_write(self, seeded):
        broken = AsyncMock()
        broken.publish.side_effect = ConnectionError("redis down")

        view = await _weekly(seeded, broken)

        async with seeded() as session:
            assert await retrieve_pulse(session, view.id) is not None
            (event,) = (await session.execute(select(Event))).scalars().all()
        assert event.dispatched_at is None

    @pytest.mark.asyncio
    async def test_joined_transaction_defers_dispatch(self, seeded, publisher):
        async with seeded() as session:
            async with transaction(session):
                view = await create_pulse(
                    session, "Weekly", ALICE, [CARD_A], [], publisher=publisher
                )
                assert publisher.history == []
        assert await _count(seeded, Pulse, Pulse.id == view.id) == 1
        assert await _count(seeded, Event, Event.dispatched_at.is_(None)) == 1

    @pytest.mark.asyncio
    async def test_joined_transaction_rolls_back_together(self, seeded, publisher):
        async with seeded() as session:
            with pytest.raises(RuntimeError):
                async with transaction(session):
                    await create_pulse(session, "Weekly", ALICE, [CARD_A], [], publisher=publisher)
                    raise RuntimeError("caller failed")
        assert await _count(seeded, Pulse) == 0
        assert await _count(seeded, Event) == 0


# ---------------------------------------------------------------------------
# Mutations after reads on the same session
# ---------------------------------------------------------------------------


class TestMutationAfterRead:
    @pytest.mark.asyncio
    async def test_create_after_list(self, seeded, publisher):
        async with seeded() as session:
            assert await retrieve_pulses(session) == []
            view = await create_pulse(session, "Weekly", ALICE, [CARD_B], [], publisher=publisher)

        assert await _count(seeded, Pulse, Pulse.id == view.id) == 1
        assert [t for t, _ in publisher.history] == [EVENT_SUBSCRIPTION_CREATED]
        assert await _count(seeded, Event, Event.dispatched_at.is_(None)) == 0

    @pytest.mark.asyncio
    async def test_update_after_permission_check(self, seeded, publisher):
        created = await _weekly(seeded, publisher)
        async with seeded() as session:
            assert await PulsePermissions().can_write(
                session, created.id, Principal(id=ALICE, is_superuser=True)
            )
            view = await update_pulse(
                session,
                {"id": created.id, "name": "Renamed", "cards": [CARD_A]},
                publisher=publisher,
            )
        assert view.name == "Renamed"

        async with seeded() as session:
            stored = await retrieve_pulse(session, created.id)
        assert stored.name == "Renamed"
        assert [c.id for c in stored.cards] == [CARD_A]
        assert [t for t, _ in publisher.history] == [EVENT_SUBSCRIPTION_CREATED, EVENT_SUBSCRIPTION_UPDATED]

    @pytest.mark.asyncio
    async def test_alert_update_after_fetch(self, seeded, publisher):
        created = await _rows_alert(seeded, publisher)
        async with seeded() as session:
            current = await retrieve_alert(session, created.id)
            await update_alert(
                session,
                {"id": current.id, "name": "Renamed", "alert_condition": "rows", "card": current.card.model_dump()},
                publisher=publisher,
            )

        async with seeded() as session:
            assert (await retrieve_alert(session, created.id)).name == "Renamed"
        assert len(publisher.history) == 2

    @pytest.mark.asyncio
    async def test_delete_after_fetch(self, seeded, publisher):
        created = await _weekly(seeded, publisher)
        async with seeded() as session:
            assert await retrieve_pulse(session, created.id) is not None
            assert await delete_notification(session, created.id) is True

        assert await _count(seeded, Pulse, Pulse.id == created.id) == 0
        assert await _count(seeded, PulseCard, PulseCard.pulse_id == created.id) == 0

    @pytest.mark.asyncio
    async def test_unsubscribe_after_fetch(self, seeded, publisher):
        alert = await _rows_alert(seeded, publisher)
        async with seeded() as session:
            await retrieve_alert(session, alert.id)
            assert await unsubscribe_from_alert(session, alert.id, BOB) == 1

        async with seeded() as session:
            view = await retrieve_alert(session, alert.id)
        assert [r.id for r in view.channels[0].recipients] == [DAVE]

    @pytest.mark.asyncio
    async def test_failure_after_read_rolls_back(self, seeded, publisher, monkeypatch):
        created = await _weekly(seeded, publisher)
        monkeypatch.setattr(
            pulse_service, "update_pulse_channels", AsyncMock(side_effect=RuntimeError("boom"))
        )
        async with seeded() as session:
            await retrieve_pulse(session, created.id)
            with pytest.raises(RuntimeError):
                await update_pulse(
                    session,
                    {"id": created.id, "name": "Renamed", "cards": [CARD_A]},
                    publisher=publisher,
                )
            assert not session.in_transaction()

        async with seeded() as session:
            assert (await retrieve_pulse(session, created.id)).name == "Weekly"

    @pytest.mark.asyncio
    async def test_consecutive_mutations_on_one_session(self, seeded, publisher):
        async with seeded() as session:
            first = await create_pulse(session, "First", ALICE, [CARD_A], [], publisher=publisher)
            second = await create_pulse(session, "Second", ALICE, [CARD_B], [], publisher=publisher)
            await update_pulse(
                session, {"id": first.id, "name": "First renamed", "cards": [CARD_C]}, publisher=publisher
            )

        async with seeded() as session:
            names = [p.name for p in await retrieve_pulses(session)]
        assert names == ["First renamed", "Second"]
        assert second.id != first.id
        assert [t for t, _ in publisher.history] == [
            EVENT_SUBSCRIPTION_CREATED,
            EVENT_SUBSCRIPTION_CREATED,
            EVENT_SUBSCRIPTION_UPDATED,
        ]
