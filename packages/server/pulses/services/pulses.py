"""
Pulse service layer: create, update and delete pulses and alerts.

Every mutation runs in one transaction covering the base row and the card
and channel reconciliation, so a failure at any step leaves nothing behind.
Lifecycle events are written to the outbox inside that transaction and
dispatched after commit.

A transaction the session autobegan for earlier reads is committed along
with the mutation. Inside a caller's ``transaction(session)`` block the
operations join it; the caller then owns commit and
``dispatch_pending_events``.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Optional, Sequence

import structlog
from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from pulses.core.database import transaction
from pulses.core.events import EventPublisher, dispatch_pending_events, record_event
from pulses.core.preconditions import require_int, require_int_list, require_non_empty
from pulses.models.channel import PulseChannel, PulseChannelRecipient
from pulses.models.pulse import Pulse
from pulses.models.pulse_card import PulseCard
from pulses.services.cards import get_card_ids, update_pulse_cards
from pulses.services.channels import coerce_channels, delete_pulse_channels, update_pulse_channels
from pulses.services.hydration import retrieve_alert, retrieve_pulse
from pulses_shared.schemas.common import EVENT_SUBSCRIPTION_CREATED, EVENT_SUBSCRIPTION_UPDATED
from pulses_shared.schemas.pulses import (
    AlertCreate,
    AlertFields,
    AlertRead,
    AlertUpdate,
    ChannelIn,
    PulseCreate,
    PulseRead,
    PulseUpdate,
)

log = structlog.get_logger()


# ---------------------------------------------------------------------------
# Create
# ---------------------------------------------------------------------------


async def create_notification(
    session: AsyncSession,
    pulse_fields: dict[str, Any],
    card_ids: Sequence[int],
    channels: Sequence[ChannelIn | Mapping],
    is_alert: bool,
    publisher: EventPublisher | None = None,
) -> PulseRead | AlertRead:
    """Insert a pulse row with its cards and channels and return the matching view."""
    card_ids = require_int_list(card_ids, "card_ids")
    channels = coerce_channels(channels)

    async with transaction(session) as owned:
        pulse = Pulse(**pulse_fields)
        session.add(pulse)
        await session.flush()

        await update_pulse_cards(session, pulse.id, card_ids)
        await update_pulse_channels(session, pulse.id, channels)

        if is_alert:
            view = await retrieve_alert(session, pulse.id)
        else:
            view = await retrieve_pulse(session, pulse.id)
        record_event(
            session,
            EVENT_SUBSCRIPTION_CREATED,
            view.model_dump(mode="json"),
            actor_id=pulse.creator_id,
        )

    log.info(
        "alert.created" if is_alert else "pulse.created",
        pulse_id=view.id,
        creator_id=view.creator_id,
        cards=len(card_ids),
        channels=len(view.channels),
    )
    if owned:
        await dispatch_pending_events(session, publisher)
    return view


async def create_pulse(
    session: AsyncSession,
    name: str,
    creator_id: int,
    card_ids: Sequence[int],
    channels: Sequence[ChannelIn | Mapping],
    skip_if_empty: bool = False,
    publisher: EventPublisher | None = None,
) -> PulseRead:
    """Create a pulse with its cards, channels and recipients.

    ``card_ids`` must be a non-empty list of card ids in delivery order.
    Raises ``ValueError`` on malformed input before touching the database.
    """
    req = PulseCreate(
        name=name,
        creator_id=creator_id,
        card_ids=card_ids,
        channels=coerce_channels(channels),
        skip_if_empty=skip_if_empty,
    )
    return await create_notification(
        session,
        {"name": req.name, "creator_id": req.creator_id, "skip_if_empty": req.skip_if_empty},
        req.card_ids,
        req.channels,
        is_alert=False,
        publisher=publisher,
    )


async def create_alert(
    session: AsyncSession,
    alert: AlertFields | Mapping,
    creator_id: int,
    card_id: int,
    channels: Sequence[ChannelIn | Mapping],
    publisher: EventPublisher | None = None,
) -> AlertRead:
    """Create an alert on a single card. Alerts always skip empty results."""
    if isinstance(alert, AlertFields):
        alert = alert.model_dump()
    req = AlertCreate.model_validate(
        {
            **dict(alert),
            "creator_id": creator_id,
            "card_id": card_id,
            "channels": coerce_channels(channels),
        }
    )
    return await create_notification(
        session,
        {
            "name": req.name,
            "creator_id": req.creator_id,
            "skip_if_empty": True,
            "alert_condition": req.alert_condition.value,
            "alert_description": req.alert_description,
            "alert_above_goal": req.alert_above_goal,
            "alert_first_only": req.alert_first_only,
        },
        [req.card_id],
        req.channels,
        is_alert=True,
        publisher=publisher,
    )


# ---------------------------------------------------------------------------
# Update
# ---------------------------------------------------------------------------


async def update_notification(
    session: AsyncSession,
    pulse_id: int,
    name: Optional[str],
    cards: Sequence[int],
    channels: Sequence[ChannelIn | Mapping],
    skip_if_empty: bool,
    is_alert: bool = False,
    alert_fields: Optional[dict[str, Any]] = None,
) -> bool:
    """Write the base fields and converge cards and channels.

    The card list is only rewritten when its order differs from what is
    stored. Returns False when no pulse (or alert, per ``is_alert``) has
    this id.
    """
    require_int(pulse_id, "pulse_id")
    cards = require_int_list(cards, "cards")
    require_non_empty(cards, "cards")
    channels = coerce_channels(channels)

    discriminator = Pulse.alert_condition.is_not(None) if is_alert else Pulse.alert_condition.is_(None)

    async with transaction(session):
        result = await session.execute(select(Pulse).where(Pulse.id == pulse_id, discriminator))
        pulse = result.scalar_one_or_none()
        if pulse is None:
            return False

        pulse.name = name
        pulse.skip_if_empty = skip_if_empty
        for key, value in (alert_fields or {}).items():
            setattr(pulse, key, value)
        session.add(pulse)
        await session.flush()

        if list(cards) != await get_card_ids(session, pulse_id):
            await update_pulse_cards(session, pulse_id, cards)

        await update_pulse_channels(session, pulse_id, channels)
    return True


async def update_pulse(
    session: AsyncSession,
    update: PulseUpdate | Mapping,
    publisher: EventPublisher | None = None,
    actor_id: Optional[int] = None,
) -> Optional[PulseRead]:
    """Apply a full-replacement update to a pulse; ``None`` if no such pulse."""
    if not isinstance(update, PulseUpdate):
        update = PulseUpdate.model_validate(dict(update))

    async with transaction(session) as owned:
        found = await update_notification(
            session,
            update.id,
            name=update.name,
            cards=update.cards,
            channels=update.channels,
            skip_if_empty=update.skip_if_empty,
        )
        view = await retrieve_pulse(session, update.id) if found else None
        if view is not None:
            record_event(session, EVENT_SUBSCRIPTION_UPDATED, view.model_dump(mode="json"), actor_id=actor_id)

    if view is None:
        log.info("pulse.update_not_found", pulse_id=update.id)
        return None
    log.info("pulse.updated", pulse_id=view.id)
    if owned:
        await dispatch_pending_events(session, publisher)
    return view


async def update_alert(
    session: AsyncSession,
    update: AlertUpdate | Mapping,
    publisher: EventPublisher | None = None,
    actor_id: Optional[int] = None,
) -> Optional[AlertRead]:
    """Apply a full-replacement update to an alert; ``None`` if no such alert."""
    if not isinstance(update, AlertUpdate):
        update = AlertUpdate.model_validate(dict(update))

    async with transaction(session) as owned:
        found = await update_notification(
            session,
            update.id,
            name=update.name,
            cards=[update.card],
            channels=update.channels,
            skip_if_empty=True,
            is_alert=True,
            alert_fields={
                "alert_condition": update.alert_condition.value,
                "alert_description": update.alert_description,
                "alert_above_goal": update.alert_above_goal,
                "alert_first_only": update.alert_first_only,
            },
        )
        view = await retrieve_alert(session, update.id) if found else None
        if view is not None:
            record_event(session, EVENT_SUBSCRIPTION_UPDATED, view.model_dump(mode="json"), actor_id=actor_id)

    if view is None:
        log.info("alert.update_not_found", pulse_id=update.id)
        return None
    log.info("alert.updated", pulse_id=view.id)
    if owned:
        await dispatch_pending_events(session, publisher)
    return view


# ---------------------------------------------------------------------------
# Delete
# ---------------------------------------------------------------------------


async def pre_delete_pulse(session: AsyncSession, pulse_id: int) -> None:
    """Delete the pulse's card links, channels and recipients.

    Must run in the same transaction that deletes the pulse row.
    """
    require_int(pulse_id, "pulse_id")
    await session.execute(
        delete(PulseCard)
        .where(PulseCard.pulse_id == pulse_id)
        .execution_options(synchronize_session=False)
    )
    await delete_pulse_channels(session, pulse_id)


async def delete_notification(session: AsyncSession, pulse_id: int) -> bool:
    """Delete a pulse or alert together with all of its children."""
    require_int(pulse_id, "pulse_id")
    async with transaction(session):
        pulse = await session.get(Pulse, pulse_id)
        if pulse is None:
            return False
        await pre_delete_pulse(session, pulse_id)
        await session.delete(pulse)
        await session.flush()

    log.info("pulse.deleted", pulse_id=pulse_id)
    return True


async def unsubscribe_from_alert(session: AsyncSession, pulse_id: int, user_id: int) -> int:
    """Remove ``user_id`` from the recipients of alert ``pulse_id``.

    Returns the number of recipient rows removed. Zero is logged as a
    warning, not raised: the user may never have been subscribed.
    """
    require_int(pulse_id, "pulse_id")
    require_int(user_id, "user_id")

    recipient_ids = (
        select(PulseChannelRecipient.id)
        .join(PulseChannel, PulseChannel.id == PulseChannelRecipient.pulse_channel_id)
        .join(Pulse, Pulse.id == PulseChannel.pulse_id)
        .where(
            Pulse.id == pulse_id,
            Pulse.alert_condition.is_not(None),
            PulseChannelRecipient.user_id == user_id,
        )
    )
    async with transaction(session):
        result = await session.execute(
            delete(PulseChannelRecipient)
            .where(PulseChannelRecipient.id.in_(recipient_ids))
            .execution_options(synchronize_session=False)
        )
        count = result.rowcount

    if count == 0:
        log.warning("alert.unsubscribe_no_match", pulse_id=pulse_id, user_id=user_id)
    else:
        log.info("alert.unsubscribed", pulse_id=pulse_id, user_id=user_id, removed=count)
    return count
