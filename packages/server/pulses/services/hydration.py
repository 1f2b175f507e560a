"""
Pulse hydration and the Pulse/Alert views over the single ``pulse`` table.

A pulse row is hydrated into a plain record (base fields plus creator, cards,
channels and recipients). Each view is a pure mapping over that record:

- Pulse-view drops the alert fields
- Alert-view promotes the single card to ``card`` and drops ``cards``
- The combined view keeps everything

``details.emails`` on channels is delivery configuration and is never
returned by any view.
"""

from __future__ import annotations

from collections import defaultdict
from typing import Any, Optional, Sequence

from sqlalchemy import or_
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from pulses.core.permissions import Viewer
from pulses.core.preconditions import require_int
from pulses.models.card import Card
from pulses.models.channel import PulseChannel, PulseChannelRecipient
from pulses.models.pulse import Pulse
from pulses.models.pulse_card import PulseCard
from pulses.models.user import User
from pulses.services.channels import get_recipients
from pulses_shared.schemas.pulses import (
    AlertRead,
    CardSummary,
    ChannelRead,
    CreatorRead,
    NotificationRead,
    PulseRead,
)

ALERT_FIELDS = ("alert_condition", "alert_description", "alert_above_goal", "alert_first_only")

Record = dict[str, Any]


# ---------------------------------------------------------------------------
# Hydration
# ---------------------------------------------------------------------------


def _card_summary(card: Card, viewer: Optional[Viewer]) -> CardSummary:
    if viewer is not None and not viewer.can_read_card(card):
        return CardSummary(id=card.id)
    return CardSummary(
        id=card.id,
        name=card.name,
        description=card.description,
        display=card.display,
    )


def _channel_read(channel: PulseChannel, recipients) -> ChannelRead:
    details = {k: v for k, v in (channel.details or {}).items() if k != "emails"}
    return ChannelRead(
        id=channel.id,
        pulse_id=channel.pulse_id,
        channel_type=channel.channel_type,
        schedule_type=channel.schedule_type,
        schedule_hour=channel.schedule_hour,
        schedule_day=channel.schedule_day,
        schedule_frame=channel.schedule_frame,
        enabled=channel.enabled,
        details=details,
        recipients=recipients,
        created_at=channel.created_at,
        updated_at=channel.updated_at,
    )


async def get_cards(
    session: AsyncSession, pulse_ids: Sequence[int], viewer: Optional[Viewer] = None
) -> dict[int, list[CardSummary]]:
    """Non-archived cards per pulse, in position order."""
    by_pulse: dict[int, list[CardSummary]] = defaultdict(list)
    if not pulse_ids:
        return by_pulse
    result = await session.execute(
        select(PulseCard.pulse_id, Card)
        .select_from(PulseCard)
        .join(Card, Card.id == PulseCard.card_id)
        .where(PulseCard.pulse_id.in_(pulse_ids), Card.archived.is_(False))
        .order_by(PulseCard.pulse_id, PulseCard.position)
    )
    for pulse_id, card in result.all():
        by_pulse[pulse_id].append(_card_summary(card, viewer))
    return by_pulse


async def get_channels_with_recipients(
    session: AsyncSession, pulse_ids: Sequence[int]
) -> dict[int, list[ChannelRead]]:
    by_pulse: dict[int, list[ChannelRead]] = defaultdict(list)
    if not pulse_ids:
        return by_pulse
    result = await session.execute(
        select(PulseChannel)
        .where(PulseChannel.pulse_id.in_(pulse_ids))
        .order_by(PulseChannel.id)
    )
    channels = result.scalars().all()
    recipients = await get_recipients(session, [c.id for c in channels])
    for channel in channels:
        by_pulse[channel.pulse_id].append(_channel_read(channel, recipients.get(channel.id, [])))
    return by_pulse


async def hydrate_pulses(
    session: AsyncSession, pulses: Sequence[Pulse], viewer: Optional[Viewer] = None
) -> list[Record]:
    """Attach creator, cards and channels (with recipients) to each pulse."""
    pulse_ids = [p.id for p in pulses]
    creator_ids = {p.creator_id for p in pulses}

    creators: dict[int, CreatorRead] = {}
    if creator_ids:
        result = await session.execute(select(User).where(User.id.in_(creator_ids)))
        for user in result.scalars().all():
            creators[user.id] = CreatorRead(
                id=user.id,
                email=user.email,
                first_name=user.first_name,
                last_name=user.last_name,
                common_name=user.common_name,
            )

    cards = await get_cards(session, pulse_ids, viewer)
    channels = await get_channels_with_recipients(session, pulse_ids)

    return [
        {
            "id": p.id,
            "name": p.name,
            "creator_id": p.creator_id,
            "creator": creators.get(p.creator_id),
            "skip_if_empty": p.skip_if_empty,
            "alert_condition": p.alert_condition,
            "alert_description": p.alert_description,
            "alert_above_goal": p.alert_above_goal,
            "alert_first_only": p.alert_first_only,
            "cards": cards.get(p.id, []),
            "channels": channels.get(p.id, []),
            "created_at": p.created_at,
            "updated_at": p.updated_at,
        }
        for p in pulses
    ]


# ---------------------------------------------------------------------------
# Views
# ---------------------------------------------------------------------------


def remove_alert_fields(record: Record) -> Record:
    return {k: v for k, v in record.items() if k not in ALERT_FIELDS}


def pulse_to_alert(record: Record) -> Record:
    """Promote the first card to ``card`` and drop ``cards``."""
    alert = {k: v for k, v in record.items() if k != "cards"}
    cards = record.get("cards") or []
    alert["card"] = cards[0] if cards else None
    return alert


def to_pulse_view(record: Record) -> PulseRead:
    return PulseRead(**remove_alert_fields(record))


def to_alert_view(record: Record) -> AlertRead:
    if record.get("alert_condition") is None:
        raise ValueError(f"Pulse {record.get('id')} is not an alert")
    alert = pulse_to_alert(record)
    if alert.get("alert_first_only") is None:
        alert["alert_first_only"] = False
    return AlertRead(**alert)


def to_notification_view(record: Record) -> NotificationRead:
    return NotificationRead(**record)


# ---------------------------------------------------------------------------
# Retrieval
# ---------------------------------------------------------------------------


async def _select_pulses(session: AsyncSession, stmt) -> list[Pulse]:
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def _retrieve_one(
    session: AsyncSession, pulse_id: int, *criteria, viewer: Optional[Viewer]
) -> Optional[Record]:
    require_int(pulse_id, "pulse_id")
    pulses = await _select_pulses(session, select(Pulse).where(Pulse.id == pulse_id, *criteria))
    if not pulses:
        return None
    return (await hydrate_pulses(session, pulses, viewer))[0]


async def retrieve_pulse(
    session: AsyncSession, pulse_id: int, viewer: Optional[Viewer] = None
) -> Optional[PulseRead]:
    """Fetch a pulse by id; ``None`` if missing or if the row is an alert."""
    record = await _retrieve_one(session, pulse_id, Pulse.alert_condition.is_(None), viewer=viewer)
    return to_pulse_view(record) if record else None


async def retrieve_alert(
    session: AsyncSession, pulse_id: int, viewer: Optional[Viewer] = None
) -> Optional[AlertRead]:
    """Fetch an alert by id; ``None`` if missing or if the row is a pulse."""
    record = await _retrieve_one(session, pulse_id, Pulse.alert_condition.is_not(None), viewer=viewer)
    return to_alert_view(record) if record else None


async def retrieve_pulse_or_alert(
    session: AsyncSession, pulse_id: int, viewer: Optional[Viewer] = None
) -> Optional[NotificationRead]:
    record = await _retrieve_one(session, pulse_id, viewer=viewer)
    return to_notification_view(record) if record else None


async def retrieve_pulses(
    session: AsyncSession, viewer: Optional[Viewer] = None
) -> list[PulseRead]:
    """All pulses ordered by name."""
    pulses = await _select_pulses(
        session,
        select(Pulse).where(Pulse.alert_condition.is_(None)).order_by(Pulse.name, Pulse.id),
    )
    return [to_pulse_view(r) for r in await hydrate_pulses(session, pulses, viewer)]


async def retrieve_alerts(
    session: AsyncSession, viewer: Optional[Viewer] = None
) -> list[AlertRead]:
    """All alerts ordered by name."""
    pulses = await _select_pulses(
        session,
        select(Pulse).where(Pulse.alert_condition.is_not(None)).order_by(Pulse.name, Pulse.id),
    )
    return [to_alert_view(r) for r in await hydrate_pulses(session, pulses, viewer)]


async def retrieve_alerts_for_card(
    session: AsyncSession, card_id: int, user_id: int, viewer: Optional[Viewer] = None
) -> list[AlertRead]:
    """Alerts on ``card_id`` that ``user_id`` created or receives."""
    require_int(card_id, "card_id")
    require_int(user_id, "user_id")
    stmt = (
        select(Pulse)
        .distinct()
        .join(PulseCard, PulseCard.pulse_id == Pulse.id)
        .outerjoin(PulseChannel, PulseChannel.pulse_id == Pulse.id)
        .outerjoin(PulseChannelRecipient, PulseChannelRecipient.pulse_channel_id == PulseChannel.id)
        .where(
            Pulse.alert_condition.is_not(None),
            PulseCard.card_id == card_id,
            or_(Pulse.creator_id == user_id, PulseChannelRecipient.user_id == user_id),
        )
        .order_by(Pulse.name, Pulse.id)
    )
    pulses = await _select_pulses(session, stmt)
    return [to_alert_view(r) for r in await hydrate_pulses(session, pulses, viewer)]
