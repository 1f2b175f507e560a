"""
Channel service layer: per-type delivery channel reconciliation for a pulse.

Handles:
- Converging a pulse's channels onto a complete desired set, one channel per type
- Replacing each channel's recipients with the desired recipient list
- Loading channels with their recipients for hydration
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Mapping
from typing import Any, Iterable, Optional, Sequence

import structlog
from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from pulses.core.preconditions import require_int
from pulses.models.channel import PulseChannel, PulseChannelRecipient
from pulses.models.user import User
from pulses_shared.schemas.common import CHANNEL_TYPES
from pulses_shared.schemas.pulses import ChannelIn, RecipientIn, RecipientRead

log = structlog.get_logger()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def coerce_channels(channels: Any) -> list[ChannelIn]:
    """Validate desired channels; raises ``ValueError`` on any malformed element."""
    if isinstance(channels, (str, bytes, Mapping)) or not isinstance(channels, Sequence):
        raise ValueError("channels must be a sequence of channel records")
    coerced: list[ChannelIn] = []
    for channel in channels:
        if isinstance(channel, ChannelIn):
            coerced.append(channel)
            continue
        if not isinstance(channel, Mapping):
            raise ValueError(f"Channel must be a mapping, got {type(channel).__name__}")
        if channel.get("channel_type") is None:
            raise ValueError("Cannot have channels without a channel_type attribute")
        coerced.append(ChannelIn.model_validate(dict(channel)))
    return coerced


def _group_by_type(items: Iterable[Any], key) -> dict[str, list[Any]]:
    grouped: dict[str, list[Any]] = defaultdict(list)
    for item in items:
        grouped[key(item)].append(item)
    return grouped


def _apply(row: PulseChannel, channel: ChannelIn) -> PulseChannel:
    row.channel_type = channel.channel_type.value
    row.schedule_type = channel.schedule_type.value
    row.schedule_hour = channel.schedule_hour
    row.schedule_day = channel.schedule_day.value if channel.schedule_day else None
    row.schedule_frame = channel.schedule_frame.value if channel.schedule_frame else None
    row.enabled = channel.enabled
    row.details = dict(channel.details)
    return row


async def get_channels(session: AsyncSession, pulse_id: int) -> list[PulseChannel]:
    result = await session.execute(
        select(PulseChannel)
        .where(PulseChannel.pulse_id == pulse_id)
        .order_by(PulseChannel.id)
    )
    return list(result.scalars().all())


async def get_recipients(
    session: AsyncSession, channel_ids: Sequence[int]
) -> dict[int, list[RecipientRead]]:
    """Recipients keyed by channel id; user recipients carry the user's details."""
    by_channel: dict[int, list[RecipientRead]] = defaultdict(list)
    if not channel_ids:
        return by_channel
    result = await session.execute(
        select(PulseChannelRecipient, User)
        .select_from(PulseChannelRecipient)
        .outerjoin(User, User.id == PulseChannelRecipient.user_id)
        .where(PulseChannelRecipient.pulse_channel_id.in_(channel_ids))
        .order_by(PulseChannelRecipient.id)
    )
    for recipient, user in result.all():
        if user is not None:
            entry = RecipientRead(
                id=user.id,
                email=user.email,
                first_name=user.first_name,
                last_name=user.last_name,
                common_name=user.common_name,
            )
        else:
            entry = RecipientRead(id=recipient.user_id, email=recipient.email)
        by_channel[recipient.pulse_channel_id].append(entry)
    return by_channel


# ---------------------------------------------------------------------------
# Recipients
# ---------------------------------------------------------------------------


async def update_recipients(
    session: AsyncSession, channel_id: int, recipients: Sequence[RecipientIn]
) -> None:
    """Replace the channel's recipients with ``recipients``."""
    await session.execute(
        delete(PulseChannelRecipient).where(PulseChannelRecipient.pulse_channel_id == channel_id)
    )
    for r in recipients:
        if r.id is not None:
            session.add(PulseChannelRecipient(pulse_channel_id=channel_id, user_id=r.id))
        else:
            session.add(PulseChannelRecipient(pulse_channel_id=channel_id, email=r.email))
    await session.flush()


# ---------------------------------------------------------------------------
# Single channel CRUD
# ---------------------------------------------------------------------------


async def create_pulse_channel(
    session: AsyncSession, pulse_id: int, channel: ChannelIn
) -> PulseChannel:
    # Any id on the payload is ignored; the database assigns one
    row = _apply(PulseChannel(pulse_id=pulse_id), channel)
    session.add(row)
    await session.flush()
    await update_recipients(session, row.id, channel.recipients)
    log.info("pulse.channel_created", pulse_id=pulse_id, channel_id=row.id, channel_type=row.channel_type)
    return row


async def update_pulse_channel(
    session: AsyncSession, existing: PulseChannel, channel: ChannelIn
) -> PulseChannel:
    # Always writes to the row loaded for this pulse, never to channel.id
    row = _apply(existing, channel)
    session.add(row)
    await session.flush()
    await update_recipients(session, row.id, channel.recipients)
    return row


async def delete_pulse_channel(session: AsyncSession, channel: PulseChannel) -> None:
    await session.execute(
        delete(PulseChannelRecipient).where(PulseChannelRecipient.pulse_channel_id == channel.id)
    )
    await session.delete(channel)
    await session.flush()
    log.info("pulse.channel_deleted", pulse_id=channel.pulse_id, channel_id=channel.id)


async def delete_pulse_channels(session: AsyncSession, pulse_id: int) -> None:
    """Delete every channel of the pulse and their recipients."""
    channel_ids = select(PulseChannel.id).where(PulseChannel.pulse_id == pulse_id)
    await session.execute(
        delete(PulseChannelRecipient)
        .where(PulseChannelRecipient.pulse_channel_id.in_(channel_ids))
        .execution_options(synchronize_session=False)
    )
    await session.execute(
        delete(PulseChannel)
        .where(PulseChannel.pulse_id == pulse_id)
        .execution_options(synchronize_session=False)
    )


async def _create_update_delete_channel(
    session: AsyncSession,
    pulse_id: int,
    new_channel: Optional[ChannelIn],
    existing: Optional[PulseChannel],
) -> None:
    if new_channel is not None and existing is None:
        await create_pulse_channel(session, pulse_id, new_channel)
    elif new_channel is None and existing is not None:
        await delete_pulse_channel(session, existing)
    elif new_channel is not None and existing is not None:
        await update_pulse_channel(session, existing, new_channel)


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------


async def update_pulse_channels(
    session: AsyncSession, pulse_id: int, channels: Sequence[ChannelIn | Mapping]
) -> None:
    """Converge the pulse's channels onto ``channels``, the complete desired set.

    For every supported channel type the first desired entry of that type is
    created or written over the existing channel of that type; types absent
    from ``channels`` are deleted. Later entries of a repeated type are ignored.
    Runs inside the caller's transaction.
    """
    require_int(pulse_id, "pulse_id")
    desired = coerce_channels(channels)

    new_channels = _group_by_type(desired, lambda c: c.channel_type.value)
    old_channels = _group_by_type(await get_channels(session, pulse_id), lambda c: c.channel_type)

    for channel_type in CHANNEL_TYPES:
        existing = old_channels.get(channel_type.value, [])
        # Surplus rows of one type can only come from outside writes; drop them
        for extra in existing[1:]:
            await delete_pulse_channel(session, extra)
        await _create_update_delete_channel(
            session,
            pulse_id,
            (new_channels.get(channel_type.value) or [None])[0],
            existing[0] if existing else None,
        )
