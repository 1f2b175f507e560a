"""
Pulse permissions, aggregated from the cards a pulse contains.

Read access is granted by full read permissions on every card's permission
objects, or by being a recipient of the pulse: subscribed users may know
the pulse exists even without access to the underlying data. Write access
comes from card permissions alone.
"""

from __future__ import annotations

from typing import Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from pulses.core.permissions import (
    CardPermissions,
    CollectionCardPermissions,
    PathPermissionChecker,
    PermissionChecker,
    Principal,
)
from pulses.core.preconditions import require_int
from pulses.models.card import Card
from pulses.models.channel import PulseChannel, PulseChannelRecipient
from pulses.models.pulse_card import PulseCard
from pulses.models.user import User
from pulses_shared.schemas.common import PermissionMode
from pulses_shared.schemas.pulses import ChannelRead


class PulsePermissions:
    """Permission checks for pulses and alerts.

    The checker and card permission source are supplied by the permission and
    card subsystems; the path-based defaults are used when none are given.
    """

    def __init__(
        self,
        checker: Optional[PermissionChecker] = None,
        card_permissions: Optional[CardPermissions] = None,
    ) -> None:
        self.checker = checker or PathPermissionChecker()
        self.card_permissions = card_permissions or CollectionCardPermissions()

    async def perms_objects_set(
        self, session: AsyncSession, pulse_id: int, mode: PermissionMode
    ) -> set[str]:
        """Union of the permission objects of every card linked to the pulse."""
        require_int(pulse_id, "pulse_id")
        mode = PermissionMode(mode)
        card_ids = select(PulseCard.card_id).where(PulseCard.pulse_id == pulse_id)
        result = await session.execute(select(Card).where(Card.id.in_(card_ids)))
        objects: set[str] = set()
        for card in result.scalars().all():
            objects |= set(self.card_permissions.perms_objects_set(card, mode))
        return objects

    async def recipient_emails(
        self,
        session: AsyncSession,
        pulse_id: int,
        channels: Optional[Sequence[ChannelRead]] = None,
    ) -> set[str]:
        """Every email the pulse is delivered to.

        Already hydrated ``channels`` are used as-is, without a query.
        """
        if channels is not None:
            return {r.email for c in channels for r in c.recipients if r.email}

        require_int(pulse_id, "pulse_id")
        result = await session.execute(
            select(PulseChannelRecipient.email, User.email)
            .select_from(PulseChannelRecipient)
            .join(PulseChannel, PulseChannel.id == PulseChannelRecipient.pulse_channel_id)
            .outerjoin(User, User.id == PulseChannelRecipient.user_id)
            .where(PulseChannel.pulse_id == pulse_id)
        )
        return {user_email or raw_email for raw_email, user_email in result.all() if user_email or raw_email}

    async def has_full_permissions(
        self, session: AsyncSession, pulse_id: int, mode: PermissionMode, principal: Principal
    ) -> bool:
        objects = await self.perms_objects_set(session, pulse_id, mode)
        return self.checker.has_full_permissions(PermissionMode(mode), objects, principal)

    async def can_read(
        self,
        session: AsyncSession,
        pulse_id: int,
        principal: Principal,
        channels: Optional[Sequence[ChannelRead]] = None,
    ) -> bool:
        if await self.has_full_permissions(session, pulse_id, PermissionMode.READ, principal):
            return True
        if not principal.email:
            return False
        return principal.email in await self.recipient_emails(session, pulse_id, channels)

    async def can_write(
        self, session: AsyncSession, pulse_id: int, principal: Principal
    ) -> bool:
        # Being a recipient never grants write access
        return await self.has_full_permissions(session, pulse_id, PermissionMode.WRITE, principal)
