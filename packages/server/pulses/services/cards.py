"""
Card list reconciliation for a pulse.
"""

from __future__ import annotations

from typing import Sequence

from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from pulses.core.preconditions import require_int, require_int_list
from pulses.models.pulse_card import PulseCard


async def get_card_ids(session: AsyncSession, pulse_id: int) -> list[int]:
    """Card ids currently linked to the pulse, in position order."""
    result = await session.execute(
        select(PulseCard.card_id)
        .where(PulseCard.pulse_id == pulse_id)
        .order_by(PulseCard.position)
    )
    return [row[0] for row in result.all()]


async def update_pulse_cards(
    session: AsyncSession, pulse_id: int, card_ids: Sequence[int]
) -> None:
    """Replace the pulse's cards with ``card_ids``.

    ``card_ids`` is the complete desired list in the desired order; existing
    links are deleted and one link per element is inserted with ``position``
    set to its index. Runs inside the caller's transaction.
    """
    require_int(pulse_id, "pulse_id")
    card_ids = require_int_list(card_ids, "card_ids")

    await session.execute(delete(PulseCard).where(PulseCard.pulse_id == pulse_id))
    session.add_all(
        PulseCard(pulse_id=pulse_id, card_id=card_id, position=i)
        for i, card_id in enumerate(card_ids)
    )
    await session.flush()
