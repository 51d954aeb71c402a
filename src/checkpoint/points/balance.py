"""Loyalty balance store and point-history sink."""

from __future__ import annotations

from typing import Any

from sqlalchemy import case, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from checkpoint.clock import utcnow
from checkpoint.db.models import Persona, PointHistory, PointKind
from checkpoint.errors import PersonaNotFound


async def increment_balance(db: AsyncSession, persona_id: int, delta: int) -> int:
    """Atomically add ``delta`` to a persona's balance and return the new value.

    The increment happens in SQL so concurrent writers never lose an update.
    Negative deltas (reversals) floor at zero.
    """
    new_value = Persona.loyalty_balance + delta
    result = await db.execute(
        update(Persona)
        .where(Persona.id == persona_id)
        .values(loyalty_balance=case((new_value < 0, 0), else_=new_value))
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        raise PersonaNotFound(persona_id=persona_id)
    balance = await db.execute(select(Persona.loyalty_balance).where(Persona.id == persona_id))
    return int(balance.scalar_one())


async def record_history(
    db: AsyncSession,
    persona_id: int,
    event_id: int | None,
    kind: PointKind,
    amount: int,
    metadata: dict[str, Any] | None = None,
    description: str | None = None,
) -> PointHistory:
    """Append one audit row. Flushes, never commits."""
    entry = PointHistory(
        persona_id=persona_id,
        event_id=event_id,
        kind=kind,
        amount=amount,
        description=description,
        details=metadata or {},
        created_at=utcnow(),
    )
    db.add(entry)
    await db.flush()
    return entry
