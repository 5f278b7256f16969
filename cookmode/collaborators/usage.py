"""
Voice token usage accounting.

One usage row per job id, so recording the same job twice (a re-leased job)
never double-counts tokens.
"""

import math
from datetime import datetime
from uuid import UUID

from sqlalchemy import TIMESTAMP, Float, Integer, Uuid, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Mapped, mapped_column

from cookmode.config.logging import get_logger
from cookmode.config.settings import Settings
from cookmode.infra.database import Base, Database
from cookmode.infra.jobs.models import utcnow
from cookmode.infra.jobs.schemas import WireModel

logger = get_logger(__name__)


class VoiceUsage(Base):
    __tablename__ = "voice_usage"

    job_id: Mapped[UUID] = mapped_column(Uuid, primary_key=True)
    user_id: Mapped[UUID] = mapped_column(Uuid, nullable=False, index=True)
    session_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    input_tokens: Mapped[int] = mapped_column(Integer, nullable=False)
    output_tokens: Mapped[int] = mapped_column(Integer, nullable=False)
    cost_usd: Mapped[float] = mapped_column(Float, nullable=False)
    recorded_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=utcnow
    )


class UsageSummary(WireModel):
    """Published on the user's usage topic after every recorded session."""

    user_id: UUID
    input_tokens: int
    output_tokens: int
    cost_remaining: float
    minutes_remaining: int
    has_available: bool


class UsageRepository:
    def __init__(self, database: Database, settings: Settings):
        self.database = database
        self.settings = settings

    def token_cost(self, input_tokens: int, output_tokens: int) -> float:
        return (
            input_tokens / 1_000_000 * self.settings.voice_input_token_cost_per_million
            + output_tokens
            / 1_000_000
            * self.settings.voice_output_token_cost_per_million
        )

    async def record_token_usage(
        self,
        job_id: UUID,
        user_id: UUID,
        session_id: UUID,
        input_tokens: int,
        output_tokens: int,
    ) -> UsageSummary:
        """Record usage for job_id (once) and return the user's remaining budget."""
        async with self.database.session() as session:
            existing = await session.get(VoiceUsage, job_id)
            if existing is None:
                session.add(
                    VoiceUsage(
                        job_id=job_id,
                        user_id=user_id,
                        session_id=session_id,
                        input_tokens=input_tokens,
                        output_tokens=output_tokens,
                        cost_usd=self.token_cost(input_tokens, output_tokens),
                    )
                )
                try:
                    await session.commit()
                except IntegrityError:
                    # A concurrent attempt for the same job won
                    await session.rollback()
                    logger.info("Usage already recorded", job_id=str(job_id))
            else:
                logger.info("Usage already recorded", job_id=str(job_id))

            spent = await session.execute(
                select(func.coalesce(func.sum(VoiceUsage.cost_usd), 0.0)).where(
                    VoiceUsage.user_id == user_id
                )
            )
            cost_used = float(spent.scalar() or 0.0)

        cost_remaining = max(0.0, self.settings.voice_plan_allowance_usd - cost_used)
        return UsageSummary(
            user_id=user_id,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cost_remaining=round(cost_remaining, 6),
            # Rounded first so 0.3 / 0.1 counts as three whole minutes
            minutes_remaining=math.floor(
                round(cost_remaining / self.settings.voice_cost_per_minute_usd, 9)
            ),
            has_available=cost_remaining > 0,
        )
