from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from funnel.database import dialect_insert
from funnel.logging_config import get_logger
from funnel.models import Lead

logger = get_logger("load_balancer")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LoadBalancer:
    """Sticky, least-loaded assignment of customer phones to sending channels."""

    def __init__(
        self,
        channels: Iterable[str],
        *,
        default_channel: str,
        window_days: int = 30,
        disabled_channels: Iterable[str] = (),
        now_func: Callable[[], datetime] = _utcnow,
    ):
        # Order matters: it is the tie-break priority.
        self.channels = list(dict.fromkeys(channels))
        self.default_channel = default_channel
        self.window_days = window_days
        self._disabled = set(disabled_channels)
        self._now = now_func

    @property
    def active_channels(self) -> list[str]:
        return [channel for channel in self.channels if channel not in self._disabled]

    def set_channel_active(self, channel: str, active: bool) -> None:
        """Toggle a channel in or out of rotation (driven by the channel health checker)."""
        if active:
            self._disabled.discard(channel)
        else:
            self._disabled.add(channel)
        logger.info(
            "Channel availability changed",
            extra={"context": {"channel": channel, "active": active}},
        )

    def channel_loads(self, db: Session) -> dict[str, int]:
        """Lead counts per active channel over the recent window."""
        since = self._now() - timedelta(days=self.window_days)
        rows = db.execute(
            select(Lead.channel, func.count())
            .where(Lead.channel.in_(self.active_channels), Lead.created_at >= since)
            .group_by(Lead.channel)
        ).all()
        counts = {channel: int(count) for channel, count in rows}
        return {channel: counts.get(channel, 0) for channel in self.active_channels}

    def pick_channel(self, loads: dict[str, int]) -> str | None:
        candidates = [channel for channel in self.active_channels if channel in loads]
        if not candidates:
            return None
        # min() keeps the first of equal loads, i.e. the higher-priority channel.
        return min(candidates, key=lambda channel: loads[channel])

    def assign_channel(self, db: Session, phone: str) -> str:
        """Return the channel for ``phone``, assigning the least-loaded one on first contact."""
        try:
            existing = db.get(Lead, phone)
            if existing:
                return existing.channel

            selected = self.pick_channel(self.channel_loads(db))
            if selected is None:
                logger.warning(
                    "No active channel, falling back to default",
                    extra={"context": {"phone": phone, "default_channel": self.default_channel}},
                )
                selected = self.default_channel

            now = self._now()
            stmt = (
                dialect_insert(db, Lead)
                .values(phone=phone, channel=selected, created_at=now, updated_at=now)
                .on_conflict_do_nothing(index_elements=["phone"])
            )
            result = db.execute(stmt)
            db.commit()

            if result.rowcount == 0:
                # A concurrent request assigned this phone first; its choice stands.
                stored = db.execute(select(Lead.channel).where(Lead.phone == phone)).scalar_one()
                logger.info(
                    "Lead assigned concurrently",
                    extra={"context": {"phone": phone, "channel": stored}},
                )
                return stored

            logger.info("Lead assigned", extra={"context": {"phone": phone, "channel": selected}})
            return selected
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error(
                "Channel assignment failed, using default",
                extra={"context": {"phone": phone, "error": str(exc)}},
            )
            return self.default_channel

    def reassign_channel(self, db: Session, phone: str, channel: str) -> bool:
        """Explicit rebalancing: the only path that moves an existing assignment."""
        lead = db.get(Lead, phone)
        if not lead:
            return False
        previous = lead.channel
        lead.channel = channel
        lead.updated_at = self._now()
        db.commit()
        logger.info(
            "Lead reassigned",
            extra={"context": {"phone": phone, "from": previous, "to": channel}},
        )
        return True
