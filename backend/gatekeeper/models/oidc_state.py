"""OIDC state model for one-shot authorization attempts."""

from datetime import UTC, datetime, timedelta

from sqlalchemy import DateTime, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from gatekeeper.db import Base


class OIDCState(Base):
    """Authorization state issued when redirecting a browser to the IDP.

    A row lives from the redirect until the callback presents it. The
    callback deletes the row whatever the outcome, so each state can be
    used at most once.
    """

    __tablename__ = "oidc_states"

    state: Mapped[str] = mapped_column(String(128), primary_key=True, index=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    # Index for efficient cleanup of stale states
    __table_args__ = (Index("idx_oidc_states_created_at", "created_at"),)

    def __repr__(self):
        return f"<OIDCState(state={self.state[:8]}..., created_at={self.created_at})>"

    def is_expired(self, time_limit: int, now: datetime | None = None) -> bool:
        """Check if the state is older than ``time_limit`` seconds."""
        now = now or datetime.now(UTC)
        created = self.created_at
        # Handle timezone-naive datetimes from SQLite
        if created.tzinfo is None:
            created = created.replace(tzinfo=UTC)
        return bool(now - created > timedelta(seconds=time_limit))
