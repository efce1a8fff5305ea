"""Local user accounts and per-user metadata."""

from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.sql import func

from gatekeeper.db import Base


class User(Base):
    """Local account that an IDP identity is mapped to.

    ``oidc_identity`` holds the durable external identity (the configured
    identity-key claim). It is unique, so two concurrent first logins for the
    same identity cannot both create an account.
    """

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    username: Mapped[str] = mapped_column(String(100), unique=True, index=True, nullable=False)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    oidc_identity: Mapped[str | None] = mapped_column(String(255), unique=True, index=True, nullable=True)
    oidc_managed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    last_login: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    meta: Mapped[list["UserMeta"]] = relationship(
        back_populates="user", cascade="all, delete-orphan", lazy="noload"
    )

    def __repr__(self):
        return f"<User(id={self.id}, username={self.username})>"


class UserMeta(Base):
    """Arbitrary key/value metadata attached to a user (JSON-encoded values)."""

    __tablename__ = "user_meta"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    meta_key: Mapped[str] = mapped_column(String(255), nullable=False)
    meta_value: Mapped[str] = mapped_column(Text, nullable=False)

    user: Mapped[User] = relationship(back_populates="meta")

    __table_args__ = (UniqueConstraint("user_id", "meta_key", name="uq_user_meta_key"),)

    def __repr__(self):
        return f"<UserMeta(user_id={self.user_id}, key={self.meta_key})>"
