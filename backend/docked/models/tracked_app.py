"""TrackedApp model: an application followed through its GitHub releases."""

from datetime import datetime

from sqlalchemy import Boolean, DateTime, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from docked.db import Base


class TrackedApp(Base):
    """An application tracked by release rather than by a running container."""

    __tablename__ = "tracked_apps"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    github_repo: Mapped[str | None] = mapped_column(String, nullable=True)
    image: Mapped[str | None] = mapped_column(String, nullable=True)
    current_version: Mapped[str | None] = mapped_column(String, nullable=True)
    # Digest the user is on, for image-only apps compared by digest
    current_digest: Mapped[str | None] = mapped_column(String, nullable=True)
    user_id: Mapped[int | None] = mapped_column(Integer, nullable=True)

    latest_version: Mapped[str | None] = mapped_column(String, nullable=True)
    latest_digest: Mapped[str | None] = mapped_column(String, nullable=True)
    has_update: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    last_checked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return f"<TrackedApp(id={self.id}, name={self.name}, has_update={self.has_update})>"
