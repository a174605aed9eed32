"""DeployedImage model: a running image and its latest registry state."""

from datetime import datetime

from sqlalchemy import Boolean, DateTime, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from docked.db import Base


class DeployedImage(Base):
    """One deployed container image.

    The orchestration side fills in what is running (image, container,
    current digest); the image check job fills in what the registry has.
    """

    __tablename__ = "deployed_images"
    __table_args__ = (
        Index("idx_deployed_image_image", "image"),
        Index("idx_deployed_image_has_update", "has_update"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # Populated by the orchestration collaborator
    image: Mapped[str] = mapped_column(String, nullable=False)
    container_name: Mapped[str | None] = mapped_column(String, nullable=True)
    current_digest: Mapped[str | None] = mapped_column(String, nullable=True)
    github_repo: Mapped[str | None] = mapped_column(String, nullable=True)
    user_id: Mapped[int | None] = mapped_column(Integer, nullable=True)

    # Written by the image check job
    latest_digest: Mapped[str | None] = mapped_column(String, nullable=True)
    latest_tag: Mapped[str | None] = mapped_column(String, nullable=True)
    latest_version: Mapped[str | None] = mapped_column(String, nullable=True)
    provider: Mapped[str | None] = mapped_column(String, nullable=True)
    is_fallback: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    has_update: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    last_checked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return f"<DeployedImage(id={self.id}, image={self.image}, has_update={self.has_update})>"
