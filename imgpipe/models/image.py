"""Image record table and its status model."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import DateTime, String, Text
from sqlalchemy import Enum as SAEnum
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class ImageStatus(str, Enum):
    """Lifecycle of an image record."""

    pending = "pending"
    succeeded = "succeeded"
    failed = "failed"

    @property
    def is_terminal(self) -> bool:
        """Whether the status allows no further transitions."""

        if self is ImageStatus.pending:
            return False
        if self is ImageStatus.succeeded or self is ImageStatus.failed:
            return True
        raise ValueError(f"Unhandled image status: {self!r}")

    @classmethod
    def for_completion(cls, success: bool) -> "ImageStatus":
        """Terminal status reached by a completion message."""

        return cls.succeeded if success else cls.failed


class Base(DeclarativeBase):
    pass


class ImageRecord(Base):
    """Metadata persisted for every submitted image."""

    __tablename__ = "images"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    filename: Mapped[str] = mapped_column(String(255))
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[ImageStatus] = mapped_column(
        SAEnum(
            ImageStatus,
            name="image_status",
            native_enum=False,
            length=16,
            values_callable=lambda statuses: [status.value for status in statuses],
        ),
        default=ImageStatus.pending,
        index=True,
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    # Owned by the collection CRUD layer; never written here.
    collection_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)

    def __repr__(self) -> str:
        return f"ImageRecord(id={self.id!r}, status={self.status.value!r})"
