"""Relational store for image records."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from sqlalchemy import create_engine, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from imgpipe.core.errors import RecordStoreError
from imgpipe.core.logging import get_logger
from imgpipe.models.image import Base, ImageRecord, ImageStatus

logger = get_logger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TransitionOutcome(str, Enum):
    """What applying a completion did to a record."""

    applied = "applied"
    duplicate = "duplicate"
    rejected = "rejected"
    missing = "missing"


@dataclass(frozen=True)
class TransitionResult:
    outcome: TransitionOutcome
    status: Optional[ImageStatus]


class RecordStore:
    """SQLAlchemy-backed persistence for ``ImageRecord`` rows."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        self._sessions = sessionmaker(engine, expire_on_commit=False)

    @classmethod
    def from_url(cls, database_url: str, **engine_kwargs) -> "RecordStore":
        engine_kwargs.setdefault("pool_pre_ping", True)
        return cls(create_engine(database_url, **engine_kwargs))

    def create_schema(self) -> None:
        """Create missing tables. Production schemas are managed by migrations."""

        try:
            Base.metadata.create_all(self.engine)
        except SQLAlchemyError as exc:
            raise RecordStoreError(f"Failed to create schema: {exc}") from exc

    def create(
        self,
        image_id: str,
        filename: str,
        description: Optional[str] = None,
        collection_id: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> ImageRecord:
        """Insert a new record in ``pending`` state."""

        record = ImageRecord(
            id=image_id,
            filename=filename,
            description=description,
            collection_id=collection_id,
            status=ImageStatus.pending,
            created_at=created_at or utcnow(),
            completed_at=None,
        )
        try:
            with self._sessions() as session, session.begin():
                session.add(record)
        except SQLAlchemyError as exc:
            raise RecordStoreError(f"Failed to create image record {image_id}: {exc}") from exc
        logger.info("image_record_created", image_id=image_id)
        return record

    def get(self, image_id: str) -> Optional[ImageRecord]:
        try:
            with self._sessions() as session:
                return session.get(ImageRecord, image_id)
        except SQLAlchemyError as exc:
            raise RecordStoreError(f"Failed to load image record {image_id}: {exc}") from exc

    def apply_completion(self, image_id: str, success: bool, now: Optional[datetime] = None) -> TransitionResult:
        """Move a pending record to its terminal status.

        The update is conditional on the record still being ``pending`` so a
        terminal record is never modified. Reapplying the same outcome reports
        ``duplicate``; the opposite outcome reports ``rejected``.
        """

        target = ImageStatus.for_completion(success)
        values = {"status": target}
        if target is ImageStatus.succeeded:
            values["completed_at"] = now or utcnow()

        statement = (
            update(ImageRecord)
            .where(ImageRecord.id == image_id, ImageRecord.status == ImageStatus.pending)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        try:
            with self._sessions() as session, session.begin():
                result = session.execute(statement)
                if result.rowcount == 1:
                    return TransitionResult(TransitionOutcome.applied, target)
                current = session.execute(
                    select(ImageRecord.status).where(ImageRecord.id == image_id)
                ).scalar_one_or_none()
        except SQLAlchemyError as exc:
            raise RecordStoreError(f"Failed to update image record {image_id}: {exc}") from exc

        if current is None:
            return TransitionResult(TransitionOutcome.missing, None)
        if current is target:
            return TransitionResult(TransitionOutcome.duplicate, current)
        return TransitionResult(TransitionOutcome.rejected, current)

    def find_stale_pending(self, cutoff: datetime) -> List[ImageRecord]:
        """Pending records created before ``cutoff``, oldest first."""

        statement = (
            select(ImageRecord)
            .where(ImageRecord.status == ImageStatus.pending, ImageRecord.created_at < cutoff)
            .order_by(ImageRecord.created_at)
        )
        try:
            with self._sessions() as session:
                return list(session.scalars(statement))
        except SQLAlchemyError as exc:
            raise RecordStoreError(f"Failed to query pending records: {exc}") from exc
