"""SyncMetadata model — key/value pairs such as the last synchronized corpus revision."""

from __future__ import annotations

from sqlalchemy import String, Text
from sqlalchemy.orm import Mapped, mapped_column

from cvesync.models.base import Base, TimestampMixin


class SyncMetadata(TimestampMixin, Base):
    __tablename__ = "system_metadata"

    key: Mapped[str] = mapped_column(String(100), primary_key=True)
    value: Mapped[str | None] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return f"<SyncMetadata {self.key}={self.value!r}>"
