"""SQLModel table backing the snapshot collection."""

from __future__ import annotations

from sqlalchemy import BigInteger, Column, Index, Text
from sqlmodel import Field, SQLModel

# Bump only when the collection shape changes; stored in PRAGMA user_version.
SCHEMA_VERSION = 1


class SnapshotRow(SQLModel, table=True):
    __tablename__ = "snapshots"
    __table_args__ = (
        Index("idx_snapshots_created_at", "created_at"),
        Index("idx_snapshots_is_auto_save", "is_auto_save"),
    )

    id: str = Field(primary_key=True, max_length=128)
    # Epoch milliseconds (store form of createdAt)
    created_at: int = Field(sa_column=Column(BigInteger, nullable=False))
    name: str = Field(default="", max_length=512)
    is_auto_save: bool = Field(default=False)
    tab_count: int = Field(default=0)
    # JSON text of {views, tabs, groups}
    data: str = Field(sa_column=Column(Text, nullable=False))
