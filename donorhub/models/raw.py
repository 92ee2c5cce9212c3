"""
Append-only raw record store.

Payloads are kept as a column-name → string mapping exactly as parsed; typing
happens in the silver transform.
"""

from __future__ import annotations

from sqlalchemy import ForeignKey, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import BaseModel, db


class RawRecord(BaseModel):
    """One source row, tagged with its owning file."""

    __tablename__ = "raw_records"

    id: Mapped[int] = mapped_column(db.Integer, primary_key=True, autoincrement=True)
    lineage_id: Mapped[str] = mapped_column(
        ForeignKey("meta_file_lineage.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    source_id: Mapped[int] = mapped_column(ForeignKey("meta_source_systems.id"), nullable=False, index=True)
    row_num: Mapped[int] = mapped_column(db.Integer, nullable=False)
    record_hash: Mapped[str] = mapped_column(db.String(64), nullable=False, index=True)
    payload_json: Mapped[dict] = mapped_column(db.JSON, nullable=False)

    lineage = relationship("FileLineage")

    __table_args__ = (UniqueConstraint("lineage_id", "row_num", name="uq_raw_records_lineage_row"),)

    def __repr__(self) -> str:
        return f"<RawRecord {self.lineage_id}#{self.row_num}>"
