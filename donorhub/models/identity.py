"""Identity map: silver contact -> master id."""

from __future__ import annotations

from sqlalchemy import ForeignKey, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import BaseModel, db


class IdentityMap(BaseModel):
    """
    Resolution output, one row per silver contact.

    ``is_primary`` marks the single row per master id whose contact supplies
    the authoritative display attributes.
    """

    __tablename__ = "silver_identity_map"

    id: Mapped[int] = mapped_column(db.Integer, primary_key=True, autoincrement=True)
    source_system: Mapped[str] = mapped_column(db.String(64), nullable=False)
    source_id: Mapped[str] = mapped_column(db.String(256), nullable=False)
    contact_id: Mapped[int] = mapped_column(
        ForeignKey("silver_contacts.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    master_id: Mapped[str] = mapped_column(db.String(36), nullable=False, index=True)
    is_primary: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=False)
    match_method: Mapped[str] = mapped_column(db.String(16), nullable=False, default="singleton")
    confidence: Mapped[float] = mapped_column(db.Float, nullable=False, default=0.8)

    contact = relationship("Contact")

    __table_args__ = (
        Index("idx_identity_map_source", "source_system", "source_id"),
        Index("idx_identity_map_master_primary", "master_id", "is_primary"),
    )

    def __repr__(self) -> str:
        return f"<IdentityMap {self.source_system}:{self.source_id} -> {self.master_id}>"
