from __future__ import annotations

from typing import Any, Dict

from sqlalchemy import JSON, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from etcdcluster.models.base import Base, TimestampMixin


class Event(TimestampMixin, Base):
    """Append-only journal of machine, cluster and reconcile activity."""

    __tablename__ = "events"
    __table_args__ = (Index("ix_events_category_created_at", "category", "created_at"),)

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    category: Mapped[str] = mapped_column(String(64))
    name: Mapped[str] = mapped_column(String(128))
    level: Mapped[str] = mapped_column(String(16))
    fields: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)
