"""Declarative base and shared columns for the installment tables."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, Integer, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    # Every datetime is stored as aware UTC
    type_annotation_map = {
        datetime: DateTime(timezone=True),
    }


class TimestampMixin:
    """created_at / updated_at, written by the store from the domain object."""

    created_at: Mapped[datetime] = mapped_column(server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(server_default=func.now(), nullable=False)


class VersionedMixin:
    """Optimistic concurrency counter.

    Starts at 1 on insert; every update is ``UPDATE ... WHERE version = :read``
    and bumps it by one, so a writer holding a stale snapshot matches no row.
    """

    version: Mapped[int] = mapped_column(Integer, nullable=False)
