"""
Module: cargo_kernel.models.workflow
Responsibility: ORM persistence for the workflow configuration tables
    (states, allowed transitions) and the append-only state history shared
    by every entity kind.

Architecture position: Kernel > Models.  May import from db/base.py and
    domain/ value objects only.

Invariants enforced:
    - (entity_kind, name) is unique for states.
    - (entity_kind, origin, destination) is unique for transitions.
    - StateHistoryEntry is append-only (db/immutability.py).
    - A state referenced by history cannot be changed or deleted
      (db/immutability.py).

Failure modes:
    - IntegrityError on duplicate state names or transition triples.
    - ImmutabilityViolationError on history UPDATE/DELETE.
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from cargo_kernel.db.base import Base, UUIDString
from cargo_kernel.domain.workflow import StateDef, TransitionDef


class DocumentState(Base):
    """A configured state of one entity kind."""

    __tablename__ = "document_states"

    __table_args__ = (
        UniqueConstraint("entity_kind", "name", name="uq_document_states_kind_name"),
    )

    entity_kind: Mapped[str] = mapped_column(String(30), nullable=False)
    name: Mapped[str] = mapped_column(String(50), nullable=False)
    is_initial: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_final: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    description: Mapped[str | None] = mapped_column(String(255), nullable=True)
    color: Mapped[str | None] = mapped_column(String(20), nullable=True)

    def to_domain(self) -> StateDef:
        return StateDef(
            id=self.id,
            entity_kind=self.entity_kind,
            name=self.name,
            is_initial=self.is_initial,
            is_final=self.is_final,
            description=self.description,
            color=self.color,
        )

    def __repr__(self) -> str:
        return f"<DocumentState {self.entity_kind}.{self.name}>"


class AllowedTransition(Base):
    """A configured (kind, origin, destination) move with its role gate."""

    __tablename__ = "allowed_transitions"

    __table_args__ = (
        UniqueConstraint(
            "entity_kind",
            "origin_state_id",
            "destination_state_id",
            name="uq_allowed_transitions_triple",
        ),
    )

    entity_kind: Mapped[str] = mapped_column(String(30), nullable=False)
    origin_state_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("document_states.id"), nullable=False
    )
    destination_state_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("document_states.id"), nullable=False
    )
    allowed_roles: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    requires_comment: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )
    action: Mapped[str | None] = mapped_column(String(100), nullable=True)

    origin: Mapped[DocumentState] = relationship(foreign_keys=[origin_state_id])
    destination: Mapped[DocumentState] = relationship(
        foreign_keys=[destination_state_id]
    )

    def to_domain(self) -> TransitionDef:
        return TransitionDef(
            entity_kind=self.entity_kind,
            origin_state_id=self.origin_state_id,
            destination_state_id=self.destination_state_id,
            allowed_roles=frozenset(self.allowed_roles or ()),
            requires_comment=self.requires_comment,
            action=self.action,
        )


class StateHistoryEntry(Base):
    """One state reached by one entity.  Never updated, never deleted."""

    __tablename__ = "state_history"

    __table_args__ = (
        UniqueConstraint(
            "entity_kind", "entity_id", "position", name="uq_state_history_position"
        ),
        Index("ix_state_history_state", "state_id"),
    )

    entity_kind: Mapped[str] = mapped_column(String(30), nullable=False)
    entity_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    # 1-based ordinal within the entity's trail
    position: Mapped[int] = mapped_column(nullable=False)
    state_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("document_states.id"), nullable=False
    )
    actor_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    comment: Mapped[str | None] = mapped_column(Text, nullable=True)
    changed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    state: Mapped[DocumentState] = relationship()

    def __repr__(self) -> str:
        return f"<StateHistoryEntry {self.entity_kind}:{self.entity_id} -> {self.state_id}>"
