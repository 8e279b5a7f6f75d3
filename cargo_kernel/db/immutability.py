"""
ORM-level append-only enforcement.

SQLAlchemy fires mapper events before UPDATE/DELETE statements reach the
database.  The listeners registered here reject:

Entity              | When immutable                      | Rule
--------------------|-------------------------------------|---------------------------
StateHistoryEntry   | Always (from creation)              | audit trail is append-only
LoyaltyTransaction  | Always (from creation)              | ledger is append-only
DocumentState       | Structural fields, once referenced  | history must keep meaning

Description and color of a state stay editable.  Raw SQL bypasses these
checks; callers go through the ORM.

Usage:

    from cargo_kernel.db.immutability import register_immutability_listeners
    register_immutability_listeners()   # idempotent

Tests that must violate the rules on purpose call
``unregister_immutability_listeners()`` and re-register afterwards.
"""

from sqlalchemy import event, inspect, select

from cargo_kernel.exceptions import ImmutabilityViolationError
from cargo_kernel.logging_config import get_logger

logger = get_logger("db.immutability")

# Fields of a DocumentState that history entries depend on
_STATE_STRUCTURAL_FIELDS = ("entity_kind", "name", "is_initial", "is_final")


def _blocked(entity_type: str, entity_id, operation: str, reason: str):
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": entity_type,
            "entity_id": str(entity_id),
            "operation": operation,
        },
    )
    return ImmutabilityViolationError(
        entity_type=entity_type,
        entity_id=str(entity_id),
        reason=reason,
    )


def _check_history_update(mapper, connection, target):
    raise _blocked(
        "StateHistoryEntry", target.id, "UPDATE", "State history is append-only"
    )


def _check_history_delete(mapper, connection, target):
    raise _blocked(
        "StateHistoryEntry", target.id, "DELETE", "State history is append-only"
    )


def _check_loyalty_update(mapper, connection, target):
    raise _blocked(
        "LoyaltyTransaction", target.id, "UPDATE", "Points ledger is append-only"
    )


def _check_loyalty_delete(mapper, connection, target):
    raise _blocked(
        "LoyaltyTransaction", target.id, "DELETE", "Points ledger is append-only"
    )


def _state_is_referenced(connection, state_id) -> bool:
    from cargo_kernel.models.workflow import StateHistoryEntry

    return (
        connection.execute(
            select(StateHistoryEntry.id)
            .where(StateHistoryEntry.state_id == state_id)
            .limit(1)
        ).first()
        is not None
    )


def _check_state_update(mapper, connection, target):
    state = inspect(target)
    changed = [
        name
        for name in _STATE_STRUCTURAL_FIELDS
        if state.attrs[name].history.has_changes()
    ]
    if not changed:
        return
    if _state_is_referenced(connection, target.id):
        raise _blocked(
            "DocumentState",
            target.id,
            "UPDATE",
            f"State is referenced by history; cannot change {', '.join(changed)}",
        )


def _check_state_delete(mapper, connection, target):
    if _state_is_referenced(connection, target.id):
        raise _blocked(
            "DocumentState",
            target.id,
            "DELETE",
            "State is referenced by history",
        )


def _listeners():
    from cargo_kernel.models.loyalty import LoyaltyTransaction
    from cargo_kernel.models.workflow import DocumentState, StateHistoryEntry

    return (
        (StateHistoryEntry, "before_update", _check_history_update),
        (StateHistoryEntry, "before_delete", _check_history_delete),
        (LoyaltyTransaction, "before_update", _check_loyalty_update),
        (LoyaltyTransaction, "before_delete", _check_loyalty_delete),
        (DocumentState, "before_update", _check_state_update),
        (DocumentState, "before_delete", _check_state_delete),
    )


def register_immutability_listeners():
    """Register all append-only listeners.  Safe to call repeatedly."""
    for target, name, fn in _listeners():
        if not event.contains(target, name, fn):
            event.listen(target, name, fn)


def unregister_immutability_listeners():
    """Remove the listeners.  Tests only."""
    for target, name, fn in _listeners():
        if event.contains(target, name, fn):
            event.remove(target, name, fn)
