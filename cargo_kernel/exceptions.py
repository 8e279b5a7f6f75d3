"""
Typed Exception Hierarchy for the Cargo Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Callers of the document workflow (an HTTP layer, a batch script, an event
listener) must react to failures by kind, not by message text:
  - A precondition failure is a 409/422 for the user.
  - A forbidden transition is a 403.
  - A duplicate allocation is retryable.

Every exception therefore has:
  1. A TYPED class (catch by type, not message)
  2. A CODE class attribute (machine-readable, API-safe)
  3. Structured DATA as instance attributes (not just a message string)

Example:
    try:
        lifecycle.create(draft, actor_id=actor)
    except MasterWaybillNotAvailableError as e:
        api_response(code=e.code, master_waybill=e.master_waybill_id)

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    CargoKernelError (base)
    |
    +-- NotFoundError
    |   +-- MasterWaybillNotFoundError
    |   +-- CoordinationNotFoundError
    |   +-- ChildWaybillNotFoundError
    |   +-- StateNotFoundError
    |   +-- ReferenceNotFoundError
    |
    +-- PreconditionFailedError
    |   +-- MasterWaybillNotAvailableError
    |   +-- PrincipalConsigneeError
    |   +-- NoChildWaybillsError
    |   +-- TerminalStateError
    |   +-- StateMismatchError
    |   +-- ConcurrentModificationError
    |
    +-- TransitionError
    |   +-- ForbiddenTransitionError
    |   +-- MissingCommentError
    |
    +-- AllocationError
    |   +-- DuplicateAllocationError
    |
    +-- NumberingError
    |   +-- InvalidSequenceInputError
    |   +-- NumberingScopeError
    |   +-- NumberingOverflowError
    |
    +-- ImmutabilityViolationError
    |
    +-- WorkflowConfigurationError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category      | Code                           | When Raised
--------------|--------------------------------|-------------------------------------
Not found     | MASTER_WAYBILL_NOT_FOUND       | Master waybill id doesn't exist
              | COORDINATION_NOT_FOUND         | Coordination record id doesn't exist
              | CHILD_WAYBILL_NOT_FOUND        | Child waybill id doesn't exist
              | STATE_NOT_FOUND                | State id/name unknown for the kind
              | REFERENCE_NOT_FOUND            | Catalog lookup says id is absent
--------------|--------------------------------|-------------------------------------
Precondition  | PRECONDITION_FAILED            | Generic domain precondition
              | MASTER_WAYBILL_NOT_AVAILABLE   | Waybill not available / flagged
              | PRINCIPAL_CONSIGNEE_INVALID    | Zero or several principals
              | NO_CHILD_WAYBILLS              | Cutting an empty record
              | TERMINAL_STATE                 | Mutating a cut/cancelled entity
              | STATE_MISMATCH                 | Entity not in the claimed origin
              | CONCURRENT_MODIFICATION        | Optimistic version check lost
--------------|--------------------------------|-------------------------------------
Transition    | FORBIDDEN_TRANSITION           | No definition, or role mismatch
              | MISSING_COMMENT                | Transition requires a comment
--------------|--------------------------------|-------------------------------------
Allocation    | DUPLICATE_ALLOCATION           | Unique key raced past the lookup
--------------|--------------------------------|-------------------------------------
Numbering     | INVALID_SEQUENCE_INPUT         | Non-positive initial / bad count
              | NUMBERING_SCOPE_INCONSISTENT   | Counter behind issued numbers
              | NUMBERING_OVERFLOW             | Sequence exceeds format width
--------------|--------------------------------|-------------------------------------
Immutability  | IMMUTABILITY_VIOLATION         | Update/delete of append-only rows
Config        | WORKFLOW_CONFIGURATION_INVALID | Bad state/transition table

===============================================================================
DESIGN DECISIONS
===============================================================================

1. ConcurrentModificationError IS-A PreconditionFailedError.
   The loser of a race on a master waybill observes a precondition
   failure, never a corrupted state.

2. DuplicateAllocationError carries ``retryable = True``.
   A retry re-runs the lookup and finds the row the winner created.

===============================================================================
"""


class CargoKernelError(Exception):
    """
    Base exception for all cargo kernel errors.

    All subclasses must have a `code` class attribute for machine-readable
    error identification.
    """

    code: str = "CARGO_KERNEL_ERROR"
    retryable: bool = False


# Not-found exceptions


class NotFoundError(CargoKernelError):
    """A referenced entity does not exist."""

    code: str = "NOT_FOUND"

    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"{entity_type} not found: {entity_id}")


class MasterWaybillNotFoundError(NotFoundError):
    """Master waybill with given ID was not found."""

    code: str = "MASTER_WAYBILL_NOT_FOUND"

    def __init__(self, master_waybill_id: str):
        self.master_waybill_id = master_waybill_id
        super().__init__("MasterWaybill", master_waybill_id)


class CoordinationNotFoundError(NotFoundError):
    """Coordination record with given ID was not found."""

    code: str = "COORDINATION_NOT_FOUND"

    def __init__(self, coordination_id: str):
        self.coordination_id = coordination_id
        super().__init__("CoordinationRecord", coordination_id)


class ChildWaybillNotFoundError(NotFoundError):
    """Child waybill with given ID was not found."""

    code: str = "CHILD_WAYBILL_NOT_FOUND"

    def __init__(self, child_waybill_id: str):
        self.child_waybill_id = child_waybill_id
        super().__init__("ChildWaybill", child_waybill_id)


class StateNotFoundError(NotFoundError):
    """No state definition matches the id or name for the entity kind."""

    code: str = "STATE_NOT_FOUND"

    def __init__(self, entity_kind: str, state: str):
        self.entity_kind = entity_kind
        self.state = state
        super().__init__(f"State[{entity_kind}]", state)


class ReferenceNotFoundError(NotFoundError):
    """A catalog reference (farm, product, consignee, ...) does not exist."""

    code: str = "REFERENCE_NOT_FOUND"

    def __init__(self, reference_kind: str, reference_id: str):
        self.reference_kind = reference_kind
        self.reference_id = reference_id
        super().__init__(reference_kind, reference_id)


# Precondition exceptions


class PreconditionFailedError(CargoKernelError):
    """A domain precondition of the requested operation does not hold."""

    code: str = "PRECONDITION_FAILED"

    def __init__(self, message: str, **details):
        self.details = details
        super().__init__(message)


class MasterWaybillNotAvailableError(PreconditionFailedError):
    """Master waybill cannot be assigned to a new coordination record."""

    code: str = "MASTER_WAYBILL_NOT_AVAILABLE"

    def __init__(self, master_waybill_id: str, reason: str):
        self.master_waybill_id = master_waybill_id
        self.reason = reason
        super().__init__(
            f"Master waybill {master_waybill_id} is not available: {reason}"
        )


class PrincipalConsigneeError(PreconditionFailedError):
    """Consignee set does not have exactly one principal."""

    code: str = "PRINCIPAL_CONSIGNEE_INVALID"

    def __init__(self, principal_count: int):
        self.principal_count = principal_count
        super().__init__(
            f"Exactly one principal consignee is required, got {principal_count}"
        )


class NoChildWaybillsError(PreconditionFailedError):
    """Cutting requires at least one attached child waybill."""

    code: str = "NO_CHILD_WAYBILLS"

    def __init__(self, coordination_id: str):
        self.coordination_id = coordination_id
        super().__init__(
            f"Coordination record {coordination_id} has no child waybills"
        )


class TerminalStateError(PreconditionFailedError):
    """The entity is in a final state and can no longer change."""

    code: str = "TERMINAL_STATE"

    def __init__(self, entity_kind: str, entity_id: str, state_name: str):
        self.entity_kind = entity_kind
        self.entity_id = entity_id
        self.state_name = state_name
        super().__init__(
            f"{entity_kind} {entity_id} is in final state {state_name}"
        )


class StateMismatchError(PreconditionFailedError):
    """The entity's current state differs from the claimed origin state."""

    code: str = "STATE_MISMATCH"

    def __init__(
        self,
        entity_kind: str,
        entity_id: str,
        expected_state_id: str,
        actual_state_id: str,
    ):
        self.entity_kind = entity_kind
        self.entity_id = entity_id
        self.expected_state_id = expected_state_id
        self.actual_state_id = actual_state_id
        super().__init__(
            f"{entity_kind} {entity_id} is in state {actual_state_id}, "
            f"not {expected_state_id}"
        )


class ConcurrentModificationError(PreconditionFailedError):
    """Optimistic version check failed: another transaction won."""

    code: str = "CONCURRENT_MODIFICATION"

    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(
            f"Concurrent modification on {entity_type} {entity_id}: "
            "entity was modified by another transaction"
        )


# Transition exceptions


class TransitionError(CargoKernelError):
    """Base exception for workflow transition errors."""

    code: str = "TRANSITION_ERROR"


class ForbiddenTransitionError(TransitionError):
    """No transition definition exists, or the actor's roles do not match."""

    code: str = "FORBIDDEN_TRANSITION"

    def __init__(
        self,
        entity_kind: str,
        origin_state_id: str,
        destination_state_id: str,
        reason: str = "no transition defined",
    ):
        self.entity_kind = entity_kind
        self.origin_state_id = origin_state_id
        self.destination_state_id = destination_state_id
        self.reason = reason
        super().__init__(
            f"Transition {origin_state_id} -> {destination_state_id} "
            f"forbidden for {entity_kind}: {reason}"
        )


class MissingCommentError(TransitionError):
    """The matched transition requires a comment and none was supplied."""

    code: str = "MISSING_COMMENT"

    def __init__(
        self, entity_kind: str, origin_state_id: str, destination_state_id: str
    ):
        self.entity_kind = entity_kind
        self.origin_state_id = origin_state_id
        self.destination_state_id = destination_state_id
        super().__init__(
            f"Transition {origin_state_id} -> {destination_state_id} "
            f"for {entity_kind} requires a comment"
        )


# Allocation exceptions


class AllocationError(CargoKernelError):
    """Base exception for child waybill allocation errors."""

    code: str = "ALLOCATION_ERROR"


class DuplicateAllocationError(AllocationError):
    """
    A concurrent request created the same allocation first.

    The store-level unique constraint rejected the insert; retrying the
    allocation will find and reuse the winner's row.
    """

    code: str = "DUPLICATE_ALLOCATION"
    retryable: bool = True

    def __init__(self, allocation_rule: str, allocation_key: str):
        self.allocation_rule = allocation_rule
        self.allocation_key = allocation_key
        super().__init__(
            f"Allocation {allocation_key} under rule {allocation_rule} "
            "was created concurrently; retry the request"
        )


# Numbering exceptions


class NumberingError(CargoKernelError):
    """Base exception for sequence and numbering failures."""

    code: str = "NUMBERING_ERROR"


class InvalidSequenceInputError(NumberingError):
    """Sequence generator received a non-positive initial or bad count."""

    code: str = "INVALID_SEQUENCE_INPUT"

    def __init__(self, field: str, value: object, reason: str):
        self.field = field
        self.value = value
        self.reason = reason
        super().__init__(f"Invalid {field}={value!r}: {reason}")


class NumberingScopeError(NumberingError):
    """The scope's counter disagrees with the numbers already issued."""

    code: str = "NUMBERING_SCOPE_INCONSISTENT"

    def __init__(self, scope: str, counter_value: int, issued_max: int):
        self.scope = scope
        self.counter_value = counter_value
        self.issued_max = issued_max
        super().__init__(
            f"Numbering scope {scope} is inconsistent: counter at "
            f"{counter_value} but {issued_max} already issued"
        )


class NumberingOverflowError(NumberingError):
    """The next sequence does not fit the format's digit width."""

    code: str = "NUMBERING_OVERFLOW"

    def __init__(self, scope: str, sequence: int, width: int):
        self.scope = scope
        self.sequence = sequence
        self.width = width
        super().__init__(
            f"Sequence {sequence} in scope {scope} exceeds {width} digits"
        )


# Immutability exceptions


class ImmutabilityViolationError(CargoKernelError):
    """
    Attempted to modify or delete an immutable record.

    StateHistoryEntry and LoyaltyTransaction rows are append-only; a
    DocumentState is structurally frozen once history references it.
    """

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Immutability violation on {entity_type} {entity_id}: {reason}"
        )


# Configuration exceptions


class WorkflowConfigurationError(CargoKernelError):
    """The state/transition table or configuration set is invalid."""

    code: str = "WORKFLOW_CONFIGURATION_INVALID"

    def __init__(self, errors: list[str]):
        self.errors = list(errors)
        super().__init__(
            "Invalid workflow configuration: " + "; ".join(self.errors)
        )
