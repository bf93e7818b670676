"""
Canonical status values for the email verification sync orchestrator.

Single source of truth. Import this everywhere status strings are written or compared.
Using plain class constants (not Python Enum) so the values serialize to bare strings
naturally for database rows and JSON responses without .value unwrapping.

Valid operation state machine:
    (new row) → PENDING → IN_PROGRESS → COMPLETED
                                      → FAILED
    PENDING → FAILED  (stale rows reaped by the cleanup loop)
A terminal row never changes status again; a retry spawns a new row.
"""


class SyncStatus:
    PENDING = "pending"           # row created, workflow not started
    IN_PROGRESS = "in_progress"   # validating contacts / writing to HubSpot
    COMPLETED = "completed"       # HubSpot accepted the new value
    FAILED = "failed"             # see the error payload on the row

    ALL = frozenset({PENDING, IN_PROGRESS, COMPLETED, FAILED})
    ACTIVE = frozenset({PENDING, IN_PROGRESS})
    TERMINAL = frozenset({COMPLETED, FAILED})

    # Allowed forward moves; anything else is a bug in the caller
    TRANSITIONS = {
        PENDING: frozenset({IN_PROGRESS, FAILED}),
        IN_PROGRESS: frozenset({COMPLETED, FAILED}),
        COMPLETED: frozenset(),
        FAILED: frozenset(),
    }

    @classmethod
    def is_valid(cls, value: str) -> bool:
        return value in cls.ALL

    @classmethod
    def is_terminal(cls, value: str) -> bool:
        return value in cls.TERMINAL

    @classmethod
    def can_transition(cls, current: str, new: str) -> bool:
        if current == new:
            return not cls.is_terminal(current)
        return new in cls.TRANSITIONS.get(current, frozenset())


class EmailVerificationStatus:
    """The closed set of values the synchronized field may take."""

    VERIFIED = "verified"
    UNVERIFIED = "unverified"
    PENDING = "pending"
    BOUNCED = "bounced"
    COMPLAINED = "complained"

    # Ordered for error messages
    ORDERED = (VERIFIED, UNVERIFIED, PENDING, BOUNCED, COMPLAINED)
    ALL = frozenset(ORDERED)

    @classmethod
    def is_valid(cls, value) -> bool:
        return isinstance(value, str) and value in cls.ALL


class InitiatedBy:
    SYSTEM = "system"
    USER = "user"

    ALL = frozenset({SYSTEM, USER})
