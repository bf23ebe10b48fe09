"""
Trip status transitions.

PENDING -> CONFIRMED -> IN_PROGRESS -> COMPLETED, and any open status -> CANCELLED.
"""

VALID_TRANSITIONS: dict[str, set[str]] = {
    "PENDING": {"CONFIRMED", "CANCELLED"},
    "CONFIRMED": {"IN_PROGRESS", "CANCELLED"},
    "IN_PROGRESS": {"COMPLETED", "CANCELLED"},
    "COMPLETED": set(),
    "CANCELLED": set(),
}

TERMINAL_STATES = frozenset(s for s, nxt in VALID_TRANSITIONS.items() if not nxt)


class InvalidTransition(Exception):
    def __init__(self, current: str, target: str) -> None:
        super().__init__(f"Cannot move trip from {current} to {target}")
        self.current = current
        self.target = target


def is_valid_transition(current: str, next_state: str) -> bool:
    return next_state in VALID_TRANSITIONS.get(current, set())


def transition(trip, next_state: str) -> None:
    """Set `trip.status` or raise InvalidTransition."""
    if not is_valid_transition(trip.status, next_state):
        raise InvalidTransition(trip.status, next_state)
    trip.status = next_state
