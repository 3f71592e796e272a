class WalkServiceError(ValueError):
    """Base class for user-visible booking errors."""


class ValidationError(WalkServiceError):
    pass


class NotFoundError(WalkServiceError):
    pass


class ConflictError(WalkServiceError):
    """A concurrent write won the race; retrying may succeed."""


class InvalidTransitionError(WalkServiceError):
    """The requested action is not legal from the walk's current status."""

    def __init__(self, current_status: str, action: str) -> None:
        self.current_status = current_status
        self.action = action
        super().__init__(f"Cannot {action} a walk that is {current_status}")
