"""Domain errors raised by the core and mapped to responses in ``main``."""


class TaskForTimeError(Exception):
    """Base class for expected domain failures."""

    message = "Something went wrong"

    def __init__(self, message=None):
        super().__init__(message or self.message)
        self.message = message or self.message


class TaskNotFoundError(TaskForTimeError):
    message = "Task not found"


class InvalidTransitionError(TaskForTimeError):
    message = "This task was already handled"


class InsufficientFundsError(TaskForTimeError):
    message = "Not enough minutes yet"

    def __init__(self, message=None, *, balance: int = 0, required: int = 0):
        super().__init__(message)
        self.balance = balance
        self.required = required


class RewardUnavailableError(TaskForTimeError):
    message = "This reward is not available right now"


class GoalNotFoundError(TaskForTimeError):
    message = "Savings goal not found"


class GoalClosedError(TaskForTimeError):
    message = "This goal is already complete"


class ChildNotFoundError(TaskForTimeError):
    message = "Child not found"


class PinRateLimitedError(TaskForTimeError):
    message = "Too many PIN attempts. Please wait a few minutes and try again."


class ChildContextError(TaskForTimeError):
    """The session's active child is missing or was removed."""

    message = "Please sign in again"


class ParentAccessRequired(TaskForTimeError):
    """A child-mode session tried to act as a parent."""

    message = "Ask a parent to do this"
