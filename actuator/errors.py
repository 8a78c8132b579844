"""
Actuator exception hierarchy.

Everything raised on purpose by the package derives from ActuatorError so
callers at the HTTP and CLI boundaries can catch one type.
"""

from typing import List, NamedTuple


class ActuatorError(Exception):
    """Base class for all Actuator errors."""


class ConfigError(ActuatorError):
    """Invalid environment or rule file configuration."""


class DuplicateLabelError(ActuatorError, ValueError):
    """A label key was already present in a strictly-built label set."""

    def __init__(self, key: str):
        super().__init__(f"duplicate label key: {key}")
        self.key = key


class PayloadValidationError(ActuatorError, ValueError):
    """The incoming webhook payload is malformed."""


class ReactionError(ActuatorError):
    """A reaction could not complete its work for an alert."""


class DispatchCancelled(ActuatorError):
    """Dispatch stopped before every matched reaction ran."""


class ReactionFailure(NamedTuple):
    """One failed reaction invocation, keyed by the alert's label identity."""

    alert_key: str
    reaction: str
    error: BaseException

    def __str__(self) -> str:
        return f"{self.reaction} failed for alert {{{self.alert_key}}}: {self.error}"


class DispatchError(ActuatorError):
    """Aggregate of every reaction failure seen while handling one payload."""

    def __init__(self, failures: List[ReactionFailure]):
        self.failures = list(failures)
        if len(self.failures) == 1:
            message = f"1 error occurred: {self.failures[0]}"
        else:
            details = "; ".join(str(f) for f in self.failures)
            message = f"{len(self.failures)} errors occurred: {details}"
        super().__init__(message)

    def __len__(self) -> int:
        return len(self.failures)
