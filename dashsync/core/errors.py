from __future__ import annotations


class DashsyncError(Exception):
    """Base class for every condition raised by the sync core."""


class TransientFetchError(DashsyncError):
    """A fetch failed or timed out. Retryable; existing data is kept."""


class SubscriptionLost(DashsyncError):
    """The push stream dropped or could not be opened."""


class WriteRejected(DashsyncError):
    """A command-sink write failed. Local optimistic state has been rolled back."""

    def __init__(self, target: str, message: str) -> None:
        super().__init__(f"{target}: {message}")
        self.target = target


class ConfigurationError(DashsyncError):
    """Invalid bands or retention policy. Fatal at startup."""


class CommandRejected(DashsyncError):
    """A user intent was refused before any state change or network call."""


class BlockedByMode(CommandRejected):
    def __init__(self, actuator_id: int) -> None:
        super().__init__(f"Relay {actuator_id} cannot be toggled while mode is automatic")
        self.actuator_id = actuator_id


class WriteInProgress(CommandRejected):
    def __init__(self, target: str) -> None:
        super().__init__(f"{target}: write in progress")
        self.target = target


class UnknownActuator(CommandRejected):
    def __init__(self, actuator_id: int) -> None:
        super().__init__(f"Unknown actuator id: {actuator_id}")
        self.actuator_id = actuator_id
