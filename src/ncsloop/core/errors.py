"""
Error taxonomy for the control-loop core.

Every error aborts the current cycle and propagates to the caller.
Nothing is retried, and a failed cycle leaves the loop's state undefined
until it is reset.
"""

from __future__ import annotations
from typing import Any


class NcsError(Exception):
    """Base class for all control-loop errors."""


class RoutingError(NcsError):
    """A message carries an illegal (source, destination) pairing."""

    def __init__(self, source: Any, destination: Any, reason: str | None = None):
        self.source = source
        self.destination = destination
        detail = reason or "unsupported route"
        super().__init__(
            f"{detail}: source={_name(source)} destination={_name(destination)}"
        )


class ProtocolError(NcsError):
    """An actuator-to-controller message is not an acknowledgement."""

    def __init__(self, message: Any):
        self.offending_message = message
        super().__init__(
            "message from actuator to controller must be an acknowledgement "
            f"(origin_time_step={getattr(message, 'origin_time_step', None)})"
        )


class InvalidTimestampError(NcsError):
    """Timestamp is not a non-negative, increasing, interval-aligned integer."""

    def __init__(self, timestamp: Any, reason: str):
        self.timestamp = timestamp
        super().__init__(f"invalid timestamp {timestamp!r}: {reason}")


class EstimatorError(NcsError):
    """The external filter rejected its inputs or model configuration."""


class MissingModeError(NcsError):
    """Neither the true previous mode nor an estimate of it is available."""

    def __init__(self, time_step: int):
        self.time_step = time_step
        super().__init__(
            f"cannot compute control sequence at step {time_step}: "
            "neither previous plant mode nor its estimate present"
        )


class ConfigurationError(NcsError):
    """A collaborator or setting is missing or invalid."""

    def __init__(self, missing: str, reason: str | None = None):
        self.missing = missing
        super().__init__(reason or f"{missing} has not been specified")


def _name(role: Any) -> str:
    return getattr(role, "name", repr(role))
