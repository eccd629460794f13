"""
Messages and the per-cycle message router.

Sensor, controller and actuator talk over a lossy, delaying network.
Every message is stamped with the time step it was created at; the
router derives its delay once, on the cycle it is delivered.

Only three routes are legal:
- Sensor     → Controller : measurements
- Controller → Actuator   : control sequences
- Actuator   → Controller : acknowledgements

Messages addressed to the sensor are accepted and dropped (reserved).
"""

from __future__ import annotations
from collections import defaultdict
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Hashable, Iterable
import logging

from ncsloop.core.errors import ProtocolError, RoutingError

logger = logging.getLogger(__name__)


class Role(IntEnum):
    """Network address of a loop component."""

    ACTUATOR = 1
    CONTROLLER = 2
    SENSOR = 3


# (source, destination) -> group name in RoutedMessages
LEGAL_ROUTES = {
    (Role.SENSOR, Role.CONTROLLER): "measurements",
    (Role.CONTROLLER, Role.ACTUATOR): "sequences",
    (Role.ACTUATOR, Role.CONTROLLER): "acks",
}


@dataclass
class Message:
    """
    An addressed, timestamped unit of payload.

    Payload is opaque to the router: a measurement vector, an
    (N, dim_u) control sequence, or, for acknowledgements, the origin
    time step of the sequence being acknowledged.
    """

    source: Role
    destination: Role
    origin_time_step: int  # Time step when the message was created
    payload: Any = None
    is_ack: bool = False
    delay: int | None = None  # Set by the router: current step − origin step

    def compute_delay(self, time_step: int) -> int:
        """Store and return the delay this message experienced."""
        self.delay = int(time_step - self.origin_time_step)
        return self.delay


@dataclass
class RoutedMessages:
    """The three disjoint groups produced by routing one batch."""

    measurements: list[Message] = field(default_factory=list)
    sequences: list[Message] = field(default_factory=list)
    acks: list[Message] = field(default_factory=list)

    @property
    def measurement_delays(self) -> list[int]:
        return [m.delay for m in self.measurements]

    @property
    def sequence_delays(self) -> list[int]:
        return [m.delay for m in self.sequences]

    @property
    def ack_delays(self) -> list[int]:
        return [m.delay for m in self.acks]

    def __len__(self) -> int:
        return len(self.measurements) + len(self.sequences) + len(self.acks)


def route_messages(messages: Iterable[Message], time_step: int) -> RoutedMessages:
    """
    Classify a batch of inbound messages and compute their delays.

    Args:
        messages: Messages delivered to one loop instance this cycle
        time_step: The current cycle index

    Returns:
        RoutedMessages with delivery order preserved inside each group

    Raises:
        RoutingError: illegal (source, destination) pair or negative delay
        ProtocolError: actuator → controller message that is not an ack
    """
    routed = RoutedMessages()
    for message in messages:
        source, destination = message.source, message.destination

        if destination == Role.SENSOR:
            # Reserved for future use
            logger.debug("Dropping message addressed to sensor from %s", _role_name(source))
            continue

        group = LEGAL_ROUTES.get((source, destination))
        if group is None:
            raise RoutingError(source, destination)
        if group == "acks" and not message.is_ack:
            raise ProtocolError(message)

        if message.compute_delay(time_step) < 0:
            raise RoutingError(
                source,
                destination,
                reason=(
                    f"origin step {message.origin_time_step} lies after "
                    f"current step {time_step}"
                ),
            )

        getattr(routed, group).append(message)

    return routed


class MessageInbox:
    """
    Inbound message storage shared by all loop instances.

    Keyed by instance identifier. The router consumes and clears one
    instance's queue per cycle; queues of other instances are untouched.
    """

    def __init__(self):
        self._queues: dict[Hashable, list[Message]] = defaultdict(list)

    def deliver(self, instance_id: Hashable, message: Message):
        """Queue a message for the given instance."""
        self._queues[instance_id].append(message)

    def pending(self, instance_id: Hashable) -> list[Message]:
        """Messages queued for an instance, in delivery order."""
        return list(self._queues.get(instance_id, ()))

    def clear(self, instance_id: Hashable):
        """Drop all queued messages for an instance."""
        self._queues.pop(instance_id, None)

    def __contains__(self, instance_id: Hashable) -> bool:
        return bool(self._queues.get(instance_id))


def route_inbox(
    inbox: MessageInbox,
    instance_id: Hashable,
    time_step: int,
) -> RoutedMessages:
    """
    Route everything queued for an instance, then clear its queue.

    The queue is only cleared once routing succeeded, so a failing batch
    stays available for inspection.
    """
    routed = route_messages(inbox.pending(instance_id), time_step)
    inbox.clear(instance_id)
    return routed


def _role_name(role: Any) -> str:
    return getattr(role, "name", repr(role))
