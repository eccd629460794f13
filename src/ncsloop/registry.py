"""
Loop registry: the entry point used by a surrounding network simulator.

The simulator owns time (integer ticks) and the network. It delivers
messages into the registry's inbox and calls `step` once per sampling
instant and loop:

    registry = LoopRegistry()
    handle = registry.register(loop)
    registry.deliver(handle, message)
    outgoing, qoc, stats = registry.step(handle, timestamp)

Instances share no mutable state besides the inbox, where each keeps its
own queue. There is no locking: drive a given instance from one caller at
a time.
"""

from __future__ import annotations
from itertools import count
from typing import Any, Hashable, Mapping
import logging

from ncsloop.core.errors import InvalidTimestampError
from ncsloop.core.loop import ControlLoop, CycleStatistics, ParamOverrides
from ncsloop.core.messages import Message, MessageInbox, route_inbox

logger = logging.getLogger(__name__)


class LoopRegistry:
    """Maps instance identifiers to control loops and their inbound queues."""

    def __init__(self):
        self.inbox = MessageInbox()
        self._loops: dict[Hashable, ControlLoop] = {}
        self._handles = count(1)

    def register(self, loop: ControlLoop, instance_id: Hashable | None = None) -> Hashable:
        """
        Add a loop and return its identifier.

        Args:
            loop: The control loop to drive
            instance_id: Explicit identifier; a new integer handle if None
        """
        if instance_id is None:
            instance_id = next(self._handles)
            while instance_id in self._loops:
                instance_id = next(self._handles)
        elif instance_id in self._loops:
            raise ValueError(f"instance {instance_id!r} is already registered")

        self._loops[instance_id] = loop
        logger.info("Registered control loop %s as %r", loop.name, instance_id)
        return instance_id

    def unregister(self, instance_id: Hashable) -> ControlLoop:
        """Remove a loop and drop its pending messages."""
        loop = self._loops.pop(instance_id)
        self.inbox.clear(instance_id)
        return loop

    def get(self, instance_id: Hashable) -> ControlLoop:
        """Look up a loop; raises KeyError for unknown identifiers."""
        return self._loops[instance_id]

    def __contains__(self, instance_id: Hashable) -> bool:
        return instance_id in self._loops

    def __len__(self) -> int:
        return len(self._loops)

    def deliver(self, instance_id: Hashable, message: Message):
        """Queue a message arriving at an instance for its next cycle."""
        if instance_id not in self._loops:
            raise KeyError(instance_id)
        self.inbox.deliver(instance_id, message)

    def step(
        self,
        instance_id: Hashable,
        timestamp: int,
        param_overrides: ParamOverrides | Mapping[str, Any] | None = None,
    ) -> tuple[list[Message], float, CycleStatistics]:
        """
        Run one control cycle of an instance.

        Args:
            instance_id: Identifier returned by `register`
            timestamp: Current simulation time in ticks
            param_overrides: Optional sparse parameter changes

        Returns:
            (outgoing_messages, quality_of_control, statistics)
        """
        loop = self.get(instance_id)
        time_step = to_time_step(timestamp, loop.config.sampling_interval_ticks)

        # Validate before draining the queue so a rejected cycle keeps its messages
        loop.check_time_step(time_step)
        if not isinstance(param_overrides, ParamOverrides):
            param_overrides = ParamOverrides.from_mapping(param_overrides)

        routed = route_inbox(self.inbox, instance_id, time_step)
        loop.apply_overrides(param_overrides)
        result = loop.step(time_step, routed)

        return result.outgoing, result.quality_of_control, result.statistics


def to_time_step(timestamp: int, sampling_interval_ticks: int) -> int:
    """
    Convert a tick timestamp to a cycle index.

    Raises:
        InvalidTimestampError: timestamp is not a nonnegative integer
            multiple of the sampling interval
    """
    if isinstance(timestamp, bool) or not hasattr(timestamp, "__index__"):
        raise InvalidTimestampError(timestamp, "timestamp must be an integer")
    timestamp = int(timestamp)
    if timestamp < 0:
        raise InvalidTimestampError(timestamp, "timestamp must be nonnegative")
    time_step, remainder = divmod(timestamp, sampling_interval_ticks)
    if remainder:
        raise InvalidTimestampError(
            timestamp, f"not a multiple of the sampling interval ({sampling_interval_ticks} ticks)"
        )
    return time_step
