"""
Capacity Allocator for the Orchestrator.

Manages one bounded pool of worker slots per agent type. Capacity comes
from the agent descriptor; the allocator owns the live load counters so
descriptors stay immutable.

Pools are independent: a saturated accommodation pool never blocks a
transport dispatch.
"""

from dataclasses import dataclass
from typing import Optional

from shared.logging import get_logger

from .models import AgentDescriptor, AgentType

log = get_logger("orchestrator", "allocator")


@dataclass
class AllocationResult:
    """Result of a slot allocation request."""
    granted: bool
    agent_type: AgentType
    in_use: int = 0
    capacity: int = 0
    slot: Optional[str] = None
    message: Optional[str] = None


class CapacityAllocator:
    """
    Tracks per-agent-type slot usage.

    A slot is named ``<agent_type>-<n>`` and doubles as the worker id of
    the task holding it.
    """

    def __init__(self, descriptors: dict[AgentType, AgentDescriptor]):
        self.descriptors = descriptors
        # agent type -> {slot name: task id}
        self._slots: dict[AgentType, dict[str, str]] = {a: {} for a in descriptors}
        self.total_allocations = 0
        self.denials = 0

    def capacity(self, agent_type: AgentType) -> int:
        descriptor = self.descriptors.get(agent_type)
        return descriptor.capacity if descriptor else 0

    def in_use(self, agent_type: AgentType) -> int:
        return len(self._slots.get(agent_type, {}))

    def can_allocate(self, agent_type: AgentType) -> AllocationResult:
        """
        Check if a slot is free for the agent type.

        Does NOT consume the slot - use allocate() to actually take it.
        """
        capacity = self.capacity(agent_type)
        in_use = self.in_use(agent_type)

        if capacity == 0:
            return AllocationResult(
                granted=False,
                agent_type=agent_type,
                message=f"No descriptor for agent type {agent_type.value}",
            )

        if in_use < capacity:
            return AllocationResult(
                granted=True,
                agent_type=agent_type,
                in_use=in_use,
                capacity=capacity,
            )

        return AllocationResult(
            granted=False,
            agent_type=agent_type,
            in_use=in_use,
            capacity=capacity,
            message=f"Pool {agent_type.value} saturated ({in_use}/{capacity})",
        )

    def allocate(self, agent_type: AgentType, task_id: str) -> AllocationResult:
        """
        Take one slot for task_id.

        Returns AllocationResult with granted=True and the slot name if successful.
        """
        result = self.can_allocate(agent_type)

        if not result.granted:
            self.denials += 1
            log.debug("orchestrator.allocator.slot_denied",
                      agent_type=agent_type.value, task_id=task_id,
                      message=result.message)
            return result

        slots = self._slots.setdefault(agent_type, {})
        index = 0
        while f"{agent_type.value}-{index}" in slots:
            index += 1
        slot = f"{agent_type.value}-{index}"
        slots[slot] = task_id
        self.total_allocations += 1

        result.slot = slot
        result.in_use = len(slots)
        log.debug("orchestrator.allocator.slot_allocated",
                  agent_type=agent_type.value, task_id=task_id,
                  slot=slot, in_use=result.in_use, capacity=result.capacity)
        return result

    def release(self, agent_type: AgentType, task_id: str) -> bool:
        """Free the slot held by task_id. Returns False if it held none."""
        slots = self._slots.get(agent_type, {})
        for slot, holder in list(slots.items()):
            if holder == task_id:
                del slots[slot]
                log.debug("orchestrator.allocator.slot_released",
                          agent_type=agent_type.value, task_id=task_id,
                          slot=slot, in_use=len(slots))
                return True
        return False

    def holders(self, agent_type: AgentType) -> list[str]:
        return list(self._slots.get(agent_type, {}).values())

    def get_status(self, agent_type: Optional[AgentType] = None) -> dict:
        """
        Get pool occupancy for all or a specific agent type.
        """
        types_to_check = [agent_type] if agent_type else list(self.descriptors.keys())
        status = {}

        for at in types_to_check:
            if at not in self.descriptors:
                continue
            capacity = self.capacity(at)
            in_use = self.in_use(at)
            status[at.value] = {
                "capacity": capacity,
                "in_use": in_use,
                "available": max(0, capacity - in_use),
                "tasks": self.holders(at),
            }

        return status
