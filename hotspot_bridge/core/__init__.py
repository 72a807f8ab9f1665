"""Payment-to-access handoff pipeline."""
from .coordinator import AccessHandoffCoordinator
from .pull_queue import EMPTY_ENTRY, InMemoryPullQueue, PullQueue, QueueEntry, RedisPullQueue
from .state_machine import PaymentStateMachine, PaymentStatus, TerminalEvent

__all__ = [
    "AccessHandoffCoordinator",
    "EMPTY_ENTRY",
    "InMemoryPullQueue",
    "PaymentStateMachine",
    "PaymentStatus",
    "PullQueue",
    "QueueEntry",
    "RedisPullQueue",
    "TerminalEvent",
]
