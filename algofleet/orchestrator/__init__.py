"""
Orchestrator package - periodic scheduling of instance work.
"""

from algofleet.orchestrator.poller import (
    InstancePollResult,
    PeriodicLoop,
    PollCycleResult,
    PollerConfig,
    PollingScheduler,
)

__all__ = [
    "InstancePollResult",
    "PeriodicLoop",
    "PollCycleResult",
    "PollerConfig",
    "PollingScheduler",
]
