"""Animation sequencing: one highlighted node at a time, paced by timers and stream events."""

from .scheduler import Scheduler, TimerHandle, TrioScheduler, TrioTimer
from .sequencer import AnimationSequencer, AnimationState, PassIdentity, SequencerPhase
from .speed import AnimationSpeed, NodeSpeedTable

__all__ = [
    "AnimationSequencer",
    "AnimationState",
    "AnimationSpeed",
    "NodeSpeedTable",
    "PassIdentity",
    "Scheduler",
    "SequencerPhase",
    "TimerHandle",
    "TrioScheduler",
    "TrioTimer",
]
