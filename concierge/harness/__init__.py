"""Agent harness — the runtime loop every model interaction runs through."""
from concierge.harness.loop import AgenticLoop, IterationLimitExceeded, LoopResult

__all__ = ["AgenticLoop", "IterationLimitExceeded", "LoopResult"]
