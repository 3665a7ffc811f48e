"""Orchestration — scheduled resumption of tasks and standing instructions."""
from concierge.orchestration.driver import OrchestrationDriver
from concierge.orchestration.evaluator import InstructionEvaluator

__all__ = ["OrchestrationDriver", "InstructionEvaluator"]
