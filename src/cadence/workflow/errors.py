"""Workflow engine exceptions.

Configuration errors (unknown movement, no matching rule) and execution
errors (agent invocation failures) are fatal and raised out of
``WorkflowEngine.run()``. Policy limits (loop detection, iteration limit)
are not exceptions — they end the run with a structured ``AbortReason``.
"""

from __future__ import annotations

from typing import Any

ERROR_MESSAGES = {
    "LOOP_DETECTED": (
        'Loop detected: movement "{movement}" ran {count} times consecutively without progress.'
    ),
    "UNKNOWN_MOVEMENT": "Unknown movement: {movement}",
    "MOVEMENT_EXECUTION_FAILED": "Movement execution failed: {message}",
    "MAX_ITERATIONS_REACHED": "Max iterations reached",
}


class CadenceError(Exception):
    """Base class for all Cadence errors."""


class WorkflowError(CadenceError):
    """An error that stops a workflow run."""


class ConfigurationError(WorkflowError):
    """The workflow definition (or an agent's output) cannot be followed."""


class UnknownMovementError(ConfigurationError):
    def __init__(self, movement: str):
        self.movement = movement
        super().__init__(ERROR_MESSAGES["UNKNOWN_MOVEMENT"].format(movement=movement))


class NoMatchingRuleError(ConfigurationError):
    """No rule matched the signal produced by a movement."""

    def __init__(self, movement: str, signal: Any):
        self.movement = movement
        self.signal = signal
        super().__init__(f"No rule matched for movement '{movement}' (signal: {signal})")


class AgentInvocationError(CadenceError):
    """Raised by agent invoker implementations when a call fails."""

    def __init__(self, agent: str, message: str):
        self.agent = agent
        super().__init__(f"Agent '{agent}' failed: {message}")


class ParallelBranchError(CadenceError):
    """A fan-out branch failed; carries every branch outcome for diagnosis."""

    def __init__(self, movement: str, branch: str, cause: BaseException, outcomes: list[Any]):
        self.movement = movement
        self.branch = branch
        self.cause = cause
        self.outcomes = outcomes
        super().__init__(f"Branch '{movement}/{branch}' failed: {cause}")


class MovementExecutionError(WorkflowError):
    """An agent invocation failed while executing a movement."""

    def __init__(self, movement: str, cause: BaseException):
        self.movement = movement
        self.cause = cause
        super().__init__(ERROR_MESSAGES["MOVEMENT_EXECUTION_FAILED"].format(message=cause))
