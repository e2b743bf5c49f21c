"""Error taxonomy for the analysis pipeline.

Call-time errors (ValidationError and its subclasses) are raised synchronously
at the call site and never enter the task queue. Execution-time errors
(TaskTimeoutError, ExecutionError) are retried inside the Scheduler and only
surface through task records once retries are exhausted.
"""


class AuditPipeError(Exception):
    """Base class for all pipeline errors."""


class ValidationError(AuditPipeError):
    """Malformed input to add_task/register. Fails fast, never queued."""


class ConfigError(ValidationError):
    """Unknown agent type, invalid rule pattern, or invalid configuration value."""


class InvalidAgentType(ConfigError):
    """Agent type is not one of ast, rule, security, dependency, ai."""

    def __init__(self, agent_type):
        self.agent_type = agent_type
        super().__init__(f"Unknown agent type: {agent_type!r}")


class QueueFullError(ValidationError):
    """Scheduler queue is at capacity."""


class UnknownExecutionError(ValidationError):
    """No pipeline run exists for the given execution id."""


class TaskTimeoutError(AuditPipeError, TimeoutError):
    """A task exceeded its time budget. Retryable."""


class ExecutionError(AuditPipeError):
    """An agent raised during execution. Retryable up to max_retries."""


class StageAbortError(AuditPipeError):
    """A required sibling stage failed; dependent stages are not attempted."""

    def __init__(self, stage: str, reason: str):
        self.stage = stage
        self.reason = reason
        super().__init__(f"{stage}: {reason}")
