"""Centralized exit codes for the AuditPipe CLI."""


class ExitCodes:
    """Standard exit codes for AuditPipe CLI commands."""

    SUCCESS = 0

    HIGH_SEVERITY = 1
    CRITICAL_SEVERITY = 2

    PIPELINE_FAILED = 3
