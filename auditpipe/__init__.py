"""AuditPipe - multi-agent source analysis pipeline."""

__version__ = "0.4.0"
