"""Centralized constants for AuditPipe.

Single source of truth for output paths and environment variable names.
"""

from pathlib import Path

# ============================================================================
# OUTPUT DIRECTORIES
# ============================================================================

# Primary output directory for all AuditPipe artifacts
PF_DIR = Path("./.pf")

ERROR_LOG_FILE = PF_DIR / "error.log"
PIPELINE_LOG_FILE = PF_DIR / "pipeline.log"
DATABASE_FILE = PF_DIR / "results.db"
CONFIG_FILE_NAME = "config.json"

# ============================================================================
# FILE PROCESSING LIMITS
# ============================================================================

# Maximum file size to analyze (default: 1MB)
DEFAULT_MAX_FILE_SIZE = 1024 * 1024

# Directories never walked by the filesystem collector
EXCLUDED_DIRECTORIES = frozenset({
    ".git",
    ".hg",
    ".svn",
    ".pf",
    "node_modules",
    "__pycache__",
    ".venv",
    "venv",
    "dist",
    "build",
    ".next",
    ".tox",
    ".mypy_cache",
    ".pytest_cache",
})

# Extensions that are never source code
EXCLUDED_EXTENSIONS = frozenset({
    ".png", ".jpg", ".jpeg", ".gif", ".ico", ".svg", ".webp",
    ".pdf", ".zip", ".gz", ".tar", ".jar", ".whl",
    ".so", ".dll", ".dylib", ".exe", ".bin", ".pyc",
    ".lock", ".map",
    ".woff", ".woff2", ".ttf", ".eot",
})

# ============================================================================
# ENVIRONMENT VARIABLES
# ============================================================================

ENV_PREFIX = "AUDITPIPE"
ENV_DEBUG = "AUDITPIPE_DEBUG"
ENV_AI_API_KEY = "AUDITPIPE_AI_API_KEY"
