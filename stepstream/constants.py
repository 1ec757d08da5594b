"""Shared defaults for stepstream sessions."""

DEFAULT_TIMEOUT_SECONDS = 120
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_BASE_DELAY_SECONDS = 1.0

CONTEXT_SEPARATOR = "\n\nPrevious clarification answers:\n"
UNKNOWN_TOOL_NAME = "unknown"
