"""Context-budget and lifecycle constants."""

# Maximum characters of serialized console output returned per execution
MAX_LOG_CHARS = 1500

# Serialized tool results above this size are saved to the workspace instead
MAX_RESULT_CHARS = 500

RESULT_PREVIEW_CHARS = 200
TRUNCATED_PREVIEW_CHARS = 1000
LOG_PREVIEW_ENTRIES = 3

# Workspace directory for auto-saved tool results
MCP_RESULTS_DIR = "mcp-results"
MCP_RESULTS_MAX_AGE_S = 3600

# Connection lifecycle (seconds)
IDLE_TIMEOUT_S = 3 * 60
SWEEP_INTERVAL_S = 60
CONNECT_TIMEOUT_S = 60
CLOSE_TIMEOUT_S = 10

AUDIT_CAPACITY = 1000

# Script execution deadline (milliseconds)
DEFAULT_TIMEOUT_MS = 30_000
MIN_TIMEOUT_MS = 1_000
MAX_TIMEOUT_MS = 600_000

CLIENT_NAME = "tool-executor"
CLIENT_VERSION = "0.3.0"
