"""Constants for the companion agent system.

Single source of truth for the limits shared by the dispatcher, the tool
gateway, the audit log, and the LLM runtime.
"""

# ---------------------------------------------------------------------------
# Agent execution limits
# ---------------------------------------------------------------------------
DEFAULT_AGENT_MAX_STEPS = 5
DEFAULT_AGENT_TIMEOUT_MS = 30_000
DEFAULT_RUNTIME_MAX_STEPS = 5

# ---------------------------------------------------------------------------
# Dispatch queue
# ---------------------------------------------------------------------------
DEFAULT_DISPATCH_QUEUE_SIZE = 100
DEFAULT_EXECUTION_HISTORY_SIZE = 1000
DEFAULT_TICK_INTERVAL_SECONDS = 1.0

# ---------------------------------------------------------------------------
# Confirmation
# ---------------------------------------------------------------------------
# Side-effecting tools that always need user approval, whatever their flag says.
FORCED_CONFIRMATION_TOOLS = frozenset(
    {"file_write", "open_url", "open_app", "clipboard_write"}
)
CONFIRM_PREVIEW_MAX_STRING_CHARS = 160
CONFIRM_PREVIEW_MAX_LIST_ITEMS = 10
CONFIRM_PREVIEW_MAX_DICT_KEYS = 20

# ---------------------------------------------------------------------------
# Audit sanitizing
# ---------------------------------------------------------------------------
AUDIT_MAX_STRING_CHARS = 500
AUDIT_MAX_LIST_ITEMS = 50
AUDIT_MAX_DICT_KEYS = 50
AUDIT_MAX_DEPTH = 6
AUDIT_LIST_MAX_LIMIT = 500
REDACTED = "[REDACTED]"
DEPTH_LIMIT_MARKER = "[depth limit]"
# Compared case-insensitively against mapping keys.
REDACT_KEYS = frozenset(
    {
        "apikey",
        "api_key",
        "token",
        "password",
        "secret",
        "authorization",
        "access_token",
        "refresh_token",
    }
)
CANCELLED_ERROR = "cancelled"

# ---------------------------------------------------------------------------
# Output truncation
# ---------------------------------------------------------------------------
TOOL_RESULT_EVENT_MAX_CHARS = 2000

# ---------------------------------------------------------------------------
# Resource limits
# ---------------------------------------------------------------------------
MAX_FILE_WRITE_BYTES = 1_000_000  # 1 MB
MAX_FILE_READ_CHARS = 50_000
READ_FILE_TRUNCATION_MSG = "\n... (truncated, {} chars total)"
HTTP_TOOL_TIMEOUT_SECONDS = 15.0
CLIPBOARD_TIMEOUT_SECONDS = 5.0
WEB_SEARCH_DEFAULT_RESULTS = 5
WEB_SEARCH_MAX_RESULTS = 10
HTTP_USER_AGENT = "Mozilla/5.0 (compatible; DeskCompanion/1.0)"

# ---------------------------------------------------------------------------
# LLM retry
# ---------------------------------------------------------------------------
LLM_MAX_RETRIES = 3
LLM_RETRY_BASE_DELAY_SECONDS = 1.0
LLM_RETRY_MAX_DELAY_SECONDS = 15.0
LLM_RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}

# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------
NOTIFICATION_HISTORY_SIZE = 200
DEFAULT_BUBBLE_DURATION_MS = 5000
