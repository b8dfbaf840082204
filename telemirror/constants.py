"""Constants used across telemirror.

This module defines shared constants to ensure consistency.
"""

# Activity previews
THINKING_TRUNCATE_LENGTH = 500  # Preview length for thinking / generated text
ELLIPSIS = "..."

# Live activity rendering
MAX_LIVE_ENTRIES = 30  # Above this the formatter switches to a rolling window
ROLLING_WINDOW_SIZE = 20

# Log tailing
DEFAULT_POLL_INTERVAL_S = 0.5
DEFAULT_UPDATE_RATE_S = 2.0
DEFAULT_SESSIONS_ROOT = "~/.claude/projects"

# Delivery
DEFAULT_CHAR_LIMIT = 500
TRUNCATION_MARKER = "\n\n...(truncated)"
USER_INPUT_PREFIX = "📥 Terminal Input\n"
ASSISTANT_OUTPUT_PREFIX = "📤 Terminal Output\n"

# Record discriminants we care about; the log also carries progress,
# summary, file-history-snapshot and similar records.
RECORD_TYPES = ("user", "assistant")
