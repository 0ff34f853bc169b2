STATE_DIR_NAME = ".plan_orchestrator"
STATE_HOME_ENV = "PLAN_ORCHESTRATOR_HOME"
CONFIG_FILE = "config.yaml"
CREDENTIALS_FILE = "credentials.yaml"
SESSIONS_FILE = "sessions.yaml"
PLANS_FILE = "plans.yaml"
PLANS_DIR = "plans"
WORKTREES_DIR = "worktrees"
TASK_STORE_DIR = ".beads"
DISCUSSION_OUTPUT_FILE = "discussion-output.md"
EVENTS_FILE = "events.jsonl"
SCHEMA_VERSION = 1
WINDOWS_LOCK_BYTES = 4096

POLL_INTERVAL_SECONDS = 5.0
DEFAULT_MAX_PARALLEL_AGENTS = 4
DEFAULT_LABEL_PREFIX = "orch"
DEFAULT_AGENT_COMMAND = "claude"
DEFAULT_TASK_STORE_BINARY = "bd"

ACTIVE_PLAN_STATUSES = ("delegating", "in_progress", "ready_for_review")
CANCELLABLE_PLAN_STATUSES = ("discussing",) + ACTIVE_PLAN_STATUSES

# Terminal automaton markers and timings (seconds)
COMPLETION_MARKERS = ("Goodbye", "Session ended")
SESSION_CLEARED_MARKER = "(no content)"
TRUST_PROMPT_PHRASE = "Yes, I trust this folder"
TRUST_BUFFER_IDLE_SECONDS = 2.0
TRUST_CONFIRM_DELAY_SECONDS = 0.2
TRUST_CONFIRM_KEYS = "1\r"
ACCEPT_MODE_ON_MARKER = "accept edits on"
ACCEPT_MODE_STATUS_GLYPH = "⏵"
ACCEPT_MODE_TOGGLE_KEYS = "\x1b[Z"
ACCEPT_MODE_DELAY_SECONDS = 0.3
MAX_ACCEPT_MODE_ATTEMPTS = 5
STARTUP_COMMAND_DELAY_SECONDS = 0.1
STARTUP_FALLBACK_SECONDS = 3.0
TYPE_CHAR_DELAY_SECONDS = 0.005
PASTE_PREVIEW_MARKER = "Pasted text"
PASTE_PREVIEW_TIMEOUT_SECONDS = 2.0
PASTE_CONFIRM_DELAY_SECONDS = 0.1
PLAIN_CONFIRM_DELAY_SECONDS = 0.05
EXIT_COMMAND = "/exit\r"

OAUTH_TOKEN_ENV = "CLAUDE_CODE_OAUTH_TOKEN"
