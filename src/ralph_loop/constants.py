"""Constants for the Ralph loop."""

# Models offered by interactive setup. The last entry lets the operator type one.
MODELS = [
    "opus-4.5-thinking",
    "sonnet-4.5-thinking",
    "gpt-5.2-high",
    "composer-1",
]

DEFAULT_MODEL = "opus-4.5-thinking"

DEFAULT_MAX_ITERATIONS = 20

# Context budget in estimated tokens
DEFAULT_WARN_THRESHOLD = 70000
DEFAULT_ROTATE_THRESHOLD = 80000

DEFAULT_AGENT_COMMAND = "cursor-agent"
DEFAULT_AGENT_TIMEOUT_S = 1800.0
DEFAULT_INVOKE_RETRIES = 1
DEFAULT_ITERATION_DELAY_S = 2.0
DEFAULT_MAX_PARALLEL = 3

# Files inside the workspace
TASK_FILE = "RALPH_TASK.md"
MIRROR_DIR = ".ralph"

# External state home (outside every workspace)
DEFAULT_STATE_HOME = "~/.ralph/projects"

# Completion oracle results
COMPLETE = "COMPLETE"
INCOMPLETE_PREFIX = "INCOMPLETE:"

# Exit codes for the CLI
EXIT_OK = 0
EXIT_ERROR = 1
EXIT_GUTTER = 2
EXIT_CONFIG_ERROR = 3
EXIT_MAX_ITER = 4
EXIT_TERMINATED = 5
