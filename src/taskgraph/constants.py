STATE_DIR_NAME = ".taskgraph"
STATE_DIR_ENV_VAR = "TASKGRAPH_STATE_DIR"
CONFIG_FILE = "config.yaml"
STORE_FILE = "tasks.yaml"
STORE_LOCK_FILE = "tasks.lock"
STORE_VERSION = 1
ARTIFACTS_DIR = "artifacts"
EVENTS_FILE = "task_events.jsonl"

DEFAULT_LOG_LEVEL = "INFO"
DEFAULT_PRIORITY = 0
WINDOWS_LOCK_BYTES = 4096

DAY_MS = 86_400_000
