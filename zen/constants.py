DEFAULT_ESTIMATE_MS = 200
GROUP_TARGET_MS = 500
JOURNAL_FLUSH_DELAY_SECONDS = 5.0
JOURNAL_FILENAME = "journal.json"

STARTING_TIMEOUT_SECONDS = 10.0
RUNNING_TIMEOUT_SECONDS = 20.0
HOT_RELOAD_TIMEOUT_SECONDS = 5.0
LOADING_TIMEOUT_SECONDS = 10.0

# Reserved from the invocation budget: shutdown, then one last realistic test.
SHUTDOWN_MARGIN_MS = 5_000
FINAL_TEST_MARGIN_MS = 5_000
RETRY_TIME_FACTOR = 1.2

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_MAX_ROUNDS = 5
DEFAULT_CONCURRENCY = 400
DEFAULT_PORT = 3100
DEFAULT_INVOCATION_TIMEOUT_SECONDS = 300

DEFAULT_FUNCTION_NAMES = {
    "workTests": "zen-workTests",
    "listTests": "zen-listTests",
}
DEFAULT_HTML_TEMPLATE = "<body>ZEN_SCRIPTS</body>"
DEFAULT_WINDOW_SIZE = {"width": 800, "height": 600}
DEFAULT_WORKER_IMAGE = "zen-playwright-worker:latest"
DEFAULT_GATEWAY_URL = "http://host.docker.internal:3100"

CHROME_FLAGS = ["--disable-gpu", "--disable-dev-shm-usage", "--no-sandbox"]

TIMEOUT_MESSAGE = "Chrome-level test timeout"
DEADLINE_MESSAGE = "Test timed out: worker invocation deadline reached"
UNRESOLVED_MESSAGE = "Test resolved without running"
REMOTE_MISSING_MESSAGE = "Failed to run on remote!"
