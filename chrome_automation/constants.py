"""Chrome flags, CDP endpoints, retry budgets, and tool groupings."""

# ── CDP ──────────────────────────────────────────────────────────────────────

CDP_HOST = "127.0.0.1"
CDP_URL_TEMPLATE = f"http://{CDP_HOST}:{{port}}"
CDP_VERSION_PATH = "/json/version"

CONNECT_ATTEMPTS = 3
CONNECT_RETRY_DELAY = 1.0
PORT_ROTATION_STEP = 10

READY_POLL_INTERVAL = 0.25

# ── Chrome launch ────────────────────────────────────────────────────────────

CHROME_PATHS = {
    "darwin": "/Applications/Google Chrome.app/Contents/MacOS/Google Chrome",
    "win32": "C:\\Program Files\\Google\\Chrome\\Application\\chrome.exe",
}
CHROME_DEFAULT_BINARY = "google-chrome"

CHROME_FIXED_FLAGS = [
    "--no-startup-window",
    "--disable-default-apps",
    "--disable-background-mode",
    "--no-first-run",
    "--no-default-browser-check",
    "--disable-features=TranslateUI",
    "--disable-ipc-flooding-protection",
    "--disable-translate",
]

# ── Cleanup ──────────────────────────────────────────────────────────────────

PORT_EVICTION_GRACE = 1.0
FILE_LOCK_RELEASE_DELAY = 2.0
DIR_DELETE_ATTEMPTS = 3
SESSION_DIR_PREFIX = "session-"

# ── Sessions & tabs ──────────────────────────────────────────────────────────

DEFAULT_SESSION = "default"
RANDOM_SUFFIX_LENGTH = 6
BASE36_ALPHABET = "0123456789abcdefghijklmnopqrstuvwxyz"

# Error text Playwright raises once the target behind a page handle is gone
TARGET_CLOSED_MARKERS = (
    "Target page, context or browser has been closed",
    "Target closed",
    "Browser has been closed",
)

WAIT_UNTIL_OPTIONS = ("load", "domcontentloaded", "networkidle")
SCROLL_DIRECTIONS = {
    "down": (0, 1),
    "up": (0, -1),
    "right": (1, 0),
    "left": (-1, 0),
}

# ── Background scripts ───────────────────────────────────────────────────────

SCRIPT_ENTRYPOINT = "run"
SCRIPT_MONITOR_INTERVAL = 2.0
SMART_CLOSE_REPORT_EVERY = 30.0

TASK_STARTED = "started"
TASK_COMPLETED = "completed"
TASK_FAILED = "failed"

# ── Tool surface ─────────────────────────────────────────────────────────────

LITE_TOOLS = frozenset({
    "launch_browser",
    "close_browser",
    "close_all_browsers",
    "cleanup_sessions",
    "navigate_to",
    "run_script",
    "run_script_background",
    "get_storage",
    "set_storage",
})
