import logging
import os
from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


# AI Planner Configuration
ANTHROPIC_API_KEY = os.getenv("ANTHROPIC_API_KEY")

# Model ID constants (single source of truth for model identifiers)
MODEL_HAIKU = "claude-haiku-4-5"
MODEL_SONNET = "claude-sonnet-4-6"
DEFAULT_MODEL = MODEL_HAIKU

AI_MODEL = os.getenv("AI_MODEL", DEFAULT_MODEL)
PLANNER = os.getenv("PLANNER", "rules").lower()  # "rules" or "claude"
MAX_CONCURRENT_API_CALLS = int(os.getenv("MAX_CONCURRENT_API_CALLS", "2"))

if PLANNER not in ("rules", "claude"):
    logger.warning(f"Unknown PLANNER '{PLANNER}', falling back to rule-based planning")
    PLANNER = "rules"

# Browser / Control Channel Configuration
# Empty endpoint means a local Chromium is launched instead of attaching
CDP_ENDPOINT = os.getenv("CDP_ENDPOINT", "")
BROWSER_HEADLESS = _env_bool("BROWSER_HEADLESS", "true")
VIEWPORT_WIDTH = int(os.getenv("VIEWPORT_WIDTH", "1280"))
VIEWPORT_HEIGHT = int(os.getenv("VIEWPORT_HEIGHT", "720"))
# WARNING: Enabling this silently accepts invalid certificates. Use only for testing.
IGNORE_HTTPS_ERRORS = _env_bool("IGNORE_HTTPS_ERRORS", "false")

if IGNORE_HTTPS_ERRORS:
    logger.warning(
        "IGNORE_HTTPS_ERRORS=true - bypassing HTTPS certificate validation. "
        "Only use this for testing internal/staging sites with self-signed certs."
    )

# PRAR Loop Limits
MAX_CYCLES = int(os.getenv("MAX_CYCLES", "100"))
MAX_CYCLE_TIME_SECONDS = float(os.getenv("MAX_CYCLE_TIME_SECONDS", "30"))  # Wall-clock budget of one loop
ERROR_THRESHOLD = int(os.getenv("ERROR_THRESHOLD", "5"))
ACTION_TIMEOUT_SECONDS = float(os.getenv("ACTION_TIMEOUT_SECONDS", "5"))
STABILITY_TIMEOUT_SECONDS = float(os.getenv("STABILITY_TIMEOUT_SECONDS", "5"))
STABILITY_POLL_SECONDS = float(os.getenv("STABILITY_POLL_SECONDS", "0.2"))

# Perception
_dom_debounce_raw = int(os.getenv("DOM_DEBOUNCE_MS", "500"))
DOM_DEBOUNCE_MS = max(300, min(500, _dom_debounce_raw))  # Clamp to 300-500 ms quiet window
EVENT_QUEUE_SIZE = int(os.getenv("EVENT_QUEUE_SIZE", "256"))

# Keyboard Simulation
FOCUS_WALK_MAX_STEPS = int(os.getenv("FOCUS_WALK_MAX_STEPS", "50"))
FOCUS_TRAP_WINDOW = int(os.getenv("FOCUS_TRAP_WINDOW", "4"))
KEY_DELAY_SECONDS = float(os.getenv("KEY_DELAY_SECONDS", "0.05"))

# Auto-Remediation
_max_tasks_raw = int(os.getenv("MAX_CONCURRENT_TASKS", "5"))
MAX_CONCURRENT_TASKS = max(1, min(20, _max_tasks_raw))  # Clamp to 1-20 range
VERIFICATION_ENABLED = _env_bool("VERIFICATION_ENABLED", "true")
ROLLBACK_ON_FAILURE = _env_bool("ROLLBACK_ON_FAILURE", "true")
VERIFICATION_TIMEOUT_SECONDS = float(os.getenv("VERIFICATION_TIMEOUT_SECONDS", "5"))
CAPTURE_SCREENSHOTS = _env_bool("CAPTURE_SCREENSHOTS", "false")
INJECTION_STRATEGIES = tuple(
    s.strip() for s in os.getenv("INJECTION_STRATEGIES", "stylesheet,rule,inline").split(",") if s.strip()
)
TARGET_CONTRAST_RATIO = float(os.getenv("TARGET_CONTRAST_RATIO", "4.5"))

# Logging Configuration
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()  # DEBUG, INFO, WARNING, ERROR


def is_claude_planner_enabled() -> bool:
    """Return True if the Claude planner was requested and can actually run."""
    return PLANNER == "claude" and bool(ANTHROPIC_API_KEY)
