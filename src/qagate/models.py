"""Centralized constants shared by the engine and the CLI."""

# Suite kinds understood by the parser registry
SUITE_KINDS = ("browser", "http-collection", "load-stream", "load-csv", "scanner", "contract")

# Environments a run may target; "all" expands to every environment a suite allows
ENVIRONMENTS = ("development", "staging", "production")
ALL_ENVIRONMENTS = "all"

# Browsers known to the browser harness
BROWSERS = ("chromium", "firefox", "webkit")

# Task states
PENDING = "pending"
RUNNING = "running"
PASSED = "passed"
FAILED = "failed"
ERRORED = "errored"
TIMEOUT = "timeout"
SKIPPED = "skipped"

TERMINAL_STATES = frozenset({PASSED, FAILED, ERRORED, TIMEOUT, SKIPPED})
FATAL_STATES = frozenset({ERRORED, TIMEOUT})

# Run verdicts
VERDICT_PASS = "pass"
VERDICT_SLO_FAIL = "sloFail"
VERDICT_FATAL = "fatal"

# Exit codes
EXIT_PASS = 0
EXIT_SLO_FAIL = 99
EXIT_FATAL_DEFAULT = 1
EXIT_CONFIG_ERROR = 2
EXIT_INFRA_ERROR = 3
EXIT_TIMEOUT_SENTINEL = 124
EXIT_SPAWN_FAILED = 127

# Scheduler defaults
DEFAULT_MAX_WORKERS = 4
DEFAULT_GRACE_SECONDS = 5.0
DEFAULT_TICK_SECONDS = 0.1
DEFAULT_LOG_TAIL_LINES = 50

# Artifact store defaults
DEFAULT_HISTORY_LIMIT = 30
DEFAULT_TREND_WINDOW = 10

# Trend noise floors: passRate and errorRate are absolute ratios,
# duration and p95 are relative changes.
DEFAULT_NOISE_FLOORS = {
    "passRate": 0.01,
    "duration": 0.05,
    "p95": 0.05,
    "errorRate": 0.005,
}

# Parser tolerances
MALFORMED_FRACTION_LIMIT = 0.10
DIGEST_RELATIVE_ACCURACY = 0.01
DIGEST_EXACT_LIMIT = 1024

# Environment variables passed through to child suites untouched
PASSTHROUGH_ENV_VARS = ("BASE_URL", "API_BASE_URL")

# Process basics a child needs to start at all; nothing else leaks through
CHILD_BASE_ENV_VARS = ("PATH", "HOME", "LANG", "LC_ALL", "TMPDIR", "SYSTEMROOT")
