"""Hypolab constants: stage scopes, budget defaults, patterns, and limits."""

from __future__ import annotations

import re

ENV_PREFIX = "HYPOLAB_"
DEFAULT_CONFIG_DIR_NAME = ".hypolab"
STATE_DIR_NAME = "state"
LOG_DIR_NAME = "logs"
LOG_FILE_NAME = "hypolab.log"
ARTIFACT_DIR_NAME = "artifacts"
POLICY_FILE_NAME = "policy.yaml"
APP_NAME = "hypolab"

# ---------------------------------------------------------------------------
# Stage scopes
# ---------------------------------------------------------------------------

STAGE_SCOPES = (
    "orchestrator",
    "dialectical",
    "baconian",
    "literature",
    "normalization",
    "falsification",
    "runners",
)
STAGE_LABELS = {
    "orchestrator": "Orchestrator",
    "dialectical": "Dialectical",
    "baconian": "Baconian",
    "literature": "Literature",
    "normalization": "Normalization",
    "falsification": "Falsification",
    "runners": "Experiment runners",
}
STAGE_SCHEMAS = {
    "orchestrator": "orchestrator",
    "dialectical": "dialectic",
    "baconian": "baconian",
    "literature": "literature",
    "normalization": "normalization",
    "falsification": "falsification_plan",
    "runners": "experiment_runners",
}

DEFAULT_ATTEMPT_TIMEOUT_MS = {
    "orchestrator": 180_000,
    "falsification": 210_000,
    "runners": 210_000,
}
DEFAULT_ATTEMPT_TIMEOUT_FALLBACK_MS = 150_000
LONG_RUN_ATTEMPT_TIMEOUT_MS = {"falsification": 1_800_000, "runners": 1_800_000}
LONG_RUN_ATTEMPT_TIMEOUT_FALLBACK_MS = 1_200_000

DEFAULT_GLOBAL_TIMEOUT_MS = {
    "orchestrator": 480_000,
    "falsification": 360_000,
    "runners": 360_000,
}
DEFAULT_GLOBAL_TIMEOUT_FALLBACK_MS = 300_000
LONG_RUN_GLOBAL_TIMEOUT_MS = {"orchestrator": 28_800_000}
LONG_RUN_GLOBAL_TIMEOUT_FALLBACK_MS = 21_600_000

DEFAULT_MAX_EVENTS = {"orchestrator": 420}
DEFAULT_MAX_EVENTS_FALLBACK = 280
LONG_RUN_MAX_EVENTS = {"orchestrator": 20_000}
LONG_RUN_MAX_EVENTS_FALLBACK = 8_000

DEFAULT_MAX_TOOL_CALLS = {"orchestrator": 80, "literature": 80}
DEFAULT_MAX_TOOL_CALLS_FALLBACK = 40
LONG_RUN_MAX_TOOL_CALLS = {"orchestrator": 2_000, "literature": 1_600}
LONG_RUN_MAX_TOOL_CALLS_FALLBACK = 1_200

DEFAULT_MAX_RETRIES = 2
RETRY_BASE_DELAY_MS = 700
RETRY_MAX_DELAY_MS = 12_000
RETRY_JITTER_RATIO = 0.3
OVERLOAD_MIN_DELAY_MS = 3_500
TRACE_MAX_EVENTS = 240
TRACE_TEXT_PREVIEW_CHARS = 180
INVALID_OUTPUT_PREVIEW_CHARS = 20_000
CANCELLED_MESSAGE = "Request cancelled by user"
ATTEMPT_TIMEOUT_MESSAGE = "attempt timeout exceeded"

RETRYABLE_STATUS_CODES = frozenset({408, 409, 429})
RETRYABLE_MESSAGE_TOKENS = (
    "timeout",
    "timed out",
    "temporary",
    "temporarily unavailable",
    "network",
    "connection reset",
    "econn",
    "429",
    "overloaded",
    "service unavailable",
    "502",
    "503",
    "504",
    "contract violation",
    "structured output",
    "returned empty output",
    "empty output",
    "expected strict",
    "unexpected token",
    "not valid json",
    "invalid json",
    "json parse",
)
STRICT_JSON_ERROR_TOKENS = (
    "structured output",
    "expected strict",
    "unexpected token",
    "not valid json",
    "invalid json",
    "json parse",
)
OVERLOAD_MESSAGE_TOKENS = (
    "503",
    "high demand",
    "overloaded",
    "service unavailable",
    "temporarily unavailable",
    "resource exhausted",
    "rate limit",
    "quota exceeded",
    "deadline exceeded",
)

# ---------------------------------------------------------------------------
# State store
# ---------------------------------------------------------------------------

STATE_RECORD_VERSION = 1
STATE_NAMESPACE_MAX_CHARS = 64
STATE_LOCK_TIMEOUT_SECONDS = 2.0
STATE_LOCK_STALE_SECONDS = 45.0
STATE_LOCK_RETRY_SECONDS = 0.015
SESSION_ID_PREFIX = "hyp_"

# ---------------------------------------------------------------------------
# Runners / execution
# ---------------------------------------------------------------------------

RUNNERS_OUTPUT_DIR_NAME = "hypolab-runners"
DATASETS_DIR_NAME = "datasets"
GATE_REPORT_FILE_NAME = "gate-report.latest.json"
GATE_REPORT_SCHEMA = "hypolab.gate-report.v1"
EVIDENCE_CONTRACT_PREFIX = "HYPOLAB_EVIDENCE_CONTRACT="
RUNNER_TIMEOUT_MS = 20_000
PIP_INSTALL_TIMEOUT_MS = 120_000
VENV_SETUP_TIMEOUT_MS = 120_000
AUTO_INSTALL_MAX_ROUNDS = 3
AUTO_INSTALL_MAX_ROUNDS_CAP = 6
OUTPUT_PREVIEW_CHARS = 240
RAW_OUTPUT_MAX_CHARS = 12_000
MAX_PLAN_VARIANTS = 5
RUNNER_FILE_EXTENSIONS = {"python": ".py", "bash": ".sh", "pseudo": ".txt"}
RUNNER_PLACEHOLDER_CODE = {
    "python": "# runner body not provided\n",
    "bash": "#!/usr/bin/env bash\n# runner body not provided\n",
    "pseudo": "runner body not provided\n",
}
PREINSTALL_SAFE_PACKAGES = frozenset(
    {
        "numpy",
        "scipy",
        "pandas",
        "matplotlib",
        "scikit-learn",
        "sympy",
        "statsmodels",
        "networkx",
    }
)
MODULE_PACKAGE_ALIASES = {"sklearn": "scikit-learn", "PIL": "pillow"}

# ---------------------------------------------------------------------------
# Cache
# ---------------------------------------------------------------------------

CACHE_TTL_SECONDS = 30.0
TURN_CACHE_TTL_SECONDS = 300.0
CACHE_KEY_VERSION = "v2"

# ---------------------------------------------------------------------------
# Dataset discovery
# ---------------------------------------------------------------------------

DATASET_DOWNLOAD_TIMEOUT_MS = 20_000
DATASET_MAX_BYTES = 15 * 1024 * 1024
WEB_DISCOVERY_TIMEOUT_MS = 10_000
ADVISOR_TIMEOUT_MS = 15_000
WEB_MAX_QUERIES = 8
WEB_MAX_CANDIDATES = 40
WEB_LANDING_LINKS_PER_QUERY = 6
DATASET_TOP_K = 5
DATASET_TOP_K_MAX = 12
DATASET_HTML_MAX_DEPTH = 2
ADVISOR_MAX_QUERIES = 8
ADVISOR_MAX_SEEDS = 16
ADVISOR_MAX_HINTS = 12
ADVISOR_MAX_MAPPINGS = 12
LITERATURE_MAX_QUERIES = 3
LITERATURE_MAX_RESULTS = 24
LOCAL_SCAN_MAX_DEPTH = 3
LOCAL_SCAN_MAX_ENTRIES = 300
LOCAL_SCAN_MIN_SCORE = 20
LOCAL_SCAN_MAX_RESULTS = 48
LOCAL_SCAN_SKIP_DIRS = frozenset({".git", "node_modules", ".venv", "dist", "build"})
DATASET_EXTENSIONS = (".csv", ".tsv", ".jsonl", ".parquet")
PAPER_TABLE_MIN_ROWS = 30
PAPER_TABLE_MIN_COLS = 2
PAPER_TABLE_MIN_NUMERIC_RATIO = 0.1
EVIDENCE_MIN_ROWS = 30
EVIDENCE_MIN_FOLDS = 2
COLUMN_HINTS_MAX = 48

ALLOWED_DATASET_MIME_TYPES = frozenset(
    {
        "text/csv",
        "application/csv",
        "application/vnd.ms-excel",
        "text/tab-separated-values",
        "application/x-ndjson",
        "application/ndjson",
        "application/json",
        "application/parquet",
        "application/octet-stream",
    }
)
HTML_MIME_PATTERN = re.compile(r"\btext/html\b", re.IGNORECASE)
DISALLOWED_MIME_PATTERN = re.compile(r"\b(application/pdf|text/html)\b", re.IGNORECASE)
DISALLOWED_URL_PATH_PATTERN = re.compile(r"/abs/|/pdf/|\.pdf(?:$|\?)", re.IGNORECASE)
LANDING_DOMAIN_PATTERN = re.compile(
    r"(?:^|\.)(raw\.githubusercontent\.com|github\.com|huggingface\.co|kaggle\.com|zenodo\.org|"
    r"figshare\.com|osf\.io|physionet\.org|openneuro\.org|archive\.ics\.uci\.edu|datadryad\.org|"
    r"mendeley\.com)$",
    re.IGNORECASE,
)
LANDING_PATH_PATTERN = re.compile(
    r"\b(dataset|datasets|data|download|downloads|record|records|resource|resources|file|files|"
    r"supplement|table)\b",
    re.IGNORECASE,
)
LANDING_CONTEXT_PATTERN = re.compile(
    r"\bdataset|datasets|download|repository|benchmark|open data|data table|time series\b",
    re.IGNORECASE,
)

# ---------------------------------------------------------------------------
# Signal classification
# ---------------------------------------------------------------------------

PASS_SIGNAL_PATTERN = re.compile(
    r"\b(pass|passed|signal_detected|confirmed|validado|soportada|success)\b", re.IGNORECASE
)
FAIL_SIGNAL_PATTERN = re.compile(
    r"\b(fail|failed|failure|falsified|falsado|falsificacion|falsification|refuted|contradicted|"
    r"rejected|signal_not_detected|signal_failed)\b",
    re.IGNORECASE,
)
EXPLICIT_FAIL_PATTERN = re.compile(
    r"\b(status|result|resultado|verdict)\s*[:=]\s*(fail(?:ed|ure)?|falsified|falsado|"
    r"signal_not_detected|signal_failed|refuted|contradicted|rejected)\b",
    re.IGNORECASE,
)
NEGATED_FAIL_PATTERN = re.compile(
    r"\b(?:falsified|falsado)\b(?:[^\n]{0,40})[:=]\s*(?:false|0)\b"
    r"|\b(?:falsified|falsado|fail(?:ed|ure)?|refuted|rejected|contradicted)\b\s*[:=]?\s*(?:false|0)\b"
    r"|\bno\s+(?:falsado|falsified|fallo|falla|failure|failed)\b"
    r"|\bnot\s+(?:falsified|failed|failure|refuted|rejected|contradicted)\b",
    re.IGNORECASE,
)
EXPECTED_FAIL_CONTEXT_PATTERN = re.compile(
    r"\b(?:expected|esperad[oa])\b[^\n]{0,100}\b(?:negative|negativ[oa]|fail(?:ed|ure)?|falsified|"
    r"falsado|refuted)\b",
    re.IGNORECASE,
)
RUNTIME_ERROR_PATTERN = re.compile(
    r"\b(traceback|module(?:notfound)?error|syntaxerror|filenotfounderror|importerror|permissionerror|"
    r"jsondecodeerror)\b"
    r"|\berror:\s*(?!promedio\b)(?:\[[^\]]+\]|no such file|cannot|failed|exception|traceback|module|"
    r"file|nameerror|syntaxerror|[a-z])"
    r"|\berror al cargar datos\b",
    re.IGNORECASE,
)
DATASET_HINT_PATTERN = re.compile(
    r"https?://\S+\.(?:csv|tsv|jsonl|parquet|zip|xlsx?)\b"
    r"|(?:^|[\s\"'`])(?:\.{0,2}/|/|[a-zA-Z]:\\)[^\s\"'`]+\.(?:csv|tsv|jsonl|parquet|sqlite|db|zip|xlsx?)\b"
    r"|\b[\w.-]+\.(?:csv|tsv|jsonl|parquet|sqlite|db|zip|xlsx?)\b",
    re.IGNORECASE,
)
CONCRETE_DATASET_REFERENCE_PATTERN = re.compile(
    r"https?://\S+\.(?:csv|tsv|jsonl|parquet|json|xlsx?|zip)\b"
    r"|(?:^|[\s\"'`])(?:\.{0,2}/|/|[a-zA-Z]:\\)[^\s\"'`]+\.(?:csv|tsv|jsonl|parquet|json|xlsx?|zip)\b"
    r"|\b[\w.-]+\.(?:csv|tsv|jsonl|parquet|json|xlsx?|zip)\b",
    re.IGNORECASE,
)
SYNTHETIC_PATTERN = re.compile(r"(synthetic|sintetico|toy|mock|dummy|autorepair)", re.IGNORECASE)
FIELD_EVIDENCE_MARKER_PATTERN = re.compile(r"FIELD_EVIDENCE_(?:READY|FAIL)\b")

# ---------------------------------------------------------------------------
# Stage decisions / gate statuses
# ---------------------------------------------------------------------------

REJECT_EARLY = "REJECT_EARLY"
PROVISIONAL_PASS = "PROVISIONAL_PASS"
NEEDS_FIELD = "NEEDS_FIELD"
DEFINITIVE_PASS = "DEFINITIVE_PASS"
DEFINITIVE_FAIL = "DEFINITIVE_FAIL"
GATE_PASS = "PASS"
GATE_FAIL = "FAIL"
GATE_UNRESOLVED = "UNRESOLVED"

AUTO_FIELD_RUNNER_PREFIX = "R_FIELD_AUTOREPAIR"
AUTO_FIELD_TEST_ID = "AUTO_FIELD_EVIDENCE"
DATASET_FIELD_RUNNER_PREFIX = "R_FIELD_DATASET"
DATASET_FIELD_TEST_ID = "FIELD_DATASET_EVIDENCE"
