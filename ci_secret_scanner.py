#!/usr/bin/env python3
"""
===================================================================
CI SECRET SCANNER (GITLEAKS PIPELINE STEP)
===================================================================

PURPOSE:
    Runs gitleaks against a checked-out workspace inside a CI job,
    drops findings that are not actionable (dependency trees, VCS
    metadata, unresolved template variables), renders a GitHub
    Actions job summary and optionally pushes the remaining findings
    to the dashboard API.

PIPELINE:
    1. Write the bundled detection rules to a per-run TOML file
    2. Locate gitleaks on PATH and run it against SCAN_DIR
    3. Load the JSON report and classify findings
    4. Render the job summary and set the scan_result output
    5. Upload findings when PROJECT_ID is configured

REQUIREMENTS:
    Install dependencies:
        pip install .
    or
        pip install aiohttp aiofiles tqdm

    gitleaks (v8+) must be installed and on PATH.

USAGE:
    export SCAN_DIR=/github/workspace
    python ci_secret_scanner.py
    python ci_secret_scanner.py --summary-mode files --log-format json

CONFIGURATION:
    Set via environment variables:
    - SCAN_DIR: Directory to scan (default: current working directory)
    - PROJECT_ID: Dashboard project id; upload is skipped when unset
    - X_API_KEY, X_SECRET_KEY, X_TENANT_KEY: Dashboard credentials
    - API_BASE_URL: Dashboard API host (default: https://dev.neotrak.io)
    - DASHBOARD_URL: Link appended to the job summary
    - GITLEAKS_BIN: Scanner executable name (default: gitleaks)
    - PROJECT_ROOT_MARKER: Path segment used to shorten file paths (default: sbom)
    - SUMMARY_MODE: findings|files (default: findings)
    - FAIL_ON_FINDINGS: Fail the step when secrets remain (default: true)
    - LOG_FORMAT: text|json (default: text)
    - RUNNER_TEMP, GITHUB_STEP_SUMMARY, GITHUB_OUTPUT: Set by GitHub Actions

===================================================================
"""
import argparse
import asyncio
import json
import logging
import os
import re
import shutil
import sys
import tempfile
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from tqdm import tqdm
from typing import List, Dict, Any, Iterable, Mapping, Optional, Sequence, Tuple
from urllib.parse import quote

# Third-party imports with error handling
try:
    import aiofiles
    import aiohttp
except ImportError as e:
    print(f"ERROR: Missing required dependency: {e}")
    print("Install with: pip install aiohttp aiofiles tqdm")
    sys.exit(1)

__version__ = "1.2.0"

# ===================================================================
# CONFIGURATION & CONSTANTS
# ===================================================================

SCANNER_BINARY = "gitleaks"
DEFAULT_API_BASE_URL = "https://dev.neotrak.io"
DEFAULT_DASHBOARD_URL = "https://dev.neoTrak.io"
DEFAULT_PROJECT_ROOT_MARKER = "sbom"
UPDATE_SECRETS_PATH = "/open-pulse/project/update-secrets/{project_id}"

SUMMARY_MODE_FINDINGS = "findings"
SUMMARY_MODE_FILES = "files"
SUMMARY_MODES = (SUMMARY_MODE_FINDINGS, SUMMARY_MODE_FILES)

# gitleaks exit status convention
SCANNER_EXIT_CLEAN = 0
SCANNER_EXIT_LEAKS = 1

# Operational constants
SCANNER_MAX_OUTPUT_BYTES = 10 * 1024 * 1024
UPLOAD_TIMEOUT_SECONDS = 30
MATCH_PREVIEW_LENGTH = 40
SCAN_RESULT_OUTPUT = "scan_result"

# Path fragments that never carry actionable secrets (case-sensitive)
SKIP_PATH_PATTERNS = [
    "node_modules/", "bower_components/", "vendor/", ".git/",
    "package.json", "package-lock.json", "yarn.lock", "pnpm-lock.yaml",
    "README.md", "readme.md", "CHANGELOG.md",
]

# $NAME / ${NAME}, bare or inside a matching pair of quotes
PLACEHOLDER_PATTERN = re.compile(r"""(["']?)\$(?:\{[A-Z0-9_]+\}|[A-Z0-9_]+)\1""")
ASSIGNMENT_OPERATOR = re.compile(r"[=:]")


# ===================================================================
# LOGGING SETUP
# ===================================================================

class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z'),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        # Add custom fields
        if hasattr(record, 'stage'):
            log_data["stage"] = record.stage
        if hasattr(record, 'finding_count'):
            log_data["finding_count"] = record.finding_count

        return json.dumps(log_data)


def setup_logging(log_format: str = "text") -> logging.Logger:
    """Setup logging with either text or JSON format."""
    logger = logging.getLogger(__name__)
    logger.setLevel(logging.INFO)

    # Remove existing handlers
    logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)

    if log_format == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(
            '%(asctime)s [%(levelname)s] %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        ))

    logger.addHandler(handler)
    return logger


logger = setup_logging(os.environ.get("LOG_FORMAT", "text"))


# ===================================================================
# ERRORS
# ===================================================================

class SecretScanError(Exception):
    """Base class for pipeline stage failures.

    ``fatal`` tells the orchestrator whether the run must stop.
    """
    fatal = True


class RulesProvisionError(SecretScanError):
    """Detection rules could not be written."""


class ScannerNotInstalledError(SecretScanError):
    """gitleaks is not on PATH."""


class ScannerExecutionError(SecretScanError):
    """gitleaks exited with a status other than 0 or 1."""

    def __init__(self, message: str, returncode: Optional[int] = None):
        super().__init__(message)
        self.returncode = returncode


class ReportUnreadableError(SecretScanError):
    """Report file missing or not a JSON array."""
    fatal = False


class SummaryError(SecretScanError):
    """Job summary or step output could not be written."""
    fatal = False


class UploadError(SecretScanError):
    """Dashboard upload failed."""
    fatal = False


# ===================================================================
# RUN CONFIGURATION
# ===================================================================

@dataclass
class ScanConfig:
    """Settings for one pipeline run, usually read from the environment."""
    scan_dir: Path
    project_id: str = ""
    api_key: str = ""
    secret_key: str = ""
    tenant_key: str = ""
    api_base_url: str = DEFAULT_API_BASE_URL
    dashboard_url: str = DEFAULT_DASHBOARD_URL
    scanner_binary: str = SCANNER_BINARY
    project_root_marker: str = DEFAULT_PROJECT_ROOT_MARKER
    summary_mode: str = SUMMARY_MODE_FINDINGS
    fail_on_findings: bool = True
    log_format: str = "text"
    temp_dir: Optional[Path] = None
    step_summary_path: Optional[Path] = None
    output_path: Optional[Path] = None

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "ScanConfig":
        env = os.environ if environ is None else environ

        summary_mode = env.get("SUMMARY_MODE", SUMMARY_MODE_FINDINGS).strip().lower()
        if summary_mode not in SUMMARY_MODES:
            logger.warning(f"Unknown SUMMARY_MODE '{summary_mode}', using '{SUMMARY_MODE_FINDINGS}'")
            summary_mode = SUMMARY_MODE_FINDINGS

        return cls(
            scan_dir=Path(env.get("SCAN_DIR") or os.getcwd()),
            project_id=env.get("PROJECT_ID", "").strip(),
            api_key=env.get("X_API_KEY", ""),
            secret_key=env.get("X_SECRET_KEY", ""),
            tenant_key=env.get("X_TENANT_KEY", ""),
            api_base_url=env.get("API_BASE_URL") or DEFAULT_API_BASE_URL,
            dashboard_url=env.get("DASHBOARD_URL") or DEFAULT_DASHBOARD_URL,
            scanner_binary=env.get("GITLEAKS_BIN") or SCANNER_BINARY,
            project_root_marker=env.get("PROJECT_ROOT_MARKER", DEFAULT_PROJECT_ROOT_MARKER),
            summary_mode=summary_mode,
            fail_on_findings=env.get("FAIL_ON_FINDINGS", "true").lower() == "true",
            log_format=env.get("LOG_FORMAT", "text"),
            temp_dir=_optional_path(env.get("RUNNER_TEMP")),
            step_summary_path=_optional_path(env.get("GITHUB_STEP_SUMMARY")),
            output_path=_optional_path(env.get("GITHUB_OUTPUT")),
        )


def _optional_path(value: Optional[str]) -> Optional[Path]:
    return Path(value) if value else None


# ===================================================================
# DETECTION RULES
# ===================================================================

@dataclass(frozen=True)
class DetectionRule:
    """A gitleaks rule: identifier, description, regex and tags."""
    id: str
    description: str
    regex: str
    tags: Tuple[str, ...] = ()


DEFAULT_RULES: Tuple[DetectionRule, ...] = (
    DetectionRule(
        id="strict-secret-detection",
        description="Detect likely passwords or secrets with high entropy",
        regex=r"""(?i)(password|passwd|pwd|secret|key|token|auth|access)[\s"']*[=:][\s"']*["']([A-Za-z0-9@#\-_$%!]{10,})["']""",
        tags=("key", "secret", "generic", "password"),
    ),
    DetectionRule(
        id="jwt",
        description="JSON Web Token",
        regex=r"eyJ[A-Za-z0-9-_]+\.eyJ[A-Za-z0-9-_]+\.[A-Za-z0-9-_]+",
        tags=("token", "jwt"),
    ),
)


def render_rules_toml(rules: Sequence[DetectionRule]) -> str:
    """
    Render rules in the gitleaks TOML configuration format.

    Regexes are emitted as TOML multi-line literal strings so backslashes
    reach gitleaks untouched.

    Args:
        rules: Rules to render, in order

    Returns:
        TOML document with one [[rules]] block per rule

    Raises:
        ValueError: if a regex contains a TOML literal-string delimiter
    """
    blocks = []
    for rule in rules:
        if "'''" in rule.regex:
            raise ValueError(f"Rule {rule.id} regex cannot contain '''")

        tags = ", ".join(json.dumps(tag) for tag in rule.tags)
        blocks.append("\n".join([
            "[[rules]]",
            f"id = {json.dumps(rule.id)}",
            f"description = {json.dumps(rule.description)}",
            f"regex = '''{rule.regex}'''",
            f"tags = [{tags}]",
        ]))

    return "\n\n".join(blocks) + "\n"


def write_rules_file(
    rules: Sequence[DetectionRule] = DEFAULT_RULES,
    directory: Optional[Path] = None
) -> Path:
    """
    Write the rules to a unique temporary TOML file.

    Args:
        rules: Rules to provision
        directory: Target directory (default: system temp dir)

    Returns:
        Path of the written rules file

    Raises:
        RulesProvisionError: if the file cannot be written
    """
    try:
        fd, name = tempfile.mkstemp(
            prefix="gitleaks-rules-",
            suffix=".toml",
            dir=str(directory) if directory else None
        )
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(render_rules_toml(rules))
    except OSError as e:
        raise RulesProvisionError(f"Failed to write detection rules: {e}") from e

    logger.info(f"Wrote {len(rules)} detection rules to {name}")
    return Path(name)


# ===================================================================
# SCANNER INVOCATION
# ===================================================================

def find_scanner(binary: str = SCANNER_BINARY) -> str:
    """Return the absolute path of the scanner executable."""
    path = shutil.which(binary)
    if not path:
        raise ScannerNotInstalledError(f"{binary} is not installed or not found in PATH")
    return path


def new_report_path(directory: Optional[Path] = None) -> Path:
    base = Path(directory) if directory else Path(tempfile.gettempdir())
    return base / f"secrets_report_{int(time.time() * 1000)}.json"


def build_scanner_command(
    scanner_path: str,
    scan_dir: Path,
    report_path: Path,
    rules_path: Path
) -> List[str]:
    return [
        scanner_path, "detect",
        "--no-git",
        f"--source={scan_dir}",
        f"--report-path={report_path}",
        f"--config={rules_path}",
        "--report-format=json",
        "--verbose",
    ]


async def run_scanner(
    scanner_path: str,
    scan_dir: Path,
    report_path: Path,
    rules_path: Path
) -> bool:
    """
    Run gitleaks and wait for it to exit.

    gitleaks exits 1 when it found leaks; that is a normal outcome here.
    No timeout is applied.

    Args:
        scanner_path: Path to the gitleaks executable
        scan_dir: Directory to scan
        report_path: Where gitleaks writes its JSON report
        rules_path: Provisioned rules file

    Returns:
        True if gitleaks reported leaks, False for a clean scan

    Raises:
        ScannerExecutionError: on any other exit status or spawn failure
    """
    command = build_scanner_command(scanner_path, scan_dir, report_path, rules_path)
    logger.debug(f"Running: {' '.join(command)}")

    try:
        proc = await asyncio.create_subprocess_exec(
            *command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            limit=SCANNER_MAX_OUTPUT_BYTES
        )
    except OSError as e:
        raise ScannerExecutionError(f"Failed to start {scanner_path}: {e}") from e

    stdout, stderr = await proc.communicate()

    stdout_text = stdout.decode("utf-8", errors="replace").strip() if stdout else ""
    stderr_text = stderr.decode("utf-8", errors="replace").strip() if stderr else ""

    if stdout_text:
        logger.debug(f"gitleaks output:\n{stdout_text}")
    if stderr_text:
        logger.warning(f"gitleaks stderr:\n{stderr_text}")

    if proc.returncode == SCANNER_EXIT_LEAKS:
        logger.info("gitleaks reported leaks")
        return True

    if proc.returncode != SCANNER_EXIT_CLEAN:
        raise ScannerExecutionError(
            f"gitleaks failed with exit code {proc.returncode}: {stderr_text or 'no error output'}",
            returncode=proc.returncode
        )

    logger.info("gitleaks reported no leaks")
    return False


# ===================================================================
# FINDING CLASSIFICATION
# ===================================================================

def _as_int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError, OverflowError):
        return 0


@dataclass(frozen=True)
class Finding:
    """One gitleaks report entry."""
    file: str
    description: str
    match: str
    secret: str
    rule_id: str
    start_line: int = 0
    end_line: int = 0
    start_column: int = 0
    end_column: int = 0

    @classmethod
    def from_report(cls, record: Mapping[str, Any]) -> "Finding":
        return cls(
            file=str(record.get("File") or ""),
            description=str(record.get("Description") or ""),
            match=str(record.get("Match") or ""),
            secret=str(record.get("Secret") or ""),
            rule_id=str(record.get("RuleID") or ""),
            start_line=_as_int(record.get("StartLine")),
            end_line=_as_int(record.get("EndLine")),
            start_column=_as_int(record.get("StartColumn")),
            end_column=_as_int(record.get("EndColumn")),
        )

    def to_upload_payload(self) -> Dict[str, str]:
        """Dashboard API representation; positions are sent as text."""
        return {
            "RuleID": self.rule_id,
            "Description": self.description,
            "File": self.file,
            "Match": self.match,
            "Secret": self.secret,
            "StartLine": str(self.start_line),
            "EndLine": str(self.end_line),
            "StartColumn": str(self.start_column),
            "EndColumn": str(self.end_column),
        }


async def read_report(report_path: Path) -> List[Any]:
    """
    Read the gitleaks JSON report.

    Raises:
        ReportUnreadableError: if the file is missing, malformed or not a JSON array
    """
    try:
        async with aiofiles.open(report_path, "r", encoding="utf-8") as f:
            data = await f.read()
        records = json.loads(data)
    except (OSError, ValueError) as e:
        raise ReportUnreadableError(f"Failed to read gitleaks report {report_path}: {e}") from e

    if not isinstance(records, list):
        raise ReportUnreadableError(
            f"Failed to read gitleaks report {report_path}: expected a JSON array, "
            f"got {type(records).__name__}"
        )

    return records


def parse_findings(records: Iterable[Any]) -> List[Finding]:
    findings = []
    for index, record in enumerate(records):
        if not isinstance(record, dict):
            logger.warning(f"Skipping report entry {index}: not a JSON object")
            continue
        findings.append(Finding.from_report(record))
    return findings


def is_excluded_path(path: str) -> bool:
    """
    Determine if a finding's file lies somewhere secrets are not actionable.

    Args:
        path: File path as reported by gitleaks

    Returns:
        True if the path contains any skip pattern
    """
    return any(pattern in path for pattern in SKIP_PATH_PATTERNS)


def assigned_value(match: str) -> str:
    """Text after the first '=' or ':' of a match, or the whole match."""
    parts = ASSIGNMENT_OPERATOR.split(match, maxsplit=1)
    return parts[-1].strip()


def is_placeholder(match: str) -> bool:
    """
    Check if a match is an unresolved variable reference.

    Matches like ``$TOKEN``, ``"${DB_PASSWORD}"`` or
    ``password="${DB_PASSWORD}"`` come from shell/CI templates, not from
    a literal secret.

    Args:
        match: Matched text from the report

    Returns:
        True if the match (or its assigned value) is a placeholder
    """
    text = match.strip()
    return bool(PLACEHOLDER_PATTERN.fullmatch(text) or PLACEHOLDER_PATTERN.fullmatch(assigned_value(text)))


def classify_findings(findings: Iterable[Finding]) -> List[Finding]:
    """
    Keep findings that pass both the path and placeholder filters.

    Order is preserved and no finding is altered.

    Args:
        findings: Findings in report order

    Returns:
        Actionable findings
    """
    kept = []
    for finding in tqdm(findings, desc="Classifying findings", unit="finding", disable=None):
        if is_excluded_path(finding.file):
            logger.debug(f"Skipping {finding.file}:{finding.start_line} (excluded path)")
            continue
        if is_placeholder(finding.match):
            logger.debug(f"Skipping {finding.file}:{finding.start_line} (placeholder)")
            continue
        kept.append(finding)
    return kept


# ===================================================================
# JOB SUMMARY
# ===================================================================

def shorten_path(path: str, marker: str = DEFAULT_PROJECT_ROOT_MARKER) -> str:
    """Rewrite '/any/prefix/<marker>/rest' to '<marker>/rest'."""
    if marker:
        index = path.rfind(f"/{marker}/")
        if index != -1:
            return path[index + 1:]
    return path


def preview_match(match: str, limit: int = MATCH_PREVIEW_LENGTH) -> str:
    if len(match) > limit:
        return match[:limit] + "..."
    return match


def format_duration(seconds: float) -> str:
    minutes, secs = divmod(int(round(seconds)), 60)
    return f"{minutes}m {secs}s"


def _escape_cell(value: Any) -> str:
    return str(value).replace("|", "\\|").replace("\r", " ").replace("\n", " ")


def markdown_table(header: Sequence[str], rows: Iterable[Sequence[Any]]) -> List[str]:
    lines = [
        "| " + " | ".join(_escape_cell(cell) for cell in header) + " |",
        "| " + " | ".join("---" for _ in header) + " |",
    ]
    for row in rows:
        lines.append("| " + " | ".join(_escape_cell(cell) for cell in row) + " |")
    return lines


def render_summary(
    findings: Sequence[Finding],
    mode: str = SUMMARY_MODE_FINDINGS,
    dashboard_url: str = DEFAULT_DASHBOARD_URL,
    root_marker: str = DEFAULT_PROJECT_ROOT_MARKER,
    duration: Optional[float] = None
) -> str:
    """
    Render the job summary as GitHub-flavoured Markdown.

    Args:
        findings: Classified findings
        mode: 'findings' for one row per finding, 'files' for one
            failed row per affected file
        dashboard_url: Link target appended below the table
        root_marker: Path segment used to shorten file paths
        duration: Scan duration in seconds, shown in 'files' mode

    Returns:
        Markdown document
    """
    lines = ["## 🔐 Secret Scan Results", ""]

    if not findings:
        lines.append("✅ No secrets found.")
        return "\n".join(lines) + "\n"

    if mode == SUMMARY_MODE_FILES:
        files = list(dict.fromkeys(shorten_path(f.file, root_marker) for f in findings))
        lines.extend(markdown_table(
            ("📄 File", "🚦 Status"),
            ((path, "❌ Failed") for path in files)
        ))
        if duration is not None:
            lines.extend(["", f"⏱️ Scan duration: {format_duration(duration)}"])
    else:
        lines.extend(markdown_table(
            ("📄 File", "🔍 Type", "📌 Line", "🧬 Match"),
            (
                (
                    shorten_path(f.file, root_marker),
                    f.description,
                    f.start_line or "",
                    preview_match(f.match),
                )
                for f in findings
            )
        ))

    lines.extend(["", f"[🔗 View Dashboard]({dashboard_url})"])
    return "\n".join(lines) + "\n"


def render_failure_summary(error: Exception, dashboard_url: str = DEFAULT_DASHBOARD_URL) -> str:
    return "\n".join([
        "## 🔐 Secret Scan Results",
        "",
        f"❌ Secret scan failed: {_escape_cell(error)}",
        "",
        f"[🔗 View Dashboard]({dashboard_url})",
    ]) + "\n"


def write_step_summary(markdown: str, path: Optional[Path]) -> None:
    """Append Markdown to the GitHub Actions job summary file."""
    if path is None:
        logger.info(f"GITHUB_STEP_SUMMARY not set, summary follows:\n{markdown}")
        return

    try:
        with open(path, "a", encoding="utf-8") as f:
            f.write(markdown)
    except OSError as e:
        raise SummaryError(f"Failed to write job summary to {path}: {e}") from e


def set_output(name: str, value: str, path: Optional[Path]) -> None:
    """Set a step output through the GITHUB_OUTPUT file."""
    if path is None:
        logger.info(f"GITHUB_OUTPUT not set: {name}={value}")
        return

    try:
        with open(path, "a", encoding="utf-8") as f:
            f.write(f"{name}={value}\n")
    except OSError as e:
        raise SummaryError(f"Failed to set output {name}: {e}") from e


def report_failure(message: str) -> None:
    """Emit an error annotation the way the Actions runner expects."""
    flat = message.replace("%", "%25").replace("\r", "%0D").replace("\n", "%0A")
    print(f"::error::{flat}", flush=True)


# ===================================================================
# DASHBOARD UPLOAD
# ===================================================================

def build_upload_url(base_url: str, project_id: str) -> str:
    return base_url.rstrip("/") + UPDATE_SECRETS_PATH.format(project_id=quote(project_id, safe=""))


def build_upload_headers(config: ScanConfig) -> Dict[str, str]:
    return {
        "Content-Type": "application/json",
        "x-api-key": config.api_key,
        "x-secret-key": config.secret_key,
        "x-tenant-key": config.tenant_key,
    }


async def upload_findings(findings: Sequence[Finding], config: ScanConfig) -> bool:
    """
    POST classified findings to the dashboard project.

    Skipped without any network call when no project id is configured.
    A single attempt is made; there are no retries.

    Args:
        findings: Classified findings (may be empty)
        config: Run configuration holding project id and credentials

    Returns:
        True if uploaded, False if skipped

    Raises:
        UploadError: on a non-2xx response, transport error or timeout
    """
    if not config.project_id:
        logger.info("PROJECT_ID not set, skipping dashboard upload")
        return False

    url = build_upload_url(config.api_base_url, config.project_id)
    payload = [finding.to_upload_payload() for finding in findings]
    timeout = aiohttp.ClientTimeout(total=UPLOAD_TIMEOUT_SECONDS)

    try:
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.post(url, json=payload, headers=build_upload_headers(config)) as response:
                if not 200 <= response.status < 300:
                    detail = await response.text(errors="replace")
                    raise UploadError(f"Dashboard upload returned HTTP {response.status}: {detail[:400]}")
    except (aiohttp.ClientError, asyncio.TimeoutError) as e:
        raise UploadError(f"Dashboard upload failed: {e}") from e

    logger.info(f"Uploaded {len(payload)} findings to {url}", extra={"finding_count": len(payload)})
    return True


# ===================================================================
# PIPELINE
# ===================================================================

@dataclass
class ScanRun:
    """State of a single invocation; nothing outlives the process."""
    scan_dir: Path
    report_path: Path
    rules_path: Optional[Path] = None
    scanner_path: Optional[str] = None
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    leaks_reported: bool = False
    findings: List[Finding] = field(default_factory=list)
    errors: List[SecretScanError] = field(default_factory=list)

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.started_at is None or self.finished_at is None:
            return None
        return self.finished_at - self.started_at

    @property
    def passed(self) -> bool:
        return not self.findings


async def run_pipeline(
    config: ScanConfig,
    rules: Sequence[DetectionRule] = DEFAULT_RULES
) -> ScanRun:
    """
    Provision rules, run gitleaks and classify its report.

    Raises:
        RulesProvisionError, ScannerNotInstalledError, ScannerExecutionError
    """
    run = ScanRun(scan_dir=config.scan_dir, report_path=new_report_path(config.temp_dir))

    run.rules_path = write_rules_file(rules, config.temp_dir)
    run.scanner_path = find_scanner(config.scanner_binary)
    logger.info(f"Using scanner at {run.scanner_path}", extra={"stage": "scan"})

    run.started_at = time.time()
    try:
        run.leaks_reported = await run_scanner(
            run.scanner_path, run.scan_dir, run.report_path, run.rules_path
        )
    finally:
        run.finished_at = time.time()

    logger.info(f"Scan finished in {format_duration(run.duration_seconds)}", extra={"stage": "scan"})

    try:
        records = await read_report(run.report_path)
    except ReportUnreadableError as e:
        logger.error(str(e), extra={"stage": "classify"})
        run.errors.append(e)
        records = []

    raw_findings = parse_findings(records)
    run.findings = classify_findings(raw_findings)

    logger.info(
        f"Secrets detected: {len(run.findings)} "
        f"({len(raw_findings) - len(run.findings)} filtered as noise)",
        extra={"stage": "classify", "finding_count": len(run.findings)}
    )
    return run


async def publish_results(run: ScanRun, config: ScanConfig) -> None:
    """Write the job summary and step output, then upload. Never raises."""
    markdown = render_summary(
        run.findings,
        mode=config.summary_mode,
        dashboard_url=config.dashboard_url,
        root_marker=config.project_root_marker,
        duration=run.duration_seconds
    )
    try:
        write_step_summary(markdown, config.step_summary_path)
    except SummaryError as e:
        logger.warning(str(e), extra={"stage": "summary"})
        run.errors.append(e)

    try:
        set_output(SCAN_RESULT_OUTPUT, "passed" if run.passed else "failed", config.output_path)
    except SummaryError as e:
        logger.warning(str(e), extra={"stage": "summary"})
        run.errors.append(e)

    try:
        await upload_findings(run.findings, config)
    except UploadError as e:
        logger.error(str(e), extra={"stage": "upload"})
        run.errors.append(e)


async def scan_and_report(config: ScanConfig) -> ScanRun:
    run = await run_pipeline(config)
    await publish_results(run, config)
    return run


def publish_failure(error: Exception, config: ScanConfig) -> None:
    """Best-effort summary and output after a fatal error."""
    try:
        write_step_summary(render_failure_summary(error, config.dashboard_url), config.step_summary_path)
    except SummaryError as e:
        logger.warning(str(e), extra={"stage": "summary"})

    try:
        set_output(SCAN_RESULT_OUTPUT, "failed", config.output_path)
    except SummaryError as e:
        logger.warning(str(e), extra={"stage": "summary"})
    report_failure(f"Secret scan failed: {error}")


# ===================================================================
# COMMAND LINE INTERFACE
# ===================================================================

def parse_arguments(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command-line arguments and display help information."""
    parser = argparse.ArgumentParser(
        description='CI secret scanning step built on gitleaks',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog='''
ENVIRONMENT VARIABLES:
  SCAN_DIR              Directory to scan (default: current directory)
  PROJECT_ID            Dashboard project id; enables upload
  X_API_KEY             Dashboard API key
  X_SECRET_KEY          Dashboard secret key
  X_TENANT_KEY          Dashboard tenant key
  API_BASE_URL          Dashboard API host
  GITLEAKS_BIN          gitleaks executable name (default: gitleaks)
  SUMMARY_MODE          findings|files (default: findings)
  FAIL_ON_FINDINGS      Fail the step when secrets remain (default: true)

EXIT CODES:
  0   Scan passed (or findings allowed)
  1   Secrets found, or gitleaks missing/failed
  130 Interrupted by user (Ctrl+C)
        '''
    )

    parser.add_argument(
        '--scan-dir',
        type=str,
        metavar='PATH',
        help='Directory to scan (overrides SCAN_DIR)'
    )

    parser.add_argument(
        '--summary-mode',
        type=str,
        choices=list(SUMMARY_MODES),
        help='Job summary layout (overrides SUMMARY_MODE)'
    )

    parser.add_argument(
        '--allow-findings',
        action='store_true',
        help='Exit 0 even when secrets are found'
    )

    parser.add_argument(
        '--log-format',
        type=str,
        choices=['text', 'json'],
        help='Logging format (overrides LOG_FORMAT)'
    )

    parser.add_argument(
        '-v', '--verbose',
        action='store_true',
        help='Enable verbose debug logging'
    )

    parser.add_argument(
        '--version',
        action='version',
        version=f'%(prog)s {__version__}'
    )

    return parser.parse_args(argv)


def build_config(args: argparse.Namespace, environ: Optional[Mapping[str, str]] = None) -> ScanConfig:
    config = ScanConfig.from_env(environ)
    if args.scan_dir:
        config.scan_dir = Path(args.scan_dir)
    if args.summary_mode:
        config.summary_mode = args.summary_mode
    if args.allow_findings:
        config.fail_on_findings = False
    if args.log_format:
        config.log_format = args.log_format
    return config


# ===================================================================
# MAIN ENTRY POINT
# ===================================================================

def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point with validation and error handling."""
    args = parse_arguments(argv)
    config = build_config(args)

    setup_logging(config.log_format)
    if args.verbose:
        logger.setLevel(logging.DEBUG)

    config.scan_dir = config.scan_dir.expanduser().resolve()

    logger.info("=" * 70)
    logger.info("CI SECRET SCAN")
    logger.info("=" * 70)
    logger.info(f"Scan path: {config.scan_dir}")
    logger.info(f"Summary mode: {config.summary_mode}")
    logger.info(f"Dashboard upload: {'enabled' if config.project_id else 'disabled'}")
    logger.info("=" * 70)

    try:
        run = asyncio.run(scan_and_report(config))
    except KeyboardInterrupt:
        logger.warning("Scan interrupted by user")
        return 130
    except SecretScanError as e:
        logger.error(f"Secret scan failed: {e}")
        publish_failure(e, config)
        return 1
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        publish_failure(e, config)
        return 1

    if run.errors:
        logger.warning(f"Completed with {len(run.errors)} non-fatal error(s)")

    if not run.passed:
        logger.error(f"Secrets found: {len(run.findings)}", extra={"finding_count": len(run.findings)})
        if config.fail_on_findings:
            report_failure(f"Secrets found: {len(run.findings)}")
            return 1
        return 0

    logger.info("=" * 70)
    logger.info("SCAN PASSED: NO SECRETS FOUND")
    logger.info("=" * 70)
    return 0


if __name__ == "__main__":
    sys.exit(main())
