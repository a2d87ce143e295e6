"""
Scan configuration: environment-driven defaults, the immutable ScanConfiguration,
and loaders for configuration, custom pattern, whitelist and baseline files.
"""
import dataclasses
import json
import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Set, Tuple

from repo_secret_scanner.errors import ConfigurationError
from repo_secret_scanner.models import Severity

logger = logging.getLogger(__name__)

# ===================================================================
# CONFIGURATION & CONSTANTS
# ===================================================================

SCANNER_NAME = "repo-secret-scanner"
SCANNER_VERSION = "1.0.0"
SCANNER_INFORMATION_URI = "https://github.com/your-org/repo-secret-scanner"

# Environment-driven configuration
SCAN_THREADS = int(os.environ.get("SCAN_THREADS", "4"))
ENTROPY_THRESHOLD = float(os.environ.get("ENTROPY_THRESHOLD", "4.0"))
ENTROPY_MIN_LENGTH = int(os.environ.get("ENTROPY_MIN_LENGTH", "16"))
MAX_FILE_SIZE_MB = int(os.environ.get("MAX_FILE_SIZE_MB", "10"))
MAX_DEPTH = int(os.environ.get("MAX_DEPTH", "32"))
STRICT_MODE = os.environ.get("STRICT_MODE", "false").lower() == "true"
TEST_FILE_POLICY = os.environ.get("TEST_FILE_POLICY", "reduce")  # scan|reduce|exclude
CUSTOM_PATTERNS_FILE = os.environ.get("CUSTOM_PATTERNS_FILE", "")
WHITELIST_FILE = os.environ.get("WHITELIST_FILE", "")
LOG_FORMAT = os.environ.get("LOG_FORMAT", "text")  # text|json
OUTPUT_FILE = Path(os.environ.get("OUTPUT_FILE", "scan_report.json"))
OUTPUT_FORMAT = os.environ.get("OUTPUT_FORMAT", "json")  # json|csv|sarif|all
FAIL_ON = os.environ.get("FAIL_ON", "CRITICAL")  # CRITICAL|WARNING|SAFE|NONE

# Operational constants
MAX_FILE_SIZE_BYTES = MAX_FILE_SIZE_MB * 1024 * 1024
MAX_LINE_LENGTH = 10000
CONTEXT_LINES = 2
MULTILINE_WINDOW = 100
ENTROPY_MIN_LENGTH_FLOOR = 16
ENTROPY_MAX_BITS = 8.0
DEFAULT_WHITELIST_FILE = ".scanignore"

# Named confidence levels accepted in custom pattern files
CONFIDENCE_LEVELS = {"high": 1.0, "medium": 0.7, "low": 0.4}

# Path globs excluded unless overridden (dependency, VCS and build output)
DEFAULT_EXCLUDE_PATHS = (
    "**/.git/**", "**/.hg/**", "**/.svn/**",
    "**/node_modules/**", "**/vendor/**", "**/bower_components/**",
    "**/build/**", "**/dist/**", "**/target/**", "**/out/**",
    "**/.gradle/**", "**/.venv/**", "**/venv/**", "**/__pycache__/**",
    "**/.idea/**", "**/.vscode/**", "**/.cache/**",
    "*.min.js", "*.bundle.js", "package-lock.json", "yarn.lock",
)

# Binary file extensions to skip (performance optimization)
DEFAULT_EXCLUDED_EXTENSIONS = (
    # Images
    'png', 'jpg', 'jpeg', 'gif', 'bmp', 'ico', 'svg', 'webp', 'tiff', 'psd',
    # Videos
    'mp4', 'avi', 'mov', 'wmv', 'flv', 'mkv', 'webm', 'm4v',
    # Audio
    'mp3', 'wav', 'flac', 'aac', 'ogg', 'wma', 'm4a',
    # Archives
    'zip', 'tar', 'gz', 'bz2', '7z', 'rar', 'xz', 'tgz', 'jar', 'war', 'ear',
    # Executables & Libraries
    'exe', 'dll', 'so', 'dylib', 'bin', 'app', 'deb', 'rpm',
    # Compiled/Binary
    'pyc', 'pyo', 'class', 'o', 'a', 'obj', 'lib',
    # Documents (binary formats)
    'pdf', 'doc', 'docx', 'xls', 'xlsx', 'ppt', 'pptx', 'odt', 'ods',
    # Fonts
    'ttf', 'otf', 'woff', 'woff2', 'eot',
    # Database
    'db', 'sqlite', 'sqlite3', 'mdb',
    # Other
    'iso', 'dmg', 'img', 'pickle', 'pkl', 'parquet',
)

GENERATED_FILE_MARKERS = (
    "// Generated by",
    "/* Generated by",
    "# Generated by",
    "# This file was automatically generated",
    "@generated",
    "DO NOT EDIT",
)


class TestFilePolicy(Enum):
    """How test files are treated: scanned as-is, downgraded, or excluded."""

    __test__ = False

    SCAN = "scan"
    REDUCE = "reduce"
    EXCLUDE = "exclude"

    @classmethod
    def parse(cls, value: str) -> "TestFilePolicy":
        try:
            return cls(value.strip().lower())
        except ValueError:
            raise ConfigurationError(
                f"Unknown test file policy {value!r} (expected scan, reduce or exclude)",
                source="test_file_policy",
            )


@dataclass(frozen=True)
class CustomPatternSpec:
    """A user-supplied detection rule, compiled once per scan."""

    name: str
    regex: str
    category: str = ""
    severity: Severity = Severity.CRITICAL
    confidence: float = 1.0
    multiline: bool = False
    description: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CustomPatternSpec":
        if not isinstance(data, dict):
            raise ConfigurationError(f"Custom pattern must be a JSON object, got {data!r}")
        name = data.get('name', 'CUSTOM_PATTERN')
        severity = data.get('severity', 'CRITICAL')
        try:
            parsed_severity = Severity.parse(severity) if isinstance(severity, str) else Severity.CRITICAL
        except ValueError as e:
            raise ConfigurationError(f"Pattern {name}: {e}", source=name)
        confidence = data.get('confidence', 1.0)
        if isinstance(confidence, str) and confidence.lower() in CONFIDENCE_LEVELS:
            confidence = CONFIDENCE_LEVELS[confidence.lower()]
        try:
            confidence = min(max(float(confidence), 0.0), 1.0)
        except (TypeError, ValueError):
            raise ConfigurationError(f"Pattern {name}: invalid confidence {confidence!r}", source=name)
        return cls(
            name=name,
            regex=data.get('regex', ''),
            category=data.get('category') or name,
            severity=parsed_severity,
            confidence=confidence,
            multiline=bool(data.get('multiline', False)),
            description=data.get('description', ''),
        )


@dataclass(frozen=True)
class ScanConfiguration:
    """Immutable input to a scan. Defaults come from the environment."""

    # Entropy detector
    entropy_threshold: float = ENTROPY_THRESHOLD
    entropy_min_length: int = ENTROPY_MIN_LENGTH
    entropy_word_filter: bool = True
    dictionary_words: Tuple[str, ...] = ()

    # Pattern detector
    enabled_categories: Tuple[str, ...] = ()
    custom_patterns: Tuple[CustomPatternSpec, ...] = ()
    multiline_window: int = MULTILINE_WINDOW

    # Context analyzer
    whitelist: Tuple[str, ...] = ()
    test_file_policy: TestFilePolicy = TestFilePolicy.REDUCE
    context_lines: int = CONTEXT_LINES

    # Filter pipeline
    include_paths: Tuple[str, ...] = ()
    exclude_paths: Tuple[str, ...] = DEFAULT_EXCLUDE_PATHS
    include_extensions: Tuple[str, ...] = ()
    exclude_extensions: Tuple[str, ...] = DEFAULT_EXCLUDED_EXTENSIONS
    exclude_path_regexes: Tuple[str, ...] = ()
    exclude_line_patterns: Tuple[str, ...] = ()
    max_file_size: int = MAX_FILE_SIZE_BYTES
    max_line_length: int = MAX_LINE_LENGTH
    skip_binary: bool = True
    skip_generated: bool = True
    filter_priorities: Dict[str, int] = field(default_factory=dict)

    # Orchestrator
    strict_mode: bool = STRICT_MODE
    threads: int = SCAN_THREADS
    merge_distance: int = 0
    min_confidence: float = 0.0
    follow_symlinks: bool = False
    max_depth: int = MAX_DEPTH
    show_progress: bool = False

    def validate(self) -> List[ConfigurationError]:
        """Validate scalar settings. Filter and pattern syntax is validated by their owners."""
        errors = []

        if not 0.0 <= self.entropy_threshold <= ENTROPY_MAX_BITS:
            errors.append(ConfigurationError(
                f"entropy_threshold must be between 0.0 and {ENTROPY_MAX_BITS}, got {self.entropy_threshold}",
                source="entropy_threshold",
            ))
        if self.entropy_min_length < ENTROPY_MIN_LENGTH_FLOOR:
            errors.append(ConfigurationError(
                f"entropy_min_length {self.entropy_min_length} is below the floor of {ENTROPY_MIN_LENGTH_FLOOR}",
                source="entropy_min_length",
            ))
        if self.threads < 1:
            errors.append(ConfigurationError(f"threads must be positive, got {self.threads}", source="threads"))
        if self.merge_distance < 0:
            errors.append(ConfigurationError("merge_distance cannot be negative", source="merge_distance"))
        if self.context_lines < 0:
            errors.append(ConfigurationError("context_lines cannot be negative", source="context_lines"))
        if not 0.0 <= self.min_confidence <= 1.0:
            errors.append(ConfigurationError("min_confidence must be between 0.0 and 1.0", source="min_confidence"))
        if self.max_file_size <= 0:
            errors.append(ConfigurationError("max_file_size must be positive", source="max_file_size"))
        if self.max_line_length <= 0:
            errors.append(ConfigurationError("max_line_length must be positive", source="max_line_length"))
        if self.multiline_window < 1:
            errors.append(ConfigurationError("multiline_window must be positive", source="multiline_window"))

        return errors

    def normalized(self) -> "ScanConfiguration":
        """Return a copy with out-of-range scalars clamped to their nearest valid value."""
        return dataclasses.replace(
            self,
            entropy_threshold=min(max(self.entropy_threshold, 0.0), ENTROPY_MAX_BITS),
            entropy_min_length=max(self.entropy_min_length, ENTROPY_MIN_LENGTH_FLOOR),
            threads=max(self.threads, 1),
            merge_distance=max(self.merge_distance, 0),
            context_lines=max(self.context_lines, 0),
            min_confidence=min(max(self.min_confidence, 0.0), 1.0),
            max_file_size=self.max_file_size if self.max_file_size > 0 else MAX_FILE_SIZE_BYTES,
            max_line_length=self.max_line_length if self.max_line_length > 0 else MAX_LINE_LENGTH,
            multiline_window=max(self.multiline_window, 1),
        )

    def with_whitelist(self, entries: List[str]) -> "ScanConfiguration":
        return dataclasses.replace(self, whitelist=tuple(self.whitelist) + tuple(entries))

    @classmethod
    def from_env(cls, **overrides: Any) -> "ScanConfiguration":
        """Build a configuration from environment variables plus explicit overrides."""
        values: Dict[str, Any] = {"test_file_policy": TestFilePolicy.parse(TEST_FILE_POLICY)}
        if CUSTOM_PATTERNS_FILE:
            values["custom_patterns"] = tuple(load_custom_patterns(CUSTOM_PATTERNS_FILE))
        if WHITELIST_FILE:
            values["whitelist"] = tuple(load_whitelist_file(Path(WHITELIST_FILE)))
        values.update(overrides)
        return cls(**values)


# ===================================================================
# FILE LOADERS
# ===================================================================

_TUPLE_FIELDS = {
    f.name for f in dataclasses.fields(ScanConfiguration)
    if isinstance(f.default, tuple)
}


def load_config_file(filepath: Path, base: Optional[ScanConfiguration] = None) -> ScanConfiguration:
    """
    Load a JSON configuration file on top of ``base``.

    Keys are ScanConfiguration field names. Example:
    {
      "entropy_threshold": 4.5,
      "exclude_paths": ["**/build/**"],
      "whitelist": ["test_api_key_12345", "regex:^dummy_.*"],
      "test_file_policy": "exclude",
      "custom_patterns": [{"name": "INTERNAL_KEY", "regex": "int_[A-Za-z0-9]{32}"}]
    }

    Raises:
        ConfigurationError: if the file is missing, not valid JSON or has unknown keys
    """
    base = base or ScanConfiguration()
    try:
        with open(filepath, 'r', encoding='utf-8') as f:
            data = json.load(f)
    except FileNotFoundError:
        raise ConfigurationError(f"Configuration file not found: {filepath}", source=str(filepath))
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Invalid JSON in configuration file {filepath}: {e}", source=str(filepath))

    if not isinstance(data, dict):
        raise ConfigurationError(f"Configuration file {filepath} must contain a JSON object", source=str(filepath))

    known = {f.name for f in dataclasses.fields(ScanConfiguration)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ConfigurationError(f"Unknown configuration keys: {', '.join(unknown)}", source=str(filepath))

    values: Dict[str, Any] = {}
    for key, value in data.items():
        if key == "test_file_policy":
            values[key] = TestFilePolicy.parse(value)
        elif key == "custom_patterns" or key in _TUPLE_FIELDS:
            if not isinstance(value, list):
                raise ConfigurationError(f"{key} must be a JSON array", source=str(filepath))
            if key == "custom_patterns":
                values[key] = tuple(CustomPatternSpec.from_dict(item) for item in value)
            else:
                values[key] = tuple(value)
        else:
            values[key] = value

    logger.info(f"Loaded configuration from {filepath}")
    return dataclasses.replace(base, **values)


def load_custom_patterns(filepath: str) -> List[CustomPatternSpec]:
    """
    Load custom regex patterns from a JSON file.

    Expected format:
    {
      "patterns": [
        {
          "name": "CUSTOM_API_KEY",
          "regex": "myapi_[A-Za-z0-9]{32}",
          "category": "Internal API Key",
          "severity": "CRITICAL"
        }
      ]
    }

    Regexes are not compiled here; invalid ones surface as configuration
    errors when the pattern detector is built.

    Args:
        filepath: Path to custom patterns JSON file

    Returns:
        List of pattern specs
    """
    custom_patterns = []

    try:
        with open(filepath, 'r', encoding='utf-8') as f:
            data = json.load(f)
    except FileNotFoundError:
        logger.warning(f"Custom patterns file not found: {filepath}")
        return custom_patterns
    except json.JSONDecodeError as e:
        logger.error(f"Invalid JSON in custom patterns file: {e}")
        return custom_patterns

    if not isinstance(data, dict):
        logger.error(f"Custom patterns file {filepath} must contain a JSON object")
        return custom_patterns

    for pattern_def in data.get('patterns', []):
        if not isinstance(pattern_def, dict):
            logger.warning(f"Skipping custom pattern {pattern_def!r}: not a JSON object")
            continue
        name = pattern_def.get('name', 'CUSTOM_PATTERN')
        if not pattern_def.get('regex'):
            logger.warning(f"Skipping pattern {name}: no regex provided")
            continue
        try:
            custom_patterns.append(CustomPatternSpec.from_dict(pattern_def))
        except ConfigurationError as e:
            logger.error(f"Skipping pattern {name}: {e}")
            continue
        logger.info(f"Loaded custom pattern: {name}")

    return custom_patterns


def load_whitelist_file(filepath: Path) -> List[str]:
    """
    Load whitelist entries, one per line. Blank lines and ``#`` comments are ignored.

    Entries are literal strings unless prefixed with ``regex:`` or ``sha256:``.
    """
    entries = []
    try:
        with open(filepath, 'r', encoding='utf-8') as f:
            for raw in f:
                entry = raw.strip()
                if not entry or entry.startswith('#'):
                    continue
                entries.append(entry)
    except FileNotFoundError:
        logger.debug(f"Whitelist file not found: {filepath}")
    except OSError as e:
        logger.warning(f"Could not read whitelist file {filepath}: {e}")

    if entries:
        logger.info(f"Loaded {len(entries)} whitelist entries from {filepath}")
    return entries


def load_baseline(filepath: Path) -> Set[str]:
    """
    Load baseline of known findings for incremental scanning.

    Args:
        filepath: Path to a previous JSON report

    Returns:
        Set of finding hashes to suppress
    """
    baseline_hashes = set()

    try:
        if filepath.exists():
            with open(filepath, 'r', encoding='utf-8') as f:
                baseline = json.load(f)

            for finding in baseline.get('findings', []):
                if finding.get('hash'):
                    baseline_hashes.add(finding['hash'])

            logger.info(f"Loaded {len(baseline_hashes)} baseline findings")
    except (OSError, json.JSONDecodeError, AttributeError) as e:
        logger.warning(f"Could not load baseline: {e}")

    return baseline_hashes


def baseline_whitelist_entries(hashes: Set[str]) -> List[str]:
    return [f"sha256:{h}" for h in sorted(hashes)]
