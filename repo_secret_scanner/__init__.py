"""
Repository secret scanner.

Finds committed credentials with three layered heuristics (known secret
patterns, Shannon entropy, and surrounding context) and reports deduplicated
findings suitable for a pass/fail build gate.

SECURITY NOTICE: This scanner NEVER attempts to use discovered credentials.
"""
from repo_secret_scanner.aggregator import aggregate
from repo_secret_scanner.config import SCANNER_VERSION, ScanConfiguration, TestFilePolicy
from repo_secret_scanner.context import ContextAnalyzer
from repo_secret_scanner.detectors import DetectionStrategy, EntropyDetector, PatternDetector
from repo_secret_scanner.errors import (
    ConfigurationError,
    FilterEvaluationError,
    RootPathError,
    ScanAbortedError,
    ScannerError,
)
from repo_secret_scanner.filters import (
    CompositeFilter,
    ContentFilter,
    ExtensionFilter,
    Filter,
    FilterOperation,
    FilterPipeline,
    LineLengthFilter,
    PathFilter,
    RegexFilter,
    TestFileFilter,
)
from repo_secret_scanner.models import Finding, RawMatch, ScanResult, ScanStatistics, ScanTarget, Severity
from repo_secret_scanner.scanner import SecretScanner, scan_path

__version__ = SCANNER_VERSION

__all__ = [
    "aggregate",
    "CompositeFilter",
    "ConfigurationError",
    "ContentFilter",
    "ContextAnalyzer",
    "DetectionStrategy",
    "EntropyDetector",
    "ExtensionFilter",
    "Filter",
    "FilterEvaluationError",
    "FilterOperation",
    "FilterPipeline",
    "Finding",
    "LineLengthFilter",
    "PathFilter",
    "PatternDetector",
    "RawMatch",
    "RegexFilter",
    "RootPathError",
    "ScanAbortedError",
    "ScanConfiguration",
    "ScannerError",
    "ScanResult",
    "ScanStatistics",
    "ScanTarget",
    "SecretScanner",
    "Severity",
    "TestFileFilter",
    "TestFilePolicy",
    "scan_path",
]
