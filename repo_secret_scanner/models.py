"""
Data model shared by the filter pipeline, detectors, aggregator and orchestrator.

Everything handed between components is immutable: detectors produce RawMatch
records, the aggregator turns them into Finding records, and each worker returns
a FileScanResult that the orchestrator folds into a single ScanResult.
"""
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple


# ===================================================================
# ENUMERATIONS
# ===================================================================

class Severity(Enum):
    """Ordinal classification of a finding, consumed by the build gate."""

    SAFE = 0
    WARNING = 1
    CRITICAL = 2

    def downgrade(self) -> "Severity":
        """Return the next lower severity (CRITICAL -> WARNING -> SAFE)."""
        return Severity(max(0, self.value - 1))

    @classmethod
    def parse(cls, value: str) -> "Severity":
        try:
            return cls[value.strip().upper()]
        except KeyError:
            raise ValueError(f"Unknown severity: {value}")

    def __lt__(self, other: "Severity") -> bool:
        if not isinstance(other, Severity):
            return NotImplemented
        return self.value < other.value


class Strategy(Enum):
    """Detection strategies; the declaration order is the merge precedence."""

    PATTERN = "pattern"
    ENTROPY = "entropy"
    CONTEXT = "context"

    @property
    def precedence(self) -> int:
        return list(Strategy).index(self)


class ScanState(Enum):
    CONFIGURED = "configured"
    ENUMERATING = "enumerating"
    SCANNING = "scanning"
    AGGREGATING = "aggregating"
    COMPLETED = "completed"
    FAILED = "failed"


class DiagnosticKind(Enum):
    CONFIGURATION = "configuration"
    FILTER = "filter"
    IO = "io"


# ===================================================================
# SCAN INPUT
# ===================================================================

@dataclass(frozen=True)
class ScanTarget:
    """A file and its content as an ordered sequence of lines (1-based)."""

    path: Path
    relative_path: str
    lines: Tuple[str, ...] = ()

    @property
    def extension(self) -> str:
        return self.path.suffix.lower().lstrip(".")

    @property
    def line_count(self) -> int:
        return len(self.lines)

    def line(self, line_number: int) -> str:
        """Return the line at ``line_number`` (1-based)."""
        return self.lines[line_number - 1]

    def window(self, line_number: int, before: int, after: int) -> List[str]:
        """Return the lines surrounding ``line_number``, the line itself included."""
        start = max(1, line_number - before)
        end = min(self.line_count, line_number + after)
        return list(self.lines[start - 1:end])

    @classmethod
    def from_text(cls, path: Path, relative_path: str, content: str) -> "ScanTarget":
        """
        Split ``content`` on line feeds only, dropping a trailing carriage return.

        Form feeds, vertical tabs and Unicode separators stay inside their
        line so line numbers agree with editors and SARIF consumers.
        """
        lines = content.split("\n")
        if lines[-1] == "":
            lines.pop()
        return cls(
            path=path,
            relative_path=relative_path,
            lines=tuple(line[:-1] if line.endswith("\r") else line for line in lines),
        )


@dataclass(frozen=True)
class FilterDecision:
    included: bool
    reason: str = ""
    filter_name: Optional[str] = None

    def __bool__(self) -> bool:
        return self.included


# ===================================================================
# DETECTION OUTPUT
# ===================================================================

@dataclass(frozen=True)
class RawMatch:
    """Unmerged detector output for a single span on a single line."""

    line_number: int
    start: int
    end: int
    text: str
    category: str
    confidence: float
    severity: Severity
    strategy: Strategy
    rule_name: str
    rule_index: int = 0
    origin: str = "builtin"
    end_line: Optional[int] = None

    def overlaps(self, start: int, end: int) -> bool:
        return self.start < end and start < self.end


@dataclass(frozen=True)
class Finding:
    """
    Aggregated, deduplicated detection result. Never carries the raw secret.

    ``start_offset`` and ``end_offset`` are character (code point) offsets into
    the decoded line, not byte offsets into the file.
    """

    path: str
    line: int
    start_offset: int
    end_offset: int
    category: str
    severity: Severity
    preview: str
    confidence: float
    strategies: Tuple[str, ...]
    rules: Tuple[str, ...] = ()
    origin: str = "builtin"
    end_line: Optional[int] = None
    secret_hash: str = ""

    @property
    def sort_key(self) -> Tuple[str, int, int, int]:
        return (self.path, self.line, self.start_offset, self.end_offset)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": self.path,
            "line": self.line,
            "endLine": self.end_line or self.line,
            "startOffset": self.start_offset,
            "endOffset": self.end_offset,
            "category": self.category,
            "severity": self.severity.name,
            "preview": self.preview,
            "confidence": round(self.confidence, 3),
            "strategies": list(self.strategies),
            "rules": list(self.rules),
            "origin": self.origin,
            "hash": self.secret_hash,
        }


@dataclass(frozen=True)
class Diagnostic:
    kind: DiagnosticKind
    source: str
    message: str
    path: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "source": self.source,
            "message": self.message,
            "path": self.path,
        }


# ===================================================================
# SCAN OUTPUT
# ===================================================================

@dataclass(frozen=True)
class FileScanResult:
    """Everything a worker learned about one file. Built once, never mutated."""

    relative_path: str
    included: bool
    reason: str = ""
    findings: Tuple[Finding, ...] = ()
    lines_scanned: int = 0
    lines_excluded: int = 0
    raw_matches: int = 0
    suppressed_matches: int = 0
    unreadable: bool = False
    diagnostics: Tuple[Diagnostic, ...] = ()


@dataclass
class ScanStatistics:
    files_evaluated: int = 0
    files_included: int = 0
    files_excluded: int = 0
    files_scanned: int = 0
    files_unreadable: int = 0
    lines_scanned: int = 0
    lines_excluded: int = 0
    raw_matches: int = 0
    suppressed_matches: int = 0
    findings_by_severity: Dict[str, int] = field(
        default_factory=lambda: {severity.name: 0 for severity in reversed(Severity)}
    )
    elapsed_millis: int = 0

    @property
    def total_findings(self) -> int:
        return sum(self.findings_by_severity.values())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "filesEvaluated": self.files_evaluated,
            "filesIncluded": self.files_included,
            "filesExcluded": self.files_excluded,
            "filesScanned": self.files_scanned,
            "filesUnreadable": self.files_unreadable,
            "linesScanned": self.lines_scanned,
            "linesExcluded": self.lines_excluded,
            "rawMatches": self.raw_matches,
            "suppressedMatches": self.suppressed_matches,
            "findingsBySeverity": dict(self.findings_by_severity),
            "elapsedMillis": self.elapsed_millis,
        }


@dataclass
class ScanResult:
    root: str
    findings: List[Finding] = field(default_factory=list)
    statistics: ScanStatistics = field(default_factory=ScanStatistics)
    diagnostics: List[Diagnostic] = field(default_factory=list)
    state: ScanState = ScanState.CONFIGURED

    def findings_at_or_above(self, severity: Severity) -> List[Finding]:
        return [f for f in self.findings if f.severity.value >= severity.value]

    def gate_passed(self, fail_on: Optional[Severity]) -> bool:
        """True when no finding reaches ``fail_on``; ``None`` never fails the gate."""
        if fail_on is None:
            return True
        return not self.findings_at_or_above(fail_on)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "root": self.root,
            "state": self.state.value,
            "findings": [f.to_dict() for f in self.findings],
            "statistics": self.statistics.to_dict(),
            "diagnostics": [d.to_dict() for d in self.diagnostics],
        }
