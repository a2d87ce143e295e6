"""
Filter pipeline: decides which files, and which lines of admitted files, reach
the detectors.

Filters are evaluated in descending priority (ties keep registration order). A
filter that is not applicable to a file's extension is skipped, and a filter that
raises is skipped as well: a broken filter must never hide content from the
detectors, so both cases count as neutral rather than as a rejection.
"""
import logging
import re
import threading
from enum import Enum
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from repo_secret_scanner.config import GENERATED_FILE_MARKERS, ScanConfiguration, TestFilePolicy
from repo_secret_scanner.errors import ConfigurationError, FilterEvaluationError
from repo_secret_scanner.models import Diagnostic, DiagnosticKind, FilterDecision, ScanTarget
from repo_secret_scanner.utils import glob_to_regex, is_binary_file, normalize_path

logger = logging.getLogger(__name__)

TEST_DIRECTORIES = {"test", "tests", "__tests__", "spec", "specs", "testing", "fixtures", "mocks", "testdata"}
TEST_FILE_PATTERNS = [
    re.compile(r'^test_.*'),
    re.compile(r'.*_test\.[^.]+$'),
    re.compile(r'.*_spec\.[^.]+$'),
    re.compile(r'.*\.(test|spec)\.[^.]+$'),
    re.compile(r'.*(Test|Tests|Spec|IT)\.(java|kt|kts|scala|groovy|cs|swift)$'),
    re.compile(r'^conftest\.py$'),
]
GENERATED_MARKER_SCAN_LINES = 5


def get_file_extension(path: Path) -> str:
    """Lower-case extension without the dot; empty for files without one."""
    return path.suffix.lower().lstrip('.')


def is_test_path(relative_path: str) -> bool:
    """True if the path looks like a test source, fixture or mock."""
    parts = normalize_path(relative_path).split('/')
    if any(part.lower() in TEST_DIRECTORIES for part in parts[:-1]):
        return True
    file_name = parts[-1]
    return any(pattern.match(file_name) for pattern in TEST_FILE_PATTERNS)


# ===================================================================
# FILTER BASE CLASS
# ===================================================================

class Filter:
    """
    Base class for filters. Subclasses override the ``should_include_*`` hooks
    they care about; the defaults admit everything.
    """

    name = "filter"
    default_priority = 0

    def __init__(self, priority: Optional[int] = None):
        self.priority = self.default_priority if priority is None else priority
        self.errors: List[ConfigurationError] = []
        self._applicability_cache: Dict[Tuple[str, str], bool] = {}
        self._cache_lock = threading.Lock()

    def should_include_file(self, path: Path, relative_path: str) -> bool:
        return True

    def should_include_line(self, line: str, line_number: int, target: ScanTarget) -> bool:
        return True

    @property
    def filters_files(self) -> bool:
        return type(self).should_include_file is not Filter.should_include_file

    @property
    def filters_lines(self) -> bool:
        return type(self).should_include_line is not Filter.should_include_line

    def is_applicable(self, path: Path, extension: str) -> bool:
        """Cached applicability check keyed by (path, extension)."""
        key = (str(path), extension)
        with self._cache_lock:
            cached = self._applicability_cache.get(key)
        if cached is not None:
            return cached
        # Computed outside the lock; a race only repeats the computation
        result = self.compute_applicability(path, extension)
        with self._cache_lock:
            self._applicability_cache.setdefault(key, result)
        return result

    def compute_applicability(self, path: Path, extension: str) -> bool:
        return True

    def clear_cache(self) -> None:
        with self._cache_lock:
            self._applicability_cache.clear()

    def validate(self) -> List[ConfigurationError]:
        return list(self.errors)

    def describe(self) -> str:
        return self.name

    def __repr__(self) -> str:
        return f"<{type(self).__name__} name={self.name!r} priority={self.priority}>"


# ===================================================================
# LEAF FILTERS
# ===================================================================

class ExtensionFilter(Filter):
    """Admit files by extension. Exclusions win over an open include set."""

    name = "extension"
    default_priority = 90

    def __init__(self, include: Iterable[str] = (), exclude: Iterable[str] = (), priority: Optional[int] = None):
        super().__init__(priority)
        self.include = {self._normalize(ext) for ext in include if ext}
        self.exclude = {self._normalize(ext) for ext in exclude if ext}

        overlap = self.include & self.exclude
        if overlap:
            self.errors.append(ConfigurationError(
                f"Extensions both included and excluded: {', '.join(sorted(overlap))}",
                source=self.name,
            ))
            # Most permissive reading: the extension stays included
            self.exclude -= overlap

    @staticmethod
    def _normalize(extension: str) -> str:
        return extension.strip().lower().lstrip('.')

    @staticmethod
    def _matches(name: str, extensions: Iterable[str]) -> bool:
        return any(name.endswith('.' + ext) for ext in extensions)

    def should_include_file(self, path: Path, relative_path: str) -> bool:
        name = path.name.lower()
        if self._matches(name, self.exclude):
            return False
        if self.include and not self._matches(name, self.include):
            return False
        return True

    def describe(self) -> str:
        return f"extension(include={sorted(self.include)}, exclude={len(self.exclude)} extensions)"


class PathFilter(Filter):
    """Admit files whose relative path matches the include globs and none of the exclude globs."""

    name = "path"
    default_priority = 100

    def __init__(self, include: Iterable[str] = (), exclude: Iterable[str] = (), priority: Optional[int] = None):
        super().__init__(priority)
        self.include_patterns = self._compile(include)
        if self.errors:
            # A broken include set admits everything
            self.include_patterns = []
        self.exclude_patterns = self._compile(exclude)

        overlap = {p.pattern for p in self.include_patterns} & {p.pattern for p in self.exclude_patterns}
        if overlap:
            self.errors.append(ConfigurationError(
                f"Path patterns both included and excluded: {', '.join(sorted(overlap))}",
                source=self.name,
            ))
            self.exclude_patterns = [p for p in self.exclude_patterns if p.pattern not in overlap]

    def _compile(self, globs: Iterable[str]) -> List[re.Pattern]:
        compiled = []
        for glob in globs:
            try:
                compiled.append(glob_to_regex(glob))
            except ConfigurationError as e:
                self.errors.append(ConfigurationError(str(e), source=self.name))
        return compiled

    def should_include_file(self, path: Path, relative_path: str) -> bool:
        relative_path = normalize_path(relative_path)
        if any(p.fullmatch(relative_path) for p in self.exclude_patterns):
            return False
        if self.include_patterns and not any(p.fullmatch(relative_path) for p in self.include_patterns):
            return False
        return True


class RegexFilter(Filter):
    """User-supplied regexes over relative paths and line content."""

    name = "custom-regex"
    default_priority = 60

    def __init__(
        self,
        path_patterns: Iterable[str] = (),
        line_patterns: Iterable[str] = (),
        exclude: bool = True,
        extensions: Iterable[str] = (),
        priority: Optional[int] = None,
        name: Optional[str] = None,
    ):
        super().__init__(priority)
        if name:
            self.name = name
        self.exclude = exclude
        self.extensions = {ext.lower().lstrip('.') for ext in extensions}
        self.path_patterns = self._compile(path_patterns)
        self.line_patterns = self._compile(line_patterns)

    def _compile(self, patterns: Iterable[str]) -> List[re.Pattern]:
        compiled = []
        for pattern in patterns:
            try:
                compiled.append(re.compile(pattern))
            except re.error as e:
                self.errors.append(ConfigurationError(f"Invalid regex {pattern!r}: {e}", source=self.name))
        return compiled

    @property
    def filters_files(self) -> bool:
        return bool(self.path_patterns)

    @property
    def filters_lines(self) -> bool:
        return bool(self.line_patterns)

    def compute_applicability(self, path: Path, extension: str) -> bool:
        return not self.extensions or extension in self.extensions

    def _admit(self, matched: bool) -> bool:
        return not matched if self.exclude else matched

    def should_include_file(self, path: Path, relative_path: str) -> bool:
        if not self.path_patterns:
            return True
        relative_path = normalize_path(relative_path)
        return self._admit(any(p.search(relative_path) for p in self.path_patterns))

    def should_include_line(self, line: str, line_number: int, target: ScanTarget) -> bool:
        if not self.line_patterns:
            return True
        return self._admit(any(p.search(line) for p in self.line_patterns))


class TestFileFilter(Filter):
    """Excludes test sources when the test-file policy says so; inapplicable otherwise."""

    __test__ = False

    name = "test-files"
    default_priority = 80

    def __init__(self, policy: TestFilePolicy = TestFilePolicy.REDUCE, priority: Optional[int] = None):
        super().__init__(priority)
        self.policy = policy

    def compute_applicability(self, path: Path, extension: str) -> bool:
        return self.policy is TestFilePolicy.EXCLUDE

    def should_include_file(self, path: Path, relative_path: str) -> bool:
        return not is_test_path(relative_path)


class ContentFilter(Filter):
    """Rejects oversized, binary and generated files by inspecting their head."""

    name = "content"
    default_priority = 40

    def __init__(
        self,
        max_file_size: int,
        skip_binary: bool = True,
        skip_generated: bool = True,
        priority: Optional[int] = None,
    ):
        super().__init__(priority)
        self.max_file_size = max_file_size
        self.skip_binary = skip_binary
        self.skip_generated = skip_generated

    def should_include_file(self, path: Path, relative_path: str) -> bool:
        if path.stat().st_size > self.max_file_size:
            logger.debug(f"Skipping large file: {relative_path}")
            return False
        if self.skip_binary and is_binary_file(path):
            logger.debug(f"Skipping binary file (content): {relative_path}")
            return False
        if self.skip_generated and self._is_generated(path):
            logger.debug(f"Skipping generated file: {relative_path}")
            return False
        return True

    @staticmethod
    def _is_generated(path: Path) -> bool:
        with open(path, 'r', encoding='utf-8', errors='ignore') as f:
            for _ in range(GENERATED_MARKER_SCAN_LINES):
                line = f.readline()
                if not line:
                    break
                if any(marker in line for marker in GENERATED_FILE_MARKERS):
                    return True
        return False


class LineLengthFilter(Filter):
    name = "line-length"
    default_priority = 20

    def __init__(self, max_line_length: int, priority: Optional[int] = None):
        super().__init__(priority)
        self.max_line_length = max_line_length

    def should_include_line(self, line: str, line_number: int, target: ScanTarget) -> bool:
        return len(line) <= self.max_line_length


# ===================================================================
# COMPOSITE FILTERS
# ===================================================================

class FilterOperation(Enum):
    ALL = "all"              # every child true (AND)
    ANY = "any"              # at least one child true (OR)
    EXCLUSIVE = "exclusive"  # exactly one child true (XOR)
    NONE = "none"            # every child false (NOT OR)


class CompositeFilter(Filter):
    """
    Immutable tree node combining child filters.

    Only children applicable to the file that implement the capability being
    evaluated take part; with none left the composite is neutral. The composite
    itself is applicable when at least one child is. ALL stops at the first false child,
    ANY at the first true one, NONE at the first true one, and EXCLUSIVE at the
    second true one.
    """

    name = "composite"

    def __init__(
        self,
        operation: FilterOperation,
        filters: Sequence[Filter],
        priority: Optional[int] = None,
        name: Optional[str] = None,
    ):
        super().__init__(priority)
        self.operation = operation
        self.filters: Tuple[Filter, ...] = tuple(filters)
        self.name = name or f"{operation.value}({', '.join(f.name for f in self.filters)})"

    @property
    def filters_files(self) -> bool:
        return any(f.filters_files for f in self.filters)

    @property
    def filters_lines(self) -> bool:
        return any(f.filters_lines for f in self.filters)

    def compute_applicability(self, path: Path, extension: str) -> bool:
        return any(f.is_applicable(path, extension) for f in self.filters)

    def validate(self) -> List[ConfigurationError]:
        errors = list(self.errors)
        for child in self.filters:
            errors.extend(child.validate())
        return errors

    def should_include_file(self, path: Path, relative_path: str) -> bool:
        extension = get_file_extension(path)
        return self._combine(
            f.should_include_file(path, relative_path)
            for f in self.filters if f.filters_files and f.is_applicable(path, extension)
        )

    def should_include_line(self, line: str, line_number: int, target: ScanTarget) -> bool:
        return self._combine(
            f.should_include_line(line, line_number, target)
            for f in self.filters if f.filters_lines and f.is_applicable(target.path, target.extension)
        )

    def _combine(self, results: Iterable[bool]) -> bool:
        if self.operation is FilterOperation.ALL:
            return all(results)
        if self.operation is FilterOperation.ANY:
            results = list(results)
            # No applicable child is neutral, not a rejection
            return not results or any(results)
        if self.operation is FilterOperation.NONE:
            return not any(results)

        true_count = 0
        seen = False
        for result in results:
            seen = True
            if result:
                true_count += 1
                if true_count > 1:
                    return False
        return true_count == 1 or not seen


# ===================================================================
# PIPELINE
# ===================================================================

class FilterPipeline:
    """Ordered set of filters evaluated for every file and every line of admitted files."""

    def __init__(self, filters: Sequence[Filter] = ()):
        # sorted() is stable, so equal priorities keep registration order
        self.filters: List[Filter] = sorted(filters, key=lambda f: -f.priority)
        self.line_filters: List[Filter] = [f for f in self.filters if f.filters_lines]

    def validate(self) -> List[ConfigurationError]:
        errors = []
        for f in self.filters:
            errors.extend(f.validate())
        return errors

    def should_include_file(self, path: Path, relative_path: str) -> bool:
        return self.evaluate_file(path, relative_path).included

    def should_include_line(self, line: str, line_number: int, target: ScanTarget) -> bool:
        return self.evaluate_line(line, line_number, target).included

    def evaluate_file(
        self,
        path: Path,
        relative_path: str,
        diagnostics: Optional[List[Diagnostic]] = None,
    ) -> FilterDecision:
        extension = get_file_extension(path)
        for f in self.filters:
            if not f.is_applicable(path, extension):
                continue
            try:
                included = f.should_include_file(path, relative_path)
            except Exception as e:
                self._record_failure(f, e, relative_path, diagnostics)
                continue
            if not included:
                return FilterDecision(False, f"excluded by {f.name} filter", f.name)
        return FilterDecision(True, "included")

    def evaluate_line(
        self,
        line: str,
        line_number: int,
        target: ScanTarget,
        diagnostics: Optional[List[Diagnostic]] = None,
    ) -> FilterDecision:
        for f in self.line_filters:
            if not f.is_applicable(target.path, target.extension):
                continue
            try:
                included = f.should_include_line(line, line_number, target)
            except Exception as e:
                self._record_failure(f, e, f"{target.relative_path}:{line_number}", diagnostics)
                continue
            if not included:
                return FilterDecision(False, f"line excluded by {f.name} filter", f.name)
        return FilterDecision(True, "included")

    @staticmethod
    def _record_failure(
        f: Filter,
        error: Exception,
        location: str,
        diagnostics: Optional[List[Diagnostic]],
    ) -> None:
        failure = FilterEvaluationError(str(error), filter_name=f.name, cause=error)
        logger.warning(f"{failure} (at {location}); filter skipped")
        if diagnostics is not None:
            diagnostics.append(Diagnostic(DiagnosticKind.FILTER, f.name, str(failure), location))


def build_filter_pipeline(
    config: ScanConfiguration,
    extra_filters: Sequence[Filter] = (),
) -> Tuple[FilterPipeline, List[ConfigurationError]]:
    """
    Build the default filter pipeline for a configuration.

    Args:
        config: Scan configuration
        extra_filters: Caller-supplied filters registered after the built-in ones

    Returns:
        The pipeline plus every configuration error found while compiling it.
        Offending entries are already dropped from the pipeline.
    """
    priorities = config.filter_priorities

    filters: List[Filter] = [
        PathFilter(config.include_paths, config.exclude_paths, priority=priorities.get(PathFilter.name)),
        ExtensionFilter(
            config.include_extensions, config.exclude_extensions,
            priority=priorities.get(ExtensionFilter.name),
        ),
        TestFileFilter(config.test_file_policy, priority=priorities.get(TestFileFilter.name)),
    ]
    if config.exclude_path_regexes or config.exclude_line_patterns:
        filters.append(RegexFilter(
            config.exclude_path_regexes, config.exclude_line_patterns,
            priority=priorities.get(RegexFilter.name),
        ))
    filters.append(ContentFilter(
        config.max_file_size, config.skip_binary, config.skip_generated,
        priority=priorities.get(ContentFilter.name),
    ))
    filters.append(LineLengthFilter(config.max_line_length, priority=priorities.get(LineLengthFilter.name)))

    for extra in extra_filters:
        if extra.name in priorities:
            extra.priority = priorities[extra.name]
        filters.append(extra)

    pipeline = FilterPipeline(filters)
    return pipeline, pipeline.validate()


def validate_filter_configuration(config: ScanConfiguration) -> List[ConfigurationError]:
    """Every filter configuration error: overlapping extension sets, invalid globs and regexes."""
    return build_filter_pipeline(config)[1]
