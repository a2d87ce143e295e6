"""
Scan orchestrator.

Walks the tree, asks the filter pipeline about every file, reads admitted files
with aiofiles and hands each one to a bounded thread pool that runs the line
filters, detectors, context analysis and aggregation. Workers return immutable
FileScanResults; a single reducer folds them, in path order, into the result.
"""
import asyncio
import logging
import os
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence, Tuple, Union

import aiofiles
from tqdm import tqdm

from repo_secret_scanner.aggregator import aggregate
from repo_secret_scanner.config import ScanConfiguration
from repo_secret_scanner.context import ContextAnalyzer
from repo_secret_scanner.detectors import ENTROPY_CATEGORY, DetectionStrategy, EntropyDetector, PatternDetector
from repo_secret_scanner.errors import ConfigurationError, RootPathError, ScanAbortedError
from repo_secret_scanner.filters import Filter, FilterPipeline, build_filter_pipeline
from repo_secret_scanner.models import (
    Diagnostic,
    DiagnosticKind,
    FileScanResult,
    ScanResult,
    ScanState,
    ScanStatistics,
    ScanTarget,
)
from repo_secret_scanner.patterns import build_rule_catalog

logger = logging.getLogger(__name__)


# ===================================================================
# PER-FILE PROCESSING
# ===================================================================

class FileProcessor:
    """Line filters, detectors, context analysis and aggregation for one file. Holds no mutable state."""

    def __init__(
        self,
        pipeline: FilterPipeline,
        detectors: Sequence[DetectionStrategy],
        analyzer: ContextAnalyzer,
        merge_distance: int = 0,
        min_confidence: float = 0.0,
    ):
        self.pipeline = pipeline
        self.detectors = list(detectors)
        self.analyzer = analyzer
        self.merge_distance = merge_distance
        self.min_confidence = min_confidence

    def process(self, target: ScanTarget, diagnostics: Tuple[Diagnostic, ...] = ()) -> FileScanResult:
        line_diagnostics: List[Diagnostic] = []
        raw_matches = []
        lines_scanned = 0
        lines_excluded = 0

        for line_number, line in enumerate(target.lines, start=1):
            if not self.pipeline.evaluate_line(line, line_number, target, line_diagnostics):
                lines_excluded += 1
                continue
            lines_scanned += 1
            for detector in self.detectors:
                raw_matches.extend(detector.detect(target, line, line_number))

        kept, suppressed = self.analyzer.apply(raw_matches, target, self.analyzer.prepare(target))
        findings = [
            f for f in aggregate(target.relative_path, kept, self.merge_distance)
            if f.confidence >= self.min_confidence
        ]

        return FileScanResult(
            relative_path=target.relative_path,
            included=True,
            reason="included",
            findings=tuple(findings),
            lines_scanned=lines_scanned,
            lines_excluded=lines_excluded,
            raw_matches=len(raw_matches),
            suppressed_matches=suppressed,
            diagnostics=tuple(diagnostics) + tuple(line_diagnostics),
        )


class ResultReducer:
    """The only writer of a scan's findings and statistics."""

    def __init__(self):
        self.statistics = ScanStatistics()
        self.findings = []
        self.diagnostics: List[Diagnostic] = []

    def add(self, result: FileScanResult) -> None:
        stats = self.statistics
        stats.files_evaluated += 1
        self.diagnostics.extend(result.diagnostics)

        if not result.included:
            stats.files_excluded += 1
            return

        stats.files_included += 1
        if result.unreadable:
            stats.files_unreadable += 1
            return

        stats.files_scanned += 1
        stats.lines_scanned += result.lines_scanned
        stats.lines_excluded += result.lines_excluded
        stats.raw_matches += result.raw_matches
        stats.suppressed_matches += result.suppressed_matches
        for finding in result.findings:
            stats.findings_by_severity[finding.severity.name] += 1
        self.findings.extend(result.findings)


@dataclass
class ScanComponents:
    config: ScanConfiguration
    pipeline: FilterPipeline
    processor: FileProcessor
    diagnostics: List[Diagnostic]


# ===================================================================
# ORCHESTRATOR
# ===================================================================

class SecretScanner:
    """
    Scan a directory tree for committed secrets.

    Example:
        scanner = SecretScanner(ScanConfiguration(threads=8))
        result = scanner.scan("path/to/repo")
        for finding in result.findings:
            print(finding.path, finding.line, finding.category)
    """

    def __init__(self, config: Optional[ScanConfiguration] = None, filters: Sequence[Filter] = ()):
        self.config = config or ScanConfiguration.from_env()
        self.extra_filters = list(filters)
        self.state = ScanState.CONFIGURED

    def _transition(self, state: ScanState) -> None:
        logger.debug(f"Scan state: {self.state.value} -> {state.value}")
        self.state = state

    def build_components(self) -> ScanComponents:
        """
        Validate the configuration and build the filter pipeline, detectors and analyzer.

        Raises:
            ScanAbortedError: in strict mode, if any configuration error was found
        """
        config = self.config
        errors: List[ConfigurationError] = config.validate()
        if errors and not config.strict_mode:
            config = config.normalized()

        pipeline, filter_errors = build_filter_pipeline(config, self.extra_filters)
        rules, rule_errors = build_rule_catalog(config)
        analyzer = ContextAnalyzer.from_config(config)
        errors = errors + filter_errors + rule_errors + analyzer.validate()

        if errors and config.strict_mode:
            for error in errors:
                logger.error(f"Configuration error ({error.source}): {error}")
            raise ScanAbortedError(f"Invalid configuration: {len(errors)} error(s) in strict mode", errors)

        diagnostics = []
        for error in errors:
            logger.warning(f"Configuration error ({error.source}): {error}")
            diagnostics.append(Diagnostic(DiagnosticKind.CONFIGURATION, error.source, str(error)))

        detectors: List[DetectionStrategy] = [PatternDetector(rules, config.multiline_window)]
        if not config.enabled_categories or ENTROPY_CATEGORY.lower() in {c.lower() for c in config.enabled_categories}:
            detectors.append(EntropyDetector(
                config.entropy_threshold,
                config.entropy_min_length,
                config.entropy_word_filter,
                config.dictionary_words,
            ))

        processor = FileProcessor(pipeline, detectors, analyzer, config.merge_distance, config.min_confidence)
        return ScanComponents(config, pipeline, processor, diagnostics)

    def scan(self, root: Union[str, Path]) -> ScanResult:
        """Synchronous wrapper around :meth:`scan_async`."""
        return asyncio.run(self.scan_async(root))

    async def scan_async(self, root: Union[str, Path]) -> ScanResult:
        """
        Scan every file under ``root``.

        Args:
            root: Directory to scan

        Returns:
            ScanResult with findings ordered by (path, line, start, end)

        Raises:
            ScanAbortedError: invalid configuration in strict mode (before any file I/O)
            RootPathError: the root is missing, not a directory, or unreadable
        """
        started = time.monotonic()
        scan_id = uuid.uuid4().hex[:12]
        self.state = ScanState.CONFIGURED

        try:
            components = self.build_components()
        except ScanAbortedError:
            self._transition(ScanState.FAILED)
            raise
        config = components.config

        root_path = Path(root).expanduser()
        logger.info(f"Starting scan: {root_path}", extra={"scan_id": scan_id, "path": str(root_path)})
        logger.info(f"Threads: {config.threads}, Max depth: {config.max_depth}, Follow symlinks: {config.follow_symlinks}")

        self._transition(ScanState.ENUMERATING)
        loop = asyncio.get_running_loop()
        try:
            files, walk_diagnostics = await loop.run_in_executor(None, self._enumerate, root_path, config)
        except RootPathError:
            self._transition(ScanState.FAILED)
            raise
        logger.info(f"Found {len(files)} files to evaluate", extra={"scan_id": scan_id})

        self._transition(ScanState.SCANNING)
        semaphore = asyncio.Semaphore(config.threads)
        results: List[FileScanResult] = []
        executor = ThreadPoolExecutor(max_workers=config.threads, thread_name_prefix="secret-scan")
        try:
            tasks = [
                self._scan_file(path, relative_path, components, semaphore, executor)
                for path, relative_path in files
            ]
            with tqdm(total=len(tasks), desc="Scanning files", unit="file", disable=not config.show_progress) as pbar:
                for coro in asyncio.as_completed(tasks):
                    results.append(await coro)
                    pbar.update(1)
        except BaseException:
            self._transition(ScanState.FAILED)
            raise
        finally:
            executor.shutdown(wait=True)

        self._transition(ScanState.AGGREGATING)
        reducer = ResultReducer()
        for result in sorted(results, key=lambda r: r.relative_path):
            reducer.add(result)

        statistics = reducer.statistics
        statistics.elapsed_millis = int((time.monotonic() - started) * 1000)
        scan_result = ScanResult(
            root=str(root_path),
            findings=sorted(reducer.findings, key=lambda f: f.sort_key),
            statistics=statistics,
            diagnostics=components.diagnostics + walk_diagnostics + reducer.diagnostics,
        )

        self._transition(ScanState.COMPLETED)
        scan_result.state = self.state
        logger.info(
            f"Scan complete. {statistics.files_scanned} files scanned, "
            f"{statistics.total_findings} potential secrets found",
            extra={"scan_id": scan_id, "finding_count": statistics.total_findings},
        )
        return scan_result

    async def _scan_file(
        self,
        path: Path,
        relative_path: str,
        components: ScanComponents,
        semaphore: asyncio.Semaphore,
        executor: ThreadPoolExecutor,
    ) -> FileScanResult:
        """Filter, read and process one file under the semaphore."""
        async with semaphore:
            loop = asyncio.get_running_loop()
            diagnostics: List[Diagnostic] = []

            decision = await loop.run_in_executor(
                executor, components.pipeline.evaluate_file, path, relative_path, diagnostics,
            )
            if not decision.included:
                logger.debug(f"Skipping {relative_path}: {decision.reason}")
                return FileScanResult(relative_path, False, decision.reason, diagnostics=tuple(diagnostics))

            try:
                async with aiofiles.open(path, 'r', encoding='utf-8', errors='ignore') as f:
                    content = await f.read()
            except OSError as e:
                logger.warning(f"Failed to read {relative_path}: {e}")
                diagnostics.append(Diagnostic(DiagnosticKind.IO, "reader", str(e), relative_path))
                return FileScanResult(
                    relative_path, True, "unreadable", unreadable=True, diagnostics=tuple(diagnostics),
                )

            target = ScanTarget.from_text(path, relative_path, content)
            return await loop.run_in_executor(
                executor, components.processor.process, target, tuple(diagnostics),
            )

    @staticmethod
    def _enumerate(root: Path, config: ScanConfiguration) -> Tuple[List[Tuple[Path, str]], List[Diagnostic]]:
        """
        Walk the tree in sorted order. Only max depth and the symlink policy prune it;
        every other exclusion belongs to the filter pipeline.

        Raises:
            RootPathError: the root is missing, not a directory, or unreadable
        """
        if not root.exists():
            raise RootPathError(f"Path does not exist: {root}")
        if not root.is_dir():
            raise RootPathError(f"Path is not a directory: {root}")
        if not os.access(root, os.R_OK | os.X_OK):
            raise RootPathError(f"Path is not readable: {root}")

        files = []
        diagnostics = []
        walk_errors: List[OSError] = []
        visited = set()

        for dirpath, dirnames, filenames in os.walk(root, onerror=walk_errors.append, followlinks=config.follow_symlinks):
            current = Path(dirpath)
            depth = len(current.relative_to(root).parts)

            if config.follow_symlinks:
                real = os.path.realpath(dirpath)
                if real in visited:
                    dirnames[:] = []
                    continue
                visited.add(real)

            dirnames.sort()
            if depth >= config.max_depth:
                dirnames[:] = []

            for name in sorted(filenames):
                path = current / name
                if path.is_symlink() and not config.follow_symlinks:
                    continue
                if not path.is_file():
                    continue
                files.append((path, path.relative_to(root).as_posix()))

        for error in walk_errors:
            if error.filename and Path(error.filename) == root:
                raise RootPathError(f"Cannot read {root}: {error}")
            logger.debug(f"Cannot access {error.filename}: {error}")
            diagnostics.append(Diagnostic(DiagnosticKind.IO, "walker", str(error), error.filename))

        return files, diagnostics


def scan_path(root: Union[str, Path], config: Optional[ScanConfiguration] = None) -> ScanResult:
    """Convenience wrapper: scan ``root`` with ``config`` (environment defaults if omitted)."""
    return SecretScanner(config).scan(root)
