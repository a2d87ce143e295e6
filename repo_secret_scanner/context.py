"""
Context analysis: the third detection strategy.

It never creates matches. It removes whitelisted ones and raises or lowers the
rest based on what surrounds them: the assignment they belong to, whether they
sit in a comment, whether the value is a placeholder, and whether the file or
the nearby code is test code.
"""
import logging
import re
from dataclasses import dataclass, replace
from typing import FrozenSet, List, Optional, Sequence, Set, Tuple

from repo_secret_scanner.config import ScanConfiguration, TestFilePolicy
from repo_secret_scanner.detectors import DetectionStrategy
from repo_secret_scanner.errors import ConfigurationError
from repo_secret_scanner.filters import is_test_path
from repo_secret_scanner.models import RawMatch, ScanTarget, Strategy
from repo_secret_scanner.utils import calculate_secret_hash, is_placeholder_value

logger = logging.getLogger(__name__)

WHITELIST_REGEX_PREFIX = "regex:"
WHITELIST_HASH_PREFIX = "sha256:"

POSITIVE_CONFIDENCE_BOOST = 0.2
NEGATIVE_CONFIDENCE_FACTOR = 0.5

SENSITIVE_NAME_TERMS = ("password", "passwd", "secret", "key", "token", "credential", "auth")
DUMMY_NAME_TERMS = ("example", "test", "placeholder", "dummy", "sample", "fake", "mock")

LINE_COMMENT_PREFIXES = ("#", "//", "/*", "*", "--", ";", "<!--")
TRAILING_COMMENT = re.compile(r'(?:^|\s)(?:#|//|/\*|<!--)')
BLOCK_COMMENT_DELIMITERS = (("/*", "*/"), ("<!--", "-->"))

# Name of the assignment whose value runs up to the match
ASSIGNMENT_PREFIX = re.compile(
    r'(?P<name>[A-Za-z_$][\w.$-]*)["\']?\s*(?::=|=>|[:=])\s*[@"\'`]?[^"\'`\s,;]*$'
)

# Markers that only appear in test code
TEST_CONTEXT_MARKERS = re.compile(
    r'\bdef test_|@Test\b|@pytest\.fixture|\bdescribe\(|@Before(?:Each|All)?\b'
    r'|\bsetUp\(|\bMockito\b|\bassert(?:Equals|That)\b|\bself\.assert[A-Z]\w*\('
)


@dataclass(frozen=True)
class FileContext:
    """Per-file facts computed once before matches are analyzed."""

    is_test_file: bool = False
    block_comment_lines: FrozenSet[int] = frozenset()


@dataclass
class Whitelist:
    literals: Tuple[str, ...] = ()
    patterns: Tuple[re.Pattern, ...] = ()
    hashes: FrozenSet[str] = frozenset()

    @property
    def empty(self) -> bool:
        return not (self.literals or self.patterns or self.hashes)


def compile_whitelist(entries: Sequence[str]) -> Tuple[Whitelist, List[ConfigurationError]]:
    """Split whitelist entries into literals, regexes and hashes. Invalid regexes are reported and dropped."""
    literals = []
    patterns = []
    hashes = set()
    errors = []

    for entry in entries:
        if not entry:
            continue
        if entry.startswith(WHITELIST_REGEX_PREFIX):
            source = entry[len(WHITELIST_REGEX_PREFIX):]
            try:
                patterns.append(re.compile(source))
            except re.error as e:
                errors.append(ConfigurationError(f"Invalid whitelist regex {source!r}: {e}", source="whitelist"))
        elif entry.startswith(WHITELIST_HASH_PREFIX):
            hashes.add(entry[len(WHITELIST_HASH_PREFIX):].strip().lower())
        else:
            literals.append(entry)

    return Whitelist(tuple(literals), tuple(patterns), frozenset(hashes)), errors


def find_block_comment_lines(lines: Sequence[str]) -> FrozenSet[int]:
    """Line numbers (1-based) that begin inside a /* */ or <!-- --> block."""
    inside: Set[int] = set()
    closing: Optional[str] = None

    for number, line in enumerate(lines, start=1):
        if closing is not None:
            inside.add(number)
        position = 0
        while position < len(line):
            if closing is None:
                openings = [
                    (line.find(opener, position), opener, closer)
                    for opener, closer in BLOCK_COMMENT_DELIMITERS
                ]
                openings = [o for o in openings if o[0] != -1]
                if not openings:
                    break
                index, opener, closer = min(openings)
                closing = closer
                position = index + len(opener)
            else:
                index = line.find(closing, position)
                if index == -1:
                    break
                position = index + len(closing)
                closing = None

    return frozenset(inside)


class ContextAnalyzer(DetectionStrategy):
    """Adjusts or suppresses matches from the other strategies."""

    strategy = Strategy.CONTEXT

    def __init__(
        self,
        whitelist: Sequence[str] = (),
        test_file_policy: TestFilePolicy = TestFilePolicy.REDUCE,
        context_lines: int = 2,
    ):
        self.whitelist, self.errors = compile_whitelist(whitelist)
        self.test_file_policy = test_file_policy
        self.context_lines = context_lines

    @classmethod
    def from_config(cls, config: ScanConfiguration) -> "ContextAnalyzer":
        return cls(config.whitelist, config.test_file_policy, config.context_lines)

    def validate(self) -> List[ConfigurationError]:
        return list(self.errors)

    def prepare(self, target: ScanTarget) -> FileContext:
        return FileContext(
            is_test_file=is_test_path(target.relative_path),
            block_comment_lines=find_block_comment_lines(target.lines),
        )

    def transform(self, matches: Sequence[RawMatch], target: ScanTarget, file_context=None) -> List[RawMatch]:
        return self.apply(matches, target, file_context)[0]

    def apply(
        self,
        matches: Sequence[RawMatch],
        target: ScanTarget,
        file_context: Optional[FileContext] = None,
    ) -> Tuple[List[RawMatch], int]:
        """
        Remove whitelisted matches and analyze the rest.

        Returns:
            (kept matches, number of whitelisted matches removed)
        """
        file_context = file_context or self.prepare(target)
        suppressed_spans = self._whitelisted_spans(matches, target)

        kept = []
        suppressed = 0
        for match in matches:
            spans = suppressed_spans.get(match.line_number, ())
            if any(match.overlaps(start, end) for start, end in spans):
                suppressed += 1
                continue
            kept.append(self._adjust(match, target, file_context))
        return kept, suppressed

    def _whitelisted_spans(self, matches: Sequence[RawMatch], target: ScanTarget) -> dict:
        """Per line, every span covered by a whitelist literal, regex or hashed match."""
        if self.whitelist.empty:
            return {}

        spans: dict = {}
        for line_number in sorted({m.line_number for m in matches}):
            line = target.line(line_number)
            line_spans = []
            for literal in self.whitelist.literals:
                start = line.find(literal)
                while start != -1:
                    line_spans.append((start, start + len(literal)))
                    start = line.find(literal, start + 1)
            for pattern in self.whitelist.patterns:
                line_spans.extend(m.span() for m in pattern.finditer(line) if m.end() > m.start())
            if line_spans:
                spans[line_number] = line_spans

        if self.whitelist.hashes:
            for match in matches:
                if calculate_secret_hash(match.text) in self.whitelist.hashes:
                    spans.setdefault(match.line_number, []).append((match.start, match.end))
        return spans

    def analyze(self, match: RawMatch, target: ScanTarget, file_context: FileContext) -> Optional[RawMatch]:
        """Return the adjusted match, or None if it is whitelisted."""
        spans = self._whitelisted_spans([match], target).get(match.line_number, ())
        if any(match.overlaps(start, end) for start, end in spans):
            return None
        return self._adjust(match, target, file_context)

    def _adjust(self, match: RawMatch, target: ScanTarget, file_context: FileContext) -> RawMatch:
        line = target.line(match.line_number)
        name = self._assignment_name(line, match.start)
        confidence = match.confidence
        severity = match.severity

        if name and any(term in name.lower() for term in SENSITIVE_NAME_TERMS):
            confidence = min(1.0, confidence + POSITIVE_CONFIDENCE_BOOST)

        # Several negative signals still count as one downgrade
        if self._has_negative_signal(match, line, name, target, file_context):
            severity = severity.downgrade()
            confidence *= NEGATIVE_CONFIDENCE_FACTOR

        if confidence == match.confidence and severity == match.severity:
            return match
        return replace(match, confidence=confidence, severity=severity)

    def _has_negative_signal(
        self,
        match: RawMatch,
        line: str,
        name: Optional[str],
        target: ScanTarget,
        file_context: FileContext,
    ) -> bool:
        if self._in_comment(match, line, file_context):
            return True
        if name and any(term in name.lower() for term in DUMMY_NAME_TERMS):
            return True
        if is_placeholder_value(match.text):
            return True
        if self.test_file_policy is TestFilePolicy.REDUCE:
            if file_context.is_test_file:
                return True
            window = target.window(match.line_number, self.context_lines, self.context_lines)
            if any(TEST_CONTEXT_MARKERS.search(text) for text in window):
                return True
        return False

    @staticmethod
    def _in_comment(match: RawMatch, line: str, file_context: FileContext) -> bool:
        if match.line_number in file_context.block_comment_lines:
            return True
        stripped = line.lstrip().lower()
        if stripped.startswith(LINE_COMMENT_PREFIXES):
            return True
        return TRAILING_COMMENT.search(line[:match.start]) is not None

    @staticmethod
    def _assignment_name(line: str, start: int) -> Optional[str]:
        found = ASSIGNMENT_PREFIX.search(line[:start])
        return found.group("name") if found else None
