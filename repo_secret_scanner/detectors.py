"""
Detection strategies.

Pattern and entropy detectors inspect one admitted line at a time and emit
RawMatch records; they never raise for file content. The context strategy lives
in ``repo_secret_scanner.context`` and only transforms what these produce.
"""
import logging
from typing import Iterable, List, Sequence

from repo_secret_scanner.entropy import entropy_confidence, is_high_entropy_token, iter_tokens
from repo_secret_scanner.models import RawMatch, ScanTarget, Severity, Strategy
from repo_secret_scanner.patterns import PatternRule
from repo_secret_scanner.utils import shannon_entropy

logger = logging.getLogger(__name__)

ENTROPY_CATEGORY = "High Entropy String"
ENTROPY_RULE_NAME = "high-entropy-string"


class DetectionStrategy:
    """Common interface: ``detect`` creates matches, ``transform`` adjusts them."""

    strategy: Strategy

    def detect(self, target: ScanTarget, line: str, line_number: int) -> List[RawMatch]:
        return []

    def transform(self, matches: Sequence[RawMatch], target: ScanTarget, file_context=None) -> List[RawMatch]:
        return list(matches)


class PatternDetector(DetectionStrategy):
    """Runs every enabled rule against every admitted line. No rule short-circuits another."""

    strategy = Strategy.PATTERN

    def __init__(self, rules: Sequence[PatternRule], multiline_window: int = 100):
        self.rules = list(rules)
        self.multiline_window = multiline_window

    def detect(self, target: ScanTarget, line: str, line_number: int) -> List[RawMatch]:
        matches = []
        for index, rule in enumerate(self.rules):
            if rule.multiline:
                matches.extend(self._detect_multiline(rule, index, target, line, line_number))
            else:
                matches.extend(self._detect_single_line(rule, index, line, line_number))
        return matches

    def _detect_single_line(self, rule: PatternRule, index: int, line: str, line_number: int) -> Iterable[RawMatch]:
        for match in rule.regex.finditer(line):
            start, end = rule.span(match)
            if start == end:
                continue
            text = line[start:end]
            if rule.min_entropy and shannon_entropy(text) < rule.min_entropy:
                continue
            yield self._raw_match(rule, index, line_number, start, end, text)

    def _detect_multiline(
        self,
        rule: PatternRule,
        index: int,
        target: ScanTarget,
        line: str,
        line_number: int,
    ) -> Iterable[RawMatch]:
        if rule.trigger and rule.trigger not in line:
            return

        window = target.lines[line_number - 1:line_number - 1 + self.multiline_window]
        if not window:
            window = (line,)
        text = "\n".join(window)

        for match in rule.regex.finditer(text):
            start, end = rule.span(match)
            # Blocks are reported once, on the line where they begin
            if start >= len(line):
                break
            if start == end:
                continue
            block = text[start:end]
            end_line = line_number + text.count("\n", 0, end)
            yield self._raw_match(
                rule, index, line_number, start, min(end, len(line)), block, end_line=end_line,
            )

    def _raw_match(
        self,
        rule: PatternRule,
        index: int,
        line_number: int,
        start: int,
        end: int,
        text: str,
        end_line=None,
    ) -> RawMatch:
        return RawMatch(
            line_number=line_number,
            start=start,
            end=end,
            text=text,
            category=rule.category,
            confidence=rule.confidence,
            severity=rule.severity,
            strategy=self.strategy,
            rule_name=rule.name,
            rule_index=index,
            origin=rule.origin,
            end_line=end_line,
        )


class EntropyDetector(DetectionStrategy):
    """
    Flags high-entropy tokens. Emits exactly one RawMatch per qualifying token,
    spanning only that token.
    """

    strategy = Strategy.ENTROPY

    def __init__(
        self,
        threshold: float = 4.0,
        min_length: int = 16,
        word_filter: bool = True,
        dictionary_words: Iterable[str] = (),
    ):
        self.threshold = threshold
        self.min_length = min_length
        self.word_filter = word_filter
        self.dictionary_words = frozenset(w.lower() for w in dictionary_words)

    def detect(self, target: ScanTarget, line: str, line_number: int) -> List[RawMatch]:
        matches = []
        for start, end, token in iter_tokens(line):
            flagged, entropy = is_high_entropy_token(
                token, self.threshold, self.min_length, self.word_filter, self.dictionary_words,
            )
            if not flagged:
                continue
            matches.append(RawMatch(
                line_number=line_number,
                start=start,
                end=end,
                text=token,
                category=ENTROPY_CATEGORY,
                confidence=entropy_confidence(entropy, len(token), self.threshold),
                severity=Severity.WARNING,
                strategy=self.strategy,
                rule_name=ENTROPY_RULE_NAME,
            ))
        return matches
