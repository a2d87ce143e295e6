"""
Token extraction and false-positive filters for entropy-based detection.

A candidate token is a run of base64/base64url/hex characters with optional
``=`` padding. Tokens that look like prose, identifiers, placeholders, or
repeated/sequential runs are not treated as secrets however random their
characters appear.
"""
import math
import re
from typing import Iterable, Iterator, Optional, Tuple

from repo_secret_scanner.utils import is_placeholder_value, shannon_entropy

TOKEN_PATTERN = re.compile(r'[A-Za-z0-9+/_-]+={0,2}')
SEGMENT_SEPARATORS = re.compile(r'[_\-/+=]+')
CAMEL_CASE_BOUNDARY = re.compile(r'(?<=[a-z])(?=[A-Z])|(?<=[A-Z])(?=[A-Z][a-z])')
REPEATED_UNIT = re.compile(r'(.{1,4})\1+.{0,3}', re.DOTALL)

VOWELS = set("aeiouyAEIOUY")
MIN_WORD_SEGMENT_LENGTH = 3
MAX_WORD_SEGMENT_LENGTH = 12
MAX_DOMINANT_CHAR_RATIO = 0.5
SEQUENTIAL_RUN_RATIO = 0.5

# Long strings that show up in code and look random to the entropy check
COMMON_WORDS = frozenset(w.lower() for w in (
    "abcdefghijklmnopqrstuvwxyz",
    "abcdefghijklmnopqrstuvwxyz0123456789",
    "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789+/",
    "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789-_",
    "0123456789abcdefghijklmnopqrstuvwxyz",
    "0123456789abcdef",
    "authentication", "authorization", "authenticationtoken", "configuration",
    "implementation", "initialization", "internationalization", "localization",
    "serialization", "deserialization", "synchronization", "responsibilities",
    "characteristics", "transformation", "representation", "troubleshooting",
    "ThisIsNotASecret", "NotARealPassword",
))


def iter_tokens(line: str) -> Iterator[Tuple[int, int, str]]:
    """Yield (start, end, token) for every non-overlapping candidate token."""
    for match in TOKEN_PATTERN.finditer(line):
        yield match.start(), match.end(), match.group()


def split_segments(token: str) -> list:
    """Split a token on separators and camelCase boundaries."""
    segments = []
    for part in SEGMENT_SEPARATORS.split(token):
        if part:
            segments.extend(s for s in CAMEL_CASE_BOUNDARY.split(part) if s)
    return segments


def looks_like_words(token: str, dictionary: Iterable[str] = ()) -> bool:
    """
    Natural-language heuristic.

    A token reads as words when it is a known word (built-in list or the
    supplied dictionary, case-insensitive), or when it has no digits and every
    segment is a known word or is three to twelve letters long and contains a
    vowel. Longer unknown segments are treated as random, so a single-case
    credential such as ``KJHSDFIUWERNBXCVQ`` is not mistaken for prose:

        >>> looks_like_words("getUserAccountSettings")
        True
        >>> looks_like_words("xK9mQ2vL8nR4tY6w")
        False
        >>> looks_like_words("KJHSDFIUWERNBXCVQ")
        False
    """
    known = COMMON_WORDS | {w.lower() for w in dictionary}
    lowered = token.lower().rstrip("=")
    if lowered in known:
        return True
    if any(c.isdigit() for c in token):
        return False

    segments = split_segments(token)
    if not segments:
        return False
    return all(segment.lower() in known or _reads_as_word(segment) for segment in segments)


def _reads_as_word(segment: str) -> bool:
    return (
        MIN_WORD_SEGMENT_LENGTH <= len(segment) <= MAX_WORD_SEGMENT_LENGTH
        and segment.isalpha()
        and any(c in VOWELS for c in segment)
    )


def _longest_sequential_run(token: str) -> int:
    longest = run = 1
    step: Optional[int] = None
    for previous, current in zip(token, token[1:]):
        delta = ord(current) - ord(previous)
        if delta in (1, -1) and (step is None or delta == step):
            run += 1
            step = delta
        else:
            run = 2 if delta in (1, -1) else 1
            step = delta if delta in (1, -1) else None
        longest = max(longest, run)
    return longest


def is_repetitive_or_sequential(token: str) -> bool:
    """True for tokens dominated by one character, a short repeated unit, or an alphabet/digit run."""
    if not token:
        return False
    token = token.rstrip("=")
    most_common = max(token.count(c) for c in set(token))
    if most_common / len(token) > MAX_DOMINANT_CHAR_RATIO:
        return True
    if REPEATED_UNIT.fullmatch(token):
        return True
    return _longest_sequential_run(token) >= len(token) * SEQUENTIAL_RUN_RATIO


def entropy_confidence(entropy: float, length: int, threshold: float) -> float:
    """
    Map entropy to confidence: 0.5 at the threshold, 1.0 at the maximum
    entropy possible for a token of this length. 1.0 when there is no headroom.
    """
    headroom = math.log2(length) - threshold if length > 0 else 0.0
    if headroom <= 0:
        return 1.0
    confidence = 0.5 + 0.5 * (entropy - threshold) / headroom
    return min(max(confidence, 0.0), 1.0)


def is_high_entropy_token(
    token: str,
    threshold: float,
    min_length: int,
    word_filter: bool = True,
    dictionary: Iterable[str] = (),
) -> Tuple[bool, float]:
    """
    Decide whether a token qualifies as a high-entropy secret candidate.

    Returns:
        (flagged, entropy)
    """
    if len(token) < min_length:
        return False, 0.0

    entropy = shannon_entropy(token)
    if entropy < threshold:
        return False, entropy
    if word_filter and looks_like_words(token, dictionary):
        return False, entropy
    if is_placeholder_value(token) or is_repetitive_or_sequential(token):
        return False, entropy
    return True, entropy
