"""Merge, deduplicate and classify one file's RawMatches into Findings."""
from typing import List, Sequence

from repo_secret_scanner.models import Finding, RawMatch
from repo_secret_scanner.utils import calculate_secret_hash, redact_secret


def _precedence(match: RawMatch):
    """Most specific first: pattern before entropy, then rule declaration order."""
    return (match.strategy.precedence, match.rule_index)


def _sort_key(match: RawMatch):
    return (match.line_number, match.start, match.strategy.precedence, match.rule_index)


def _build_finding(path: str, group: List[RawMatch]) -> Finding:
    primary = min(group, key=_precedence)
    end_lines = [m.end_line for m in group if m.end_line]

    return Finding(
        path=path,
        line=primary.line_number,
        start_offset=min(m.start for m in group),
        end_offset=max(m.end for m in group),
        category=primary.category,
        severity=max((m.severity for m in group), key=lambda s: s.value),
        preview=redact_secret(primary.text),
        confidence=max(m.confidence for m in group),
        strategies=tuple(sorted({m.strategy.value for m in group})),
        rules=tuple(sorted({m.rule_name for m in group})),
        origin=primary.origin,
        end_line=max(end_lines) if end_lines else None,
        secret_hash=calculate_secret_hash(primary.text),
    )


def aggregate(path: str, raw_matches: Sequence[RawMatch], merge_distance: int = 0) -> List[Finding]:
    """
    Turn one file's raw matches into ordered, deduplicated findings.

    Matches on the same line are merged when their ranges overlap or the gap
    between them is at most ``merge_distance``. The merged finding spans the
    union of its members, takes the highest confidence and the worst severity,
    and is named after its most specific member.

    Args:
        path: Relative path reported on every finding
        raw_matches: Matches for this file, already context-adjusted
        merge_distance: Largest gap, in characters, that still merges two matches

    Returns:
        Findings ordered by (line, start, end)
    """
    groups: List[List[RawMatch]] = []
    group_end = 0

    for match in sorted(raw_matches, key=_sort_key):
        if groups and groups[-1][0].line_number == match.line_number and match.start - group_end <= merge_distance:
            groups[-1].append(match)
            group_end = max(group_end, match.end)
        else:
            groups.append([match])
            group_end = match.end

    findings = {}
    for group in groups:
        finding = _build_finding(path, group)
        key = (finding.line, finding.start_offset, finding.end_offset)
        if key not in findings:
            findings[key] = finding

    return sorted(findings.values(), key=lambda f: (f.line, f.start_offset, f.end_offset))
