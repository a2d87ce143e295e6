"""
Report rendering: JSON, CSV and SARIF files plus a console summary.

Every renderer works from a ScanResult and only ever sees redacted previews
and hashes, never the secret values themselves.
"""
import csv
import json
import logging
from collections import Counter
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from repo_secret_scanner.config import SCANNER_INFORMATION_URI, SCANNER_NAME, SCANNER_VERSION
from repo_secret_scanner.models import Finding, ScanResult, Severity

logger = logging.getLogger(__name__)

OUTPUT_FORMATS = ("json", "csv", "sarif")
SARIF_SCHEMA = "https://raw.githubusercontent.com/oasis-tcs/sarif-spec/master/Schemata/sarif-schema-2.1.0.json"
SARIF_LEVELS = {Severity.CRITICAL: "error", Severity.WARNING: "warning", Severity.SAFE: "note"}


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z')


# ===================================================================
# REMEDIATION GUIDANCE
# ===================================================================

class RemediationAdvice:
    """Remediation guidance keyed by finding category."""

    REMEDIATION_TEMPLATES = {
        "AWS Access Key": {
            "immediate_actions": [
                "1. Deactivate the key in the IAM console right away",
                "2. Check CloudTrail for calls made with the key",
                "3. Issue a replacement key and roll it out",
                "4. Delete the old key once nothing depends on it",
                "5. Purge the key from Git history"
            ],
            "prevention": [
                "Prefer IAM roles over long-lived access keys",
                "Keep credentials in AWS Secrets Manager or SSM Parameter Store",
                "Load credentials from profiles or the environment"
            ],
            "rotation_command": "aws iam create-access-key --user-name USERNAME",
            "docs_url": "https://docs.aws.amazon.com/IAM/latest/UserGuide/id_credentials_access-keys.html"
        },

        "AWS Secret Key": {
            "immediate_actions": [
                "1. Deactivate the access key pair this secret belongs to",
                "2. Check CloudTrail for calls made with the pair",
                "3. Issue a replacement pair and roll it out",
                "4. Purge the secret from Git history"
            ],
            "prevention": [
                "Prefer IAM roles over long-lived access keys",
                "Keep credentials in AWS Secrets Manager or SSM Parameter Store"
            ],
            "rotation_command": "aws iam update-access-key --access-key-id KEY_ID --status Inactive",
            "docs_url": "https://docs.aws.amazon.com/IAM/latest/UserGuide/id_credentials_access-keys.html"
        },

        "GitHub Token": {
            "immediate_actions": [
                "1. Revoke the token in your GitHub developer settings",
                "2. Review the organization audit log for its use",
                "3. Create a replacement with the narrowest scopes that work",
                "4. Update CI/CD secrets with the replacement",
                "5. Purge the token from Git history"
            ],
            "prevention": [
                "Store tokens as Actions secrets",
                "Prefer GitHub Apps or fine-grained tokens with an expiry"
            ],
            "rotation_command": "Generate new token at: https://github.com/settings/tokens/new",
            "docs_url": "https://docs.github.com/en/authentication/keeping-your-account-and-data-secure/token-expiration-and-revocation"
        },

        "Slack Token": {
            "immediate_actions": [
                "1. Regenerate the token from the Slack app settings",
                "2. Review app access logs",
                "3. Update integrations with the new token",
                "4. Purge the token from Git history"
            ],
            "prevention": [
                "Keep tokens in a secret manager",
                "Enable token rotation for the app"
            ],
            "rotation_command": "Regenerate at: https://api.slack.com/apps",
            "docs_url": "https://api.slack.com/authentication/rotation"
        },

        "Private Key": {
            "immediate_actions": [
                "1. Generate a new key pair and stop using the exposed one",
                "2. Replace the public key everywhere it is trusted",
                "3. Revoke certificates issued for the old key",
                "4. Purge the key from Git history"
            ],
            "prevention": [
                "Keep private keys in a vault or an SSH agent",
                "Add *.pem, *.key and id_* to .gitignore"
            ],
            "rotation_command": "ssh-keygen -t ed25519 -C 'your_email@example.com'",
            "docs_url": "https://docs.github.com/en/authentication/connecting-to-github-with-ssh"
        },

        "Database Connection String": {
            "immediate_actions": [
                "1. Change the database password",
                "2. Review database access logs",
                "3. Update application configuration with the new credentials",
                "4. Purge the connection string from Git history"
            ],
            "prevention": [
                "Build connection strings from environment variables",
                "Use IAM or short-lived database credentials where available"
            ],
            "rotation_command": "ALTER USER username WITH PASSWORD 'new_secure_password';",
            "docs_url": "https://www.postgresql.org/docs/current/sql-alterrole.html"
        },

        "High Entropy String": {
            "immediate_actions": [
                "1. Confirm whether the value is a credential",
                "2. If it is, rotate it with its issuing service",
                "3. If it is not, add it to the whitelist"
            ],
            "prevention": [
                "Keep generated values out of source files",
                "Whitelist known non-secret values in .scanignore"
            ],
            "rotation_command": "Contact service provider to regenerate credential",
            "docs_url": "https://github.com/awslabs/git-secrets"
        },

        "GENERIC": {
            "immediate_actions": [
                "1. Identify the service this credential belongs to",
                "2. Rotate the credential",
                "3. Update every system that uses it",
                "4. Review access logs for misuse",
                "5. Purge the credential from Git history"
            ],
            "prevention": [
                "Use a secret manager (Vault, AWS Secrets Manager, Azure Key Vault)",
                "Read credentials from the environment",
                "Run this scanner in a pre-commit hook"
            ],
            "rotation_command": "Contact service provider to regenerate credential",
            "docs_url": "https://github.com/awslabs/git-secrets"
        }
    }

    @staticmethod
    def get_remediation(category: str) -> Dict[str, Any]:
        """Get remediation advice for a finding category."""
        return RemediationAdvice.REMEDIATION_TEMPLATES.get(
            category,
            RemediationAdvice.REMEDIATION_TEMPLATES["GENERIC"]
        )

    @staticmethod
    def get_git_history_removal_guide() -> Dict[str, Any]:
        """Steps for purging a secret from Git history."""
        return {
            "tool": "git-filter-repo",
            "installation": "pip install git-filter-repo",
            "commands": [
                "# Work on a fresh mirror clone",
                "git clone --mirror <repo-url> repo-cleanup.git",
                "cd repo-cleanup.git",
                "git filter-repo --replace-text replacements.txt",
                "git push --force --mirror",
            ],
            "alternative": "BFG Repo-Cleaner: https://rtyley.github.io/bfg-repo-cleaner/",
        }


# ===================================================================
# REPORT GENERATION
# ===================================================================

def build_summary(result: ScanResult) -> Dict[str, Any]:
    by_category = Counter(f.category for f in result.findings)
    by_file = Counter(f.path for f in result.findings)
    return {
        "by_severity": dict(result.statistics.findings_by_severity),
        "by_category": dict(sorted(by_category.items())),
        "top_files": dict(by_file.most_common(10)),
    }


def generate_report(result: ScanResult, output_path: Path, output_format: str = "json") -> List[Path]:
    """
    Write the report in the requested format(s).

    Args:
        result: Completed scan result
        output_path: Base path; the suffix is replaced per format
        output_format: json, csv, sarif or all

    Returns:
        Paths of the reports that were written
    """
    formats = list(OUTPUT_FORMATS) if output_format == "all" else [output_format]
    written = []

    for fmt in formats:
        output_file = output_path.with_suffix(f".{fmt}")
        try:
            if fmt == "json":
                generate_json_report(result, output_file)
            elif fmt == "csv":
                generate_csv_report(result, output_file)
            elif fmt == "sarif":
                generate_sarif_report(result, output_file)
            else:
                logger.error(f"Unknown output format: {fmt}")
                continue
        except OSError as e:
            logger.error(f"Failed to write {fmt} report to {output_file}: {e}")
            continue
        written.append(output_file)

    return written


def build_json_report(result: ScanResult) -> Dict[str, Any]:
    findings = []
    for finding in result.findings:
        entry = finding.to_dict()
        entry["remediation"] = RemediationAdvice.get_remediation(finding.category)
        findings.append(entry)

    return {
        "scan_metadata": {
            "timestamp": _utc_now(),
            "root": result.root,
            "state": result.state.value,
            "total_findings": len(result.findings),
            "scanner_version": SCANNER_VERSION,
        },
        "summary": build_summary(result),
        "statistics": result.statistics.to_dict(),
        "diagnostics": [d.to_dict() for d in result.diagnostics],
        "git_history_cleanup": RemediationAdvice.get_git_history_removal_guide(),
        "findings": findings,
    }


def generate_json_report(result: ScanResult, output_path: Path) -> None:
    """JSON report with metadata, summary, statistics and findings."""
    report = build_json_report(result)
    with open(output_path, 'w', encoding='utf-8') as f:
        json.dump(report, f, indent=2)

    logger.info(f"JSON report written to {output_path}")


CSV_FIELDS = [
    'severity', 'confidence', 'category', 'path', 'line', 'start_offset', 'end_offset',
    'preview', 'strategies', 'rules', 'hash', 'remediation_summary', 'rotation_command', 'docs_url'
]


def generate_csv_report(result: ScanResult, output_path: Path) -> None:
    """CSV report for spreadsheet triage."""
    with open(output_path, 'w', newline='', encoding='utf-8') as csvfile:
        writer = csv.DictWriter(csvfile, fieldnames=CSV_FIELDS)
        writer.writeheader()

        for finding in result.findings:
            remediation = RemediationAdvice.get_remediation(finding.category)
            writer.writerow({
                'severity': finding.severity.name,
                'confidence': round(finding.confidence, 3),
                'category': finding.category,
                'path': finding.path,
                'line': finding.line,
                'start_offset': finding.start_offset,
                'end_offset': finding.end_offset,
                'preview': finding.preview,
                'strategies': ';'.join(finding.strategies),
                'rules': ';'.join(finding.rules),
                'hash': finding.secret_hash,
                'remediation_summary': ' | '.join(remediation.get('immediate_actions', [])[:2]),
                'rotation_command': remediation.get('rotation_command', ''),
                'docs_url': remediation.get('docs_url', ''),
            })

    logger.info(f"CSV report written to {output_path}")


def _rule_id(category: str) -> str:
    return "secret-scanner/" + "-".join(category.lower().replace('_', ' ').split())


def _sarif_result(finding: Finding) -> Dict[str, Any]:
    region: Dict[str, Any] = {
        "startLine": finding.line,
        "startColumn": finding.start_offset + 1,
        "endColumn": finding.end_offset + 1,
    }
    if finding.end_line and finding.end_line != finding.line:
        region = {"startLine": finding.line, "startColumn": finding.start_offset + 1, "endLine": finding.end_line}

    return {
        "ruleId": _rule_id(finding.category),
        "level": SARIF_LEVELS[finding.severity],
        "message": {
            "text": f"Potential secret: {finding.category} ({finding.preview}, confidence {finding.confidence:.2f})"
        },
        "locations": [{
            "physicalLocation": {
                "artifactLocation": {"uri": finding.path},
                "region": region,
            }
        }],
        "partialFingerprints": {
            "primaryLocationLineHash": f"{finding.secret_hash[:16]}:{finding.line}"
        },
        "properties": {
            "confidence": round(finding.confidence, 3),
            "strategies": list(finding.strategies),
            "rules": list(finding.rules),
            "origin": finding.origin,
        },
    }


def build_sarif_report(result: ScanResult) -> Dict[str, Any]:
    """SARIF 2.1.0 document for code-scanning tools."""
    rules = []
    for category in sorted({f.category for f in result.findings}):
        remediation = RemediationAdvice.get_remediation(category)
        worst = max((f.severity for f in result.findings if f.category == category), key=lambda s: s.value)
        rules.append({
            "id": _rule_id(category),
            "name": category,
            "shortDescription": {"text": f"Potential {category} detected"},
            "fullDescription": {"text": f"A potential hardcoded {category} was found in the codebase."},
            "defaultConfiguration": {"level": SARIF_LEVELS[worst]},
            "help": {
                "text": "\n".join(remediation.get('immediate_actions', [])),
                "markdown": "## Remediation\n\n"
                            + "\n".join(f"- {action}" for action in remediation.get('immediate_actions', []))
                            + f"\n\n[Documentation]({remediation.get('docs_url', '')})"
            },
            "properties": {"tags": ["security", "secrets"]},
        })

    return {
        "$schema": SARIF_SCHEMA,
        "version": "2.1.0",
        "runs": [{
            "tool": {
                "driver": {
                    "name": SCANNER_NAME,
                    "semanticVersion": SCANNER_VERSION,
                    "informationUri": SCANNER_INFORMATION_URI,
                    "rules": rules,
                }
            },
            "results": [_sarif_result(f) for f in result.findings],
            "invocations": [{
                "executionSuccessful": True,
                "endTimeUtc": _utc_now(),
            }],
        }],
    }


def generate_sarif_report(result: ScanResult, output_path: Path) -> None:
    with open(output_path, 'w', encoding='utf-8') as f:
        json.dump(build_sarif_report(result), f, indent=2)

    logger.info(f"SARIF report written to {output_path}")


def log_summary(result: ScanResult, fail_on: Optional[Severity] = None) -> None:
    """Console summary through the package logger."""
    stats = result.statistics
    severity_counts = stats.findings_by_severity

    logger.info("=" * 70)
    logger.info("SCAN SUMMARY")
    logger.info("=" * 70)
    logger.info(
        f"Files: {stats.files_evaluated} evaluated, {stats.files_scanned} scanned, "
        f"{stats.files_excluded} excluded, {stats.files_unreadable} unreadable"
    )
    logger.info(f"Lines: {stats.lines_scanned} scanned, {stats.lines_excluded} excluded")
    logger.info(
        f"Findings: {severity_counts.get('CRITICAL', 0)} critical, "
        f"{severity_counts.get('WARNING', 0)} warning, {severity_counts.get('SAFE', 0)} safe "
        f"({stats.suppressed_matches} whitelisted)"
    )

    for finding in result.findings:
        if finding.severity is Severity.SAFE:
            continue
        logger.info(f"  [{finding.severity.name}] {finding.path}:{finding.line} {finding.category} {finding.preview}")

    for diagnostic in result.diagnostics:
        logger.warning(f"  {diagnostic.kind.value}: {diagnostic.message}")

    if fail_on is not None:
        status = "PASSED" if result.gate_passed(fail_on) else "FAILED"
        logger.info(f"Build gate (fail on {fail_on.name}): {status}")
    logger.info(f"Elapsed: {stats.elapsed_millis} ms")
    logger.info("=" * 70)
