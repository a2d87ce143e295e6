"""Command line interface: scan a directory, write reports, enforce the build gate."""
import argparse
import asyncio
import dataclasses
import logging
import sys
from pathlib import Path
from typing import List, Optional

from repo_secret_scanner.config import (
    DEFAULT_WHITELIST_FILE,
    FAIL_ON,
    LOG_FORMAT,
    MAX_DEPTH,
    OUTPUT_FILE,
    OUTPUT_FORMAT,
    SCANNER_VERSION,
    ScanConfiguration,
    TestFilePolicy,
    baseline_whitelist_entries,
    load_baseline,
    load_config_file,
    load_custom_patterns,
    load_whitelist_file,
)
from repo_secret_scanner.errors import ConfigurationError, RootPathError, ScanAbortedError
from repo_secret_scanner.github import GitHubCodeScanning
from repo_secret_scanner.log import setup_logging
from repo_secret_scanner.models import Severity
from repo_secret_scanner.reporting import generate_report, generate_sarif_report, log_summary
from repo_secret_scanner.scanner import SecretScanner

logger = logging.getLogger("repo_secret_scanner.cli")

EXIT_OK = 0
EXIT_GATE_FAILED = 1
EXIT_FATAL = 2
EXIT_INTERRUPTED = 130


# ===================================================================
# COMMAND LINE INTERFACE
# ===================================================================

def parse_arguments(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command-line arguments and display help information."""
    parser = argparse.ArgumentParser(
        prog='repo-secret-scan',
        description='Scan a repository for committed secrets and fail the build on findings',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog='''
ENVIRONMENT VARIABLES (Optional):
  SCAN_THREADS          Worker threads (default: 4)
  ENTROPY_THRESHOLD     Entropy threshold in bits per character (default: 4.0)
  ENTROPY_MIN_LENGTH    Minimum token length for entropy checks (default: 16)
  MAX_FILE_SIZE_MB      Skip files larger than this in MB (default: 10)
  STRICT_MODE           Abort on any configuration error (default: false)
  TEST_FILE_POLICY      scan, reduce or exclude (default: reduce)
  CUSTOM_PATTERNS_FILE  JSON file with custom patterns
  WHITELIST_FILE        Whitelist file (default: PATH/.scanignore if present)
  OUTPUT_FILE           Report output path (default: scan_report.json)
  FAIL_ON               CRITICAL, WARNING, SAFE or NONE (default: CRITICAL)

USAGE EXAMPLES:
  repo-secret-scan .
  repo-secret-scan src --fail-on WARNING --output-format all
  repo-secret-scan . --output-format sarif --upload-sarif

SECURITY NOTICE:
  This scanner NEVER attempts to use discovered credentials.

EXIT CODES:
  0   Build gate passed
  1   Build gate failed (findings at or above --fail-on)
  2   Fatal error (invalid configuration, unreadable path, failed upload)
  130 Interrupted by user (Ctrl+C)
        '''
    )

    parser.add_argument('path', metavar='PATH', help='Directory to scan')
    parser.add_argument('--config', metavar='FILE', help='JSON configuration file')
    parser.add_argument('--custom-patterns', metavar='FILE', help='Path to custom regex patterns JSON file')
    parser.add_argument('--whitelist', metavar='FILE', help=f'Whitelist file (default: PATH/{DEFAULT_WHITELIST_FILE})')
    parser.add_argument('--baseline', metavar='FILE', help='Previous JSON report whose findings are suppressed')
    parser.add_argument('--threads', type=int, help='Number of worker threads')
    parser.add_argument('--entropy-threshold', type=float, metavar='H', help='Entropy threshold (0.0-8.0)')
    parser.add_argument('--strict', action='store_true', help='Abort on any configuration error')
    parser.add_argument(
        '--test-files',
        choices=[p.value for p in TestFilePolicy],
        help='How to treat test files (default: reduce)'
    )
    parser.add_argument(
        '--max-depth',
        type=int,
        default=MAX_DEPTH,
        help=f'Maximum directory depth (default: {MAX_DEPTH})'
    )
    parser.add_argument('--follow-symlinks', action='store_true', help='Follow symbolic links')
    parser.add_argument(
        '--output-format',
        choices=['json', 'csv', 'sarif', 'all'],
        default=OUTPUT_FORMAT,
        help=f'Output format (default: {OUTPUT_FORMAT})'
    )
    parser.add_argument('--output', type=Path, default=OUTPUT_FILE, help=f'Report output path (default: {OUTPUT_FILE})')
    parser.add_argument(
        '--fail-on',
        choices=['CRITICAL', 'WARNING', 'SAFE', 'NONE'],
        type=str.upper,
        default=FAIL_ON.upper(),
        help=f'Lowest severity that fails the build (default: {FAIL_ON.upper()})'
    )
    parser.add_argument('--upload-sarif', action='store_true', help='Upload the SARIF report to GitHub code scanning')
    parser.add_argument('--no-progress', action='store_true', help='Disable the progress bar')
    parser.add_argument(
        '--log-format',
        choices=['text', 'json'],
        default=LOG_FORMAT,
        help=f'Logging format (default: {LOG_FORMAT})'
    )
    parser.add_argument('-v', '--verbose', action='store_true', help='Enable verbose debug logging')
    parser.add_argument('--version', action='version', version=f'%(prog)s {SCANNER_VERSION}')

    return parser.parse_args(argv)


def build_configuration(args: argparse.Namespace, scan_path: Path) -> ScanConfiguration:
    """
    Layer the configuration: environment, then the config file, then CLI flags.

    Raises:
        ConfigurationError: if a configuration file or flag value is invalid
    """
    config = ScanConfiguration.from_env()
    if args.config:
        config = load_config_file(Path(args.config), config)

    overrides = {
        "max_depth": args.max_depth,
        "show_progress": not args.no_progress,
    }
    if args.threads is not None:
        overrides["threads"] = args.threads
    if args.entropy_threshold is not None:
        overrides["entropy_threshold"] = args.entropy_threshold
    if args.strict:
        overrides["strict_mode"] = True
    if args.test_files:
        overrides["test_file_policy"] = TestFilePolicy.parse(args.test_files)
    if args.follow_symlinks:
        overrides["follow_symlinks"] = True
    if args.custom_patterns:
        overrides["custom_patterns"] = config.custom_patterns + tuple(load_custom_patterns(args.custom_patterns))
    config = dataclasses.replace(config, **overrides)

    whitelist_file = Path(args.whitelist) if args.whitelist else scan_path / DEFAULT_WHITELIST_FILE
    config = config.with_whitelist(load_whitelist_file(whitelist_file))

    if args.baseline:
        config = config.with_whitelist(baseline_whitelist_entries(load_baseline(Path(args.baseline))))

    return config


def parse_fail_on(value: str) -> Optional[Severity]:
    if value.upper() == "NONE":
        return None
    return Severity.parse(value)


def upload_sarif_report(
    result,
    output: Path,
    output_format: str,
    repository_root: Optional[Path] = None,
) -> bool:
    client = GitHubCodeScanning.from_environment()
    if client is None:
        logger.error("SARIF upload requires GITHUB_TOKEN and GITHUB_REPOSITORY")
        return False

    sarif_file = output.with_suffix(".sarif")
    if output_format not in ("sarif", "all"):
        generate_sarif_report(result, sarif_file)

    upload = asyncio.run(client.upload_sarif(sarif_file, repository_root=repository_root))
    if upload.success:
        logger.info(f"{upload.message} (id: {upload.upload_id})")
    else:
        logger.error(f"SARIF upload failed: {upload.message}")
    return upload.success


# ===================================================================
# MAIN ENTRY POINT
# ===================================================================

def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point with validation and error handling."""
    args = parse_arguments(argv)
    setup_logging(args.log_format, args.verbose)

    scan_path = Path(args.path).expanduser().resolve()

    try:
        config = build_configuration(args, scan_path)
        fail_on = parse_fail_on(args.fail_on)
    except (ConfigurationError, ValueError) as e:
        logger.error(f"Configuration error: {e}")
        return EXIT_FATAL

    logger.info("=" * 70)
    logger.info("REPO SECRET SCANNER")
    logger.info("=" * 70)
    logger.info(f"Scan path: {scan_path}")
    logger.info(f"Threads: {config.threads}")
    logger.info(f"Entropy threshold: {config.entropy_threshold}")
    logger.info(f"Test file policy: {config.test_file_policy.value}")
    logger.info(f"Output format: {args.output_format}")
    logger.info(f"Fail on: {args.fail_on}")
    logger.info("=" * 70)

    try:
        result = SecretScanner(config).scan(scan_path)
    except ScanAbortedError as e:
        logger.error(f"Scan aborted: {e}")
        return EXIT_FATAL
    except RootPathError as e:
        logger.error(str(e))
        return EXIT_FATAL
    except KeyboardInterrupt:
        logger.warning("Scan interrupted by user")
        return EXIT_INTERRUPTED

    generate_report(result, args.output, args.output_format)
    log_summary(result, fail_on)

    if args.upload_sarif and not upload_sarif_report(result, args.output, args.output_format, scan_path):
        return EXIT_FATAL

    return EXIT_OK if result.gate_passed(fail_on) else EXIT_GATE_FAILED


if __name__ == "__main__":
    sys.exit(main())
