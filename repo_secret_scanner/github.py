"""
GitHub code scanning integration: upload a SARIF report so findings show up
as code-scanning alerts.
"""
import asyncio
import base64
import gzip
import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

import aiohttp

from repo_secret_scanner.config import SCANNER_NAME

logger = logging.getLogger(__name__)

# ===================================================================
# CONFIGURATION & CONSTANTS
# ===================================================================

GITHUB_API_URL = os.environ.get("GITHUB_API_URL", "https://api.github.com")
GITHUB_API_VERSION = "2022-11-28"
GITHUB_API_MAX_RETRIES = int(os.environ.get("GITHUB_API_MAX_RETRIES", "3"))
GITHUB_API_BACKOFF_BASE = float(os.environ.get("GITHUB_API_BACKOFF_BASE", "2.0"))
GITHUB_API_TIMEOUT = int(os.environ.get("GITHUB_API_TIMEOUT", "60"))
DEFAULT_REF = "refs/heads/main"
UPLOAD_ENDPOINT = "/repos/{owner}/{repo}/code-scanning/sarifs"
MAX_SARIF_SIZE_BYTES = 10 * 1024 * 1024  # GitHub limit on the gzipped upload

# Status codes worth retrying
RETRYABLE_STATUS = {429, 500, 502, 503, 504}

FAILURE_MESSAGES = {
    401: "Authentication failed. Check GITHUB_TOKEN permissions.",
    403: "Forbidden. Code scanning may not be enabled for this repository.",
    404: "Repository not found: {repository}",
}


@dataclass
class UploadResult:
    success: bool
    message: str
    upload_id: Optional[str] = None
    status: Optional[int] = None


@dataclass
class GitHubCodeScanning:
    """Client for the code-scanning SARIF upload endpoint."""

    token: str
    repository: str  # owner/repo
    ref: str = DEFAULT_REF
    commit_sha: Optional[str] = None
    api_url: str = GITHUB_API_URL
    max_retries: int = GITHUB_API_MAX_RETRIES
    backoff_base: float = GITHUB_API_BACKOFF_BASE

    @classmethod
    def from_environment(cls) -> Optional["GitHubCodeScanning"]:
        """
        Build a client from the GitHub Actions environment.

        Reads GITHUB_TOKEN, GITHUB_REPOSITORY ("owner/repo"), GITHUB_REF and
        GITHUB_SHA. Returns None when the token or repository is missing.
        """
        token = os.environ.get("GITHUB_TOKEN")
        repository = os.environ.get("GITHUB_REPOSITORY")
        if not token or not repository:
            return None
        return cls(
            token=token,
            repository=repository,
            ref=os.environ.get("GITHUB_REF") or DEFAULT_REF,
            commit_sha=os.environ.get("GITHUB_SHA") or None,
        )

    @property
    def owner(self) -> str:
        return self.repository.split("/", 1)[0]

    @property
    def repo(self) -> str:
        return self.repository.split("/", 1)[1] if "/" in self.repository else ""

    def validate(self) -> List[str]:
        errors = []
        if not self.token:
            errors.append("GitHub token is required")
        if not self.owner or not self.repo:
            errors.append(f"Repository must be in owner/repo form, got {self.repository!r}")
        if not self.ref:
            errors.append("Git reference is required")
        return errors

    @property
    def upload_url(self) -> str:
        return self.api_url.rstrip("/") + UPLOAD_ENDPOINT.format(owner=self.owner, repo=self.repo)

    @property
    def headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.token}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": GITHUB_API_VERSION,
        }

    @staticmethod
    def encode_sarif(sarif_content: bytes) -> str:
        """Gzip then base64 encode, as the upload endpoint expects."""
        return base64.b64encode(gzip.compress(sarif_content)).decode("ascii")

    def build_payload(self, encoded_sarif: str, commit_sha: str) -> Dict[str, Any]:
        return {
            "commit_sha": commit_sha,
            "ref": self.ref,
            "sarif": encoded_sarif,
            "tool_name": SCANNER_NAME,
        }

    async def upload_sarif(
        self,
        sarif_file: Path,
        commit_sha: Optional[str] = None,
        repository_root: Optional[Path] = None,
    ) -> UploadResult:
        """
        Upload a SARIF file.

        Args:
            sarif_file: Path to the SARIF report
            commit_sha: Analyzed commit; defaults to GITHUB_SHA or ``git rev-parse HEAD``
            repository_root: Checkout that was scanned, where ``git rev-parse`` runs
                (defaults to the current directory)

        Returns:
            UploadResult describing the outcome. Transient failures are retried
            with exponential backoff before a failure is returned.
        """
        errors = self.validate()
        if errors:
            return UploadResult(False, "; ".join(errors))

        if not sarif_file.exists():
            return UploadResult(False, f"SARIF file not found: {sarif_file}")

        commit_sha = commit_sha or self.commit_sha or await get_current_commit_sha(repository_root or Path.cwd())
        if not commit_sha:
            return UploadResult(False, "Cannot determine commit SHA; set GITHUB_SHA")

        encoded = self.encode_sarif(sarif_file.read_bytes())
        if len(encoded) > MAX_SARIF_SIZE_BYTES:
            return UploadResult(
                False, f"SARIF upload exceeds maximum size of {MAX_SARIF_SIZE_BYTES // (1024 * 1024)}MB",
            )

        payload = self.build_payload(encoded, commit_sha)
        timeout = aiohttp.ClientTimeout(total=GITHUB_API_TIMEOUT)
        async with aiohttp.ClientSession(headers=self.headers, timeout=timeout) as session:
            return await self._post_with_backoff(session, payload)

    async def _post_with_backoff(self, session: aiohttp.ClientSession, payload: Dict[str, Any]) -> UploadResult:
        result = UploadResult(False, "Upload not attempted")

        for attempt in range(self.max_retries):
            try:
                async with session.post(self.upload_url, json=payload) as response:
                    body = await response.text()
                    result = self._interpret(response.status, body)
                    if response.status not in RETRYABLE_STATUS:
                        return result
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                result = UploadResult(False, f"Failed to upload SARIF: {e}")

            if attempt < self.max_retries - 1:
                wait_time = self.backoff_base ** attempt
                logger.warning(f"SARIF upload failed (attempt {attempt + 1}/{self.max_retries}): {result.message}")
                logger.info(f"Backing off for {wait_time:.1f}s")
                await asyncio.sleep(wait_time)

        return result

    def _interpret(self, status: int, body: str) -> UploadResult:
        if 200 <= status < 300:
            upload_id = parse_upload_id(body)
            message = "SARIF uploaded successfully"
            if status == 202:
                message += ". Processing in background."
            return UploadResult(True, message, upload_id, status)

        message = FAILURE_MESSAGES.get(status, "Upload failed with HTTP {status}: {body}")
        return UploadResult(False, message.format(repository=self.repository, status=status, body=body[:500]), status=status)


def parse_upload_id(body: str) -> Optional[str]:
    try:
        data = json.loads(body) if body.strip() else {}
    except ValueError:
        logger.debug(f"Unparseable upload response: {body[:200]}")
        return None
    return data.get("id") if isinstance(data, dict) else None


async def get_current_commit_sha(working_directory: Path) -> Optional[str]:
    """Return ``git rev-parse HEAD`` for the working directory, or None."""
    try:
        proc = await asyncio.create_subprocess_exec(
            "git", "rev-parse", "HEAD",
            cwd=working_directory,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE
        )
        stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=10)
    except asyncio.TimeoutError:
        logger.debug("git rev-parse timed out")
        return None
    except OSError as e:
        logger.debug(f"git rev-parse failed: {e}")
        return None

    if proc.returncode != 0:
        return None
    return stdout.decode('utf-8').strip() or None
