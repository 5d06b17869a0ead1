"""Pull-request merge status lookup used by the ``pr_link`` close gate.

The lookup is an external dependency with a short timeout. Any failure
(timeout, HTTP error, unparseable URL) returns ``None`` so the gate can
degrade to pass instead of blocking on GitHub.
"""

from __future__ import annotations

import os
import re
from typing import Optional, Protocol

import httpx
from loguru import logger

from .constants import PR_LOOKUP_TIMEOUT_SECONDS

GITHUB_API_BASE = "https://api.github.com"
_PR_URL = re.compile(r"^https?://github\.com/([^/\s]+)/([^/\s]+)/pull/(\d+)")


class PrStatusLookup(Protocol):
    def is_merged(self, pr_url: str) -> Optional[bool]:
        """``True``/``False`` when known, ``None`` when the lookup is unavailable."""
        ...


def parse_pr_url(pr_url: str) -> Optional[tuple[str, str, int]]:
    match = _PR_URL.match((pr_url or "").strip())
    if not match:
        return None
    owner, repo, number = match.groups()
    return owner, repo, int(number)


class GitHubPrStatusLookup:
    """Query the GitHub REST API for a PR's ``merged`` flag.

    Args:
        token: API token; defaults to ``$GITHUB_TOKEN``.
        timeout: Request timeout in seconds.
        transport: Optional httpx transport (tests pass ``httpx.MockTransport``).
    """

    def __init__(
        self,
        token: Optional[str] = None,
        *,
        timeout: float = PR_LOOKUP_TIMEOUT_SECONDS,
        transport: Optional[httpx.BaseTransport] = None,
        base_url: str = GITHUB_API_BASE,
    ) -> None:
        self.token = token if token is not None else os.environ.get("GITHUB_TOKEN")
        self.timeout = timeout
        self.transport = transport
        self.base_url = base_url.rstrip("/")

    @property
    def headers(self) -> dict[str, str]:
        headers = {"Accept": "application/vnd.github+json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def is_merged(self, pr_url: str) -> Optional[bool]:
        parsed = parse_pr_url(pr_url)
        if parsed is None:
            logger.debug("Not a GitHub PR URL, skipping lookup: {}", pr_url)
            return None
        owner, repo, number = parsed
        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                response = client.get(
                    f"{self.base_url}/repos/{owner}/{repo}/pulls/{number}",
                    headers=self.headers,
                )
            if response.status_code != 200:
                logger.warning("PR lookup for {} returned HTTP {}", pr_url, response.status_code)
                return None
            return bool(response.json().get("merged"))
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("PR lookup for {} failed: {}", pr_url, exc)
            return None
