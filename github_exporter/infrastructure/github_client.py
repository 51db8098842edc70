import aiohttp
import asyncio
import logging
import math
import random
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Dict, List, Optional, Tuple

from github_exporter.domain.exceptions import (
    DecodeError,
    RateLimitExceededException,
    TransportError,
)
from github_exporter.domain.models import ChangeStats, CommitStub, DiffEntry, RepositoryRecord
from github_exporter.infrastructure.acl import GitHubTranslator

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.github.com"
PAGE_SIZE = 100
REQUEST_TIMEOUT = aiohttp.ClientTimeout(total=60, connect=10)
MAX_RETRIES = 5
RETRYABLE_STATUSES = {500, 502, 503, 504}
MAX_RETRY_AFTER = 300


def parse_retry_after(raw: str, now: Optional[datetime] = None) -> int:
    """
    Seconds to wait for a `Retry-After` header, given either as delay-seconds
    or as an HTTP date. Capped at MAX_RETRY_AFTER.
    """
    raw = raw.strip()
    if raw.isdecimal():
        seconds = int(raw)
    else:
        try:
            retry_at = parsedate_to_datetime(raw)
        except (TypeError, ValueError) as e:
            raise TransportError(f"Unparseable Retry-After header {raw!r}.") from e
        if retry_at.tzinfo is None:
            retry_at = retry_at.replace(tzinfo=timezone.utc)
        now = now or datetime.now(timezone.utc)
        seconds = max(math.ceil((retry_at - now).total_seconds()), 0)
    return min(seconds, MAX_RETRY_AFTER)


def parse_rate_limit_reset(raw: Optional[str]) -> Optional[datetime]:
    """Instant encoded in `X-RateLimit-Reset` (epoch seconds), or None when absent or malformed."""
    if not raw:
        return None
    try:
        return datetime.fromtimestamp(int(raw), tz=timezone.utc)
    except (ValueError, OverflowError, OSError):
        logger.warning(f"Ignoring malformed X-RateLimit-Reset header {raw!r}.")
        return None


def format_since(since: datetime) -> str:
    """Renders a cursor the way the commits endpoint expects it: ISO-8601 UTC with a Z suffix."""
    return since.astimezone(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


class GitHubRestClient:
    """
    Client for the parts of the GitHub REST API the exporter harvests.
    Handles authentication, pagination, retries and rate limit signalling.

    The caller owns the aiohttp session so that one harvest shares its connection pool.
    """

    def __init__(self, token: str, api_url: str = DEFAULT_API_URL):
        self.headers = {
            "Authorization": f"Bearer {token}",
            "Accept": "application/vnd.github+json",
            "User-Agent": "github-exporter",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        self.api_url = api_url.rstrip("/")

    async def list_repositories(
        self, session: aiohttp.ClientSession, organization: str
    ) -> List[RepositoryRecord]:
        url = f"{self.api_url}/orgs/{organization}/repos"
        raw_repos = await self._get_paginated(session, url, {"per_page": PAGE_SIZE})
        logger.debug(f"Listed {len(raw_repos)} repositories of {organization}.")
        return [GitHubTranslator.to_repository(raw) for raw in raw_repos]

    async def list_commits_since(
        self, session: aiohttp.ClientSession, full_name: str, since: datetime
    ) -> List[CommitStub]:
        url = f"{self.api_url}/repos/{full_name}/commits"
        params = {"since": format_since(since), "per_page": PAGE_SIZE}
        # 409 is GitHub's answer for a repository without any commits
        raw_commits = await self._get_paginated(session, url, params, empty_on_conflict=True)
        logger.debug(f"Listed {len(raw_commits)} commits of {full_name} since {params['since']}.")
        return [GitHubTranslator.to_commit_stub(raw) for raw in raw_commits]

    async def get_commit_details(
        self, session: aiohttp.ClientSession, full_name: str, sha: str
    ) -> Tuple[ChangeStats, List[DiffEntry]]:
        url = f"{self.api_url}/repos/{full_name}/commits/{sha}"
        data, _ = await self._request_json(session, url, None)
        return GitHubTranslator.to_change_details(data)

    async def _get_paginated(
        self,
        session: aiohttp.ClientSession,
        url: str,
        params: Optional[Dict[str, Any]],
        empty_on_conflict: bool = False,
    ) -> List[Any]:
        """Follows `Link: rel="next"` headers and concatenates every page."""
        items: List[Any] = []
        next_url: Optional[str] = url
        while next_url is not None:
            data, following = await self._request_json(session, next_url, params, empty_on_conflict)
            if not isinstance(data, list):
                raise DecodeError(f"Expected a JSON array from {next_url}, got {type(data).__name__}.")
            items.extend(data)
            # the next link already carries the query string
            next_url, params = following, None
        return items

    async def _request_json(
        self,
        session: aiohttp.ClientSession,
        url: str,
        params: Optional[Dict[str, Any]],
        empty_on_conflict: bool = False,
    ) -> Tuple[Any, Optional[str]]:
        """
        Performs one GET with retries.

        Returns:
            Tuple of (decoded JSON body, URL of the next page or None).
        """
        for attempt in range(MAX_RETRIES):
            try:
                async with session.get(url, params=params, headers=self.headers, timeout=REQUEST_TIMEOUT) as response:
                    logger.debug(f"GET {url} - Status code: {response.status}")

                    if response.status in {403, 429}:
                        # Secondary rate limit (abuse detection)
                        retry_after = response.headers.get('Retry-After')
                        if retry_after is not None:
                            sleep_time = parse_retry_after(retry_after)
                            logger.warning(f"Secondary rate limit ({response.status}). Sleeping {sleep_time}s...")
                            await asyncio.sleep(sleep_time)
                            continue
                        if response.headers.get('X-RateLimit-Remaining') == '0':
                            reset_at = parse_rate_limit_reset(response.headers.get('X-RateLimit-Reset'))
                            raise RateLimitExceededException(reset_at=reset_at)
                        raise TransportError(f"GET {url} was refused with status {response.status}.", response.status)

                    if response.status == 409 and empty_on_conflict:
                        return [], None

                    if response.status in RETRYABLE_STATUSES:
                        sleep_time = (2 ** attempt) + random.uniform(0, 1)
                        logger.warning(
                            f"Server error ({response.status}) for {url}, "
                            f"retrying in {sleep_time:.1f}s (attempt {attempt + 1}/{MAX_RETRIES})..."
                        )
                        await asyncio.sleep(sleep_time)
                        continue

                    if response.status >= 400:
                        raise TransportError(f"GET {url} failed with status {response.status}.", response.status)

                    try:
                        data = await response.json(content_type=None)
                    except ValueError as e:
                        raise DecodeError(f"Response from {url} is not valid JSON: {e}") from e

                    next_link = response.links.get('next')
                    next_url = str(next_link['url']) if next_link else None
                    return data, next_url

            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                sleep_time = (2 ** attempt) + random.uniform(0, 1)
                logger.warning(
                    f"Request to {url} failed (attempt {attempt + 1}/{MAX_RETRIES}): {e!r}. "
                    f"Retrying in {sleep_time:.1f}s..."
                )
                await asyncio.sleep(sleep_time)

        raise TransportError(f"GET {url} failed after {MAX_RETRIES} attempts.")
