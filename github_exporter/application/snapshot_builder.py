import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import List, Optional

import aiohttp

from github_exporter.domain.models import CommitRecord, RepositoryRecord, Snapshot
from github_exporter.infrastructure.github_client import GitHubRestClient

logger = logging.getLogger(__name__)

# Limit concurrent connections to avoid overwhelming GitHub's servers
CONNECTOR_LIMIT = 10
DEFAULT_MAX_CONCURRENT_REPOSITORIES = 4


class SnapshotBuilder:
    """
    Assembles one complete Snapshot of an organization's commit activity since a cursor.

    Holds no state between builds. Any upstream failure aborts the whole build,
    a partial Snapshot is never returned.
    """

    def __init__(
            self,
            github_client: GitHubRestClient,
            organization: str,
            max_concurrent_repositories: int = DEFAULT_MAX_CONCURRENT_REPOSITORIES,
    ):
        self.github_client = github_client
        self.organization = organization
        self.max_concurrent_repositories = max_concurrent_repositories

    async def build(self, since: datetime, harvested_at: Optional[datetime] = None) -> Snapshot:
        """
        Lists every repository, the commits of each since `since`, and the change
        details of each commit.

        Args:
            since: Lower bound for commit creation time.
            harvested_at: Start instant recorded on the Snapshot; defaults to now.

        Raises:
            UpstreamError: If any single upstream call fails.
        """
        if harvested_at is None:
            harvested_at = datetime.now(timezone.utc).replace(microsecond=0)
        started = time.monotonic()
        logger.info(f"Starting harvest of {self.organization} since {since.isoformat()}.")

        async with aiohttp.ClientSession(
            connector=aiohttp.TCPConnector(limit=CONNECTOR_LIMIT),
        ) as session:
            repositories = await self.github_client.list_repositories(session, self.organization)

            semaphore = asyncio.Semaphore(self.max_concurrent_repositories)
            tasks = [
                asyncio.ensure_future(self._harvest_repository(session, semaphore, repository, since))
                for repository in repositories
            ]
            try:
                harvested = await asyncio.gather(*tasks)
            except Exception:
                for task in tasks:
                    task.cancel()
                # the session must outlive every sibling request
                await asyncio.gather(*tasks, return_exceptions=True)
                raise

        snapshot = Snapshot(
            repositories=tuple(harvested),
            cursor=since,
            harvested_at=harvested_at,
        )
        commit_count = sum(len(repository.commits) for repository in snapshot.repositories)
        logger.info(
            f"Harvest of {self.organization} completed in {time.monotonic() - started:.1f}s: "
            f"{len(snapshot.repositories)} repositories, {commit_count} new commits."
        )
        return snapshot

    async def _harvest_repository(
        self,
        session: aiohttp.ClientSession,
        semaphore: asyncio.Semaphore,
        repository: RepositoryRecord,
        since: datetime,
    ) -> RepositoryRecord:
        async with semaphore:
            stubs = await self.github_client.list_commits_since(session, repository.full_name, since)
            commits: List[CommitRecord] = []
            for stub in stubs:
                stats, files = await self.github_client.get_commit_details(session, repository.full_name, stub.sha)
                commits.append(CommitRecord.from_stub(stub, stats, files))

        logger.debug(f"Harvested {len(commits)} commits of {repository.full_name}.")
        return repository.with_commits(commits)
