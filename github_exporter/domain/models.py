from datetime import datetime
from typing import Dict, List, Optional, Tuple
from pydantic import BaseModel, Field, ConfigDict


class GitIdentity(BaseModel):
    """Author or committer as recorded in the git object itself."""
    model_config = ConfigDict(frozen=True)

    name: str
    email: str
    date: Optional[datetime] = None


class ChangeStats(BaseModel):
    model_config = ConfigDict(frozen=True)

    additions: int = Field(..., ge=0)
    deletions: int = Field(..., ge=0)
    total: int = Field(..., ge=0)


class DiffEntry(BaseModel):
    """Per-file change of a commit. The patch text is deliberately not kept."""
    model_config = ConfigDict(frozen=True)

    sha: Optional[str] = None
    filename: str
    status: str
    additions: int = Field(..., ge=0)
    deletions: int = Field(..., ge=0)
    changes: int = Field(..., ge=0)
    previous_filename: Optional[str] = None


class CommitStub(BaseModel):
    """A commit as returned by the commit listing, before its change details are fetched."""
    model_config = ConfigDict(frozen=True)

    sha: str = Field(..., min_length=1)
    message: str
    author: Optional[GitIdentity] = None
    committer: Optional[GitIdentity] = None


class CommitRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    sha: str = Field(..., min_length=1)
    message: str
    author: Optional[GitIdentity] = None
    committer: Optional[GitIdentity] = None
    stats: ChangeStats
    files: Tuple[DiffEntry, ...] = ()

    @classmethod
    def from_stub(cls, stub: CommitStub, stats: ChangeStats, files: List[DiffEntry]) -> "CommitRecord":
        return cls(
            sha=stub.sha,
            message=stub.message,
            author=stub.author,
            committer=stub.committer,
            stats=stats,
            files=tuple(files),
        )


class RepositoryRecord(BaseModel):
    """
    Immutable domain model representing a GitHub repository of the organization,
    together with the commits harvested for it.
    """
    model_config = ConfigDict(frozen=True)

    id: int = Field(..., description="Numeric repository id from GitHub")
    name: str = Field(..., description="Short name of the repository")
    full_name: str = Field(..., description="owner/name, used to address the repository")
    owner: str = Field(..., description="Login name of the repository owner")
    commits: Tuple[CommitRecord, ...] = Field(
        default=(),
        description="Commits in the order GitHub listed them",
    )

    def with_commits(self, commits: List[CommitRecord]) -> "RepositoryRecord":
        return self.model_copy(update={"commits": tuple(commits)})


class Snapshot(BaseModel):
    """
    Immutable result of one complete harvest cycle.

    `cursor` is the lower bound the harvest fetched commits from and
    `harvested_at` the instant the harvest started, which becomes the
    cursor of the next cycle.
    """
    model_config = ConfigDict(frozen=True)

    repositories: Tuple[RepositoryRecord, ...] = ()
    cursor: datetime
    harvested_at: datetime

    def merged_with(self, newer: "Snapshot") -> "Snapshot":
        """
        Combines this snapshot with a later incremental one.

        Repositories follow the newer listing. Commits already known for a
        repository are kept, commits from `newer` are appended unless their
        sha is already present.
        """
        known: Dict[str, RepositoryRecord] = {repo.full_name: repo for repo in self.repositories}
        merged = []
        for repository in newer.repositories:
            previous = known.get(repository.full_name)
            if previous is None:
                merged.append(repository)
                continue
            seen = {commit.sha for commit in previous.commits}
            commits = list(previous.commits)
            commits.extend(commit for commit in repository.commits if commit.sha not in seen)
            merged.append(repository.with_commits(commits))

        return Snapshot(
            repositories=tuple(merged),
            cursor=self.cursor,
            harvested_at=newer.harvested_at,
        )
