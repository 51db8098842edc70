"""
Pure functions deriving metric values from a Snapshot.

Repositories and commits are visited in Snapshot order, so the output for a
given Snapshot is always the same.
"""
from typing import List, Tuple

from github_exporter.domain.models import Snapshot


def extract_number_of_repositories(snapshot: Snapshot) -> int:
    return len(snapshot.repositories)


def extract_number_of_commits(snapshot: Snapshot) -> int:
    return sum(len(repository.commits) for repository in snapshot.repositories)


def extract_number_of_commits_per_repository(snapshot: Snapshot) -> List[Tuple[str, int]]:
    return [(repository.name, len(repository.commits)) for repository in snapshot.repositories]


def extract_total_number_of_additions(snapshot: Snapshot) -> int:
    return sum(
        commit.stats.additions
        for repository in snapshot.repositories
        for commit in repository.commits
    )


def extract_total_number_of_deletions(snapshot: Snapshot) -> int:
    return sum(
        commit.stats.deletions
        for repository in snapshot.repositories
        for commit in repository.commits
    )


def extract_additions_per_commit(snapshot: Snapshot) -> List[Tuple[str, str, int]]:
    """(repository name, sha, additions) for every commit."""
    return [
        (repository.name, commit.sha, commit.stats.additions)
        for repository in snapshot.repositories
        for commit in repository.commits
    ]


def extract_deletions_per_commit(snapshot: Snapshot) -> List[Tuple[str, str, int]]:
    """(repository name, sha, deletions) for every commit."""
    return [
        (repository.name, commit.sha, commit.stats.deletions)
        for repository in snapshot.repositories
        for commit in repository.commits
    ]
