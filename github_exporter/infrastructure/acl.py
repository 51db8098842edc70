from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple
from pydantic import ValidationError

from github_exporter.domain.exceptions import DecodeError
from github_exporter.domain.models import (
    ChangeStats,
    CommitStub,
    DiffEntry,
    GitIdentity,
    RepositoryRecord,
)


def parse_github_timestamp(raw: str) -> datetime:
    return datetime.fromisoformat(raw.replace("Z", "+00:00"))


class GitHubTranslator:
    """
    Anti-corruption layer that translates raw GitHub REST JSON payloads into domain models.

    Every payload that does not match the expected shape raises DecodeError.
    A malformed payload is never turned into an empty result.
    """

    @staticmethod
    def _require_mapping(raw: Any, what: str) -> Dict[str, Any]:
        if not isinstance(raw, dict):
            raise DecodeError(f"Expected a JSON object for {what}, got {type(raw).__name__}.")
        return raw

    @staticmethod
    def _require_list(raw: Any, what: str) -> List[Any]:
        if not isinstance(raw, list):
            raise DecodeError(f"Expected a JSON array for {what}, got {type(raw).__name__}.")
        return raw

    @staticmethod
    def to_repository(raw_repo: Any) -> RepositoryRecord:
        """
        Transforms one element of `GET /orgs/{org}/repos` into a RepositoryRecord.

        Args:
            raw_repo: The raw JSON object from GitHub's repository listing.

        Returns:
            RepositoryRecord: The repository, without commits.
        """
        raw_repo = GitHubTranslator._require_mapping(raw_repo, "repository")
        owner_data = raw_repo.get('owner')
        if not isinstance(owner_data, dict):
            raise DecodeError(f"Repository {raw_repo.get('full_name')!r} has no owner object.")

        try:
            return RepositoryRecord(
                id=raw_repo.get('id'),
                name=raw_repo.get('name'),
                full_name=raw_repo.get('full_name'),
                owner=owner_data.get('login'),
            )
        except ValidationError as e:
            raise DecodeError(f"Malformed repository payload: {e}") from e

    @staticmethod
    def _to_identity(raw_user: Any) -> Optional[GitIdentity]:
        if raw_user is None:
            return None
        raw_user = GitHubTranslator._require_mapping(raw_user, "git identity")
        raw_date = raw_user.get('date')
        return GitIdentity(
            name=raw_user.get('name'),
            email=raw_user.get('email'),
            date=parse_github_timestamp(raw_date) if raw_date else None,
        )

    @staticmethod
    def to_commit_stub(raw_commit: Any) -> CommitStub:
        """Transforms one element of `GET /repos/{full_name}/commits` into a CommitStub."""
        raw_commit = GitHubTranslator._require_mapping(raw_commit, "commit")
        git_commit = raw_commit.get('commit')
        if not isinstance(git_commit, dict):
            raise DecodeError(f"Commit {raw_commit.get('sha')!r} has no git commit object.")

        try:
            return CommitStub(
                sha=raw_commit.get('sha'),
                message=git_commit.get('message'),
                author=GitHubTranslator._to_identity(git_commit.get('author')),
                committer=GitHubTranslator._to_identity(git_commit.get('committer')),
            )
        except (ValidationError, ValueError) as e:
            raise DecodeError(f"Malformed commit payload: {e}") from e

    @staticmethod
    def to_change_details(raw_details: Any) -> Tuple[ChangeStats, List[DiffEntry]]:
        """Extracts stats and per-file entries from `GET /repos/{full_name}/commits/{sha}`."""
        raw_details = GitHubTranslator._require_mapping(raw_details, "commit details")
        raw_stats = raw_details.get('stats')
        if not isinstance(raw_stats, dict):
            raise DecodeError(f"Commit {raw_details.get('sha')!r} has no stats object.")
        raw_files = GitHubTranslator._require_list(raw_details.get('files', []), "commit files")
        for raw_file in raw_files:
            GitHubTranslator._require_mapping(raw_file, "commit file")

        try:
            stats = ChangeStats(
                additions=raw_stats.get('additions'),
                deletions=raw_stats.get('deletions'),
                total=raw_stats.get('total'),
            )
            files = [
                DiffEntry(
                    sha=raw_file.get('sha'),
                    filename=raw_file.get('filename'),
                    status=raw_file.get('status'),
                    additions=raw_file.get('additions'),
                    deletions=raw_file.get('deletions'),
                    changes=raw_file.get('changes'),
                    previous_filename=raw_file.get('previous_filename'),
                )
                for raw_file in raw_files
            ]
        except ValidationError as e:
            raise DecodeError(f"Malformed commit details payload: {e}") from e

        return stats, files
