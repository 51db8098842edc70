import unittest
from datetime import datetime, timezone

from prometheus_client.parser import text_string_to_metric_families

from github_exporter.application.scrape_cache import CacheEntry
from github_exporter.domain.models import ChangeStats, CommitRecord, RepositoryRecord, Snapshot
from github_exporter.infrastructure.exposition import render_exposition

CURSOR = datetime(2024, 6, 1, 12, 0, 0, tzinfo=timezone.utc)


def _families(body: bytes):
    return {family.name: family for family in text_string_to_metric_families(body.decode("utf-8"))}


def _entry_with_data() -> CacheEntry:
    snapshot = Snapshot(
        repositories=(
            RepositoryRecord(
                id=1, name="A", full_name="octo-org/A", owner="octo-org",
                commits=(
                    CommitRecord(sha="a1", message="", stats=ChangeStats(additions=10, deletions=1, total=11)),
                    CommitRecord(sha="a2", message="", stats=ChangeStats(additions=5, deletions=0, total=5)),
                ),
            ),
            RepositoryRecord(id=2, name="B", full_name="octo-org/B", owner="octo-org"),
        ),
        cursor=datetime(2015, 11, 28, 21, 0, 9, tzinfo=timezone.utc),
        harvested_at=CURSOR,
    )
    return CacheEntry(snapshot=snapshot, cursor=CURSOR, fetched_at=CURSOR, checked_at=1.0, failures=2)


class TestExposition(unittest.TestCase):
    def test_renders_snapshot_metrics(self) -> None:
        body = render_exposition(_entry_with_data())
        text = body.decode("utf-8")

        self.assertIn("github_repositories 2.0", text)
        self.assertIn("github_commits_total 2.0", text)
        self.assertIn('github_repository_commits_total{repository="A"} 2.0', text)
        self.assertIn('github_repository_commits_total{repository="B"} 0.0', text)
        self.assertIn("github_additions_total 15.0", text)
        self.assertIn("github_deletions_total 1.0", text)
        self.assertIn('github_commit_additions_total{repository="A",sha="a1"} 10.0', text)
        self.assertIn('github_commit_deletions_total{repository="A",sha="a2"} 0.0', text)

    def test_renders_operator_metrics(self) -> None:
        families = _families(render_exposition(_entry_with_data()))

        self.assertEqual(
            families["github_exporter_last_success_timestamp_seconds"].samples[0].value,
            CURSOR.timestamp(),
        )
        self.assertEqual(families["github_exporter_refresh_failures"].samples[0].value, 2.0)
        self.assertEqual(
            families["github_exporter_cursor_timestamp_seconds"].samples[0].value,
            CURSOR.timestamp(),
        )

    def test_no_data_is_a_valid_exposition_without_samples(self) -> None:
        entry = CacheEntry(cursor=CURSOR, checked_at=1.0, failures=1)

        families = _families(render_exposition(entry))

        for name in (
            "github_repositories",
            "github_commits",
            "github_repository_commits",
            "github_additions",
            "github_deletions",
            "github_commit_additions",
            "github_commit_deletions",
            "github_exporter_last_success_timestamp_seconds",
        ):
            self.assertIn(name, families)
            self.assertEqual(families[name].samples, [])
        self.assertEqual(families["github_exporter_refresh_failures"].samples[0].value, 1.0)
