from typing import Iterator

from prometheus_client import CollectorRegistry, generate_latest
from prometheus_client.metrics_core import CounterMetricFamily, GaugeMetricFamily, Metric
from prometheus_client.registry import Collector

from github_exporter.application import metric_extractor
from github_exporter.application.scrape_cache import CacheEntry


class SnapshotCollector(Collector):
    """
    Exposes one CacheEntry as Prometheus metric families.

    Every family is always declared. Families derived from the Snapshot carry
    no samples until a harvest has succeeded.
    """

    def __init__(self, entry: CacheEntry):
        self.entry = entry

    def collect(self) -> Iterator[Metric]:
        snapshot = self.entry.snapshot

        repositories = GaugeMetricFamily(
            "github_repositories", "Number of repositories in the organization"
        )
        commits = CounterMetricFamily(
            "github_commits", "Number of commits across all repositories"
        )
        repository_commits = CounterMetricFamily(
            "github_repository_commits", "Number of commits per repository", labels=["repository"]
        )
        additions = CounterMetricFamily(
            "github_additions", "Lines added across all commits"
        )
        deletions = CounterMetricFamily(
            "github_deletions", "Lines deleted across all commits"
        )
        commit_additions = CounterMetricFamily(
            "github_commit_additions", "Lines added per commit", labels=["repository", "sha"]
        )
        commit_deletions = CounterMetricFamily(
            "github_commit_deletions", "Lines deleted per commit", labels=["repository", "sha"]
        )

        if snapshot is not None:
            repositories.add_metric([], metric_extractor.extract_number_of_repositories(snapshot))
            commits.add_metric([], metric_extractor.extract_number_of_commits(snapshot))
            for name, count in metric_extractor.extract_number_of_commits_per_repository(snapshot):
                repository_commits.add_metric([name], count)
            additions.add_metric([], metric_extractor.extract_total_number_of_additions(snapshot))
            deletions.add_metric([], metric_extractor.extract_total_number_of_deletions(snapshot))
            for name, sha, count in metric_extractor.extract_additions_per_commit(snapshot):
                commit_additions.add_metric([name, sha], count)
            for name, sha, count in metric_extractor.extract_deletions_per_commit(snapshot):
                commit_deletions.add_metric([name, sha], count)

        yield repositories
        yield commits
        yield repository_commits
        yield additions
        yield deletions
        yield commit_additions
        yield commit_deletions

        last_success = GaugeMetricFamily(
            "github_exporter_last_success_timestamp_seconds",
            "Unix time of the last successful harvest",
        )
        if self.entry.fetched_at is not None:
            last_success.add_metric([], self.entry.fetched_at.timestamp())
        yield last_success
        yield CounterMetricFamily(
            "github_exporter_refresh_failures",
            "Number of harvests that failed upstream",
            value=self.entry.failures,
        )
        yield GaugeMetricFamily(
            "github_exporter_cursor_timestamp_seconds",
            "Unix time commits are currently harvested from",
            value=self.entry.cursor.timestamp(),
        )


def render_exposition(entry: CacheEntry) -> bytes:
    """Renders the entry in the Prometheus text exposition format."""
    registry = CollectorRegistry(auto_describe=False)
    registry.register(SnapshotCollector(entry))
    return generate_latest(registry)
