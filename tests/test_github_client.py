import asyncio
import unittest
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import aiohttp

from github_exporter.domain.exceptions import DecodeError, RateLimitExceededException, TransportError
from github_exporter.infrastructure.github_client import (
    MAX_RETRIES,
    MAX_RETRY_AFTER,
    GitHubRestClient,
    format_since,
    parse_retry_after,
)


def _response(status=200, body=None, headers=None, links=None, json_error=None):
    response = AsyncMock()
    response.status = status
    response.headers = headers or {}
    response.links = links or {}
    if json_error is not None:
        response.json = AsyncMock(side_effect=json_error)
    else:
        response.json = AsyncMock(return_value=body)
    response.__aenter__ = AsyncMock(return_value=response)
    response.__aexit__ = AsyncMock(return_value=False)
    return response


def _raw_repository(name):
    return {"id": 1, "name": name, "full_name": f"octo-org/{name}", "owner": {"login": "octo-org"}}


class TestGitHubRestClient(unittest.TestCase):
    def test_headers_are_dict(self) -> None:
        token = "test-token"
        client = GitHubRestClient(token=token)

        self.assertIsInstance(client.headers, dict)
        self.assertEqual(client.headers["Authorization"], f"Bearer {token}")

    def test_headers_include_user_agent(self) -> None:
        client = GitHubRestClient(token="t")
        self.assertIn("User-Agent", client.headers)
        self.assertEqual(client.headers["Accept"], "application/vnd.github+json")

    def test_format_since_uses_utc_z_suffix(self) -> None:
        since = datetime(2024, 1, 2, 4, 4, 5, 123456, tzinfo=timezone(timedelta(hours=1)))
        self.assertEqual(format_since(since), "2024-01-02T03:04:05Z")


class TestListings(unittest.IsolatedAsyncioTestCase):
    async def test_list_repositories_follows_next_links(self) -> None:
        client = GitHubRestClient(token="test-token", api_url="https://github.example/api/")
        page_1 = _response(
            body=[_raw_repository("a"), _raw_repository("b")],
            links={"next": {"url": "https://github.example/api/orgs/octo-org/repos?page=2"}},
        )
        page_2 = _response(body=[_raw_repository("c")])

        session = MagicMock()
        session.get = MagicMock(side_effect=[page_1, page_2])

        repositories = await client.list_repositories(session, "octo-org")

        self.assertEqual([r.name for r in repositories], ["a", "b", "c"])
        first_call, second_call = session.get.call_args_list
        self.assertEqual(first_call.args[0], "https://github.example/api/orgs/octo-org/repos")
        self.assertEqual(first_call.kwargs["params"], {"per_page": 100})
        self.assertEqual(second_call.args[0], "https://github.example/api/orgs/octo-org/repos?page=2")
        self.assertIsNone(second_call.kwargs["params"])

    async def test_list_commits_sends_since(self) -> None:
        client = GitHubRestClient(token="test-token")
        raw_commit = {"sha": "abc", "commit": {"message": "m", "author": None, "committer": None}}
        session = MagicMock()
        session.get = MagicMock(return_value=_response(body=[raw_commit]))

        stubs = await client.list_commits_since(
            session, "octo-org/a", datetime(2024, 1, 1, tzinfo=timezone.utc)
        )

        self.assertEqual([s.sha for s in stubs], ["abc"])
        params = session.get.call_args.kwargs["params"]
        self.assertEqual(params["since"], "2024-01-01T00:00:00Z")

    async def test_empty_repository_conflict_is_zero_commits(self) -> None:
        client = GitHubRestClient(token="test-token")
        session = MagicMock()
        session.get = MagicMock(return_value=_response(status=409, body={"message": "Git Repository is empty."}))

        stubs = await client.list_commits_since(
            session, "octo-org/empty", datetime(2024, 1, 1, tzinfo=timezone.utc)
        )

        self.assertEqual(stubs, [])

    async def test_listing_that_is_not_an_array_raises(self) -> None:
        client = GitHubRestClient(token="test-token")
        session = MagicMock()
        session.get = MagicMock(return_value=_response(body={"message": "Not Found"}))

        with self.assertRaises(DecodeError):
            await client.list_repositories(session, "octo-org")


class TestFailures(unittest.IsolatedAsyncioTestCase):
    async def test_403_retry_after_is_respected(self) -> None:
        """When GitHub returns 403 + Retry-After, the client sleeps and retries."""
        client = GitHubRestClient(token="test-token")
        resp_403 = _response(status=403, headers={"Retry-After": "1"})
        resp_200 = _response(body={"stats": {"additions": 3, "deletions": 1, "total": 4}, "files": []})

        session = MagicMock()
        session.get = MagicMock(side_effect=[resp_403, resp_200])

        with patch("github_exporter.infrastructure.github_client.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
            stats, files = await client.get_commit_details(session, "octo-org/a", "abc")

        mock_sleep.assert_any_call(1)
        self.assertEqual(stats.additions, 3)
        self.assertEqual(files, [])

    async def test_exhausted_rate_limit_raises(self) -> None:
        client = GitHubRestClient(token="test-token")
        response = _response(
            status=403,
            headers={"X-RateLimit-Remaining": "0", "X-RateLimit-Reset": "1704067200"},
        )
        session = MagicMock()
        session.get = MagicMock(return_value=response)

        with self.assertRaises(RateLimitExceededException) as ctx:
            await client.get_commit_details(session, "octo-org/a", "abc")

        self.assertEqual(ctx.exception.reset_at, datetime(2024, 1, 1, tzinfo=timezone.utc))
        self.assertIsInstance(ctx.exception, TransportError)

    async def test_server_errors_exhaust_retries(self) -> None:
        client = GitHubRestClient(token="test-token")
        session = MagicMock()
        session.get = MagicMock(side_effect=[_response(status=502) for _ in range(MAX_RETRIES)])

        with patch("github_exporter.infrastructure.github_client.asyncio.sleep", new_callable=AsyncMock):
            with self.assertRaises(TransportError):
                await client.list_repositories(session, "octo-org")

        self.assertEqual(session.get.call_count, MAX_RETRIES)

    async def test_connection_error_is_retried(self) -> None:
        client = GitHubRestClient(token="test-token")
        session = MagicMock()
        session.get = MagicMock(side_effect=[
            aiohttp.ClientConnectionError("reset"),
            asyncio.TimeoutError(),
            _response(body=[_raw_repository("a")]),
        ])

        with patch("github_exporter.infrastructure.github_client.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
            repositories = await client.list_repositories(session, "octo-org")

        self.assertEqual(len(repositories), 1)
        self.assertEqual(mock_sleep.await_count, 2)

    async def test_not_found_raises_transport_error(self) -> None:
        client = GitHubRestClient(token="test-token")
        session = MagicMock()
        session.get = MagicMock(return_value=_response(status=404))

        with self.assertRaises(TransportError) as ctx:
            await client.list_repositories(session, "missing-org")

        self.assertEqual(ctx.exception.status, 404)

    async def test_invalid_json_raises_decode_error(self) -> None:
        client = GitHubRestClient(token="test-token")
        session = MagicMock()
        session.get = MagicMock(return_value=_response(json_error=ValueError("Expecting value")))

        with self.assertRaises(DecodeError):
            await client.list_repositories(session, "octo-org")

    async def test_retry_after_http_date_is_honoured(self) -> None:
        client = GitHubRestClient(token="test-token")
        resp_429 = _response(status=429, headers={"Retry-After": "Wed, 21 Oct 2015 07:28:00 GMT"})
        resp_200 = _response(body=[_raw_repository("a")])

        session = MagicMock()
        session.get = MagicMock(side_effect=[resp_429, resp_200])

        with patch("github_exporter.infrastructure.github_client.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
            repositories = await client.list_repositories(session, "octo-org")

        # a date in the past means retry right away
        mock_sleep.assert_any_call(0)
        self.assertEqual([r.name for r in repositories], ["a"])

    async def test_garbled_retry_after_raises_transport_error(self) -> None:
        client = GitHubRestClient(token="test-token")
        session = MagicMock()
        session.get = MagicMock(return_value=_response(status=429, headers={"Retry-After": "soon"}))

        with self.assertRaises(TransportError):
            await client.list_repositories(session, "octo-org")

    async def test_malformed_rate_limit_reset_still_raises_rate_limit(self) -> None:
        client = GitHubRestClient(token="test-token")
        response = _response(
            status=403,
            headers={"X-RateLimit-Remaining": "0", "X-RateLimit-Reset": "tomorrow"},
        )
        session = MagicMock()
        session.get = MagicMock(return_value=response)

        with self.assertRaises(RateLimitExceededException) as ctx:
            await client.list_repositories(session, "octo-org")

        self.assertIsNone(ctx.exception.reset_at)


class TestParseRetryAfter(unittest.TestCase):
    def test_delay_seconds(self) -> None:
        self.assertEqual(parse_retry_after(" 7 "), 7)

    def test_http_date_relative_to_now(self) -> None:
        now = datetime(2026, 10, 21, 7, 27, 30, tzinfo=timezone.utc)
        self.assertEqual(parse_retry_after("Wed, 21 Oct 2026 07:28:00 GMT", now=now), 30)

    def test_long_waits_are_capped(self) -> None:
        now = datetime(2026, 10, 20, tzinfo=timezone.utc)
        self.assertEqual(parse_retry_after("Wed, 21 Oct 2026 07:28:00 GMT", now=now), MAX_RETRY_AFTER)
        self.assertEqual(parse_retry_after("86400"), MAX_RETRY_AFTER)

    def test_unparseable_value_raises(self) -> None:
        with self.assertRaises(TransportError):
            parse_retry_after("in a bit")
