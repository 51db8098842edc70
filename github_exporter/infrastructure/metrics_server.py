import asyncio
import logging

from aiohttp import web
from prometheus_client import CONTENT_TYPE_LATEST

from github_exporter.application.scrape_cache import ScrapeCache
from github_exporter.domain.exceptions import ConcurrencyError
from github_exporter.infrastructure.exposition import render_exposition

logger = logging.getLogger(__name__)

SCRAPE_CACHE_KEY = web.AppKey("scrape_cache", ScrapeCache)


async def handle_metrics(request: web.Request) -> web.Response:
    cache = request.app[SCRAPE_CACHE_KEY]
    try:
        await cache.get_or_refresh()
    except ConcurrencyError as e:
        logger.error(f"Refresh skipped, serving the installed snapshot: {e}")
    except Exception:
        logger.exception("Refresh raised an unexpected error, serving the installed snapshot")

    body = render_exposition(cache.entry)
    return web.Response(body=body, headers={"Content-Type": CONTENT_TYPE_LATEST})


def create_app(cache: ScrapeCache) -> web.Application:
    app = web.Application()
    app[SCRAPE_CACHE_KEY] = cache
    app.router.add_get("/metrics", handle_metrics)
    return app


async def serve(cache: ScrapeCache, host: str, port: int, stop_event: asyncio.Event) -> None:
    """
    Serves /metrics until `stop_event` is set, then stops accepting connections,
    lets in-flight requests finish and waits for a running harvest.
    """
    runner = web.AppRunner(create_app(cache), handle_signals=False)
    await runner.setup()
    site = web.TCPSite(runner, host, port)
    await site.start()
    logger.info(f"Serving metrics on http://{host}:{port}/metrics")

    try:
        await stop_event.wait()
        logger.info("Shutdown requested. Closing the metrics listener...")
    finally:
        await runner.cleanup()
        await cache.drain()
    logger.info("Metrics server stopped.")
