import asyncio
import logging
import signal
import sys
from dotenv import load_dotenv

from github_exporter.application.scrape_cache import ScrapeCache
from github_exporter.application.snapshot_builder import SnapshotBuilder
from github_exporter.domain.exceptions import ConfigurationError
from github_exporter.infrastructure.github_client import GitHubRestClient
from github_exporter.infrastructure.metrics_server import serve
from github_exporter.infrastructure.settings import Settings, load_settings

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format=LOG_FORMAT,
    handlers=[
        logging.StreamHandler(sys.stdout)
    ]
)
logger = logging.getLogger(__name__)


def configure_logging(settings: Settings) -> None:
    root = logging.getLogger()
    root.setLevel(settings.log_level)
    if settings.log_file:
        file_handler = logging.FileHandler(settings.log_file)
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(file_handler)


async def main():
    # Load environment variables from .env file
    load_dotenv()

    try:
        settings = load_settings()
    except ConfigurationError as e:
        logger.error(str(e))
        sys.exit(1)

    configure_logging(settings)
    logger.info(f"Exporting commit activity of {settings.organization} with a {settings.ttl_seconds}s TTL.")

    github_client = GitHubRestClient(token=settings.token, api_url=settings.github_api_url)
    builder = SnapshotBuilder(
        github_client=github_client,
        organization=settings.organization,
        max_concurrent_repositories=settings.max_concurrent_repositories,
    )
    cache = ScrapeCache(
        builder=builder,
        ttl=settings.ttl_seconds,
        initial_cursor=settings.initial_cursor,
    )

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    await serve(cache, settings.listen_host, settings.listen_port, stop_event)


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
