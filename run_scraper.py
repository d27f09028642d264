"""Run one scrape session from the command line and print events as JSON lines."""

import argparse
import asyncio
import signal

import redis.asyncio as redis

from app.config import get_settings
from app.models.scraping import ScrapeConfig
from app.services.session_service import ScrapeSessionService


def parse_args() -> argparse.Namespace:
    defaults = get_settings().defaults
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--towns", nargs="+", required=True)
    parser.add_argument("--industries", nargs="*", default=[])
    parser.add_argument("--towns-at-once", type=int, default=defaults.simultaneous_towns)
    parser.add_argument("--industries-at-once", type=int, default=defaults.simultaneous_industries)
    parser.add_argument("--lookups-at-once", type=int, default=defaults.simultaneous_lookups)
    parser.add_argument("--no-provider-lookup", action="store_true")
    return parser.parse_args()


async def run(args: argparse.Namespace) -> None:
    settings = get_settings()
    redis_client = redis.from_url(settings.redis_url)
    service = ScrapeSessionService(redis_client, settings)
    config = ScrapeConfig(
        simultaneous_towns=min(args.towns_at_once, 5),
        simultaneous_industries=min(args.industries_at_once, 3),
        simultaneous_lookups=min(args.lookups_at_once, 3),
        enable_provider_lookup=not args.no_provider_lookup,
    )

    record = await service.start_session(args.towns, args.industries, config)
    events = service.subscribe(record.id)

    loop = asyncio.get_running_loop()
    loop.add_signal_handler(
        signal.SIGINT, lambda: asyncio.ensure_future(service.stop_session(record.id))
    )

    async for event in events:
        print(event.model_dump_json(), flush=True)

    session = service.store.get(record.id)
    if session is not None and session.task is not None:
        await session.task
    await service.shutdown()
    await redis_client.aclose()


def main():
    """Run the scraper."""
    asyncio.run(run(parse_args()))


if __name__ == "__main__":
    main()
