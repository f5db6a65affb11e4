"""
ChainFeed demo entry point.

Fetches ADA token data once, then keeps polling so the scheduled provider
health checks can be observed. Configure providers through .env
(BLOCKFROST_PROJECT_ID, COINGECKO_API_KEY, ...).
"""

import asyncio

from loguru import logger

from chainfeed import ChainFeed, SDKEvent

POLL_SECONDS = 60


def log_event(event: SDKEvent, data) -> None:
    logger.debug(f"event {event.value}: {data}")


async def main() -> None:
    logger.info("Starting ChainFeed demo...")
    feed = ChainFeed()
    feed.add_event_listener(SDKEvent.HEALTH_CHECK_COMPLETE, log_event)
    feed.add_event_listener(SDKEvent.PROVIDER_UNHEALTHY, log_event)

    try:
        await feed.initialize()

        while True:
            response = await feed.get_token_data(
                "lovelace", ["price", "market_cap", "volume_24h", "name", "symbol"]
            )
            data = response.data
            logger.info(
                f"{data.name} ({data.symbol}): price={data.price} "
                f"market_cap={data.market_cap} volume_24h={data.volume_24h} "
                f"sources={response.metadata.data_sources} "
                f"cache={response.metadata.cache_status}"
            )
            for error in response.errors:
                logger.warning(f"{error.provider}: {error.error}")

            stats = await feed.get_stats()
            logger.info(f"Stats: {stats.to_dict()['requests']}")
            await asyncio.sleep(POLL_SECONDS)

    except KeyboardInterrupt:
        logger.info("Received interrupt signal, shutting down...")
    except Exception as e:
        logger.error(f"Error in main loop: {e}")
    finally:
        await feed.destroy()
        logger.info("ChainFeed stopped")


if __name__ == "__main__":
    asyncio.run(main())
