import asyncio
from typing import Any

import aiohttp
from sanic.log import logger

from githook import metrics


class Slack:
    """Post messages to a Slack incoming webhook.

    Delivery is best effort: a failed post is logged and counted, never
    raised, so it cannot change the outcome of the build it reports on.
    """

    def __init__(self, session: aiohttp.ClientSession, webhook_url: str):
        self.session = session
        self.webhook_url = webhook_url

    async def send(self, message: dict[str, Any]) -> bool:
        try:
            async with self.session.post(self.webhook_url, json=message) as resp:
                resp.raise_for_status()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error("Slack notification failed: %s", e)
            metrics.notification_errors_total.labels(type(e).__name__).inc()
            return False

        logger.debug("Slack notification sent")
        return True
