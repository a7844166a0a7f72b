from gidgethub.routing import Router
from gidgethub.sansio import Event
from sanic.log import logger

from githook.github.models import PingEvent, PushEvent

router = Router()


@router.register("push")
async def on_push(event: Event, pipeline):
    logger.debug("Received push event %s", event.delivery_id)
    data = PushEvent.model_validate(event.data)
    await pipeline.build(data)


@router.register("ping")
async def on_ping(event: Event, pipeline):
    data = PingEvent.model_validate(event.data)
    logger.info("Received ping event %s: %s", event.delivery_id, data.zen)
