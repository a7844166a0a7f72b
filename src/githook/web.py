import functools
import signal
from typing import Callable, Mapping

import aiohttp
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sanic import Sanic, response
from sanic.log import logger

from githook import metrics
from githook.config import BuildConfig, Config, load_build_config, wait_for_build_config
from githook.exceptions import ConfigNotAvailableError
from githook.github.models import EventType
from githook.pipeline import Orchestrator, Services

METHODS = ["GET", "HEAD", "OPTIONS", "POST", "PUT", "PATCH", "DELETE"]


async def handle_delivery(app: Sanic, headers: Mapping[str, str], body: bytes):
    try:
        await app.ctx.orchestrator.handle_delivery(headers, body)
    except Exception as e:
        logger.error("Delivery handling failed: %s", e)
        logger.exception(e)


async def reload_config(app: Sanic):
    logger.debug("SIGHUP received, reloading configuration")
    try:
        build_config = load_build_config(app.config.CONFIG_PATH)
    except ConfigNotAvailableError as e:
        logger.error("Keeping previous configuration: %s", e)
        return

    app.ctx.orchestrator.reconfigure(build_config)
    build_config.print_config()
    await app.ctx.orchestrator.greet()


def create_app(
    config: Config | None = None,
    services_factory: Callable[[BuildConfig], Services] | None = None,
):
    config = config or Config()

    app = Sanic("githook")
    app.update_config(config.model_dump())
    logger.setLevel(config.OVERRIDE_LOGGING)

    @app.listener("before_server_start")
    async def init(app, loop):
        logger.debug("Creating aiohttp session")
        app.ctx.aiohttp_session = aiohttp.ClientSession()

        build_config = await wait_for_build_config(
            config.CONFIG_PATH, config.CONFIG_RETRY_INTERVAL
        )
        config.print_config()
        build_config.print_config()

        factory = services_factory or functools.partial(
            Services.from_config, session=app.ctx.aiohttp_session
        )
        app.ctx.orchestrator = Orchestrator(config, build_config, factory)
        metrics.app_info.info({"domain": build_config.uri.domain})

        await app.ctx.orchestrator.greet()

    @app.listener("after_server_start")
    async def watch_sighup(app, loop):
        try:
            loop.add_signal_handler(
                signal.SIGHUP, lambda: app.add_task(reload_config(app))
            )
        except (NotImplementedError, RuntimeError) as e:
            logger.warning("Configuration reload on SIGHUP unavailable: %s", e)

    @app.listener("after_server_stop")
    async def close(app, loop):
        logger.debug("Closing aiohttp session")
        await app.ctx.aiohttp_session.close()

    @app.route("/health", methods=METHODS)
    async def health(request):
        return response.empty(status=200)

    async def webhook(request, path: str = ""):
        event_type = EventType.from_header(request.headers.get("x-github-event"))

        if event_type != EventType.other:
            logger.debug(
                "Webhook %s received: delivery %s, %s %s",
                event_type,
                request.headers.get("x-github-delivery"),
                request.method,
                request.path,
            )
            app.add_task(handle_delivery(app, request.headers, request.body))
            return response.text("", status=202)

        if request.path == "/":
            logger.debug("status check")
            return response.text("ARRRG")

        logger.warning("Unexpected request: %s %s", request.method, request.path)
        return response.text("", status=202)

    async def prometheus(request):
        if request.method not in ("GET", "HEAD"):
            return await webhook(request, "metrics")
        return response.raw(generate_latest(), content_type=CONTENT_TYPE_LATEST)

    app.add_route(prometheus, "/metrics", methods=METHODS, name="metrics")
    app.add_route(webhook, "/", methods=METHODS, name="root")
    app.add_route(webhook, "/<path:path>", methods=METHODS, name="webhook")

    return app
