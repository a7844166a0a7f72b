import asyncio

from githook.config import Config, wait_for_build_config
from githook.web import create_app


def main():
    config = Config()
    build_config = asyncio.run(
        wait_for_build_config(config.CONFIG_PATH, config.CONFIG_RETRY_INTERVAL)
    )
    app = create_app(config)
    # One process: per-target build locks only hold within a single event loop
    app.run(host="0.0.0.0", port=build_config.server.port, single_process=True)


if __name__ == "__main__":
    main()
