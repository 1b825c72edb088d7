import logging

import uvicorn

from .config import Settings, configure_logging

LOGGER = logging.getLogger(__name__)


def run() -> None:
    settings = Settings.from_env()
    configure_logging(settings.log_level)
    LOGGER.info("starting boardsync on %s:%s (%s)", settings.host, settings.port, settings.app_env)
    uvicorn.run(
        "boardsync.main:create_app",
        factory=True,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
