from __future__ import annotations

import logging

import clipbuffer.models  # noqa: F401  registers SQLModel tables

from clipbuffer.config import Settings, get_settings
from clipbuffer.dependencies import Services, build_services

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=level, format=LOG_FORMAT)


def startup(settings: Settings | None = None) -> Services:
    """Build the services and repair any history/index drift from a previous run."""
    if settings is None:
        settings = get_settings()
    configure_logging(settings.log_level)

    services = build_services(settings)
    logger.info(
        "clipbuffer started (data_dir=%s, encryption=%s)",
        settings.data_dir,
        "on" if services.cipher.has_key else "off",
    )

    if settings.reconcile_on_startup:
        services.history.reconcile_index()
    services.history.evict()

    # Compacts the index off the calling thread
    services.optimizer = services.index.optimize_in_background()
    return services


def shutdown(services: Services) -> None:
    services.close()
    logger.info("clipbuffer stopped")
