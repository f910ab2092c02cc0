from __future__ import annotations

import uvicorn
from loguru import logger

from .alerts import AlertRouter
from .api import create_app
from .dispatcher import ProviderDispatcher
from .events import EventBus
from .logging_config import configure_logging
from .market_data import YFinanceMarketData
from .orchestrator import Orchestrator
from .paper import PaperPortfolioLedger
from .providers import build_provider_clients
from .quota import QuotaTracker
from .settings import settings
from .storage import SqlitePersistence



def build_orchestrator(autostart: bool = True) -> Orchestrator:
    bus = EventBus()
    persistence = SqlitePersistence(settings.db_path)
    AlertRouter().attach(bus)

    clients = build_provider_clients()
    # only providers with a usable client take part in quota rotation
    quota = QuotaTracker({p: limit for p, limit in settings.provider_limits().items() if p in clients})
    dispatcher = ProviderDispatcher(quota, clients, bus=bus)
    orchestrator = Orchestrator(
        YFinanceMarketData(),
        PaperPortfolioLedger(persistence=persistence),
        persistence,
        dispatcher=dispatcher,
        quota=quota,
        bus=bus,
    )
    if autostart and orchestrator.config.enabled:
        logger.info("Bot config is enabled; starting scan loop")
        orchestrator.start()
    return orchestrator



def run_service() -> None:
    configure_logging(
        settings.log_level,
        settings.log_file_path,
        settings.log_rotation_mb,
        settings.log_retention_files,
    )
    orchestrator = build_orchestrator()

    logger.info("Trade autopilot API on {}:{}", settings.api_host, settings.api_port)
    try:
        uvicorn.run(
            create_app(orchestrator),
            host=settings.api_host,
            port=settings.api_port,
            reload=False,
            log_level=settings.log_level.lower(),
        )
    finally:
        orchestrator.shutdown()


if __name__ == "__main__":
    run_service()
