"""Bootstrap helpers that assemble all runtime components."""

from __future__ import annotations

import logging
from pathlib import Path

from .config import AppConfig, load_config
from .database import Database
from .logging_setup import LoggerConfig, configure_logging, level_from_name
from .services.pipeline import LedgerPipeline
from .services.scheduler import SchedulerService
from .telemetry import Telemetry

LOGGER = logging.getLogger("ledger.bootstrap")


class BootstrapContext:
    def __init__(
        self,
        config: AppConfig,
        database: Database,
        telemetry: Telemetry,
        pipeline: LedgerPipeline,
        scheduler: SchedulerService,
    ) -> None:
        self.config = config
        self.database = database
        self.telemetry = telemetry
        self.pipeline = pipeline
        self.scheduler = scheduler

    def shutdown(self) -> None:
        self.scheduler.stop()
        self.telemetry.stop()
        self.database.dispose()


def bootstrap_pipeline(
    base_dir: Path | None = None,
    config: AppConfig | None = None,
    start_background: bool = True,
) -> BootstrapContext:
    config = config.validate() if config else load_config(base_dir)
    configure_logging(
        LoggerConfig(level=level_from_name(config.logging.level), json=config.logging.json)
    )
    LOGGER.info("Loaded config for %s", config.extra)
    database = Database(config.database_url)
    database.create_all()

    telemetry = Telemetry(config.telemetry)
    telemetry.configure_export(
        lambda snapshot: logging.getLogger("ledger.telemetry").info(
            "Telemetry snapshot %s", snapshot
        )
    )
    pipeline = LedgerPipeline(config, database, telemetry)
    scheduler = SchedulerService()
    interval = config.batch.schedule_interval.total_seconds()
    if interval > 0:
        scheduler.add_task(
            "batch_run",
            interval=interval,
            handler=lambda: pipeline.coordinator.run_batch(),
        )
        LOGGER.info("Scheduled batch runs every %.0f seconds", interval)
    if start_background:
        scheduler.start()
        telemetry.start()
    return BootstrapContext(config, database, telemetry, pipeline, scheduler)
