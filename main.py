import logging
import os
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from bulk_mail_scheduler.api import create_app
from bulk_mail_scheduler.config_loader import load_settings
from bulk_mail_scheduler.core import BulkMailCore
from bulk_mail_scheduler.transport import SMTPTransport

# Configure logging level from environment
log_level = os.getenv("BMS_LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, log_level, logging.INFO),
    format='[%(asctime)s] [%(levelname)s] %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S',
    force=True  # Force reconfiguration to avoid duplicate handlers
)


def build_service(settings: dict[str, object]) -> BulkMailCore:
    transport = SMTPTransport(
        host=str(settings["smtp_host"]),
        port=int(settings["smtp_port"]),
        user=settings.get("smtp_user"),
        password=settings.get("smtp_password"),
        use_tls=settings.get("smtp_use_tls"),
        timeout=float(settings["send_timeout_seconds"]),
    )
    return BulkMailCore(
        db_path=str(settings["db_path"]),
        sender=transport,
        max_emails_per_hour=int(settings["max_emails_per_hour"]),
        worker_concurrency=int(settings["worker_concurrency"]),
        min_delay_between_emails_ms=int(settings["min_delay_between_emails_ms"]),
        retry_attempts=int(settings["retry_attempts"]),
        retry_backoff_ms=int(settings["retry_backoff_ms"]),
        send_timeout=float(settings["send_timeout_seconds"]),
        rate_window_retention_hours=int(settings["rate_window_retention_hours"]),
        cleanup_interval=float(settings["cleanup_interval_seconds"]),
        log_delivery_activity=bool(settings.get("log_delivery_activity")),
    )


if __name__ == "__main__":
    settings = load_settings()
    # Create service instance but don't start it yet - let uvicorn handle the event loop
    service = build_service(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup: recover pending jobs and start the workers
        await service.start()
        yield
        # Shutdown: stop dequeuing; unfinished jobs stay scheduled for the next start
        await service.stop()

    app = create_app(service, api_token=settings.get("api_token"), lifespan=lifespan)

    uvicorn.run(app, host=str(settings["http_host"]), port=int(settings["http_port"]))
