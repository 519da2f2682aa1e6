"""Main entry point for the NSX security policy controller.

Startup order:
1. Load and validate configuration from the environment
2. Warm the local stores from NSX (all three kinds, concurrently)
3. Run the reconcile loop until SIGTERM/SIGINT

No reconciliation is served before the initial sync has succeeded.
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from datetime import UTC, datetime

from azure.core.exceptions import AzureError

from .config import Config, ConfigurationError
from .nsx_client import NsxClient
from .runner import PolicyReconciler
from .service import SecurityPolicyService
from .sync import SyncError

# LogRecord attributes that are not structured "extra" fields
_RESERVED_RECORD_ATTRS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    }
)


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        # Add extra fields from the record
        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_ATTRS:
                log_data[key] = value

        # Add exception info if present
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(level: int = logging.INFO) -> None:
    """Configure structured logging with JSON output for production."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    # Reduce noise from the HTTP pipeline
    logging.getLogger("azure").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


async def run_controller(config: Config, logger: logging.Logger) -> int:
    """Sync the stores, then reconcile until a shutdown signal arrives."""
    with NsxClient(config) as client:
        try:
            service = await SecurityPolicyService.initialize(client, config)
        except SyncError as e:
            logger.error(
                "Initial sync failed",
                extra={"error": str(e), "resource_type": e.resource_type},
            )
            return 1

        logger.info(
            "Initial sync completed",
            extra={
                "groups": len(service.stores.groups),
                "security_policies": len(service.stores.policies),
                "rules": len(service.stores.rules),
            },
        )

        reconciler = PolicyReconciler(service, config)

        # Set up signal handlers for graceful shutdown
        loop = asyncio.get_event_loop()

        def signal_handler(sig: signal.Signals) -> None:
            logger.info("Received signal", extra={"signal": sig.name})
            reconciler.shutdown()

        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))

        try:
            await reconciler.run()
        except AzureError as e:
            logger.exception("Unhandled NSX error", extra={"error": str(e)})
            return 1

    logger.info("Controller stopped")
    return 0


async def main() -> int:
    """Run the controller.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    setup_logging()
    logger = logging.getLogger(__name__)

    try:
        config = Config.from_env()
    except ConfigurationError as e:
        logger.error("Configuration error", extra={"error": str(e)})
        return 1

    logger.info(
        "Starting NSX security policy controller",
        extra={
            "nsx_manager_url": config.nsx_manager_url,
            "cluster": config.cluster,
            "domain": config.domain,
        },
    )

    try:
        return await run_controller(config, logger)
    except Exception as e:
        logger.exception("Controller failed unexpectedly", extra={"error": str(e)})
        return 1


def run() -> None:
    """Entry point for the controller process."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
