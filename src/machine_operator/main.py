"""Main entry point for the AzureMachine controller.

SECRETLESS ARCHITECTURE:
Provider sessions authenticate with a Managed Identity only. The process
refuses to start when credential secrets are present in its environment.
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from datetime import UTC, datetime

from kubernetes.config import ConfigException

from .config import Config, ConfigurationError, StoreBackend
from .context import ControllerContext
from .controller import Controller
from .kube_store import KubernetesResourceStore, load_kube_config
from .reconciler import MachineReconciler
from .security import SecretlessViolationError, enforce_secretless_architecture, redact_client_id
from .session import SessionCache
from .store import MemoryResourceStore, ResourceStore

# LogRecord attributes that are not user-supplied ``extra`` fields
_RECORD_ATTRIBUTES = frozenset(
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

        for key, value in record.__dict__.items():
            if key not in _RECORD_ATTRIBUTES:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(json_output: bool = True) -> None:
    """Configure logging to stdout, as JSON unless disabled."""
    handler = logging.StreamHandler(sys.stdout)
    if json_output:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))

    root_logger = logging.getLogger()
    root_logger.addHandler(handler)
    root_logger.setLevel(logging.INFO)

    # Reduce noise from Azure SDK and the Kubernetes client
    logging.getLogger("azure").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("kubernetes").setLevel(logging.WARNING)


def build_store(config: Config) -> ResourceStore:
    """Create the resource store selected by ``STORE_BACKEND``."""
    if config.store_backend == StoreBackend.MEMORY:
        return MemoryResourceStore()
    load_kube_config()
    return KubernetesResourceStore()


async def main() -> int:
    """Run the controller until SIGTERM or SIGINT.

    Returns:
        Exit code (0 for success, 1 for errors, 2 for security violations).
    """
    try:
        config = Config.from_env()
    except ConfigurationError as e:
        setup_logging()
        logging.getLogger(__name__).error("Configuration error", extra={"error": str(e)})
        return 1

    setup_logging(json_output=config.enable_audit_logging)
    logger = logging.getLogger(__name__)

    try:
        enforce_secretless_architecture()
    except SecretlessViolationError as e:
        logger.critical(
            "Security violation: credentials detected in environment",
            extra={"error": str(e)},
        )
        return 2

    logger.info(
        "Starting AzureMachine controller",
        extra={
            "namespace": config.watch_namespace or "*",
            "provider": config.provider,
            "store_backend": config.store_backend.value,
            "client_id": redact_client_id(config.azure_client_id),
        },
    )

    try:
        store = build_store(config)
    except ConfigException as e:
        logger.error("Failed to load kube config", extra={"error": str(e)})
        return 1

    session_cache = SessionCache()
    ctx = ControllerContext(config=config, store=store, session_cache=session_cache)

    try:
        reconciler = MachineReconciler(ctx)
    except ValueError as e:
        logger.error("Failed to initialize reconciler", extra={"error": str(e)})
        return 1

    controller = Controller(ctx, reconciler)

    # Set up signal handlers for graceful shutdown
    loop = asyncio.get_event_loop()

    def signal_handler(sig: signal.Signals) -> None:
        logger.info("Received signal", extra={"signal": sig.name})
        controller.shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))

    try:
        await controller.run()
    except Exception as e:
        logger.exception("Unhandled exception", extra={"error": str(e)})
        return 1
    finally:
        session_cache.close()

    logger.info("Controller stopped")
    return 0


def run() -> None:
    """Entry point for the controller process."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
