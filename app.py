import logging
import signal
import threading
from typing import Dict

from ordersync.errors import GatewayError
from ordersync.logging_config import configure_logging
from ordersync.session import SyncSession
from ordersync.version import __version__
from settings import ENDPOINT_ENV_VAR, load_sync_settings

logger = logging.getLogger("ordersync.app")


def _log_status(status: str, payload: Dict[str, object]) -> None:
    if status == "pending":
        logger.info("Remote changes waiting to be applied: %s", payload.get("changes"))
    elif status == "offline":
        logger.warning("Remote store unreachable: %s", payload.get("message"))
    else:
        logger.debug("Reconciler status %s %s", status, payload)


def _log_notice(message: str, level: str) -> None:
    if level == "error":
        logger.error(message)
    else:
        logger.info(message)


configure_logging(console=True)


def main() -> int:
    settings = load_sync_settings()
    if not settings.configured:
        print(f"No endpoint configured. Set {ENDPOINT_ENV_VAR} or run sync_cli.py set-endpoint.")
        return 1

    stop = threading.Event()
    signal.signal(signal.SIGINT, lambda *_: stop.set())
    signal.signal(signal.SIGTERM, lambda *_: stop.set())

    logger.info("OrderSync v%s starting against %s", __version__, settings.endpoint)
    with SyncSession(settings, notify=_log_notice, status_callback=_log_status) as session:
        try:
            counts = session.start().counts()
        except GatewayError as exc:
            logger.error("Initial load failed: %s", exc)
            print(f"Error: {exc}")
            return 1
        print(f"Loaded {counts['customers']} customers, {counts['products']} products, {counts['orders']} orders")
        stop.wait()
    logger.info("OrderSync stopped")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
