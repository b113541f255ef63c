import logging
import os

from . import __version__

TESTING = os.getenv("TESTING") == "1"
REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")

SERVICE_VERSION = os.getenv("SERVICE_VERSION", __version__)
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

WORKFLOW_TYPE = os.getenv("WORKFLOW_TYPE", "PaymentWorkflow")
WORKFLOW_ID_PREFIX = os.getenv("WORKFLOW_ID_PREFIX", "payment-")

DEFAULT_DELAY_SECONDS = int(os.getenv("DEFAULT_DELAY_SECONDS", "5"))
WEBHOOK_TIMEOUT_SECONDS = float(os.getenv("WEBHOOK_TIMEOUT_SECONDS", "30"))
# Extra time past the webhook timeout before an unfinished dispatch is declared lost.
DISPATCH_GRACE_SECONDS = float(os.getenv("DISPATCH_GRACE_SECONDS", "30"))


def configure_logging() -> None:
    if logging.getLogger().handlers:
        return
    logging.basicConfig(
        level=LOG_LEVEL.upper(),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
