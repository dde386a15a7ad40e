"""Logging and observability configuration using Pydantic Logfire.

Modules log through the standard library (``logging.getLogger(__name__)``)
with snake_case event names and ``extra={...}`` context. Service entry points
are traced with ``span``.
"""

import logging
from typing import Any

import logfire

from taskscope.core.config import Settings, settings as default_settings


logger = logging.getLogger(__name__)

_configured = False


def configure_logfire(app_settings: Settings | None = None) -> None:
    """Configure Pydantic Logfire and route standard logging records into it.

    Only the first call configures anything; later calls are no-ops.
    """
    global _configured  # noqa: PLW0603
    if _configured:
        return

    app_settings = app_settings or default_settings
    logfire.configure(
        token=app_settings.logfire_token,
        service_name="taskscope",
        environment=app_settings.environment,
        send_to_logfire="if-token-present",
    )
    logging.getLogger("taskscope").addHandler(logfire.LogfireLoggingHandler())
    _configured = True

    logger.info("Logfire configured", extra={"environment": app_settings.environment})


def span(name: str, **attributes: Any) -> logfire.LogfireSpan:  # noqa: ANN401
    """Trace a service operation.

    Usage:
        with span("task_filter_service.get_filter_counts", user_id=user_id):
            ...
    """
    return logfire.span(name, **attributes)
