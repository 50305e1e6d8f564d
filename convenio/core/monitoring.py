"""Error tracking (Sentry), enabled only when configured outside dev."""

import logging

from convenio.core.config import settings

logger = logging.getLogger(__name__)


def init_sentry(component: str = "api") -> bool:
    """Initialize Sentry when SENTRY_DSN is set and ENV is not dev."""
    if not settings.SENTRY_DSN or settings.ENV == "dev":
        return False

    import sentry_sdk
    from sentry_sdk.integrations.fastapi import FastApiIntegration
    from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        environment=settings.ENV,
        release=settings.VERSION,
        server_name=component,
        integrations=[
            FastApiIntegration(transaction_style="endpoint"),
            SqlalchemyIntegration(),
        ],
        traces_sample_rate=0.1,
        send_default_pii=False,  # CPFs and names stay out of Sentry
    )
    logger.info("Sentry initialized for %s", component)
    return True


def report_exception(error: BaseException) -> None:
    """Forward an exception to Sentry if it was initialized."""
    import sentry_sdk

    if sentry_sdk.is_initialized():
        sentry_sdk.capture_exception(error)
