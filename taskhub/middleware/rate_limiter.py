"""
Rate limiting configuration.

The Limiter instance is created in taskhub/__init__.py with no default
limits; this module applies per-blueprint limits.

Usage:
    from taskhub.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

logger = logging.getLogger(__name__)

READ_LIMIT = "200/minute"
WRITE_LIMIT = "60/minute"


def init_rate_limits(app, limiter):
    """
    Apply rate limits to API blueprints (per remote IP).

        - Dispatch:        DISPATCH_RATE_LIMIT (fan-out writes + notifications)
        - Task / workflow: 60/minute
        - Analytics:       200/minute
        - Health:          exempt

    Disabled in testing mode.
    """
    if app.config.get("TESTING"):
        app.logger.info("Rate limiter disabled (TESTING=True)")
        return

    dispatch_limit = app.config.get("DISPATCH_RATE_LIMIT", WRITE_LIMIT)
    bp = app.blueprints.get("dispatch")
    if bp:
        limiter.limit(dispatch_limit)(bp)

    for bp_name in ("tasks", "workflow", "notifications"):
        bp = app.blueprints.get(bp_name)
        if bp:
            limiter.limit(WRITE_LIMIT)(bp)

    for bp_name in ("analytics", "audit"):
        bp = app.blueprints.get(bp_name)
        if bp:
            limiter.limit(READ_LIMIT)(bp)

    bp = app.blueprints.get("health")
    if bp:
        limiter.exempt(bp)

    app.logger.info("Rate limiter configured: dispatch=%s write=%s read=%s",
                    dispatch_limit, WRITE_LIMIT, READ_LIMIT)
