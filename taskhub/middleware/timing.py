"""
Per-request timer.

Every response carries ``X-Request-ID`` (echoed from the caller when sent)
and ``X-Request-Duration-Ms``. The access log line is tagged with the task
or step the URL addresses so a slow dispatch can be traced to its task.
"""

import logging
import time
import uuid

from flask import Flask, g, request

logger = logging.getLogger(__name__)

SLOW_THRESHOLD_MS = 1000

# Probes hit these every few seconds.
_QUIET_PATHS = frozenset({"/api/v1/health/live", "/api/v1/health/ready"})


def _new_request_id():
    return uuid.uuid4().hex[:12]


def _access_extra(response, duration_ms):
    view_args = request.view_args or {}
    return {
        "method": request.method,
        "path": request.path,
        "status": response.status_code,
        "duration_ms": round(duration_ms, 1),
        "remote_addr": request.remote_addr,
        "request_id": g.get("request_id"),
        "actor_id": g.get("actor_id"),
        "task_id": view_args.get("task_id"),
        "step_id": view_args.get("step_id"),
    }


def init_request_timing(app: Flask):
    @app.before_request
    def _begin():
        g.request_started = time.perf_counter()
        g.request_id = request.headers.get("X-Request-ID") or _new_request_id()

    @app.after_request
    def _finish(response):
        started = g.get("request_started")
        if started is None:
            return response

        elapsed = (time.perf_counter() - started) * 1000
        response.headers["X-Request-ID"] = g.request_id
        response.headers["X-Request-Duration-Ms"] = f"{elapsed:.1f}"
        if request.path in _QUIET_PATHS:
            return response

        extra = _access_extra(response, elapsed)
        line = "%s %s -> %d in %.0fms"
        args = (request.method, request.path, response.status_code, elapsed)
        if response.status_code >= 500:
            logger.error(line, *args, extra=extra)
        elif elapsed > SLOW_THRESHOLD_MS:
            logger.warning("Slow " + line, *args, extra=extra)
        else:
            logger.debug(line, *args, extra=extra)
        return response
