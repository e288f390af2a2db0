"""
App factory, configuration, logging and the shared error mapping.
"""

import json
import logging

import pytest
from flask import g

from taskhub.config import ProductionConfig, _step_policy
from taskhub.middleware.logging_config import JSONFormatter, RequestContextFilter
from taskhub.services.audit_service import device_info_from_request


def test_blueprints_registered(app):
    assert {"tasks", "dispatch", "workflow", "analytics", "audit", "notifications", "health"} <= \
        set(app.blueprints)


def test_testing_config(app):
    assert app.config["TESTING"] is True
    assert app.config["REDISPATCH_STEP_POLICY"] == "reset"
    assert app.config["ESTIMATION_ROLE"] == "estimation"


def test_production_requires_database_url(monkeypatch):
    monkeypatch.setattr(ProductionConfig, "SQLALCHEMY_DATABASE_URI", None)
    with pytest.raises(RuntimeError):
        ProductionConfig()


def test_request_headers(client):
    res = client.get("/api/v1/health/ready", headers={"X-Request-ID": "abc123"})
    assert res.headers["X-Request-ID"] == "abc123"
    assert "X-Request-Duration-Ms" in res.headers


def test_method_not_allowed_is_json(client):
    res = client.put("/api/v1/health/ready")
    assert res.status_code == 405
    assert res.get_json()["error"] == "Method not allowed"


def test_json_formatter_carries_domain_extras():
    record = logging.LogRecord("taskhub.test", logging.INFO, __file__, 1, "Task %s moved", (7,), None)
    record.task_id = 7
    record.actor_id = 3
    out = json.loads(JSONFormatter().format(record))
    assert out["message"] == "Task 7 moved"
    assert out["task_id"] == 7
    assert out["actor_id"] == 3
    assert "step_id" not in out


@pytest.mark.parametrize("ua,device,browser,os_name", [
    ("Mozilla/5.0 (Windows NT 10.0) AppleWebKit/537.36 Chrome/120.0 Safari/537.36 Edg/120.0",
     "desktop", "Edge", "Windows"),
    ("Mozilla/5.0 (Linux; Android 14) AppleWebKit/537.36 Chrome/120.0 Mobile Safari/537.36",
     "mobile", "Chrome", "Android"),
    ("Mozilla/5.0 (iPad; CPU OS 17_0 like Mac OS X) Version/17.0 Safari/604.1",
     "tablet", "Safari", "iOS"),
    (None, "unknown", "Unknown", "Unknown"),
])
def test_device_info(ua, device, browser, os_name):
    info = device_info_from_request(ua, "10.0.0.1")
    assert (info["device_type"], info["browser_name"], info["os_name"]) == (device, browser, os_name)
    assert info["ip_address"] == "10.0.0.1"


@pytest.mark.parametrize("raw,expected", [("preserve", "preserve"), (" RESET ", "reset"), ("keep-all", "reset")])
def test_step_policy_from_env(monkeypatch, raw, expected):
    monkeypatch.setenv("REDISPATCH_STEP_POLICY", raw)
    assert _step_policy() == expected


def test_context_filter_stamps_request_id(app):
    record = logging.LogRecord("taskhub.test", logging.INFO, __file__, 1, "hello", (), None)
    with app.test_request_context("/api/v1/tasks"):
        g.request_id = "req-1"
        g.actor_id = 9
        RequestContextFilter().filter(record)
    assert (record.request_id, record.actor_id) == ("req-1", 9)


def test_live_reports_routing_readiness(client, estimator):
    checks = client.get("/api/v1/health/live").get_json()["checks"]
    assert checks["routing"]["estimator_configured"] is True
    assert checks["routing"]["step_policy"] == "reset"
    assert "subscriptions" in checks["change_feed"]
