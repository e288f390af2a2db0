"""
Shared pytest fixtures for the Task Pipeline Hub test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - make_user / make_task / make_step: factory fixtures
    - estimator / operator / designer: users holding the routing roles
"""

from datetime import datetime, timezone

import pytest

from taskhub import create_app
from taskhub.models import db as _db
from taskhub.models.auth import User, UserRole
from taskhub.models.task import ProductLine, Task
from taskhub.models.workflow import WorkflowStep
from taskhub.services.change_feed import change_feed


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        change_feed.clear()
        yield
        change_feed.clear()
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Factories ────────────────────────────────────────────────────────────


@pytest.fixture()
def make_user():
    counter = {"n": 0}

    def _make(*roles, name=None, is_active=True):
        counter["n"] += 1
        user = User(
            email=f"user{counter['n']}@example.com",
            full_name=name or f"User {counter['n']}",
            is_active=is_active,
        )
        _db.session.add(user)
        _db.session.flush()
        for role in roles:
            _db.session.add(UserRole(user_id=user.id, role=role))
        _db.session.commit()
        return user

    return _make


@pytest.fixture()
def make_task():
    def _make(title="Brochure print run", **fields):
        fields.setdefault("status", "todo")
        fields.setdefault("type", "quotation")
        fields.setdefault("status_changed_at", datetime.now(timezone.utc))
        products = fields.pop("products", [])
        task = Task(title=title, **fields)
        _db.session.add(task)
        _db.session.flush()
        for idx, name in enumerate(products):
            _db.session.add(ProductLine(task_id=task.id, product_name=name, position=idx,
                                        approval_status="approved"))
        _db.session.commit()
        return task

    return _make


@pytest.fixture()
def make_step():
    def _make(task, step_type="collect", *, order=None, supplier_name="ACME Print",
              status="pending", **fields):
        if order is None:
            order = task.workflow_steps.count()
        step = WorkflowStep(task_id=task.id, step_order=order, step_type=step_type,
                            supplier_name=supplier_name, status=status, **fields)
        _db.session.add(step)
        _db.session.commit()
        return step

    return _make


@pytest.fixture()
def estimator(make_user):
    return make_user("estimation", name="Esti Mator")


@pytest.fixture()
def operator(make_user):
    return make_user("operations", name="Op Erator")


@pytest.fixture()
def designer(make_user):
    return make_user("designer", name="Des Igner")


@pytest.fixture()
def admin(make_user):
    return make_user("admin", name="Ad Min")
