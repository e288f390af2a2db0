"""
Operations workflow steps: drafts, replacement policies, completion and
the operations board.
"""

from datetime import datetime, timezone
from types import SimpleNamespace

import pytest
from sqlalchemy import update

from taskhub.core.exceptions import ValidationError
from taskhub.models import db
from taskhub.models.audit import TaskAuditLog
from taskhub.models.task import ProductLine
from taskhub.models.workflow import WorkflowStep, parse_legacy_location_notes
from taskhub.services import workflow_service as ws
from taskhub.services.workflow_service import StepDraft, parse_step_drafts


def _steps(task_id):
    return WorkflowStep.query.filter_by(task_id=task_id).order_by(WorkflowStep.step_order).all()


# ── Drafts ───────────────────────────────────────────────────────────────────


class TestDrafts:
    def test_unknown_step_type(self):
        with pytest.raises(ValidationError):
            StepDraft.from_dict({"step_type": "teleport", "supplier_name": "X"})

    def test_supplier_required_except_client_delivery(self):
        with pytest.raises(ValidationError):
            StepDraft.from_dict({"step_type": "deliver_to_supplier"})
        draft = StepDraft.from_dict({"step_type": "deliver_to_client", "location_address": "1 Main St"})
        assert draft.supplier_name is None

    def test_transfer_needs_source(self):
        with pytest.raises(ValidationError) as exc:
            StepDraft.from_dict({"step_type": "supplier_to_supplier", "supplier_name": "Finisher"})
        assert "from_supplier_name" in str(exc.value.details)

    def test_transfer_source_from_legacy_notes(self):
        draft = StepDraft.from_dict({
            "step_type": "supplier_to_supplier",
            "supplier_name": "Finisher",
            "location_notes": "FROM: Printer Co (4 Mill Rd)\nfragile",
        })
        assert draft.from_supplier_name == "Printer Co"
        assert draft.from_location_address == "4 Mill Rd"
        assert draft.location_notes == "fragile"

    def test_product_quantity_must_be_numeric(self):
        with pytest.raises(ValidationError):
            StepDraft.from_dict({"step_type": "collect", "supplier_name": "A",
                                 "products": [{"product_name": "Flyer", "quantity": "lots"}]})

    @pytest.mark.parametrize("price_field", ["estimated_price", "final_price"])
    def test_product_prices_must_be_numeric(self, price_field):
        with pytest.raises(ValidationError) as exc:
            StepDraft.from_dict({"step_type": "collect", "supplier_name": "A",
                                 "products": [{"product_name": "Flyer", price_field: "cheap"}]})
        assert exc.value.details == {"step.products[0]": price_field}

    def test_product_prices_coerced(self):
        draft = StepDraft.from_dict({"step_type": "collect", "supplier_name": "A",
                                     "products": [{"product_name": "Flyer", "estimated_price": "12.50",
                                                   "final_price": ""}]})
        assert draft.products[0].estimated_price == 12.5
        assert draft.products[0].final_price is None

    def test_unreadable_due_date_rejected(self):
        with pytest.raises(ValidationError) as exc:
            StepDraft.from_dict({"step_type": "collect", "supplier_name": "A",
                                 "due_date": "tomorrow-ish"})
        assert exc.value.details == {"step": "due_date"}

    def test_due_date_parsed(self):
        draft = StepDraft.from_dict({"step_type": "collect", "supplier_name": "A",
                                     "due_date": "2026-05-04T09:30:00Z"})
        assert draft.due_date == datetime(2026, 5, 4, 9, 30, tzinfo=timezone.utc)
        assert StepDraft.from_dict({"step_type": "collect", "supplier_name": "A",
                                    "due_date": ""}).due_date is None

    def test_steps_must_be_list(self):
        with pytest.raises(ValidationError):
            parse_step_drafts({"step_type": "collect"})
        assert parse_step_drafts(None) == []

    def test_summary_lines(self):
        drafts = parse_step_drafts([
            {"step_type": "collect", "supplier_name": "ACME",
             "products": [{"product_name": "A"}, {"product_name": "B"}]},
            {"step_type": "supplier_to_supplier", "supplier_name": "Finisher",
             "from_supplier_name": "ACME"},
            {"step_type": "deliver_to_client"},
        ])
        assert ws.step_summary_lines(drafts) == [
            "1. Collect: ACME (2 products)",
            "2. S→S Transfer: ACME → Finisher",
            "3. To Client: Client",
        ]


class TestLegacyNotes:
    def test_name_and_address(self):
        assert parse_legacy_location_notes("FROM: Printer Co (4 Mill Rd)\nback door") == \
            ("Printer Co", "4 Mill Rd", "back door")

    def test_name_only(self):
        assert parse_legacy_location_notes("FROM: Printer Co") == ("Printer Co", None, None)

    def test_without_prefix(self):
        assert parse_legacy_location_notes("ring the bell") == (None, None, "ring the bell")
        assert parse_legacy_location_notes(None) == (None, None, None)

    def test_origin_falls_back_to_notes(self, make_task, make_step):
        task = make_task(status="production")
        step = make_step(task, "supplier_to_supplier", supplier_name="Finisher",
                         location_notes="FROM: Printer Co (4 Mill Rd)")
        assert step.origin() == ("Printer Co", "4 Mill Rd")
        assert step.to_dict()["from_supplier_name"] == "Printer Co"


# ── Replacement ──────────────────────────────────────────────────────────────


NEW_STEPS = [
    {"step_type": "collect", "supplier_name": "Paper Mill",
     "products": [{"product_name": "Card stock", "quantity": 10}]},
    {"step_type": "deliver_to_client", "location_address": "9 High St"},
]


class TestReplaceSteps:
    def _seed(self, task, make_step):
        done = make_step(task, "collect", order=0, supplier_name="Old Co", status="completed")
        db.session.add(ProductLine(task_id=task.id, workflow_step_id=done.id,
                                   product_name="Old flyer", position=0))
        pending = make_step(task, "deliver_to_supplier", order=1, supplier_name="Binder")
        db.session.add(ProductLine(task_id=task.id, workflow_step_id=pending.id,
                                   product_name="Binding", position=0))
        db.session.add(ProductLine(task_id=task.id, product_name="Task level", position=0))
        db.session.commit()
        return done, pending

    def test_reset_drops_everything(self, make_task, make_step, admin):
        task = make_task(status="production")
        self._seed(task, make_step)

        steps = ws.set_task_steps(task.id, NEW_STEPS, actor_id=admin.id, policy="reset")

        assert [(s.step_order, s.step_type, s.status) for s in steps] == [
            (0, "collect", "pending"), (1, "deliver_to_client", "pending"),
        ]
        names = sorted(p.product_name for p in ProductLine.query.filter_by(task_id=task.id))
        assert names == ["Card stock", "Task level"]
        card = ProductLine.query.filter_by(product_name="Card stock").one()
        assert card.workflow_step_id == steps[0].id
        assert card.supplier_name == "Paper Mill"

    def test_preserve_keeps_completed_steps_first(self, make_task, make_step, admin):
        task = make_task(status="production")
        done, _ = self._seed(task, make_step)

        ws.set_task_steps(task.id, NEW_STEPS, actor_id=admin.id, policy="preserve")

        steps = _steps(task.id)
        assert [(s.step_order, s.step_type, s.status) for s in steps] == [
            (0, "collect", "completed"),
            (1, "collect", "pending"),
            (2, "deliver_to_client", "pending"),
        ]
        assert steps[0].id == done.id
        assert [p.product_name for p in steps[0].products] == ["Old flyer"]
        assert ProductLine.query.filter_by(product_name="Binding").count() == 0

    def test_preserve_renumbers_kept_steps(self, make_task, make_step):
        task = make_task(status="production")
        make_step(task, "collect", order=0, supplier_name="A")
        kept = make_step(task, "collect", order=1, supplier_name="B", status="completed")
        ws.set_task_steps(task.id, NEW_STEPS[:1], policy="preserve")
        steps = _steps(task.id)
        assert [(s.id, s.step_order) for s in steps][0] == (kept.id, 0)
        assert steps[1].step_order == 1

    def test_default_policy_from_config(self, app, make_task, make_step):
        task = make_task(status="production")
        make_step(task, "collect", order=0, status="completed")
        app.config["REDISPATCH_STEP_POLICY"] = "preserve"
        try:
            ws.set_task_steps(task.id, NEW_STEPS)
        finally:
            app.config["REDISPATCH_STEP_POLICY"] = "reset"
        assert len(_steps(task.id)) == 3

    def test_unknown_policy(self, make_task):
        task = make_task()
        with pytest.raises(ValidationError):
            ws.set_task_steps(task.id, NEW_STEPS, policy="merge")

    def test_invalid_list_leaves_steps_alone(self, make_task, make_step):
        task = make_task(status="production")
        make_step(task, "collect", order=0)
        with pytest.raises(ValidationError):
            ws.set_task_steps(task.id, NEW_STEPS + [{"step_type": "collect"}])
        assert len(_steps(task.id)) == 1

    def test_audited(self, make_task, admin):
        task = make_task(status="production")
        ws.set_task_steps(task.id, NEW_STEPS, actor_id=admin.id)
        entry = TaskAuditLog.query.filter_by(task_id=task.id, action="steps_replaced").one()
        assert entry.new["policy"] == "reset"
        assert len(entry.new["steps"]) == 2


class TestIncrementalEdits:
    def test_add_appends(self, make_task, make_step):
        task = make_task(status="production")
        make_step(task, "collect", order=0)
        step = ws.add_step(task.id, StepDraft.from_dict({"step_type": "deliver_to_client"}))
        assert step.step_order == 1

    def test_remove_pending(self, make_task, make_step):
        task = make_task(status="production")
        step = make_step(task, "collect")
        ws.remove_step(step.id)
        assert _steps(task.id) == []

    def test_completed_step_cannot_be_removed(self, make_task, make_step):
        task = make_task(status="production")
        step = make_step(task, "collect", status="completed")
        with pytest.raises(ValidationError) as exc:
            ws.remove_step(step.id)
        assert exc.value.code == "ERR_CONFLICT_STATE"


# ── Completion ───────────────────────────────────────────────────────────────


class TestCompleteStep:
    def test_first_call_wins(self, make_task, make_step, operator):
        task = make_task(status="production", assigned_to=operator.id)
        step = make_step(task, "collect")

        first = ws.complete_step(step.id, actor_id=operator.id)
        second = ws.complete_step(step.id, actor_id=operator.id)

        assert first.already_completed is False
        assert first.completed_by == operator.id
        assert second.already_completed is True
        assert second.completed_at == first.completed_at
        assert TaskAuditLog.query.filter_by(action="step_completed").count() == 1

    def test_losing_racer_writes_nothing(self, make_task, make_step, operator, admin):
        task = make_task(status="production")
        step = make_step(task, "collect")
        step_id = step.id
        # Another worker flips the row between our read and our update.
        db.session.execute(
            update(WorkflowStep).where(WorkflowStep.id == step_id)
            .values(status="completed", completed_by=admin.id)
        )
        db.session.commit()

        result = ws.complete_step(step_id, actor_id=operator.id)
        assert result.already_completed is True
        assert result.completed_by == admin.id
        assert TaskAuditLog.query.filter_by(action="step_completed").count() == 0

    def test_transfer_completion_lands_at_production(self, make_task, make_step, operator):
        task = make_task(status="production")
        step = make_step(task, "supplier_to_supplier", supplier_name="Finisher",
                         from_supplier_name="Printer Co")
        result = ws.complete_step(step.id, actor_id=operator.id)
        assert result.at_production is True

    def test_assignee_notified_when_someone_else_completes(self, make_task, make_step,
                                                           operator, admin):
        from taskhub.models.notification import Notification

        task = make_task(status="production", assigned_to=operator.id)
        step = make_step(task, "collect")
        ws.complete_step(step.id, actor_id=admin.id)
        notif = Notification.query.filter_by(recipient_id=operator.id).one()
        assert notif.title == "Step completed: Collect"

    def test_progress(self, make_task, make_step, operator):
        task = make_task(status="production")
        a = make_step(task, "collect", order=0)
        make_step(task, "deliver_to_client", order=1, supplier_name=None)
        ws.complete_step(a.id, actor_id=operator.id)
        assert ws.task_progress(task.id) == {"task_id": task.id, "completed": 1, "total": 2,
                                             "percent": 50}


# ── Operations board ─────────────────────────────────────────────────────────


def _step(step_type, status="pending"):
    return SimpleNamespace(step_type=step_type, status=status)


class TestBoardTabs:
    def test_collect_then_deliver(self):
        assert ws.board_tabs_for([_step("collect"), _step("deliver_to_client")]) == {"collect", "deliver"}
        assert ws.board_tabs_for([_step("collect", "completed"), _step("deliver_to_client")]) == \
            {"deliver", "history"}
        assert ws.board_tabs_for([_step("collect", "completed"),
                                  _step("deliver_to_client", "completed")]) == {"history"}

    def test_transfer(self):
        assert ws.board_tabs_for([_step("supplier_to_supplier")]) == {"collect"}
        assert ws.board_tabs_for([_step("supplier_to_supplier", "completed")]) == {"production", "history"}

    def test_delivery_to_supplier_is_production(self):
        assert ws.board_tabs_for([_step("deliver_to_supplier")]) == {"production"}

    def test_board_query(self, make_task, make_step, operator):
        live = make_task("Live job", status="production", assigned_to=operator.id)
        make_step(live, "collect", order=0)
        make_step(live, "deliver_to_client", order=1, supplier_name=None)
        make_task("No steps", status="production")
        other = make_task("Not in production", status="todo")
        make_step(other, "collect")

        board = ws.operations_board()
        assert [t["id"] for t in board["tabs"]["collect"]] == [live.id]
        assert [t["id"] for t in board["tabs"]["deliver"]] == [live.id]
        assert board["counts"] == {"collect": 1, "production": 0, "deliver": 1, "history": 0}
        assert board["tabs"]["collect"][0]["progress"] == {"completed": 0, "total": 2}

        assert ws.operations_board(assigned_to=operator.id + 100)["counts"]["collect"] == 0


# ── HTTP ─────────────────────────────────────────────────────────────────────


class TestWorkflowAPI:
    def test_put_and_get_steps(self, client, make_task, admin):
        task = make_task(status="production")
        res = client.put(f"/api/v1/tasks/{task.id}/steps", json={"steps": NEW_STEPS},
                         headers={"X-User-Id": str(admin.id)})
        assert res.status_code == 200
        assert len(res.get_json()["steps"]) == 2

        res = client.get(f"/api/v1/tasks/{task.id}/steps")
        body = res.get_json()
        assert [s["step_type"] for s in body["steps"]] == ["collect", "deliver_to_client"]
        assert body["steps"][0]["products"][0]["product_name"] == "Card stock"
        assert body["progress"]["total"] == 2

    def test_post_step_validation(self, client, make_task):
        task = make_task(status="production")
        res = client.post(f"/api/v1/tasks/{task.id}/steps", json={"step_type": "collect"})
        assert res.status_code == 422
        assert res.get_json()["code"] == "ERR_VALIDATION_INVALID"

    def test_complete_twice(self, client, make_task, make_step, operator):
        task = make_task(status="production")
        step = make_step(task, "collect")
        headers = {"X-User-Id": str(operator.id)}
        first = client.post(f"/api/v1/steps/{step.id}/complete", headers=headers)
        second = client.post(f"/api/v1/steps/{step.id}/complete", headers=headers)
        assert first.status_code == second.status_code == 200
        assert first.get_json()["already_completed"] is False
        assert second.get_json()["already_completed"] is True
        db.session.expire_all()
        assert db.session.get(WorkflowStep, step.id).status == "completed"

    def test_delete_completed_is_409(self, client, make_task, make_step):
        task = make_task(status="production")
        step = make_step(task, "collect", status="completed")
        res = client.delete(f"/api/v1/steps/{step.id}")
        assert res.status_code == 409
        assert res.get_json()["code"] == "ERR_CONFLICT_STATE"

    def test_unknown_step_is_404(self, client):
        assert client.post("/api/v1/steps/424242/complete").status_code == 404

    def test_board_endpoint(self, client):
        res = client.get("/api/v1/operations/board")
        assert res.status_code == 200
        assert set(res.get_json()["tabs"]) == {"collect", "production", "deliver", "history"}
