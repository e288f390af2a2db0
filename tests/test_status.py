"""
Task status transitions, the design overlay and the mockup clone flow.
"""

import pytest
from sqlalchemy import event

from taskhub.core.exceptions import NotFoundError, ValidationError
from taskhub.models import db
from taskhub.models.audit import TaskAuditLog
from taskhub.models.notification import Notification
from taskhub.models.task import DesignOverlayState, ProductLine, Task, stage_label
from taskhub.services import status_service, task_service


class TestOverlay:
    @pytest.mark.parametrize("state,flags", [
        (DesignOverlayState.NONE, (False, False, False)),
        (DesignOverlayState.AWAITING_MOCKUP, (True, False, False)),
        (DesignOverlayState.MOCKUP_RETURNED, (False, True, True)),
        (DesignOverlayState.DESIGNER_DONE, (False, False, True)),
    ])
    def test_legacy_flags(self, state, flags):
        assert state.flags == flags
        assert DesignOverlayState.from_flags(*flags) is state

    def test_impossible_combination_collapses(self):
        assert DesignOverlayState.from_flags(True, True, False) is DesignOverlayState.MOCKUP_RETURNED

    def test_stage_label_fallback(self):
        assert stage_label("client_approval") == "Client Approval"
        assert stage_label("done") == "Completed"
        assert stage_label("awaiting_print_proof") == "Awaiting Print Proof"
        assert stage_label(None) == "N/A"


class TestTransitions:
    def test_records_previous_status_and_audit(self, make_task, admin):
        task = make_task(status="todo")
        status_service.transition_status(task.id, "supplier_quotes", actor_id=admin.id)

        task = db.session.get(Task, task.id)
        assert task.status == "supplier_quotes"
        assert task.previous_status == "todo"
        assert task.status_changed_at is not None
        entry = TaskAuditLog.query.filter_by(task_id=task.id, action="status_changed").one()
        assert entry.old == {"status": "todo"}
        assert entry.new == {"status": "supplier_quotes"}
        assert entry.role == "admin"

    def test_same_status_is_noop(self, make_task):
        task = make_task(status="todo")
        status_service.transition_status(task.id, "todo")
        assert TaskAuditLog.query.count() == 0

    def test_unknown_status(self, make_task):
        task = make_task()
        with pytest.raises(ValidationError):
            status_service.transition_status(task.id, "teleported")

    def test_expected_from_mismatch(self, make_task):
        task = make_task(status="client_approval")
        with pytest.raises(ValidationError) as exc:
            status_service.transition_status(task.id, "admin_cost_approval", expected_from="todo")
        assert exc.value.code == "ERR_CONFLICT_STATE"
        assert db.session.get(Task, task.id).status == "client_approval"

    def test_done_sets_completed_at(self, make_task, admin):
        task = make_task(status="production")
        status_service.transition_status(task.id, "done", actor_id=admin.id)
        assert db.session.get(Task, task.id).completed_at is not None

    def test_send_to_designer(self, make_task, admin):
        task = make_task(status="client_approval")
        status_service.send_to_designer(task.id, actor_id=admin.id)
        task = db.session.get(Task, task.id)
        assert task.status == "client_approval"
        assert task.overlay is DesignOverlayState.AWAITING_MOCKUP
        assert task.sent_to_designer_mockup is True


class TestMockupFlow:
    def test_complete_mockup_clones_to_estimator(self, make_task, estimator, designer):
        original = make_task(
            "Shop window decal", status="mockup", type="design",
            assigned_by=estimator.id, created_by=estimator.id, assigned_to=designer.id,
            client_name="Globex", products=["Decal 1m", "Decal 2m"],
        )
        original.overlay = DesignOverlayState.AWAITING_MOCKUP
        db.session.commit()

        clone = status_service.complete_mockup(original.id, "Two colourways attached",
                                               designer_id=designer.id)

        assert clone.id != original.id
        assert clone.title == "[Post-Mockup] Shop window decal"
        assert clone.status == "todo"
        assert clone.assigned_to == estimator.id
        assert clone.created_by == estimator.id
        assert clone.cloned_from_task_id == original.id
        assert clone.sibling_task_id is None
        assert clone.client_name == "Globex"
        assert "Two colourways attached" in clone.admin_remarks
        assert clone.overlay is DesignOverlayState.NONE

        copied = ProductLine.query.filter_by(task_id=clone.id).order_by(ProductLine.position).all()
        assert [p.product_name for p in copied] == ["Decal 1m", "Decal 2m"]
        assert {p.approval_status for p in copied} == {"pending"}

        original = db.session.get(Task, original.id)
        assert original.status == "with_client"
        assert original.previous_status == "mockup"
        assert original.overlay is DesignOverlayState.DESIGNER_DONE
        assert original.sent_to_designer_mockup is False
        assert original.completed_by_designer_id == designer.id
        assert original.admin_remarks == "Two colourways attached"

        actions = {e.action for e in TaskAuditLog.query.filter_by(task_id=original.id)}
        assert {"status_changed", "mockup_completed"} <= actions
        assert TaskAuditLog.query.filter_by(task_id=clone.id, action="created").count() == 1

        notif = Notification.query.filter_by(recipient_id=estimator.id).one()
        assert notif.task_id == clone.id

    def test_clone_keeps_designer_completed_flag(self, make_task, estimator, designer):
        original = make_task(status="mockup", assigned_by=estimator.id, products=["Decal 1m", "Decal 2m"])
        first = ProductLine.query.filter_by(task_id=original.id, position=0).one()
        first.designer_completed = True
        db.session.commit()

        clone = status_service.complete_mockup(original.id, "Proof attached", designer_id=designer.id)

        copied = ProductLine.query.filter_by(task_id=clone.id).order_by(ProductLine.position).all()
        assert [p.designer_completed for p in copied] == [True, False]

    def test_product_copy_failure_keeps_clone(self, make_task, estimator, designer,
                                              monkeypatch, caplog):
        original = make_task(status="mockup", assigned_by=estimator.id, products=["Decal 1m"])

        class UnwritableLine:
            position = ProductLine.position
            id = ProductLine.id

            def __init__(self, **kwargs):
                raise RuntimeError("product table locked")

        monkeypatch.setattr(status_service, "ProductLine", UnwritableLine)
        clone = status_service.complete_mockup(original.id, "Proof attached", designer_id=designer.id)

        assert db.session.get(Task, clone.id) is not None
        assert ProductLine.query.filter_by(task_id=clone.id).count() == 0
        assert db.session.get(Task, original.id).status == "with_client"
        assert "Product copy" in caplog.text

    def test_clone_insert_failure_leaves_original(self, make_task, estimator, designer):
        original = make_task(status="mockup", assigned_by=estimator.id, products=["Decal 1m"])
        original.overlay = DesignOverlayState.AWAITING_MOCKUP
        db.session.commit()

        def reject_clone(mapper, connection, target):
            if target.cloned_from_task_id is not None:
                raise RuntimeError("insert rejected")

        event.listen(Task, "before_insert", reject_clone)
        try:
            with pytest.raises(RuntimeError, match="insert rejected"):
                status_service.complete_mockup(original.id, "Proof attached", designer_id=designer.id)
        finally:
            event.remove(Task, "before_insert", reject_clone)
        db.session.rollback()

        original = db.session.get(Task, original.id)
        assert original.status == "mockup"
        assert original.overlay is DesignOverlayState.AWAITING_MOCKUP
        assert original.completed_by_designer_id is None
        assert Task.query.count() == 1
        assert TaskAuditLog.query.count() == 0
        assert Notification.query.count() == 0

    def test_remarks_required(self, make_task, estimator, designer):
        task = make_task(status="mockup", assigned_by=estimator.id)
        with pytest.raises(ValidationError):
            status_service.complete_mockup(task.id, "   ", designer_id=designer.id)
        assert Task.query.count() == 1

    def test_return_mockup_to_estimation(self, make_task, estimator, designer):
        task = make_task(status="mockup", assigned_to=designer.id)
        task.overlay = DesignOverlayState.AWAITING_MOCKUP
        db.session.commit()

        status_service.return_mockup_to_estimation(task.id, "Needs client logo", actor_id=designer.id)

        task = db.session.get(Task, task.id)
        assert task.status == "todo"
        assert task.assigned_to == estimator.id
        assert task.overlay is DesignOverlayState.MOCKUP_RETURNED
        assert task.mockup_completed_by_designer is True
        assert task.came_from_designer_done is True
        assert Task.query.count() == 1


class TestTaskRecords:
    def test_create_validates(self):
        with pytest.raises(ValidationError):
            task_service.create_task({"title": ""})
        with pytest.raises(ValidationError) as exc:
            task_service.create_task({"title": "X", "status": "nope", "type": "nope"})
        assert set(exc.value.details) == {"status", "type"}

    def test_soft_delete_hides_task(self, make_task, admin):
        task = make_task()
        task_service.soft_delete_task(task.id, actor_id=admin.id)
        with pytest.raises(NotFoundError):
            task_service.get_active_task(task.id)
        assert db.session.get(Task, task.id).is_deleted is True
        assert TaskAuditLog.query.filter_by(task_id=task.id, action="deleted").count() == 1


class TestTaskAPI:
    def test_create_and_get(self, client, admin):
        res = client.post("/api/v1/tasks",
                          json={"title": "Banner", "type": "quotation",
                                "products": [{"product_name": "Vinyl banner", "quantity": 2}]},
                          headers={"X-User-Id": str(admin.id), "User-Agent": "curl/8.0"})
        assert res.status_code == 201
        body = res.get_json()
        assert body["created_by"] == admin.id
        assert body["products"][0]["product_name"] == "Vinyl banner"

        res = client.get(f"/api/v1/tasks/{body['id']}")
        assert res.status_code == 200
        assert res.get_json()["design_state"] == "none"

        entry = TaskAuditLog.query.filter_by(task_id=body["id"]).one()
        assert entry.device_type == "desktop"
        assert entry.user_agent == "curl/8.0"

    def test_status_endpoint(self, client, make_task):
        task = make_task(status="todo")
        res = client.post(f"/api/v1/tasks/{task.id}/status", json={"status": "supplier_quotes"})
        assert res.status_code == 200
        assert res.get_json()["previous_status"] == "todo"

        res = client.post(f"/api/v1/tasks/{task.id}/status",
                          json={"status": "client_approval", "expected_from": "todo"})
        assert res.status_code == 409
        assert res.get_json()["code"] == "ERR_CONFLICT_STATE"

    def test_mockup_complete_endpoint(self, client, make_task, estimator, designer):
        task = make_task(status="mockup", assigned_by=estimator.id)
        res = client.post(f"/api/v1/tasks/{task.id}/mockup/complete",
                          json={"remarks": "Done"}, headers={"X-User-Id": str(designer.id)})
        assert res.status_code == 201
        body = res.get_json()
        assert body["clone"]["cloned_from_task_id"] == task.id
        assert body["original"]["status"] == "with_client"

    def test_return_without_estimator_is_409(self, client, make_task):
        task = make_task(status="mockup")
        res = client.post(f"/api/v1/tasks/{task.id}/mockup/return", json={})
        assert res.status_code == 409
        assert res.get_json()["code"] == "ERR_NO_ESTIMATOR"

    def test_delete_then_404(self, client, make_task):
        task = make_task()
        assert client.delete(f"/api/v1/tasks/{task.id}").status_code == 200
        res = client.get(f"/api/v1/tasks/{task.id}")
        assert res.status_code == 404
        assert res.get_json()["code"] == "ERR_NOT_FOUND"

    def test_unknown_route_is_json_404(self, client):
        res = client.get("/api/v1/nowhere")
        assert res.status_code == 404
        assert res.get_json()["code"] == "ERR_NOT_FOUND"

    def test_malformed_actor_header_ignored(self, client):
        res = client.post("/api/v1/tasks", json={"title": "Anon"}, headers={"X-User-Id": "abc"})
        assert res.status_code == 201
        assert res.get_json()["created_by"] is None
