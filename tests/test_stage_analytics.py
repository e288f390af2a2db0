"""
Stage-duration replay: pure-function tests (no database).
"""

from datetime import datetime, timedelta, timezone

import pytest

from taskhub.services import stage_analytics as sa

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)  # a Monday


def ev(task_id, hours, old, new, log_id=None, title="Flyers"):
    return sa.LogEvent(task_id=task_id, at=T0 + timedelta(hours=hours),
                       old_status=old, new_status=new, title=title, log_id=log_id)


def _by_stage(metrics):
    return {m["stage"]: m for m in metrics}


class TestStageMetrics:
    def test_consecutive_entries_attribute_time_to_entered_stage(self):
        events = [
            ev(1, 0, None, "todo"),
            ev(1, 2, "todo", "supplier_quotes"),
            ev(1, 5, "supplier_quotes", "client_approval"),
        ]
        m = _by_stage(sa.stage_metrics(events))
        assert m["todo"]["count"] == 1
        assert m["todo"]["avg_hours"] == pytest.approx(2.0)
        assert m["supplier_quotes"]["avg_hours"] == pytest.approx(3.0)
        # Final entry is still open.
        assert m["client_approval"]["count"] == 0
        assert m["client_approval"]["avg_hours"] == 0.0

    def test_events_in_any_order_are_sorted_per_task(self):
        events = [
            ev(1, 5, "supplier_quotes", "client_approval"),
            ev(2, 1, "todo", "supplier_quotes"),
            ev(1, 0, None, "todo"),
            ev(2, 0, None, "todo"),
            ev(1, 2, "todo", "supplier_quotes"),
        ]
        m = _by_stage(sa.stage_metrics(events))
        assert m["todo"]["count"] == 2
        assert m["todo"]["min_hours"] == pytest.approx(1.0)
        assert m["todo"]["max_hours"] == pytest.approx(2.0)
        assert m["todo"]["avg_hours"] == pytest.approx(1.5)

    def test_unrecognised_stage_ignored(self):
        events = [ev(1, 0, None, "mockup"), ev(1, 3, "mockup", "todo"), ev(1, 4, "todo", "done")]
        m = _by_stage(sa.stage_metrics(events))
        assert "mockup" not in m
        assert m["todo"]["count"] == 1
        assert m["todo"]["avg_hours"] == pytest.approx(1.0)

    def test_every_stage_present_with_labels(self):
        metrics = sa.stage_metrics([])
        assert [m["stage"] for m in metrics] == list(sa.ANALYTICS_STAGES)
        assert _by_stage(metrics)["admin_cost_approval"]["label"] == "Admin Cost Approval"

    def test_cutoff_drops_older_entries_before_pairing(self):
        events = [
            ev(1, 0, None, "todo"),
            ev(1, 10, "todo", "supplier_quotes"),
            ev(1, 12, "supplier_quotes", "client_approval"),
        ]
        m = _by_stage(sa.stage_metrics(events, cutoff=T0 + timedelta(hours=5)))
        assert m["todo"]["count"] == 0
        assert m["supplier_quotes"]["count"] == 1
        assert m["supplier_quotes"]["avg_hours"] == pytest.approx(2.0)

    def test_partitions_merge_to_the_same_result(self):
        events = [
            ev(1, 0, None, "todo"), ev(1, 2, "todo", "supplier_quotes"),
            ev(2, 0, None, "todo"), ev(2, 4, "todo", "supplier_quotes"),
        ]
        whole = sa.stage_metrics(events)
        merged = sa.summarise(sa.merge_samples(
            sa.collect_samples(events[:2]), sa.collect_samples(events[2:]),
        ))
        assert merged == whole


class TestClamping:
    def test_rows_ordered_by_time_not_log_id(self):
        events = [ev(1, 5, None, "todo", log_id=1), ev(1, 3, "todo", "supplier_quotes", log_id=2)]
        m = _by_stage(sa.stage_metrics(events))
        assert m["supplier_quotes"]["avg_hours"] == pytest.approx(2.0)

    def test_hours_between_never_negative(self, caplog):
        assert sa.hours_between(T0, T0 - timedelta(minutes=30)) == 0.0
        assert "clamped" in caplog.text

    def test_millisecond_precision(self):
        assert sa.hours_between(T0, T0 + timedelta(milliseconds=1_800_000)) == pytest.approx(0.5)


class TestRowDecoding:
    def test_json_payloads_decoded(self):
        e = sa.event_from_row(7, "2026-03-02T10:00:00Z", '{"status": "todo"}',
                              '{"status": "supplier_quotes"}', log_id=3)
        assert e.old_status == "todo"
        assert e.new_status == "supplier_quotes"
        assert e.at == datetime(2026, 3, 2, 10, tzinfo=timezone.utc)

    def test_naive_timestamp_taken_as_utc(self):
        e = sa.event_from_row(7, datetime(2026, 3, 2, 10), None, {"status": "todo"})
        assert e.at.tzinfo is not None
        assert e.old_status is None

    def test_malformed_rows_skipped(self, caplog):
        assert sa.event_from_row(7, "not a date", None, '{"status": "todo"}', log_id=9) is None
        assert sa.event_from_row(7, T0, None, "{broken", log_id=10) is None
        assert sa.event_from_row(7, T0, None, '["todo"]', log_id=11) is None
        assert "Skipping audit row" in caplog.text


class TestWindows:
    NOW = datetime(2026, 3, 5, 15, 30, tzinfo=timezone.utc)  # Thursday

    def test_today(self):
        assert sa.window_cutoff("today", self.NOW) == datetime(2026, 3, 5, tzinfo=timezone.utc)

    def test_week_starts_monday(self):
        assert sa.window_cutoff("week", self.NOW) == datetime(2026, 3, 2, tzinfo=timezone.utc)

    def test_month(self):
        assert sa.window_cutoff("month", self.NOW) == datetime(2026, 3, 1, tzinfo=timezone.utc)

    def test_all_has_no_cutoff(self):
        assert sa.window_cutoff("all", self.NOW) is None

    def test_unknown_window(self):
        with pytest.raises(ValueError):
            sa.window_cutoff("year", self.NOW)


class TestPerTaskViews:
    def test_history_final_entry_open(self):
        events = [ev(1, 0, None, "todo"), ev(1, 2, "todo", "supplier_quotes")]
        now = T0 + timedelta(hours=6)
        history = sa.stage_history(events, now)
        assert [h["stage"] for h in history] == ["todo", "supplier_quotes"]
        assert history[0]["is_open"] is False
        assert history[0]["duration_hours"] == pytest.approx(2.0)
        assert history[1]["is_open"] is True
        assert history[1]["duration_hours"] == pytest.approx(4.0)

    def test_current_stage_age_from_last_entry(self):
        events = [ev(1, 0, None, "todo"), ev(1, 2, "todo", "supplier_quotes")]
        age = sa.current_stage_age(events, T0 + timedelta(hours=3))
        assert age["stage"] == "supplier_quotes"
        assert age["age_hours"] == pytest.approx(1.0)

    def test_current_stage_age_without_entries_uses_creation(self):
        age = sa.current_stage_age([], T0 + timedelta(hours=30), initial_status="todo", created_at=T0)
        assert age["stage"] == "todo"
        assert age["age_hours"] == pytest.approx(30.0)

    def test_current_stage_age_without_creation_skipped(self):
        assert sa.current_stage_age([], T0, initial_status="todo", created_at=None) is None


class TestActivityAndTransitions:
    def test_describe_transition(self):
        assert sa.describe_transition("todo", "supplier_quotes") == \
            'Moved from "To Do" to "Supplier Quotes"'
        assert sa.describe_transition(None, "todo") == 'Status changed to "To Do"'
        assert sa.describe_transition("some_custom", "some_custom") == \
            'Status changed to "Some Custom"'

    def test_current_activity_latest_per_task_newest_first(self):
        events = [
            ev(1, 0, None, "todo", title="A"), ev(1, 5, "todo", "supplier_quotes", title="A"),
            ev(2, 3, None, "todo", title="B"),
        ]
        feed = sa.current_activity(events)
        assert [f["task_id"] for f in feed] == [1, 2]
        assert feed[0]["stage"] == "supplier_quotes"
        assert feed[0]["description"] == 'Moved from "To Do" to "Supplier Quotes"'
        assert len(sa.current_activity(events, limit=1)) == 1

    def test_recent_transitions_measured_from_stage_entry(self):
        events = [
            ev(1, 0, None, "todo"),
            ev(1, 4, "todo", "supplier_quotes"),
            ev(1, 4.5, "supplier_quotes", "supplier_quotes"),  # re-entry restarts the clock
            ev(1, 10, "supplier_quotes", "client_approval"),
            ev(1, 11, "client_approval", "production"),  # production not recognised
        ]
        items = sa.recent_transitions(events)
        assert [(t["from_stage"], t["to_stage"]) for t in items] == [
            ("supplier_quotes", "client_approval"),
            ("todo", "supplier_quotes"),
        ]
        assert items[0]["hours_spent"] == pytest.approx(5.5)
        assert items[1]["hours_spent"] == pytest.approx(4.0)

    def test_recent_transitions_without_prior_entry_count_zero(self):
        items = sa.recent_transitions([ev(1, 3, "todo", "supplier_quotes", title=None)])
        assert items[0]["hours_spent"] == 0.0
        assert items[0]["title"] == "Unknown Task"

    def test_recent_transitions_limit(self):
        events = [ev(i, i, "todo", "supplier_quotes") for i in range(1, 15)]
        assert len(sa.recent_transitions(events, limit=10)) == 10


class TestFormatHours:
    @pytest.mark.parametrize("hours,expected", [
        (0.75, "45m"),
        (0, "0m"),
        (3.5, "3.5h"),
        (23.94, "23.9h"),
        (52, "2d 4h"),
        (47.9, "2d 0h"),
    ])
    def test_format(self, hours, expected):
        assert sa.format_hours(hours) == expected
