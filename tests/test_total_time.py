"""
Tests for task TotalTime propagation and the pending-adjustment outbox.
"""
import json

from worktime.config import settings
from worktime.models.models import TotalTimeAdjustment
from worktime.services.total_time import (
    MAX_RECONCILE_ATTEMPTS,
    adjust_task_total_time,
    apply_total_time_delta,
    reconcile_pending,
)

from conftest import SITE, TASK_LIST, run


class TestApplyDelta:

    def test_adds_delta_to_existing_total(self, store, client):
        store.add_task(TASK_LIST, 99, 100)

        assert run(apply_total_time_delta(client, SITE, TASK_LIST, 99, 30)) == 130

        [merge] = store.merges()
        body = json.loads(merge.content)
        assert body == {"TotalTime": 130, "__metadata": {"type": "SP.Data.Master_x0020_TasksListItem"}}

    def test_missing_total_counts_as_zero(self, store, client):
        store.add_task(TASK_LIST, 99, None)
        assert run(apply_total_time_delta(client, SITE, TASK_LIST, 99, 45)) == 45

    def test_fractional_totals_are_kept(self, store, client):
        store.add_task(TASK_LIST, 99, 10.5)
        assert run(apply_total_time_delta(client, SITE, TASK_LIST, 99, -20)) == -9.5


class TestAdjustTaskTotalTime:

    def test_zero_delta_is_a_no_op(self, store, client):
        store.add_task(TASK_LIST, 99, 100)
        assert run(adjust_task_total_time(client, SITE, TASK_LIST, 99, 0)) is False
        assert store.requests == []

    def test_missing_task_reference_is_a_no_op(self, store, client):
        assert run(adjust_task_total_time(client, SITE, None, 99, 10)) is False
        assert run(adjust_task_total_time(client, SITE, TASK_LIST, None, 10)) is False
        assert store.requests == []

    def test_success(self, store, client):
        store.add_task(TASK_LIST, 99, 100)
        assert run(adjust_task_total_time(client, SITE, TASK_LIST, 99, -40)) is True
        assert store.total_time(TASK_LIST, 99) == 60

    def test_failure_is_swallowed_and_queued(self, store, client, db):
        store.add_task(TASK_LIST, 99, 100)
        store.fail("GET", "items(99)", 500)

        assert run(adjust_task_total_time(client, SITE, TASK_LIST, 99, 25, db=db)) is False

        [pending] = db.query(TotalTimeAdjustment).all()
        assert (pending.task_id, pending.delta_minutes, pending.status) == (99, 25, "pending")
        assert pending.task_list_id == TASK_LIST
        assert len(pending.last_error) <= 500

    def test_html_response_is_swallowed_and_queued(self, store, client, db):
        store.add_task(TASK_LIST, 99, 100)
        store.fail("GET", "items(99)", 200, text="<html>sign in</html>")

        assert run(adjust_task_total_time(client, SITE, TASK_LIST, 99, 25, db=db)) is False

        [pending] = db.query(TotalTimeAdjustment).all()
        assert pending.status == "pending"
        assert "invalid JSON body" in pending.last_error
        assert store.total_time(TASK_LIST, 99) == 100

    def test_unexpected_error_is_swallowed(self, store, client, db, monkeypatch):
        async def broken(*args, **kwargs):
            raise RuntimeError("boom")

        monkeypatch.setattr("worktime.services.total_time.apply_total_time_delta", broken)

        assert run(adjust_task_total_time(client, SITE, TASK_LIST, 99, 25, db=db)) is False
        [pending] = db.query(TotalTimeAdjustment).all()
        assert "boom" in pending.last_error

    def test_missing_task_is_not_queued(self, store, client, db):
        assert run(adjust_task_total_time(client, SITE, TASK_LIST, 404, 25, db=db)) is False
        assert db.query(TotalTimeAdjustment).count() == 0

    def test_outbox_can_be_disabled(self, store, client, db, monkeypatch):
        monkeypatch.setattr(settings, "outbox_enabled", False)
        store.add_task(TASK_LIST, 99, 100)
        store.fail("MERGE", "items(99)", 500)

        run(adjust_task_total_time(client, SITE, TASK_LIST, 99, 25, db=db))

        assert db.query(TotalTimeAdjustment).count() == 0


class TestReconcile:

    def _queue(self, db, task_id, delta, attempts=1):
        row = TotalTimeAdjustment(
            site_url=SITE, task_list_id=TASK_LIST, task_id=task_id,
            delta_minutes=delta, status="pending", attempts=attempts,
        )
        db.add(row)
        db.commit()
        return row

    def test_pending_deltas_are_applied(self, store, client, db):
        store.add_task(TASK_LIST, 99, 100)
        first = self._queue(db, 99, 30)
        second = self._queue(db, 99, -10)

        summary = run(reconcile_pending(client, db))

        assert summary == {"applied": 2, "failed": 0, "abandoned": 0}
        assert store.total_time(TASK_LIST, 99) == 120
        assert first.status == second.status == "applied"
        assert first.applied_at is not None

    def test_failures_are_retried_later(self, store, client, db):
        store.add_task(TASK_LIST, 99, 100)
        store.fail("MERGE", "items(99)", 503)
        row = self._queue(db, 99, 30)

        summary = run(reconcile_pending(client, db))

        assert summary["failed"] == 1
        assert (row.status, row.attempts) == ("pending", 2)

    def test_gives_up_after_max_attempts(self, store, client, db):
        store.add_task(TASK_LIST, 99, 100)
        store.fail("MERGE", "items(99)", 503)
        row = self._queue(db, 99, 30, attempts=MAX_RECONCILE_ATTEMPTS - 1)

        summary = run(reconcile_pending(client, db))

        assert summary["abandoned"] == 1
        assert row.status == "abandoned"

    def test_deleted_task_is_abandoned(self, client, db):
        row = self._queue(db, 404, 30)
        run(reconcile_pending(client, db))
        assert row.status == "abandoned"

    def test_applied_rows_are_not_replayed(self, store, client, db):
        store.add_task(TASK_LIST, 99, 100)
        self._queue(db, 99, 30)
        run(reconcile_pending(client, db))
        run(reconcile_pending(client, db))
        assert store.total_time(TASK_LIST, 99) == 130
