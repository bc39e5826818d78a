from datetime import datetime, timezone
from types import SimpleNamespace

from app.types.sms_contract import DeliveryOutcome, MessageType, NotificationJob
from app.workers import notification


def _job(**kwargs):
    return NotificationJob(
        user_id=7,
        message_type=MessageType.EVENING_REMINDER,
        enqueued_at=datetime(2026, 10, 17, 1, 0, tzinfo=timezone.utc),
        **kwargs,
    )


def test_celery_queue_serialises_job_and_eta():
    sent = []

    class StubApp:
        def send_task(self, name, args, queue, eta):
            sent.append((name, args, queue, eta))
            return SimpleNamespace(id="task-1")

    eta = datetime(2026, 10, 17, 2, 0, tzinfo=timezone.utc)
    queue_id = notification.CeleryJobQueue(app=StubApp()).enqueue(_job(attempt=2), eta=eta)

    assert queue_id == "task-1"
    [(name, args, queue, sent_eta)] = sent
    assert name == notification.DELIVER_TASK
    assert queue == "sms"
    assert sent_eta == eta
    assert args[0]["attempt"] == 2
    assert args[0]["message_type"] == "evening_reminder"


def test_deliver_task_runs_worker(monkeypatch):
    seen = []

    async def fake_deliver(job):
        seen.append(job)
        return DeliveryOutcome.SENT

    monkeypatch.setattr(notification, "_deliver", fake_deliver)
    payload = _job().model_dump(mode="json")

    result = notification.deliver.apply(args=[payload]).get()

    assert result == "sent"
    assert seen[0].user_id == 7
    assert seen[0].enqueued_at.tzinfo is not None


def test_deliver_task_drops_malformed_payload(monkeypatch):
    async def fail(job):  # pragma: no cover
        raise AssertionError("should not run")

    monkeypatch.setattr(notification, "_deliver", fail)
    result = notification.deliver.apply(args=[{"user_id": "nope"}]).get()
    assert result == "dropped"


def test_scan_due_task_reports_summary(monkeypatch):
    async def fake_scan():
        return {"users_seen": 3, "enqueued": {"morning_nudge": 2, "evening_reminder": 0}, "errors": 0}

    monkeypatch.setattr(notification, "_scan", fake_scan)
    result = notification.scan_due.apply().get()
    assert result["enqueued"]["morning_nudge"] == 2


def test_beat_schedule_registered():
    from app.celery_app import celery_app

    tasks = {entry["task"] for entry in celery_app.conf.beat_schedule.values()}
    assert tasks == {"app.workers.notification.scan_due", "app.workers.notification.purge_dead_letters"}
    assert notification.DELIVER_TASK in celery_app.tasks
