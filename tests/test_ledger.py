from datetime import date, datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import IntegrityError

import db
from app.types.sms_contract import MessageType, NotificationJob, SendStatus

DAY = date(2026, 10, 17)
NOW = datetime(2026, 10, 17, 15, 0, tzinfo=timezone.utc)


@pytest.fixture
def ledger(session_maker):
    return db.Ledger(session_maker)


@pytest.mark.asyncio
async def test_claim_is_once_per_day(ledger, make_user):
    user_id = await make_user()
    first = await ledger.claim(user_id, "morning_nudge", DAY, "hi")
    assert first is not None
    assert await ledger.claim(user_id, "morning_nudge", DAY, "hi") is None
    # Different type or day is a different slot.
    assert await ledger.claim(user_id, "evening_reminder", DAY, "hi") is not None
    assert await ledger.claim(user_id, "morning_nudge", DAY + timedelta(days=1), "hi") is not None


@pytest.mark.asyncio
async def test_failed_record_frees_the_slot(ledger, make_user):
    user_id = await make_user()
    record_id = await ledger.claim(user_id, "morning_nudge", DAY, "hi")
    await ledger.mark_failed(record_id, "boom")

    assert not await ledger.has_active(user_id, "morning_nudge", DAY)
    assert await ledger.failures(user_id, "morning_nudge", DAY) == 1
    assert await ledger.claim(user_id, "morning_nudge", DAY, "hi", attempt=2) is not None


@pytest.mark.asyncio
async def test_unique_index_rejects_second_live_record(session_maker, make_user):
    user_id = await make_user()
    async with session_maker() as s:
        s.add(db.SendRecord(user_id=user_id, message_type="morning_nudge", local_day=DAY, message_body="a"))
        await s.commit()

    with pytest.raises(IntegrityError):
        async with session_maker() as s:
            s.add(db.SendRecord(
                user_id=user_id, message_type="morning_nudge", local_day=DAY, message_body="b", status="sent",
            ))
            await s.commit()

    async with session_maker() as s:
        s.add(db.SendRecord(
            user_id=user_id, message_type="morning_nudge", local_day=DAY, message_body="c", status="failed",
        ))
        s.add(db.SendRecord(
            user_id=user_id, message_type="morning_nudge", local_day=DAY, message_body="d", bypass_guard=True,
        ))
        await s.commit()


@pytest.mark.asyncio
async def test_provider_status_only_moves_forward(ledger, make_user):
    user_id = await make_user()
    record_id = await ledger.claim(user_id, "morning_nudge", DAY, "hi")
    await ledger.mark_sent(record_id, "SM1", NOW)

    assert await ledger.apply_provider_status("SM1", SendStatus.DELIVERED, NOW)
    # A late "sent" callback after "delivered" changes nothing.
    assert not await ledger.apply_provider_status("SM1", SendStatus.SENT, NOW)
    assert not await ledger.apply_provider_status("SM-unknown", SendStatus.DELIVERED, NOW)

    [record] = await ledger.records_for(user_id)
    assert record.status == "delivered"
    assert record.delivered_at is not None


@pytest.mark.asyncio
async def test_failed_record_never_resurrected(ledger, make_user):
    user_id = await make_user()
    record_id = await ledger.claim(user_id, "morning_nudge", DAY, "hi")
    await ledger.mark_sent(record_id, "SM2", NOW)

    assert await ledger.apply_provider_status("SM2", SendStatus.FAILED, NOW, detail="30003: Unreachable")
    assert not await ledger.apply_provider_status("SM2", SendStatus.DELIVERED, NOW)

    [record] = await ledger.records_for(user_id)
    assert record.status == "failed"
    assert record.error_detail == "30003: Unreachable"


@pytest.mark.asyncio
async def test_dead_letters_expire(ledger, make_user):
    user_id = await make_user()
    job = NotificationJob(user_id=user_id, message_type=MessageType.MORNING_NUDGE, enqueued_at=NOW)
    await ledger.dead_letter(job, "gave up", NOW, retention_seconds=7 * 24 * 3600)

    assert await ledger.purge_dead_letters(NOW + timedelta(days=6)) == 0
    assert len(await ledger.dead_letters()) == 1
    assert await ledger.purge_dead_letters(NOW + timedelta(days=7)) == 1
    assert await ledger.dead_letters() == []


@pytest.mark.asyncio
async def test_retry_takes_over_the_record_its_job_holds(ledger, make_user):
    user_id = await make_user()
    record_id = await ledger.claim(user_id, "morning_nudge", DAY, "hi", job_id="job-1")
    await ledger.note_retry(record_id, "http_status=503")

    # Still queued, so the day stays claimed against other jobs.
    assert await ledger.has_active(user_id, "morning_nudge", DAY)
    assert await ledger.claim(user_id, "morning_nudge", DAY, "hi", job_id="job-2") is None

    assert await ledger.claim(user_id, "morning_nudge", DAY, "hi", attempt=2, job_id="job-1") == record_id
    # The same retry delivered twice only wins once.
    assert await ledger.claim(user_id, "morning_nudge", DAY, "hi", attempt=2, job_id="job-1") is None

    [record] = await ledger.records_for(user_id)
    assert (record.status, record.attempt, record.error_detail) == ("queued", 2, "http_status=503")


@pytest.mark.asyncio
async def test_release_job_frees_only_a_queued_record(ledger, make_user):
    user_id = await make_user()
    held = await ledger.claim(user_id, "morning_nudge", DAY, "hi", job_id="job-1")
    sent = await ledger.claim(user_id, "evening_reminder", DAY, "hi", job_id="job-2")
    await ledger.mark_sent(sent, "SM9", NOW)

    assert await ledger.release_job("job-1", "expired") == 1
    assert await ledger.release_job("job-2", "expired") == 0
    assert await ledger.release_job("job-unknown", "expired") == 0

    records = {r.id: r for r in await ledger.records_for(user_id)}
    assert records[held].status == "failed"
    assert records[sent].status == "sent"
    assert not await ledger.has_active(user_id, "morning_nudge", DAY)
