"""Tests for the in-process progress broadcaster."""

import asyncio
import logging

import pytest
from pydantic import ValidationError

from app.services.statement.progress import ProgressBroadcaster, ProgressEvent


def test_event_percentage_is_bounded():
    with pytest.raises(ValidationError):
        ProgressEvent(job_id="job", step="processing", percentage=101)
    with pytest.raises(ValidationError):
        ProgressEvent(job_id="job", step="processing", percentage=-1)


def test_terminal_event_detection():
    assert ProgressEvent(job_id="j", step="completed", percentage=100).is_terminal
    assert ProgressEvent(job_id="j", step="error", percentage=100).is_terminal
    assert not ProgressEvent(job_id="j", step="error", percentage=33).is_terminal
    assert not ProgressEvent(job_id="j", step="processing", percentage=100).is_terminal


def test_event_timestamp_is_epoch_millis():
    event = ProgressEvent(job_id="j", step="segmenting", percentage=0)
    assert event.timestamp > 1_600_000_000_000


def test_listeners_receive_events_in_publish_order(broadcaster):
    received = []
    broadcaster.subscribe("job-1", received.append)

    broadcaster.publish_step("job-1", "segmenting", 0, "Analyzing statement layout...")
    broadcaster.publish_step("job-1", "processing", 50, "Processing section 2 of 4...")
    broadcaster.publish_step("job-1", "completed", 100, "done")

    assert [(e.step, e.percentage) for e in received] == [("segmenting", 0), ("processing", 50), ("completed", 100)]
    assert broadcaster.latest("job-1").step == "completed"


def test_late_subscriber_gets_latest_event_replayed(broadcaster):
    broadcaster.publish_step("job-1", "processing", 25)
    broadcaster.publish_step("job-1", "processing", 50)

    received = []
    broadcaster.subscribe("job-1", received.append)

    assert [e.percentage for e in received] == [50]


def test_subscribing_to_unknown_job_replays_nothing(broadcaster):
    received = []
    broadcaster.subscribe("job-x", received.append)

    assert received == []
    assert broadcaster.listener_count("job-x") == 1


def test_jobs_are_isolated(broadcaster):
    first, second = [], []
    broadcaster.subscribe("job-1", first.append)
    broadcaster.subscribe("job-2", second.append)

    broadcaster.publish_step("job-1", "processing", 10)

    assert len(first) == 1
    assert second == []


def test_duplicate_subscription_is_ignored(broadcaster):
    received = []
    broadcaster.subscribe("job-1", received.append)
    listener = received.append
    broadcaster.subscribe("job-1", listener)

    broadcaster.publish_step("job-1", "processing", 10)

    assert broadcaster.listener_count("job-1") == 1
    assert len(received) == 1


def test_unsubscribe_stops_delivery(broadcaster):
    received = []
    listener = received.append
    broadcaster.subscribe("job-1", listener)
    broadcaster.unsubscribe("job-1", listener)
    broadcaster.unsubscribe("job-1", listener)

    broadcaster.publish_step("job-1", "processing", 10)

    assert received == []
    assert broadcaster.listener_count("job-1") == 0
    assert broadcaster.latest("job-1").percentage == 10


def test_cleanup_forgets_job(broadcaster):
    received = []
    broadcaster.subscribe("job-1", received.append)
    broadcaster.publish_step("job-1", "completed", 100)

    broadcaster.cleanup("job-1")

    assert broadcaster.latest("job-1") is None
    assert broadcaster.listener_count("job-1") == 0
    assert broadcaster.job_ids() == []
    broadcaster.cleanup("job-1")


def test_failing_listener_does_not_block_others(broadcaster, caplog):
    received = []

    def broken(event):
        raise RuntimeError("listener exploded")

    broadcaster.subscribe("job-1", broken)
    broadcaster.subscribe("job-1", received.append)

    with caplog.at_level(logging.ERROR, logger="app.services.statement.progress"):
        broadcaster.publish_step("job-1", "processing", 10)

    assert len(received) == 1
    assert "Progress listener failed for job job-1" in caplog.text


def test_job_ids_lists_known_jobs(broadcaster):
    broadcaster.publish_step("job-b", "processing", 10)
    broadcaster.subscribe("job-a", lambda event: None)

    assert broadcaster.job_ids() == ["job-a", "job-b"]


@pytest.mark.asyncio
async def test_schedule_cleanup_runs_after_delay(broadcaster):
    broadcaster.publish_step("job-1", "completed", 100)
    broadcaster.schedule_cleanup("job-1", 0.01)

    assert broadcaster.latest("job-1") is not None
    await asyncio.sleep(0.05)
    assert broadcaster.latest("job-1") is None


@pytest.mark.asyncio
async def test_publish_cancels_pending_cleanup(broadcaster):
    broadcaster.publish_step("job-1", "completed", 100)
    broadcaster.schedule_cleanup("job-1", 0.01)
    broadcaster.publish_step("job-1", "segmenting", 0)

    await asyncio.sleep(0.05)
    assert broadcaster.latest("job-1").step == "segmenting"


def test_schedule_cleanup_without_delay_is_immediate(broadcaster):
    broadcaster.publish_step("job-1", "completed", 100)
    broadcaster.schedule_cleanup("job-1", 0)

    assert broadcaster.latest("job-1") is None
