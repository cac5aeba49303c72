"""Tests for the watchdog cycle."""

import pytest
from pydantic import ValidationError

from conftest import backdate
from genjobs.config import Settings
from genjobs.models.job import (
    AWAITING_FALLBACK,
    AWAITING_REFRAME,
    CLAIMED,
    COMPLETE,
    FAILED,
    PENDING,
    PENDING_FALLBACK,
    PERMANENTLY_FAILED,
    PROCESSING,
)
from genjobs.pipelines.registry import start_job
from genjobs.services.lease import Lease
from genjobs.watchdog import LEASE_NAME


def test_lease_held_elsewhere_skips_cycle(engine, test_db, store, dispatcher):
    job = store.create("agent_conversation")
    store.update(job.id, status=PROCESSING)
    backdate(test_db, job.id, 600)
    other = Lease(test_db, LEASE_NAME, 60)
    assert other.try_acquire() is True

    assert engine.watchdog.run_once() == []
    assert dispatcher.calls == []
    assert store.get(job.id).meta == {}

    other.release()
    assert engine.watchdog.run_once() == [f"recovered {job.id}"]


def test_lease_is_exclusive_until_released_or_expired(test_db):
    first = Lease(test_db, "jobs", 60)
    second = Lease(test_db, "jobs", 60)

    assert first.try_acquire() is True
    assert second.try_acquire() is False

    first.release()
    assert second.try_acquire() is True

    expired = Lease(test_db, "short", -1)
    assert expired.try_acquire() is True
    # A negative TTL is already expired, so anyone may take it over
    assert Lease(test_db, "short", 60).try_acquire() is True


def test_stale_job_recovered_once_per_cycle(engine, test_db, store, dispatcher):
    job = store.create("agent_conversation")
    store.update(job.id, status=PROCESSING)
    backdate(test_db, job.id, 600)

    assert engine.watchdog.run_once() == [f"recovered {job.id}"]
    assert engine.watchdog.run_once() == []

    job = store.get(job.id)
    assert job.status == PROCESSING
    assert job.meta["watchdog_retries"] == 1
    assert dispatcher.dispatched(job.id) == 1


def test_stale_recovery_gives_up_after_max_retries(engine, test_db, store, dispatcher):
    job = store.create("reframe", metadata={"watchdog_retries": 3})
    store.update(job.id, status=PROCESSING, step="generate")
    backdate(test_db, job.id, 600)

    assert engine.watchdog.run_once() == [f"permanently_failed {job.id}"]

    job = store.get(job.id)
    assert job.status == PERMANENTLY_FAILED
    assert job.error_message == "Job stalled in processing after 3 watchdog recoveries"
    assert dispatcher.calls == []


def test_pending_jobs_of_slot_limited_types_wait_for_intake(engine, test_db, store, dispatcher):
    """A long-pending job without a slot limit is stranded; with one it is queued."""
    stranded = store.create("agent_conversation")
    queued = store.create("composite")
    backdate(test_db, stranded.id, 600)
    backdate(test_db, queued.id, 600)

    actions = engine.watchdog.run_once()

    assert f"recovered {stranded.id}" in actions
    assert f"claimed {queued.id}" in actions
    assert f"recovered {queued.id}" not in actions


def test_intake_respects_slot_capacity(engine, store, dispatcher):
    running = store.create("composite")
    store.update(running.id, status=PROCESSING)
    waiting = store.create("composite")

    assert engine.watchdog.run_once() == []
    assert store.get(waiting.id).status == PENDING

    store.update(running.id, status=COMPLETE)
    assert engine.watchdog.run_once() == [f"claimed {waiting.id}"]
    assert store.get(waiting.id).status == CLAIMED


def test_intake_reverts_claim_when_dispatch_fails(engine, store, dispatcher):
    job = store.create("batch_refine", metadata={"items": ["blob://a.png"]})
    dispatcher.fail = True

    assert engine.watchdog.run_once() == []

    assert store.get(job.id).status == PENDING


def test_failed_child_fails_parent(engine, store):
    parent = store.create("composite")
    child = store.create("reframe", parent_job_id=parent.id)
    store.update(child.id, status=FAILED, error_message="outpaint rejected")
    store.update(parent.id, status=AWAITING_REFRAME, step="done", metadata={"delegated_job_id": child.id})

    assert engine.watchdog.run_once() == [f"failed {parent.id}"]

    parent = store.get(parent.id)
    assert parent.status == FAILED
    assert parent.error_message == f"Delegated job {child.id} failed: outpaint rejected"


def test_permanently_failed_child_fails_parent(engine, store):
    parent = store.create("composite")
    child = store.create("composite", parent_job_id=parent.id, metadata={"provider": "fallback"})
    store.update(child.id, status=PERMANENTLY_FAILED, error_message="stalled")
    store.update(parent.id, status=AWAITING_FALLBACK, metadata={"delegated_job_id": child.id})

    engine.watchdog.run_once()

    assert store.get(parent.id).status == FAILED


def test_missing_child_fails_parent(engine, store):
    parent = store.create("composite")
    store.update(parent.id, status=AWAITING_REFRAME, metadata={"delegated_job_id": "gone"})

    engine.watchdog.run_once()

    parent = store.get(parent.id)
    assert parent.status == FAILED
    assert parent.error_message == "Delegated job gone not found"


def test_unfinished_child_leaves_parent_waiting(engine, store):
    parent = store.create("composite")
    child = store.create("reframe", parent_job_id=parent.id)
    store.update(parent.id, status=AWAITING_REFRAME, step="done", metadata={"delegated_job_id": child.id})

    engine.watchdog.run_once()

    assert store.get(parent.id).status == AWAITING_REFRAME


def test_parent_not_on_terminal_step_is_resumed(engine, store, dispatcher):
    parent = store.create("composite")
    child = store.create("reframe", parent_job_id=parent.id)
    store.update(child.id, status=COMPLETE, metadata={"final_image_url": "blob://wide.png"})
    store.update(parent.id, status=AWAITING_REFRAME, step="reframe", metadata={"delegated_job_id": child.id})

    engine.watchdog.run_once()

    parent = store.get(parent.id)
    assert parent.status == PROCESSING
    assert parent.meta["final_image_url"] == "blob://wide.png"
    assert dispatcher.dispatched(parent.id) == 1


def test_pending_fallback_is_escalated(engine, store, dispatcher):
    job = store.create("reframe", metadata={"base_image_url": "blob://a.png", "aspect_ratio": "1:1"})
    store.update(
        job.id,
        status=PENDING_FALLBACK,
        step="generate",
        metadata={"escalation_reason": "503", "failed_step": "generate"},
    )

    actions = engine.watchdog.run_once()

    (child,) = store.find_children(job.id, "reframe")
    assert actions == [f"escalated {job.id} -> {child.id}"]
    assert store.get(job.id).status == AWAITING_FALLBACK
    assert child.step == "generate"
    assert child.meta["provider"] == "fallback"
    assert "escalation_reason" not in child.meta
    # Reframe is not slot-limited, so the child starts right away
    assert dispatcher.dispatched(child.id) == 1


def test_escalation_of_fallback_job_fails_it(engine, store):
    job = store.create("reframe", metadata={"provider": "fallback"})
    store.update(job.id, status=PENDING_FALLBACK, metadata={"escalation_reason": "still down"})

    assert engine.watchdog.run_once() == [f"failed {job.id}"]

    job = store.get(job.id)
    assert job.status == FAILED
    assert job.error_message.startswith("Primary provider failed: still down; escalation failed:")


def test_failing_task_does_not_stop_the_cycle(engine, store, monkeypatch):
    def broken(store, pipeline_type, spec):
        raise RuntimeError("database hiccup")

    monkeypatch.setattr(engine.watchdog, "recover_stale", broken)
    job = store.create("composite")

    assert engine.watchdog.run_once() == [f"claimed {job.id}"]


def test_slow_step_is_not_recovered_while_still_running(engine, test_db, store, dispatcher, planner, test_settings):
    """A planner turn that runs for its whole retry budget still lands its result."""
    planner.say("finish_task", response_type="text", summary="Done at last")
    scripted_plan = planner.plan
    watchdog_actions = []

    def slow_plan(history, system_prompt, tools):
        # The turn has been running as long as its worst case when the watchdog ticks
        worst_case = test_settings.step_budgets()["STALE_AGENT_SECONDS"]
        backdate(test_db, job.id, worst_case)
        watchdog_actions.extend(engine.watchdog.run_once())
        return scripted_plan(history, system_prompt, tools)

    planner.plan = slow_plan
    job = store.create("agent_conversation", metadata={"pending_user_input": "hi"})
    start_job(engine.registry, engine.dispatcher, job)

    dispatcher.drain(engine.worker.invoke)

    job = store.get(job.id)
    assert watchdog_actions == []
    assert job.status == COMPLETE
    assert job.meta["final_result"]["text"] == "Done at last"
    assert "watchdog_retries" not in job.meta
    assert len(planner.requests) == 1


def test_default_stale_thresholds_outlast_a_full_step():
    config = Settings(_env_file=None)

    for name, budget in config.step_budgets().items():
        assert getattr(config, name) > budget


def test_stale_threshold_below_step_duration_is_rejected():
    with pytest.raises(ValidationError) as exc:
        Settings(_env_file=None, STALE_AGENT_SECONDS=30)

    assert "STALE_AGENT_SECONDS=30" in str(exc.value)
