"""
Tests for JobDispatcher and QueueBackend

Covers the uniform result contract, typed producers, batch enqueue,
delayed/recurring scheduling, status and stats queries, clean, and the
backend's fail-fast behaviour when the store is down.
"""
import asyncio
import time
from unittest.mock import MagicMock

import pytest

from conftest import wait_until
from job_queue.backend import QueueBackend
from job_queue.dispatcher import JobDispatcher
from job_queue.errors import JobProcessingError, ProcessorAlreadyRegistered, QueueUnavailable
from job_queue.models import JobState, now_ms
from job_queue.store import InMemoryJobStore


# ──────────────────────────────────────────────────────────────
#  End-to-end scenarios
# ──────────────────────────────────────────────────────────────

class TestScenarios:
    @pytest.mark.asyncio
    async def test_send_email_runs_to_completion(self, dispatcher):
        release = asyncio.Event()

        async def send_email(job):
            await release.wait()
            return {"sent": True, "to": job.data["to"]}

        added = await dispatcher.add_job("jobs", "send-email", {"to": "a@b.com"}, {"priority": 5})
        assert added["success"] is True
        job_id = added["jobId"]

        status = await dispatcher.get_job_status("jobs", job_id)
        assert status["job"]["state"] == "waiting"
        assert status["job"]["priority"] == 5

        dispatcher.process_queue("jobs", "send-email", send_email)
        await wait_until(lambda: _state(dispatcher, job_id, "active"))

        release.set()
        await wait_until(lambda: _state(dispatcher, job_id, "completed"))

        status = await dispatcher.get_job_status("jobs", job_id)
        assert status["job"]["returnValue"] == {"sent": True, "to": "a@b.com"}
        stats = await dispatcher.get_queue_stats("jobs")
        assert stats["stats"]["completed"] == 1
        assert stats["stats"]["active"] == 0
        assert stats["stats"]["waiting"] == 0

    @pytest.mark.asyncio
    async def test_cleanup_task_fails_after_two_attempts_with_backoff(self, dispatcher, backend):
        starts, raised_at, failures = [], [], []
        backend.get_queue("jobs").on("failed", lambda job, err: failures.append(job.attempts_made))

        async def cleanup(job):
            starts.append(time.monotonic())
            if job.data.get("bad"):
                raised_at.append(time.monotonic())
                raise ValueError("bad payload")
            return {}

        added = await dispatcher.add_job("jobs", "cleanup-task", {"bad": True},
                                         {"attempts": 2, "backoff": {"delay": 100}})
        dispatcher.process_queue("jobs", "cleanup-task", cleanup)

        await wait_until(lambda: len(failures) == 2)
        status = (await dispatcher.get_job_status("jobs", added["jobId"]))["job"]
        assert status["state"] == "failed"
        assert status["attempts"] == 2
        assert status["failedReason"] == "bad payload"
        assert len(starts) == 2
        assert failures == [1, 2]
        assert starts[1] - raised_at[0] >= 0.098


async def _state(dispatcher, job_id, state):
    result = await dispatcher.get_job_status("jobs", job_id)
    return result["success"] and result["job"]["state"] == state


# ──────────────────────────────────────────────────────────────
#  Producers
# ──────────────────────────────────────────────────────────────

class TestProducers:
    @pytest.mark.asyncio
    async def test_add_job_result_shape(self, dispatcher):
        result = await dispatcher.add_job("jobs", "process-data", {"k": "v"})
        assert result == {
            "success": True,
            "jobId": result["jobId"],
            "queueName": "jobs",
            "jobType": "process-data",
            "data": {"k": "v"},
        }

    @pytest.mark.asyncio
    async def test_typed_producers_apply_default_priority(self, dispatcher):
        webhook = await dispatcher.add_webhook_job({"url": "x"})
        cleanup = await dispatcher.queue_cleanup_task({})
        overridden = await dispatcher.add_whatsapp_media_job({"mediaId": "m"}, {"priority": 7})

        assert (await dispatcher.get_job_status("jobs", webhook["jobId"]))["job"]["priority"] == 7
        assert (await dispatcher.get_job_status("jobs", cleanup["jobId"]))["job"]["priority"] == 1
        assert (await dispatcher.get_job_status("jobs", overridden["jobId"]))["job"]["priority"] == 7

    @pytest.mark.asyncio
    async def test_invalid_options_return_failure(self, dispatcher):
        result = await dispatcher.add_job("jobs", "process-data", {}, {"priority": "urgent"})
        assert result["success"] is False
        assert result["error"]

    @pytest.mark.asyncio
    async def test_batch_reports_per_item(self, dispatcher):
        result = await dispatcher.queue_batch_jobs([
            {"type": "send-email", "data": {"to": "a@b.com"}},
            {"type": "no-such-type", "data": {}},
            {"type": "process-file", "payload": {"path": "/tmp/f"}, "options": {"priority": 9}},
        ])
        assert result["success"] is True
        assert result["totalJobs"] == 3
        assert result["successfulJobs"] == 2
        assert result["results"][1]["result"] == {"success": False, "error": "Unknown job type: no-such-type"}
        assert result["results"][2]["result"]["data"] == {"path": "/tmp/f"}

    @pytest.mark.asyncio
    async def test_batch_accepts_send_webhook_name(self, dispatcher):
        result = await dispatcher.queue_batch_jobs([{"type": "send-webhook", "data": {"event": "e"}}])
        assert result["successfulJobs"] == 1
        added = result["results"][0]["result"]
        assert added["jobType"] == "webhook"
        status = await dispatcher.get_job_status("jobs", added["jobId"])
        assert status["job"]["priority"] == 7

    @pytest.mark.asyncio
    async def test_remove_job(self, dispatcher, backend):
        added = await dispatcher.add_job("jobs", "process-data", {"k": 1})
        assert await dispatcher.remove_job("jobs", added["jobId"]) == {"success": True, "jobId": added["jobId"]}
        assert (await dispatcher.get_job_status("jobs", added["jobId"]))["error"] == "Job not found"
        assert (await dispatcher.remove_job("jobs", added["jobId"]))["error"] == "Job not found"

    @pytest.mark.asyncio
    async def test_active_job_is_not_removed(self, dispatcher, backend):
        added = await dispatcher.add_job("jobs", "process-data", {"k": 1})
        now = now_ms()
        await backend.store.claim_next("jobs", "process-data", lock_until=now + 60_000, now=now)

        result = await dispatcher.remove_job("jobs", added["jobId"])
        assert result == {"success": False, "error": "Job is being processed"}
        assert (await dispatcher.get_job_status("jobs", added["jobId"]))["job"]["state"] == "active"

    @pytest.mark.asyncio
    async def test_schedule_delayed_job(self, dispatcher):
        result = await dispatcher.schedule_delayed_job("process-data", {"x": 1}, 60_000)
        status = await dispatcher.get_job_status("jobs", result["jobId"])
        assert status["job"]["state"] == "delayed"

    @pytest.mark.asyncio
    async def test_schedule_recurring_job(self, dispatcher):
        result = await dispatcher.schedule_recurring_job("cleanup-task", {}, "0 3 * * *")
        assert result["success"] is True
        assert result["jobId"].startswith("repeat:cleanup-task:cron:0 3 * * *:")

        bad = await dispatcher.schedule_recurring_job("cleanup-task", {}, "whenever")
        assert bad["success"] is False


# ──────────────────────────────────────────────────────────────
#  Health
# ──────────────────────────────────────────────────────────────

class TestBackendHealth:
    @pytest.mark.asyncio
    async def test_add_job_fails_fast_when_store_down(self, dispatcher, backend):
        await backend.store.close()
        started = time.monotonic()
        result = await dispatcher.add_job("jobs", "send-email", {"to": "a@b.com"})
        assert result == {"success": False, "error": "Queue backend is not available"}
        assert time.monotonic() - started < 0.5

    @pytest.mark.asyncio
    async def test_add_job_times_out_on_hanging_store(self, settings, backend):
        settings.queue.operation_timeout = 0.1
        dispatcher = JobDispatcher(backend, settings)
        queue = backend.get_queue("jobs")

        async def hang(*args, **kwargs):
            await asyncio.sleep(10)

        queue.add = hang
        started = time.monotonic()
        result = await dispatcher.add_job("jobs", "send-email", {})
        assert result["success"] is False
        assert time.monotonic() - started < 1.0

    @pytest.mark.asyncio
    async def test_queries_fail_softly_when_store_down(self, dispatcher, backend):
        await backend.store.close()
        assert (await dispatcher.get_queue_stats("jobs"))["success"] is False
        assert (await dispatcher.pause_queue("jobs"))["success"] is False
        assert (await dispatcher.clean_queue("jobs"))["success"] is False

    @pytest.mark.asyncio
    async def test_missing_job(self, dispatcher):
        assert await dispatcher.get_job_status("jobs", "404") == {"success": False, "error": "Job not found"}

    @pytest.mark.asyncio
    async def test_queue_handles_are_per_instance(self, settings):
        a = QueueBackend(settings, store=InMemoryJobStore())
        b = QueueBackend(settings, store=InMemoryJobStore())
        await a.initialize()
        await b.initialize()
        assert a.get_queue("jobs") is a.get_queue("jobs")
        assert a.get_queue("jobs") is not b.get_queue("jobs")
        await a.shutdown()
        await b.shutdown()

    @pytest.mark.asyncio
    async def test_shutdown_is_idempotent(self, settings):
        b = QueueBackend(settings, store=InMemoryJobStore())
        await b.initialize()
        await b.shutdown()
        await b.shutdown()
        assert not b.is_healthy()
        with pytest.raises(QueueUnavailable):
            b.get_queue("jobs")

    @pytest.mark.asyncio
    async def test_initialize_reports_failure(self, settings):
        store = InMemoryJobStore()
        store.connect = MagicMock(side_effect=ConnectionError("refused"))
        b = QueueBackend(settings, store=store)
        assert await b.initialize() is False

    @pytest.mark.asyncio
    async def test_initialize_after_shutdown_leaves_store_closed(self, settings):
        store = InMemoryJobStore()
        b = QueueBackend(settings, store=store)
        await b.shutdown()
        assert await b.initialize() is False
        assert not store.is_ready
        assert not b.is_healthy()

    @pytest.mark.asyncio
    async def test_shutdown_while_connecting_closes_store(self, settings):
        store = InMemoryJobStore()
        b = QueueBackend(settings, store=store)
        connect = store.connect

        async def slow_connect():
            await b.shutdown()
            await connect()

        store.connect = slow_connect
        assert await b.initialize() is False
        assert not store.is_ready
        assert b.queue_names == []


# ──────────────────────────────────────────────────────────────
#  Processors and control
# ──────────────────────────────────────────────────────────────

class TestProcessorsAndControl:
    @pytest.mark.asyncio
    async def test_processor_error_is_wrapped(self, dispatcher, backend):
        errors = []
        backend.get_queue("jobs").on("failed", lambda job, err: errors.append(err))

        async def broken(job):
            raise KeyError("missing")

        await dispatcher.add_job("jobs", "process-data", {})
        dispatcher.process_queue("jobs", "process-data", broken)
        await wait_until(lambda: errors)
        assert isinstance(errors[0], JobProcessingError)
        assert errors[0].job_type == "process-data"

    @pytest.mark.asyncio
    async def test_double_registration_raises(self, dispatcher):
        async def handler(job):
            return None

        dispatcher.process_queue("jobs", "send-email", handler)
        with pytest.raises(ProcessorAlreadyRegistered):
            dispatcher.process_queue("jobs", "send-email", handler)

    @pytest.mark.asyncio
    async def test_pause_add_resume(self, dispatcher):
        seen = []

        async def handler(job):
            seen.append(job.id)

        dispatcher.process_queue("jobs", "process-file", handler)
        assert (await dispatcher.pause_queue("jobs"))["success"]
        added = await dispatcher.queue_file_processing({"path": "a"})
        await asyncio.sleep(0.1)
        assert seen == []
        assert (await dispatcher.get_queue_stats("jobs"))["stats"]["paused"] is True

        assert (await dispatcher.resume_queue("jobs"))["success"]
        await wait_until(lambda: seen == [added["jobId"]])

    @pytest.mark.asyncio
    async def test_clean_queue_removes_only_old_finished_jobs(self, dispatcher, backend):
        store = backend.store
        now = now_ms()
        ids = {}
        for tag in ("old-done", "new-done", "old-failed", "waiting"):
            ids[tag] = (await dispatcher.add_job("jobs", tag, {}))["jobId"]

        for tag, finished, target in (
            ("old-done", now - 10_000, store.complete_job),
            ("new-done", now - 100, store.complete_job),
            ("old-failed", now - 10_000, store.fail_job),
        ):
            job = await store.claim_next("jobs", tag, now + 1000, now)
            job.finished_on = finished
            job.state = JobState.COMPLETED if target == store.complete_job else JobState.FAILED
            assert await target("jobs", job, None)

        result = await dispatcher.clean_queue("jobs", 5_000)
        assert result["cleaned"] == {"completed": 1, "failed": 1}

        queue = backend.get_queue("jobs")
        assert await queue.get_job(ids["old-done"]) is None
        assert await queue.get_job(ids["old-failed"]) is None
        assert (await queue.get_job(ids["new-done"])).state == JobState.COMPLETED
        assert (await queue.get_job(ids["waiting"])).state == JobState.WAITING
