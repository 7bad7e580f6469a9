"""
Unit tests for the structlog processors and the job log context.
"""

from uuid import uuid4

import structlog

from renderqueue.observability.logging import (
    REDACTED,
    add_component,
    job_context,
    redact_secrets,
)


class TestProcessors:
    def test_redacts_secret_fields(self):
        event = redact_secrets(
            None,
            "info",
            {"event": "Delivering webhook", "webhook_key": "s3cret", "civitai_token": ""},
        )

        assert event["webhook_key"] == REDACTED
        assert event["civitai_token"] == ""
        assert event["event"] == "Delivering webhook"

    def test_adds_component_without_overriding(self):
        processor = add_component("worker", "renderqueue")

        event = processor(None, "info", {"event": "x"})
        assert event["component"] == "worker"
        assert event["service"] == "renderqueue"

        explicit = processor(None, "info", {"event": "x", "component": "migrations"})
        assert explicit["component"] == "migrations"


class TestJobContext:
    def test_binds_job_fields_and_restores(self):
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(worker_id="w1")
        job_uuid = uuid4()

        with job_context(job_uuid, "txt2img", "pending", attempt=2):
            bound = structlog.contextvars.get_contextvars()
            assert bound["job_uuid"] == str(job_uuid)
            assert bound["workflow"] == "txt2img"
            assert bound["job_status"] == "pending"
            assert bound["attempt"] == 2
            assert bound["worker_id"] == "w1"

        assert structlog.contextvars.get_contextvars() == {"worker_id": "w1"}
        structlog.contextvars.clear_contextvars()
