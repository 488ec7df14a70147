"""
Celery application for the document ingestion workers.

Broker: RabbitMQ (amqp://) by default; any kombu transport URL works
(redis:// locally, memory:// in the test suite).
Result backend: Redis (optional; document state lives in the database).

Queue topology:
  documents.ingest       — pipeline runs (first runs and reprocess runs)
  documents.maintenance  — Beat-driven stale-pending scanner

Task payloads carry ids only (document_id, run_id). Raw bytes are always
loaded from blob storage inside the worker.
"""

from __future__ import annotations

import logging

from celery import Celery
from celery.signals import task_failure, task_postrun, task_prerun, worker_process_init
from kombu import Exchange, Queue

from coursedocs.core.config import Settings, get_settings
from coursedocs.core.logging_config import configure_logging

logger = logging.getLogger(__name__)

INGEST_QUEUE      = "documents.ingest"
MAINTENANCE_QUEUE = "documents.maintenance"

# ---------------------------------------------------------------------------
# Queue and exchange definitions
# ---------------------------------------------------------------------------

DOCUMENTS_EXCHANGE = Exchange("documents", type="direct", durable=True)

TASK_QUEUES = (
    Queue(
        INGEST_QUEUE,
        exchange=DOCUMENTS_EXCHANGE,
        routing_key=INGEST_QUEUE,
        durable=True,
    ),
    Queue(
        MAINTENANCE_QUEUE,
        exchange=DOCUMENTS_EXCHANGE,
        routing_key=MAINTENANCE_QUEUE,
        durable=True,
    ),
)

TASK_ROUTES = {
    "coursedocs.workers.tasks.process_document":       {"queue": INGEST_QUEUE},
    "coursedocs.workers.tasks.requeue_stale_pending":  {"queue": MAINTENANCE_QUEUE},
}

# ---------------------------------------------------------------------------
# Celery app factory
# ---------------------------------------------------------------------------

def create_celery_app(settings: Settings | None = None) -> Celery:
    settings = settings or get_settings()
    app = Celery("coursedocs")

    app.conf.update(
        # --- Broker / Backend ---
        broker_url=settings.celery_broker_url,
        result_backend=settings.celery_result_backend,

        # --- Serialization: JSON only ---
        task_serializer="json",
        result_serializer="json",
        accept_content=["json"],
        event_serializer="json",

        # --- Queues ---
        task_queues=TASK_QUEUES,
        task_routes=TASK_ROUTES,
        task_default_queue=INGEST_QUEUE,
        task_default_exchange="documents",
        task_default_routing_key=INGEST_QUEUE,

        # --- Reliability ---
        task_acks_late=True,
        task_reject_on_worker_lost=True,
        worker_prefetch_multiplier=1,

        # --- Timeouts ---
        # Above extraction_timeout_seconds so the pipeline records FAILED itself
        task_soft_time_limit=settings.extraction_timeout_seconds + 60,
        task_time_limit=settings.extraction_timeout_seconds + 120,

        # --- Result TTL ---
        result_expires=3600,   # 1 hour; we track state in the database, not Celery results

        # --- Timezone ---
        timezone="UTC",
        enable_utc=True,

        # --- Beat schedule (stale-pending scanner) ---
        beat_schedule={
            "requeue-stale-pending-every-60s": {
                "task":     "coursedocs.workers.tasks.requeue_stale_pending",
                "schedule": 60,  # every 60 seconds
                "options":  {"queue": MAINTENANCE_QUEUE},
            },
        },

        # --- Worker ---
        worker_max_tasks_per_child=200,   # PyMuPDF and OCR buffers accumulate per process
    )

    app.autodiscover_tasks(["coursedocs.workers"])

    return app


celery_app = create_celery_app()


# ---------------------------------------------------------------------------
# Celery signals — structured task lifecycle logging
# ---------------------------------------------------------------------------

@worker_process_init.connect
def on_worker_process_init(**_):
    configure_logging()


@task_prerun.connect
def on_task_prerun(task_id, task, args, kwargs, **_):
    logger.info(
        "Task start | task_id=%s task=%s doc=%s run=%s",
        task_id, task.name,
        (kwargs or {}).get("document_id", "-"),
        (kwargs or {}).get("run_id", "-"),
    )


@task_postrun.connect
def on_task_postrun(task_id, task, args, kwargs, retval, state, **_):
    logger.info(
        "Task end | task_id=%s task=%s state=%s doc=%s",
        task_id, task.name, state, (kwargs or {}).get("document_id", "-"),
    )


@task_failure.connect
def on_task_failure(task_id, exception, args, kwargs, traceback, einfo, **_):
    logger.error(
        "Task failed | task_id=%s doc=%s error=%s",
        task_id, (kwargs or {}).get("document_id", "-"), exception,
        exc_info=True,
    )
