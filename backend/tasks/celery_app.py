"""Celery application configuration"""
from celery import Celery
from kombu import Queue
import os

# Check if we're in eager/test mode (no broker needed)
CELERY_EAGER_MODE = os.getenv("CELERY_TASK_ALWAYS_EAGER", "").lower() == "true"

# Get broker URL from environment
if CELERY_EAGER_MODE:
    # Use memory backend for testing without Redis
    CELERY_BROKER_URL = "memory://"
    CELERY_RESULT_BACKEND = "cache+memory://"
else:
    CELERY_BROKER_URL = os.getenv("CELERY_BROKER_URL", "redis://localhost:6379/0")
    CELERY_RESULT_BACKEND = os.getenv("CELERY_RESULT_BACKEND", "redis://localhost:6379/0")

# Create Celery application
celery_app = Celery(
    "land_registry",
    broker=CELERY_BROKER_URL,
    backend=CELERY_RESULT_BACKEND,
    include=[
        "tasks.certificate_tasks",
        "tasks.negotiation_tasks",
    ]
)

# Enable eager mode if set
if CELERY_EAGER_MODE:
    celery_app.conf.task_always_eager = True
    celery_app.conf.task_eager_propagates = True

# Celery configuration
celery_app.conf.update(
    # Serialization
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",

    # Timezone
    timezone="UTC",
    enable_utc=True,

    # Task queues
    task_queues=(
        Queue("default", routing_key="default"),
        Queue("certificates", routing_key="certificates"),
    ),

    # Default queue
    task_default_queue="default",
    task_default_routing_key="default",

    # Task routing
    task_routes={
        "tasks.certificate_tasks.*": {"queue": "certificates"},
        "tasks.negotiation_tasks.*": {"queue": "default"},
    },

    # Certificate rendering is CPU bound
    task_annotations={
        "tasks.certificate_tasks.issue_pending_certificate": {"rate_limit": "30/m"},
    },

    # Task execution settings
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,

    # Result settings
    result_expires=86400,  # 24 hours

    # Task time limits
    task_soft_time_limit=120,
    task_time_limit=300,

    # Retry settings
    task_default_retry_delay=60,
    task_max_retries=3,
)

# Beat schedule for periodic tasks
celery_app.conf.beat_schedule = {
    "expire-stale-offers": {
        "task": "tasks.negotiation_tasks.expire_stale_offers",
        "schedule": 900.0,  # Every 15 minutes
    },
    "sweep-pending-certificates": {
        "task": "tasks.certificate_tasks.sweep_pending_certificates",
        "schedule": 3600.0,  # Every hour
    },
}
