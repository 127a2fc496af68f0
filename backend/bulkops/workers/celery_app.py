"""Celery application for running and rolling back bulk jobs."""

import ssl

from celery import Celery

from bulkops.core.config import get_settings
from bulkops.core.logging import configure_logging

settings = get_settings()
configure_logging(settings.log_level)

SSL_QUERY_PARAM = "ssl_cert_reqs=none"


def _redis_url(url: str) -> tuple[str, bool]:
    """Return the URL Celery should use and whether it needs TLS.

    Upstash hosts only accept TLS, so ``redis://`` is upgraded. The Redis
    result backend reads ``ssl_cert_reqs`` from the URL when it is built,
    so the parameter goes into the query string as well as the config.
    """
    if ".upstash.io" in url and url.startswith("redis://"):
        url = url.replace("redis://", "rediss://", 1)
    if not url.startswith("rediss://"):
        return url, False
    if "ssl_cert_reqs" not in url:
        separator = "&" if "?" in url else "?"
        url = f"{url}{separator}{SSL_QUERY_PARAM}"
    return url, True


broker_url, broker_ssl = _redis_url(settings.celery_broker_url or settings.redis_url)
backend_url, backend_ssl = _redis_url(settings.celery_result_url or settings.redis_url)
is_ssl = broker_ssl or backend_ssl

celery_app = Celery(
    "bulkops",
    broker=broker_url,
    backend=backend_url,
)

celery_config = {
    "task_serializer": "json",
    "accept_content": ["json"],
    "result_serializer": "json",
    "timezone": "UTC",
    "enable_utc": True,
    "task_acks_late": True,  # Acknowledge after task completion
    "task_reject_on_worker_lost": True,  # Re-queue if worker dies
    "worker_prefetch_multiplier": 1,  # Fair task distribution
    "task_time_limit": 3600,  # 1 hour hard limit
    "task_soft_time_limit": 3300,  # 55 min soft limit
    "result_expires": 3600,
    "broker_connection_retry_on_startup": True,
    "worker_hijack_root_logger": False,
    "result_backend_always_retry": True,
    "result_backend_max_retries": 3,
    "task_default_queue": settings.jobs_queue,
    "task_routes": {
        "bulkops.workers.tasks.run_job": {"queue": settings.jobs_queue},
        "bulkops.workers.tasks.rollback_job": {"queue": settings.jobs_queue},
    },
}

if is_ssl:
    ssl_dict = {"ssl_cert_reqs": ssl.CERT_NONE}
    celery_config["broker_use_ssl"] = ssl_dict
    celery_config["redis_backend_use_ssl"] = ssl_dict
    celery_config["broker_transport_options"] = ssl_dict.copy()
    celery_config["result_backend_transport_options"] = ssl_dict.copy()

celery_app.conf.update(celery_config)

celery_app.autodiscover_tasks(["bulkops.workers.tasks"])

# Tasks use @celery_app.task, so importing registers them.
from bulkops.workers.tasks import rollback_job, run_job  # noqa: E402,F401
