#!/usr/bin/env python3
"""Diagnostic script: Celery routing, live workers and job health heuristics."""

from bulkops.core.config import get_settings
from bulkops.db.session import SessionLocal
from bulkops.services.diagnostics import health_report
from bulkops.utils.redis_client import get_redis_client
from bulkops.workers.celery_app import celery_app

settings = get_settings()

print("=" * 60)
print("Bulk Job Diagnostic")
print("=" * 60)

print("\n1. Celery Configuration:")
print(f"   Broker URL: {settings.celery_broker_url or settings.redis_url}")
print(f"   Default Queue: {celery_app.conf.task_default_queue}")
print(f"   Task Routes: {celery_app.conf.task_routes}")

print("\n2. Registered Tasks:")
for task_name in sorted(celery_app.tasks.keys()):
    if task_name.startswith("bulkops."):
        print(f"   - {task_name}")

print("\n3. Active Workers:")
active_workers = celery_app.control.inspect(timeout=2).active_queues()
if active_workers:
    for worker_name, queues in active_workers.items():
        print(f"   Worker: {worker_name}")
        for queue in queues:
            print(f"     - Queue: {queue.get('name', 'unknown')}")
else:
    print("   No active workers found")

print("\n4. Job Health:")
with SessionLocal() as session:
    report = health_report(session, get_redis_client(), settings)

for name, state in report["queues"].items():
    flag = " (backlogged)" if state["backlogged"] else ""
    print(f"   Queue {name}: {state['length']} waiting{flag}")
print(f"   Stalled jobs: {report['stalled_jobs'] or 'none'}")
for entry in report["high_error_rate_jobs"]:
    print(f"   High error rate: {entry['job_id']} ({entry['error_rate']:.1%})")

print("\n" + "=" * 60)
print("Diagnostic Complete")
print("=" * 60)
