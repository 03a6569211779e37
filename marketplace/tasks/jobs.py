from marketplace.tasks.celery_app import celery
from marketplace.tasks import worker_jobs

@celery.task(name="marketplace.tasks.jobs.expire_pending_payments")
def expire_pending_payments(older_than_minutes: int | None = None):
    return worker_jobs.expire_pending_payments(older_than_minutes=older_than_minutes)

@celery.task(name="marketplace.tasks.jobs.expire_stale_carts")
def expire_stale_carts(older_than_hours: int | None = None):
    return worker_jobs.expire_stale_carts(older_than_hours=older_than_hours)
