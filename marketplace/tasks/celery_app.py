from urllib.parse import urlparse, urlunparse, parse_qs, urlencode

from celery import Celery
from marketplace.core.config import settings


def _redis_url_for_celery(url: str) -> str:
    """Celery requires ssl_cert_reqs for rediss:// (e.g. Upstash TLS)."""
    if not url or not url.strip().lower().startswith("rediss://"):
        return url
    parsed = urlparse(url)
    qs = parse_qs(parsed.query)
    if "ssl_cert_reqs" not in qs:
        qs["ssl_cert_reqs"] = ["CERT_NONE"]
        return urlunparse(parsed._replace(query=urlencode(qs, doseq=True)))
    return url


_redis_url = _redis_url_for_celery(settings.REDIS_URL)

celery = Celery(
    "marketplace",
    broker=_redis_url,
    backend=_redis_url,
    include=["marketplace.tasks.jobs"],
)

celery.conf.timezone = "Africa/Kigali"

celery.conf.beat_schedule = {
    "expire-pending-payments-every-5-minutes": {
        "task": "marketplace.tasks.jobs.expire_pending_payments",
        "schedule": 300.0,
    },
    "expire-stale-carts-hourly": {
        "task": "marketplace.tasks.jobs.expire_stale_carts",
        "schedule": 3600.0,
    },
}
