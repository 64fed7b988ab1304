import logging
from datetime import timedelta
from celery import Celery
from celery.schedules import crontab

from config import load_env_file, load_settings

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Load environment variables and build settings once per process.
# Missing configuration stops the worker here, before any pass runs.
load_env_file()
settings = load_settings()

# Create Celery app
app = Celery("sharepoint_webhook_renewal", broker=settings.redis_url, backend=settings.redis_url)

# Load celery config
app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    worker_concurrency=1,  # Passes must never overlap
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    broker_connection_retry_on_startup=True,
)

# Define periodic tasks
app.conf.beat_schedule = {
    "renew-sharepoint-webhooks-daily": {
        "task": "celery_worker.renew_sharepoint_webhooks",
        "schedule": crontab(hour=settings.schedule_hour, minute=settings.schedule_minute),  # 4:00 AM by default
    },
}


@app.task(bind=True, name="celery_worker.renew_sharepoint_webhooks")
def renew_sharepoint_webhooks(self):
    """Renew SharePoint webhooks that expire within three days."""
    logger.info("Starting scheduled task: renew_sharepoint_webhooks")
    try:
        from services.renewal_service import run_renewal_pass, utc_now

        deadline = None
        if settings.pass_time_limit:
            deadline = utc_now() + timedelta(seconds=settings.pass_time_limit)

        summary = run_renewal_pass(settings, deadline=deadline)
        result = summary.as_dict()

        logger.info(f"Task renew_sharepoint_webhooks completed: {result['renewed']} renewed, {summary.failed} failed")
        return result

    except Exception as e:
        # No retry: the next daily run starts from scratch
        logger.error(f"Error in task renew_sharepoint_webhooks: {str(e)}", exc_info=True)
        raise
