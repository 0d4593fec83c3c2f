from fastapi import FastAPI
from contextlib import asynccontextmanager
from app.config import settings
from app.core.logging import configure_logging, logger
from app.routers import dashboard, notifications
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from app.services.notification import run_pending_notifications, run_scheduled_batch
from fastapi_limiter import FastAPILimiter
from redis.asyncio import Redis

# Configure logging
configure_logging()

# Scheduler setup
scheduler = AsyncIOScheduler(timezone="UTC")


def register_jobs(scheduler: AsyncIOScheduler) -> None:
    scheduler.add_job(
        run_scheduled_batch,
        CronTrigger(hour=9, minute=0),
        args=["subscription_expiry"],
        id="subscription_expiry_job",
        name="Daily subscription expiry notifications",
        misfire_grace_time=300,
        replace_existing=True,
    )
    scheduler.add_job(
        run_scheduled_batch,
        CronTrigger(day_of_week="mon", hour=10, minute=0),
        args=["payment_reminders"],
        id="payment_reminders_job",
        name="Weekly payment reminder notifications",
        misfire_grace_time=300,
        replace_existing=True,
    )
    scheduler.add_job(
        run_pending_notifications,
        CronTrigger(minute=0),
        id="process_pending_job",
        name="Hourly pending notification delivery",
        misfire_grace_time=300,
        replace_existing=True,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("CRM Dashboard service starting up...", crm_api_url=settings.CRM_API_URL)

    redis = Redis(host=settings.REDIS_HOST, port=settings.REDIS_PORT, db=0)
    await FastAPILimiter.init(redis)
    logger.info("FastAPI-Limiter initialized.")

    if settings.SCHEDULER_ENABLED:
        register_jobs(scheduler)
        scheduler.start()
        logger.info("Scheduler started.", jobs=[job.id for job in scheduler.get_jobs()])

    yield

    logger.info("CRM Dashboard service shutting down...")
    if scheduler.running:
        scheduler.shutdown()
        logger.info("Scheduler shut down.")

    await FastAPILimiter.close()
    logger.info("FastAPI-Limiter closed.")


app = FastAPI(lifespan=lifespan, title="CRM Dashboard Service", version="1.0.0")

app.include_router(dashboard.router)
app.include_router(notifications.router)


@app.get("/health")
async def health_check():
    return {"status": "ok"}
