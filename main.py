from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
import logging
import pytz
import uvicorn

import config
from database import init_db, SessionLocal
import alerts
import auth
import health
import investments
import notes
import portfolio_snapshots
import trade_journal
import user_settings

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# Create Tables
init_db()

app = FastAPI(title="Trading Journal API")

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(auth.router)
app.include_router(trade_journal.router)
app.include_router(investments.router)
app.include_router(notes.router)
app.include_router(notes.tags_router)
app.include_router(user_settings.router)
app.include_router(portfolio_snapshots.router)


@app.get("/api/health")
def get_health(deep: bool = False):
    """System health and diagnostics"""
    return health.get_full_health(deep=deep)


# -----------------------------------------------------
# SCHEDULED JOBS
# -----------------------------------------------------

_scheduler = None


def run_due_reminders():
    db = SessionLocal()
    try:
        sent = alerts.send_due_reminders(db)
        if sent:
            logger.info(f"[Scheduler] Sent {sent} portfolio reminders")
    except Exception as e:
        logger.error(f"[Scheduler] Reminder job failed: {e}")
    finally:
        db.close()


def start_scheduler():
    """Daily portfolio snapshots and periodic reminder checks."""
    global _scheduler
    if _scheduler is not None:
        return  # Already running

    tz = pytz.timezone(config.SCHEDULER_TIMEZONE)
    _scheduler = BackgroundScheduler(timezone=tz)
    _scheduler.add_job(
        portfolio_snapshots.take_snapshot,
        CronTrigger(hour=config.SNAPSHOT_HOUR, minute=0, timezone=tz),
        id="daily_portfolio_snapshot",
        name="Daily Portfolio Snapshot",
        replace_existing=True,
    )
    _scheduler.add_job(
        run_due_reminders,
        IntervalTrigger(minutes=config.REMINDER_CHECK_MINUTES),
        id="portfolio_reminders",
        name="Portfolio Reminders",
        replace_existing=True,
    )
    _scheduler.start()
    logger.info(f"[Scheduler] Started: snapshots daily at {config.SNAPSHOT_HOUR}:00 {config.SCHEDULER_TIMEZONE}, "
                f"reminders every {config.REMINDER_CHECK_MINUTES} min")


@app.on_event("startup")
def startup_event():
    if config.SCHEDULER_ENABLED:
        start_scheduler()
    else:
        logger.info("[Startup] Scheduler disabled")


@app.on_event("shutdown")
def shutdown_event():
    global _scheduler
    if _scheduler is not None:
        _scheduler.shutdown(wait=False)
        _scheduler = None


if __name__ == "__main__":
    uvicorn.run("main:app", host="127.0.0.1", port=8000, reload=True)
