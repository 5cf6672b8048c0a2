#!/usr/bin/env python3
"""
Heroku worker process for running the APScheduler background jobs.
This keeps the scheduler running separately from the web process.
"""

from dotenv import load_dotenv
from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.cron import CronTrigger

# Load environment variables
load_dotenv()

# Import after loading env vars
from app import app, run_scheduled_jobs, run_weekly_digest


def build_scheduler():
    scheduler = BlockingScheduler(timezone=app.config["APP_TIMEZONE"])

    # Reminder sweep and shift completion every 5 minutes; the 1h reminder window is 10 minutes wide
    scheduler.add_job(
        run_scheduled_jobs,
        CronTrigger(minute='*/5'),
        id='shift-reminder-sweep',
        replace_existing=True
    )

    # Weekly open shifts digest (every Sunday at 10 AM)
    scheduler.add_job(
        run_weekly_digest,
        CronTrigger(day_of_week='sun', hour=10),
        id='weekly-open-shifts',
        replace_existing=True
    )
    return scheduler


def run_scheduler():
    """Run the background scheduler for shift emails."""
    scheduler = build_scheduler()

    app.logger.info("Starting volunteer portal scheduler")
    app.logger.info("Shift reminders and completion sweep every 5 minutes")
    app.logger.info("Open shift digest scheduled for Sundays at 10 AM")

    try:
        scheduler.start()
    except KeyboardInterrupt:
        scheduler.shutdown()


if __name__ == '__main__':
    run_scheduler()
