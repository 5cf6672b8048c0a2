#!/usr/bin/env python3
"""
Background worker for shift reminder emails.
Run it every few minutes via cron, or with --continuous to loop on its own.
"""
import sys
import time
from datetime import datetime

from app import app, send_shift_reminders, mark_completed_shifts

SLEEP_SECONDS = 300


def run_scheduled_tasks(now=None):
    """Run all scheduled tasks. Returns (reminders_sent, shifts_completed)."""
    with app.app_context():
        try:
            app.logger.info(f"Starting scheduled tasks at {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")

            reminder_count = send_shift_reminders(now)
            completed_count = mark_completed_shifts(now)

            if reminder_count or completed_count:
                app.logger.info(f"Sent {reminder_count} reminder emails, completed {completed_count} shifts")
            else:
                app.logger.info("No reminders needed at this time")
            return reminder_count, completed_count
        except Exception as e:
            app.logger.exception(f"Error in scheduled tasks: {e}")
            return 0, 0


def run_continuous_mode():
    """Run continuously, checking every few minutes."""
    app.logger.info(f"Running in continuous mode - checking every {SLEEP_SECONDS // 60} minutes")

    try:
        while True:
            run_scheduled_tasks()
            time.sleep(SLEEP_SECONDS)
    except KeyboardInterrupt:
        app.logger.info("Continuous mode stopped")


def main(argv=None):
    argv = sys.argv[1:] if argv is None else argv
    if argv and argv[0] == "--continuous":
        run_continuous_mode()
    else:
        run_scheduled_tasks()


if __name__ == "__main__":
    main()
