import os

class Config:
    SECRET_KEY = os.environ.get("SECRET_KEY", "change-this-in-production")
    # Read at startup so Flask-Mail suppresses delivery under test
    TESTING = os.environ.get("TESTING", "False").lower() == "true"
    # Database configuration
    # Use DATABASE_URL if provided (Heroku), otherwise fall back to a local SQLite file
    if os.getenv('DATABASE_URL'):
        raw_url = os.environ.get("DATABASE_URL")
        # Heroku may provide postgres://; SQLAlchemy expects postgresql+psycopg2://
        if raw_url.startswith("postgres://"):
            raw_url = raw_url.replace("postgres://", "postgresql+psycopg2://", 1)
        elif raw_url.startswith("postgresql://"):
            raw_url = raw_url.replace("postgresql://", "postgresql+psycopg2://", 1)
        SQLALCHEMY_DATABASE_URI = raw_url
    else:
        basedir = os.path.abspath(os.path.dirname(__file__))
        SQLALCHEMY_DATABASE_URI = f"sqlite:///{os.path.join(basedir, 'instance', 'volunteer_portal.sqlite3')}"
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Email configuration
    MAIL_SERVER = os.environ.get("MAIL_SERVER", "localhost")
    MAIL_PORT = int(os.environ.get("MAIL_PORT", 465))
    MAIL_USE_TLS = os.environ.get("MAIL_USE_TLS", "False").lower() == "true"
    MAIL_USE_SSL = os.environ.get("MAIL_USE_SSL", "True").lower() == "true"
    MAIL_USERNAME = os.environ.get("MAIL_USERNAME")
    MAIL_PASSWORD = os.environ.get("MAIL_PASSWORD")
    MAIL_DEFAULT_SENDER = os.environ.get("MAIL_DEFAULT_SENDER", "noreply@volunteerportal.org")

    # Caching: RedisCache when REDIS_URL is set, SimpleCache otherwise
    REDIS_URL = os.environ.get("REDIS_URL")
    CACHE_TYPE = os.environ.get("CACHE_TYPE") or ("RedisCache" if REDIS_URL else "SimpleCache")
    CACHE_REDIS_URL = REDIS_URL
    CACHE_DEFAULT_TIMEOUT = int(os.environ.get("CACHE_DEFAULT_TIMEOUT", 300))

    # Scheduler configuration
    SCHEDULER_API_ENABLED = True

    # Shifts are entered and displayed in the organization's local time
    APP_TIMEZONE = os.environ.get("APP_TIMEZONE", "America/New_York")

    # ==========================
    # Shift workflow rules
    # ==========================
    # Volunteers may cancel their own signup only while the shift is more than
    # this many minutes away.
    CANCELLATION_CUTOFF_MINUTES = int(os.environ.get("CANCELLATION_CUTOFF_MINUTES", "60"))
    # Check-in opens this many minutes before the shift starts and closes at its end.
    CHECK_IN_EARLY_MINUTES = int(os.environ.get("CHECK_IN_EARLY_MINUTES", "30"))
    # Days ahead covered by the weekly open-shift digest
    OPEN_SHIFT_DIGEST_DAYS = int(os.environ.get("OPEN_SHIFT_DIGEST_DAYS", "7"))
    # Largest accepted profile image upload
    PROFILE_IMAGE_MAX_BYTES = int(os.environ.get("PROFILE_IMAGE_MAX_BYTES", 2 * 1024 * 1024))

    # Bearer token expected by the external reminders trigger (POST /api/shifts/reminders)
    REMINDERS_TOKEN = os.environ.get("REMINDERS_TOKEN", "")

    # CSRF configuration (the JSON API forms opt out individually)
    WTF_CSRF_ENABLED = os.environ.get("WTF_CSRF_ENABLED", "True").lower() == "true"
    WTF_CSRF_TIME_LIMIT = int(os.environ.get("WTF_CSRF_TIME_LIMIT", 3600))  # 1 hour

    # Registration gating
    REGISTRATION_ENABLED = os.environ.get("REGISTRATION_ENABLED", "True").lower() == "true"

    # ==========================
    # Login security
    # ==========================
    ENABLE_ACCOUNT_LOCKOUT = os.environ.get("ENABLE_ACCOUNT_LOCKOUT", "True").lower() == "true"
    MAX_FAILED_LOGIN_ATTEMPTS = int(os.environ.get("MAX_FAILED_LOGIN_ATTEMPTS", "5"))
    LOCKOUT_MINUTES = int(os.environ.get("LOCKOUT_MINUTES", "15"))

    # Default admin created by `flask --app app.py init-db`
    DEFAULT_ADMIN_EMAIL = os.environ.get("DEFAULT_ADMIN_EMAIL", "admin@volunteerportal.org")
    DEFAULT_ADMIN_PASSWORD = os.environ.get("DEFAULT_ADMIN_PASSWORD", "changeme123")
