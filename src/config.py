"""Configuration settings for the lab order services."""

import os


def get_postgres_uri():
    """Get PostgreSQL connection URI from environment variables."""
    host = os.environ.get("DB_HOST", "localhost")
    port = os.environ.get("DB_PORT", 5433 if host == "localhost" else 5432)
    password = os.environ.get("DB_PASSWORD", "lab_orders_pass")
    user = os.environ.get("DB_USER", "lab_orders_user")
    db_name = os.environ.get("DB_NAME", "lab_orders_db")
    return f"postgresql://{user}:{password}@{host}:{port}/{db_name}"


def get_redis_host_and_port():
    """Get Redis connection details from environment variables."""
    host = os.environ.get("REDIS_HOST", "localhost")
    port = int(os.environ.get("REDIS_PORT", 6379))
    return dict(host=host, port=port)


def get_log_level():
    return os.environ.get("LOG_LEVEL", "INFO").upper()


def get_sla_thresholds():
    """
    SLA threshold overrides in hours.

    SLA_BOOKING_FIRST_REMINDER_HOURS=96 overrides the
    ``booking_first_reminder_hours`` threshold, and so on for every rule.
    """
    overrides = {}
    for name, value in os.environ.items():
        if name.startswith("SLA_") and name.endswith("_HOURS"):
            overrides[name[len("SLA_"):].lower()] = float(value)
    return overrides


def get_sweep_interval_seconds():
    return int(os.environ.get("SLA_SWEEP_INTERVAL_SECONDS", 900))
