"""Configuration settings for the lab report notification services."""

import os


def get_postgres_uri():
    """Get the processing record database URI from environment variables."""
    override = os.environ.get("NOTIFY_DATABASE_URI")
    if override:
        return override
    host = os.environ.get("DB_HOST", "localhost")
    port = 5434 if host == "localhost" else 5432
    password = os.environ.get("DB_PASSWORD", "notify_pass")
    user = os.environ.get("DB_USER", "notify_user")
    db_name = os.environ.get("DB_NAME", "notify_db")
    return f"postgresql://{user}:{password}@{host}:{port}/{db_name}"


def get_redis_host_and_port():
    """Get Redis connection details from environment variables."""
    host = os.environ.get("REDIS_HOST", "localhost")
    port = int(os.environ.get("REDIS_PORT", 6379))
    return dict(host=host, port=port)


def get_delivery_policy():
    """Get retry and liveness settings for the push worker."""
    return dict(
        max_attempts=int(os.environ.get("NOTIFY_MAX_ATTEMPTS", 5)),
        liveness_seconds=float(os.environ.get("NOTIFY_LIVENESS_SECONDS", 300)),
        dispatch_timeout_seconds=float(os.environ.get("NOTIFY_DISPATCH_TIMEOUT_SECONDS", 10)),
        dispatch_workers=int(os.environ.get("NOTIFY_DISPATCH_WORKERS", 40)),
        dispatch_queue_timeout_seconds=float(os.environ.get("NOTIFY_DISPATCH_QUEUE_TIMEOUT_SECONDS", 60)),
        in_flight_wait_seconds=float(os.environ.get("NOTIFY_INFLIGHT_WAIT_SECONDS", 5)),
    )


def get_status_codes():
    """HTTP status codes returned to the bus when a redelivery is wanted."""
    return dict(
        retry=int(os.environ.get("NOTIFY_RETRY_STATUS_CODE", 503)),
        in_flight=int(os.environ.get("NOTIFY_INFLIGHT_STATUS_CODE", 409)),
    )


def get_smtp_config():
    """Get SMTP settings for the email service."""
    return dict(
        host=os.environ.get("SMTP_HOST", "localhost"),
        port=int(os.environ.get("SMTP_PORT", 25)),
        sender=os.environ.get("SMTP_SENDER", "noreply@lab-notify.local"),
    )


def get_sms_gateway_config():
    """Get SMS gateway settings for the SMS service."""
    return dict(
        url=os.environ.get("SMS_GATEWAY_URL", "http://localhost:8080/sms"),
        token=os.environ.get("SMS_GATEWAY_TOKEN"),
    )
