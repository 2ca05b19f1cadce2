"""
Email notification service - push consumer that emails lab report notices.

Run with: lab-notify-email (or uvicorn notification.entrypoints.email_service:app)
"""
import logging
import os

import uvicorn

from notification.adapters.channels import EmailChannel
from notification.entrypoints.push_api import build_sql_worker, create_app

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app = create_app(build_sql_worker(EmailChannel()), title="Lab Report Email Notifier")


def main():
    """Main entry point for the service."""
    uvicorn.run(app, host=os.environ.get("HOST", "0.0.0.0"), port=int(os.environ.get("PORT", 8080)))


if __name__ == "__main__":
    main()
