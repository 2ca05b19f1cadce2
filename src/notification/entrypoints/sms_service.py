"""
SMS notification service - push consumer that texts lab report notices.

Run with: lab-notify-sms (or uvicorn notification.entrypoints.sms_service:app)
"""
import logging
import os

import uvicorn

from notification.adapters.channels import SmsGatewayChannel
from notification.entrypoints.push_api import build_sql_worker, create_app

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app = create_app(build_sql_worker(SmsGatewayChannel()), title="Lab Report SMS Notifier")


def main():
    """Main entry point for the service."""
    uvicorn.run(app, host=os.environ.get("HOST", "0.0.0.0"), port=int(os.environ.get("PORT", 8080)))


if __name__ == "__main__":
    main()
