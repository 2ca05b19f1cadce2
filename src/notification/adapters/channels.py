"""Notification channels - the email and SMS transports the dispatcher drives."""

import abc
import logging
import smtplib
from email.message import EmailMessage
from typing import Optional

import requests
from email_validator import EmailNotValidError, validate_email

import config
from notification.domain.model import LabReport

logger = logging.getLogger(__name__)


class AbstractNotificationChannel(abc.ABC):
    """Abstract base class for notification transports."""

    name = "abstract"

    def open(self) -> None:
        """Acquire transport resources. Called once on service startup."""
        pass

    def close(self) -> None:
        """Release transport resources. Called once on service shutdown."""
        pass

    @abc.abstractmethod
    def send(self, report: LabReport) -> None:
        """
        Deliver one notification for a lab report.

        Args:
            report: The decoded lab report

        Raises:
            ChannelError: If the notification could not be delivered
        """
        raise NotImplementedError


def render_message(report: LabReport) -> str:
    """Short notification text shared by both channels."""
    lines = [f"New lab report {report.report_id} is available."]
    if report.pathogen:
        lines.append(f"Pathogen: {report.pathogen}")
    if report.interpretation:
        lines.append(f"Result: {report.interpretation}")
    if report.timestamp:
        lines.append(f"Reported at: {report.timestamp}")
    return "\n".join(lines)


class EmailChannel(AbstractNotificationChannel):
    """SMTP-based email notifications."""

    name = "email"

    def __init__(self, host: Optional[str] = None, port: Optional[int] = None,
                 sender: Optional[str] = None, timeout: float = 10):
        smtp_config = config.get_smtp_config()
        self.host = host or smtp_config["host"]
        self.port = port or smtp_config["port"]
        self.sender = sender or smtp_config["sender"]
        self.timeout = timeout

    def send(self, report: LabReport) -> None:
        recipient = self._recipient(report)

        message = EmailMessage()
        message["From"] = self.sender
        message["To"] = recipient
        message["Subject"] = f"Lab report {report.report_id}"
        message.set_content(render_message(report))

        logger.info(f"Sending email for report {report.report_id} via {self.host}:{self.port}")
        try:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as smtp:
                smtp.send_message(message)
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"SMTP error sending report {report.report_id}: {e}")
            raise ChannelError(f"SMTP error: {e}") from e

    @staticmethod
    def _recipient(report: LabReport) -> str:
        if not report.email:
            raise ChannelError(f"Report {report.report_id} has no email recipient")
        try:
            return validate_email(report.email, check_deliverability=False).normalized
        except EmailNotValidError as e:
            raise ChannelError(f"Invalid email recipient for report {report.report_id}: {e}") from e


class SmsGatewayChannel(AbstractNotificationChannel):
    """HTTP SMS gateway client."""

    name = "sms"

    def __init__(self, url: Optional[str] = None, token: Optional[str] = None, timeout: float = 10):
        gateway_config = config.get_sms_gateway_config()
        self.url = url or gateway_config["url"]
        self.token = token or gateway_config["token"]
        self.timeout = timeout
        self.session = None

    def open(self) -> None:
        self.session = requests.Session()
        if self.token:
            self.session.headers["Authorization"] = f"Bearer {self.token}"

    def close(self) -> None:
        if self.session is not None:
            self.session.close()
            self.session = None

    def send(self, report: LabReport) -> None:
        if not report.phone:
            raise ChannelError(f"Report {report.report_id} has no phone number")
        if self.session is None:
            self.open()

        body = {
            "to": report.phone,
            "message": render_message(report),
            "reference": report.report_id,
        }

        logger.info(f"Sending SMS for report {report.report_id} to gateway {self.url}")
        try:
            response = self.session.post(self.url, json=body, timeout=self.timeout)
            response.raise_for_status()
        except requests.exceptions.HTTPError as e:
            logger.error(f"SMS gateway rejected report {report.report_id}: {e}")
            raise ChannelError(f"SMS gateway error: {e}") from e
        except requests.exceptions.RequestException as e:
            logger.error(f"Network error sending SMS for report {report.report_id}: {e}")
            raise ChannelError(f"Network error: {e}") from e


class ChannelError(Exception):
    """Exception raised when a notification channel fails to deliver."""
    pass
