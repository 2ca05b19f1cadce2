"""Commands for the push notification worker."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Optional


@dataclass
class Command:
    """Base class for all commands."""
    pass


@dataclass
class ProcessPushedReport(Command):
    """Command to process one push delivery of a lab report envelope."""
    message_id: str
    data: str  # base64-encoded JSON lab report
    publish_time: Optional[datetime] = None
    attributes: Dict[str, str] = field(default_factory=dict)
