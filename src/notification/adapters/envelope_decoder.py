"""Envelope decoder - turn a pushed base64 payload into a LabReport."""

import base64
import binascii
import json
import logging
from typing import Any, Dict, Union

from notification.domain.model import LabReport

logger = logging.getLogger(__name__)

PATIENT_KEYS = ("patientRef", "patient_ref", "patient")


def decode_report(data: Union[str, bytes]) -> LabReport:
    """
    Decode a pushed message body into a LabReport.

    Args:
        data: base64-encoded JSON object with at least an "id" field

    Returns:
        LabReport built from the decoded payload

    Raises:
        MalformedEnvelope: If data is empty or not valid base64
        MalformedPayload: If the decoded bytes are not a JSON object with an id
    """
    raw = _decode_base64(data)
    payload = _parse_payload(raw)

    report_id = payload.get("id")
    if isinstance(report_id, bool) or not isinstance(report_id, (str, int)):
        raise MalformedPayload("Payload has no usable 'id' field")
    report_id = str(report_id).strip()
    if not report_id:
        raise MalformedPayload("Payload 'id' field is empty")

    patient_ref = next(
        (payload[key] for key in PATIENT_KEYS if payload.get(key) is not None),
        None,
    )

    report = LabReport(
        report_id=report_id,
        patient_ref=_optional_str(patient_ref),
        email=_optional_str(payload.get("email")),
        phone=_optional_str(payload.get("phone")),
        pathogen=_optional_str(payload.get("pathogen")),
        interpretation=_optional_str(payload.get("interpretation")),
        timestamp=_optional_str(payload.get("timestamp")),
        fields=payload,
    )
    logger.debug(f"Decoded report {report.report_id}")
    return report


def _decode_base64(data: Union[str, bytes]) -> bytes:
    if isinstance(data, str):
        try:
            data = data.encode("ascii")
        except UnicodeEncodeError as e:
            raise MalformedEnvelope("Envelope data contains non-ASCII characters") from e
    if not data:
        raise MalformedEnvelope("Envelope data is empty")
    try:
        return base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError) as e:
        raise MalformedEnvelope(f"Envelope data is not valid base64: {e}") from e


def _parse_payload(raw: bytes) -> Dict[str, Any]:
    try:
        payload = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise MalformedPayload(f"Decoded payload is not valid JSON: {e}") from e
    if not isinstance(payload, dict):
        raise MalformedPayload(f"Decoded payload is a {type(payload).__name__}, expected an object")
    return payload


def _optional_str(value):
    if value is None:
        return None
    return str(value)


class DecodeError(Exception):
    """Base class for envelopes that can never be processed."""
    kind = "malformed"


class MalformedEnvelope(DecodeError):
    """Exception raised when the pushed data is not valid base64."""
    kind = "malformed_envelope"


class MalformedPayload(DecodeError):
    """Exception raised when decoded data is not a lab report."""
    kind = "malformed_payload"
