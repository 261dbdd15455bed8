"""
Event Envelope

Wire format for domain events in transit. The envelope is a tagged
variant: a `type` tag plus an opaque `payload`, resolved to a concrete
handler only by the consumer.
"""

import json
from typing import Dict, Union

from pydantic import ValidationError

from ..errors import MalformedMessage
from .models import DomainEvent

CONTENT_TYPE = "application/json"


def encode_event(event: DomainEvent) -> bytes:
    """Serialize an event to its JSON envelope."""
    return event.model_dump_json().encode("utf-8")


def decode_event(body: Union[bytes, str]) -> DomainEvent:
    """
    Deserialize a JSON envelope back to a DomainEvent.

    Raises:
        MalformedMessage: body is not JSON or misses required fields
    """
    try:
        if isinstance(body, bytes):
            body = body.decode("utf-8")
        return DomainEvent.model_validate_json(body)
    except (UnicodeDecodeError, ValidationError, ValueError) as e:
        raise MalformedMessage(f"Cannot decode event envelope: {e}", cause=e) from e


def event_headers(event: DomainEvent) -> Dict[str, str]:
    """Transport headers describing an event without decoding the body."""
    return {
        "content-type": CONTENT_TYPE,
        "event-id": str(event.event_id),
        "event-type": event.type,
        "aggregate-id": event.aggregate_id,
        "sequence": str(event.sequence),
    }


def encode_headers(headers: Dict[str, str]) -> str:
    return json.dumps(headers, sort_keys=True)


def decode_headers(raw: Union[str, Dict[str, str], None]) -> Dict[str, str]:
    if not raw:
        return {}
    if isinstance(raw, dict):
        return dict(raw)
    return json.loads(raw)
