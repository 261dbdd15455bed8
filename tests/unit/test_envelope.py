"""
Tests for the event wire format.
"""

import json

import pytest

from orderflow.core.errors import MalformedMessage
from orderflow.core.events.envelope import decode_event, decode_headers, encode_event, event_headers
from orderflow.core.events.models import DomainEvent
from orderflow.core.events.taxonomy import get_domain, validate_event_type


def _event(**overrides) -> DomainEvent:
    fields = {"aggregate_id": "o-1", "type": "OrderPaid", "sequence": 1, "payload": {"amount_cents": 900}}
    fields.update(overrides)
    return DomainEvent(**fields)


class TestEncodeDecode:
    def test_decode_restores_identity(self):
        event = _event()
        decoded = decode_event(encode_event(event))

        assert decoded.event_id == event.event_id
        assert decoded.sequence == 1
        assert decoded.payload == {"amount_cents": 900}
        assert decoded.occurred_at == event.occurred_at

    def test_envelope_is_tagged_json(self):
        body = json.loads(encode_event(_event()))
        assert body["type"] == "OrderPaid"
        assert body["aggregate_id"] == "o-1"
        assert "payload" in body

    def test_unknown_type_still_decodes(self):
        """Resolving the type is the consumer's job."""
        event = decode_event(encode_event(_event(type="SomethingNew")))
        assert event.type == "SomethingNew"

    @pytest.mark.parametrize("body", [b"not json", b"{}", b'{"type": "OrderPaid"}', b"\xff\xfe"])
    def test_malformed_bodies_raise(self, body):
        with pytest.raises(MalformedMessage):
            decode_event(body)

    def test_negative_sequence_rejected(self):
        with pytest.raises(ValueError):
            _event(sequence=-1)


class TestHeaders:
    def test_event_headers(self):
        event = _event()
        headers = event_headers(event)
        assert headers["event-id"] == str(event.event_id)
        assert headers["aggregate-id"] == "o-1"
        assert headers["sequence"] == "1"

    def test_decode_headers_accepts_all_storage_forms(self):
        assert decode_headers(None) == {}
        assert decode_headers('{"a": "1"}') == {"a": "1"}
        assert decode_headers({"a": "1"}) == {"a": "1"}


class TestTaxonomy:
    def test_known_types(self):
        assert validate_event_type("OrderCreated")
        assert get_domain("OrderShipped") == "order"
        assert get_domain("Nope") == "unknown"
