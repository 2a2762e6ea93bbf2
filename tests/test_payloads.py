"""
Tests for boundary payload validation.
"""
import pytest

from core.exceptions import MalformedPayload
from core.payloads import parse_escrow_receipt, parse_platform_offer, parse_rail_receipt


class TestRailReceipt:
    @pytest.mark.parametrize("raw,expected", [
        ("CONFIRMED", "confirmed"),
        ("finalized", "confirmed"),
        ("processed", "pending"),
        ("dropped", "failed"),
    ])
    def test_status_normalized(self, raw, expected):
        receipt = parse_rail_receipt({"payment_ref": "p1", "status": raw, "amount": 10})
        assert receipt.status == expected

    def test_extra_fields_ignored(self):
        receipt = parse_rail_receipt({"payment_ref": "p1", "status": "pending", "amount": 0, "slot": 123})
        assert receipt.confirmations == 0

    @pytest.mark.parametrize("payload", [
        {"status": "confirmed", "amount": 10},
        {"payment_ref": "p1", "status": "lost", "amount": 10},
        {"payment_ref": "p1", "status": "confirmed", "amount": -5},
        None,
    ])
    def test_malformed(self, payload):
        with pytest.raises(MalformedPayload):
            parse_rail_receipt(payload)


class TestPlatformOffer:
    def test_plain_payload(self):
        offer = parse_platform_offer({"offer_id": "o1", "state": "Sent"})
        assert offer.state == "sent"

    def test_steam_envelope(self):
        payload = {"response": {"offer": {"tradeofferid": "4112", "trade_offer_state": 11}}}
        offer = parse_platform_offer(payload)
        assert offer.offer_id == "4112"
        assert offer.state == "held"

    def test_numeric_id_and_unknown_state(self):
        offer = parse_platform_offer({"offer_id": 77, "state": 42})
        assert offer.offer_id == "77"
        assert offer.state == "invalid"

    def test_hold_until_parsed(self):
        offer = parse_platform_offer({"offer_id": "o1", "state": "held", "hold_until": "2025-03-20T12:00:00+00:00"})
        assert offer.hold_until.day == 20

    def test_unknown_state_string_is_malformed(self):
        with pytest.raises(MalformedPayload):
            parse_platform_offer({"offer_id": "o1", "state": "teleported"})


class TestEscrowReceipt:
    def test_locked(self):
        receipt = parse_escrow_receipt({"escrow_id": "e1", "status": "locked", "amount": 100}, "locked")
        assert receipt.amount == 100

    def test_unexpected_status(self):
        with pytest.raises(MalformedPayload, match="expected status released"):
            parse_escrow_receipt({"escrow_id": "e1", "status": "locked"}, "released")
