from decimal import Decimal

import pytest
from pydantic import ValidationError

from cashback_engine.models import ConversionStatus
from cashback_engine.schemas import PostbackPayload, coerce_status


@pytest.mark.parametrize(
    "raw, expected",
    [
        (None, ConversionStatus.APPROVED),
        ("", ConversionStatus.APPROVED),
        ("1", ConversionStatus.APPROVED),
        ("Approved", ConversionStatus.APPROVED),
        (True, ConversionStatus.APPROVED),
        ("0", ConversionStatus.REJECTED),
        ("declined", ConversionStatus.REJECTED),
        (False, ConversionStatus.REJECTED),
        ("pending", ConversionStatus.REJECTED),
    ],
)
def test_coerce_status(raw, expected):
    assert coerce_status(raw) == expected


def test_payload_accepts_partner_spellings():
    payload = PostbackPayload.model_validate(
        {
            "clickid": "  CLID-ABC ",
            "conversionid": "c-9",
            "offerid": 42,
            "publisherid": "7",
            "conversiontype": "sale",
            "ip": "198.51.100.4",
            "useragent": "UA",
            "payout": "3.456",
            "status": "success",
            "unexpected": "ignored",
        }
    )

    assert payload.click_id == "CLID-ABC"
    assert payload.external_conversion_id == "c-9"
    assert payload.partner_offer_id == "42"
    assert payload.publisher_id == "7"
    assert payload.conversion_type == "sale"
    assert payload.ip_address == "198.51.100.4"
    assert payload.user_agent == "UA"
    assert payload.payout == Decimal("3.46")
    assert payload.approved


def test_payload_defaults():
    payload = PostbackPayload.model_validate({"click_id": "", "payout": "abc"})

    assert payload.click_id is None
    assert payload.payout == Decimal("0")
    assert payload.status == ConversionStatus.APPROVED


def test_negative_payout_is_rejected():
    with pytest.raises(ValidationError):
        PostbackPayload.model_validate({"click_id": "CLID-NEG", "payout": "-0.01"})
