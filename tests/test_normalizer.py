"""Tests for the normalizer module."""

import logging

import orjson
import pytest

from onvif_alert_relay.errors import ParseError
from onvif_alert_relay.models import RawNotification
from onvif_alert_relay.normalizer import Normalizer, classify_topic

_ENVELOPE = (
    '<?xml version="1.0" encoding="UTF-8"?>'
    '<env:Envelope xmlns:env="http://www.w3.org/2003/05/soap-envelope"'
    ' xmlns:wsnt="http://docs.oasis-open.org/wsn/b-2"'
    ' xmlns:tt="http://www.onvif.org/ver10/schema"'
    ' xmlns:tns1="http://www.onvif.org/ver10/topics">'
    "<env:Body><wsnt:Notify>{blocks}</wsnt:Notify></env:Body></env:Envelope>"
)


def _block(
    topic: str = "tns1:RuleEngine/CellMotionDetector/Motion",
    utc: str = "2024-03-01T12:00:00Z",
    data_items: str = '<tt:SimpleItem Name="IsMotion" Value="true"/>',
) -> str:
    return (
        "<wsnt:NotificationMessage>"
        f'<wsnt:Topic Dialect="http://www.onvif.org/ver10/tev/topicExpression/ConcreteSet">{topic}</wsnt:Topic>'
        "<wsnt:Message>"
        f'<tt:Message UtcTime="{utc}" PropertyOperation="Changed">'
        '<tt:Source><tt:SimpleItem Name="VideoSourceConfigurationToken" Value="vsconf"/></tt:Source>'
        f"<tt:Data>{data_items}</tt:Data>"
        "</tt:Message>"
        "</wsnt:Message>"
        "</wsnt:NotificationMessage>"
    )


_MALFORMED_BLOCK = (
    "<wsnt:NotificationMessage>"
    "<wsnt:Topic>tns1:VideoSource/MotionAlarm</wsnt:Topic>"
    "<wsnt:Message><tt:Other/></wsnt:Message>"
    "</wsnt:NotificationMessage>"
)


def _raw(*blocks: str) -> RawNotification:
    return RawNotification(payload=_ENVELOPE.format(blocks="".join(blocks)).encode())


def test_single_block_is_projected() -> None:
    """Topic, timestamp, source and data items land on the Event."""
    events = list(Normalizer().normalize(_raw(_block())))
    assert len(events) == 1
    event = events[0]
    assert event.category == "motion"
    assert event.topic == "tns1:RuleEngine/CellMotionDetector/Motion"
    assert event.timestamp.isoformat() == "2024-03-01T12:00:00+00:00"
    assert event.data == {"IsMotion": "true"}
    assert event.attributes["VideoSourceConfigurationToken"] == "vsconf"
    assert orjson.loads(event.source_tag) == {"VideoSourceConfigurationToken": "vsconf"}
    assert event.property_operation == "Changed"


def test_multiple_blocks_yield_distinct_events() -> None:
    """N embedded notifications give N events with distinct ids."""
    events = list(Normalizer().normalize(_raw(_block(), _block(), _block())))
    assert len(events) == 3
    assert len({e.id for e in events}) == 3


def test_malformed_block_is_skipped_and_logged(caplog: pytest.LogCaptureFixture) -> None:
    """One bad block among N gives N-1 events and a warning."""
    normalizer = Normalizer()
    with caplog.at_level(logging.WARNING, logger="onvif_alert_relay.normalizer"):
        events = list(normalizer.normalize(_raw(_block(), _MALFORMED_BLOCK, _block())))
    assert len(events) == 2
    assert normalizer.parse_errors == 1
    assert any("malformed" in r.getMessage() for r in caplog.records)


def test_simple_item_without_name_is_malformed() -> None:
    """A data item missing its Name attribute invalidates the block."""
    normalizer = Normalizer()
    bad = _block(data_items='<tt:SimpleItem Value="true"/>')
    events = list(normalizer.normalize(_raw(bad, _block())))
    assert len(events) == 1
    assert normalizer.parse_errors == 1


def test_unparseable_payload_raises() -> None:
    """A payload that is not XML at all raises ParseError eagerly."""
    normalizer = Normalizer()
    with pytest.raises(ParseError):
        normalizer.normalize(RawNotification(payload=b"not <xml"))
    assert normalizer.parse_errors == 1


def test_empty_payload_raises() -> None:
    with pytest.raises(ParseError):
        Normalizer().normalize(RawNotification(payload=b""))


def test_envelope_without_notifications_is_empty() -> None:
    """A well-formed envelope with no blocks yields nothing."""
    assert list(Normalizer().normalize(_raw())) == []


def test_bad_utc_time_falls_back_to_receipt_time() -> None:
    raw = _raw(_block(utc="yesterday"))
    events = list(Normalizer().normalize(raw))
    assert events[0].timestamp == raw.received_at


def test_str_payload_accepted() -> None:
    raw = RawNotification(payload=_ENVELOPE.format(blocks=_block()))
    assert len(list(Normalizer().normalize(raw))) == 1


@pytest.mark.parametrize(
    "topic, expected",
    [
        ("tns1:VideoSource/MotionAlarm", "motionalarm"),
        ("tns1:RuleEngine/PeopleDetection", "peopledetection"),
        ("tns1:VideoAnalytics/ObjectDetection", "objectdetection"),
        ("tns1:RuleEngine/PeopleDetector/People", "peopledetection"),
        ("tns1:RuleEngine/MyRule/HumanShape", "peopledetection"),
        ("tns1:VideoAnalytics/ObjectDetection/Object", "objectdetection"),
        ("tns1:RuleEngine/Detector/Object", "object"),
        ("tns1:VideoSource/GlobalSceneChange/ImagingService", "imagingservice"),
        ("tns1:Device/Trigger/Digital-Input", "digital_input"),
        ("NoSeparator", "unknown"),
        ("", "unknown"),
        (None, "unknown"),
    ],
)
def test_classify_topic(topic, expected) -> None:
    """Category derivation from the last topic segment."""
    assert classify_topic(topic) == expected
