"""Tests for the Loguru setup."""

import json

import pytest
from loguru import logger

from rmq_messaging.log import serialize_record, text_formatter


@pytest.fixture
def records():
    captured = []
    sink_id = logger.add(lambda message: captured.append(message.record), level="DEBUG")
    yield captured
    logger.remove(sink_id)


def test_json_record_flattens_context(records):
    with logger.contextualize(consumer_tag="svc_0"):
        logger.info("Message sent to queue", queue="orders", payload=object())

    entry = json.loads(serialize_record(records[-1]))

    assert entry["msg"] == "Message sent to queue"
    assert entry["level"] == "INFO"
    assert entry["consumer_tag"] == "svc_0"
    assert entry["queue"] == "orders"
    assert entry["payload"].startswith("<object object")


def test_json_record_carries_exception(records):
    try:
        raise ValueError("bad payload")
    except ValueError:
        logger.exception("Processing failed")

    entry = json.loads(serialize_record(records[-1]))

    assert entry["error_type"] == "ValueError"
    assert entry["error"] == "bad payload"


def test_text_format_shows_consumer_tag(records):
    with logger.contextualize(consumer_tag="svc_1"):
        logger.info("hello")
    logger.info("no tag")

    assert "[svc_1]" in text_formatter(records[-2])
    assert "<magenta>" not in text_formatter(records[-1])
