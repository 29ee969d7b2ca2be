"""Tests for delivery and message containers."""

from unittest.mock import Mock

import pytest

from rmq_backoff.message import Delivery, Message


def _amqp_message(method, properties, body):
    message = Mock()
    message.method = method
    message.properties = properties
    message.body = body
    return message


class TestDelivery:
    def test_from_amqp_decodes_metadata(self):
        message = _amqp_message(
            method={
                "routing_key": b"order.created",
                "delivery_tag": 12,
                "exchange": b"main",
                "redelivered": True,
            },
            properties={
                "message_id": b"uuid",
                "content_type": b"application/json",
                "headers": {b"backoff-delay-count": 2, b"tenant": b"acme"},
            },
            body=b'{"id": 1}',
        )

        delivery = Delivery.from_amqp(message)

        assert delivery.routing_key == "order.created"
        assert delivery.delivery_tag == 12
        assert delivery.exchange == "main"
        assert delivery.redelivered is True
        assert delivery.message_id == "uuid"
        assert delivery.content_type == "application/json"
        assert dict(delivery.headers) == {"backoff-delay-count": 2, "tenant": "acme"}
        assert delivery.payload == b'{"id": 1}'

    def test_from_amqp_defaults(self):
        delivery = Delivery.from_amqp(
            _amqp_message(method={"routing_key": "k", "delivery_tag": 1}, properties={}, body=None)
        )

        assert delivery.message_id is None
        assert delivery.content_type is None
        assert dict(delivery.headers) == {}
        assert delivery.payload == b""
        assert delivery.redelivered is False

    def test_text_body_is_encoded(self):
        delivery = Delivery.from_amqp(
            _amqp_message(method={"routing_key": "k", "delivery_tag": 1}, properties={}, body="héllo")
        )
        assert delivery.payload == "héllo".encode("utf-8")

    def test_headers_are_read_only(self):
        delivery = Delivery(routing_key="k", delivery_tag=1, headers={"a": 1})
        with pytest.raises(TypeError):
            delivery.headers["a"] = 2


class TestMessage:
    def test_accessors(self):
        delivery = Delivery(routing_key="k", delivery_tag=1, message_id="m", headers={"h": 1})
        message = Message(delivery=delivery, body={"id": 5})

        assert message.routing_key == "k"
        assert message.message_id == "m"
        assert message.headers["h"] == 1
        assert message["id"] == 5
