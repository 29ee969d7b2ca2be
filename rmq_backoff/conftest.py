"""Shared fixtures for rmq_backoff tests."""

from unittest.mock import Mock

import pytest

from rmq_backoff.interface import BrokerInterface
from rmq_backoff.message import Delivery


@pytest.fixture
def broker():
    mock_broker = Mock(spec=BrokerInterface)
    mock_broker.exchange_name = "main"
    mock_broker.declare_queue.side_effect = lambda name, **kwargs: name
    return mock_broker


@pytest.fixture
def make_delivery():
    def _make(headers=None, payload=b"{}", redelivered=False):
        return Delivery(
            routing_key="test",
            delivery_tag=7,
            message_id="uuid",
            headers=headers or {},
            payload=payload,
            redelivered=redelivered,
            content_type="application/json",
        )
    return _make
