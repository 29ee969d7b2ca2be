"""Payload serializers."""

import json
from typing import Any

from rmq_backoff.interface import SerializerInterface


class JSONSerializer(SerializerInterface):
    """UTF-8 JSON payloads. The default serializer."""

    content_type = "application/json"

    def decode(self, payload: bytes) -> Any:
        return json.loads(payload)

    def encode(self, body: Any) -> bytes:
        return json.dumps(body).encode("utf-8")


class IdentitySerializer(SerializerInterface):
    """Passes payload bytes through untouched."""

    content_type = "application/octet-stream"

    @property
    def binary(self) -> bool:
        return True

    def decode(self, payload: bytes) -> bytes:
        return payload

    def encode(self, body: Any) -> bytes:
        if isinstance(body, str):
            return body.encode("utf-8")
        return bytes(body)
