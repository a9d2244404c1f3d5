"""JSON serialization of workflow inputs, outputs and event payloads."""

from __future__ import annotations

import json
import logging
from typing import Any, Optional, Type, TypeVar

from pydantic import TypeAdapter

logger = logging.getLogger(__name__)

T = TypeVar("T")


class DataSerializer:
    """Serialize arbitrary workflow data to a JSON string.

    Supports:
    - Pydantic models and dataclasses
    - Plain containers and scalars
    - Anything else through ``str()`` as a last resort
    """

    @staticmethod
    def serialize(data: Any) -> Optional[str]:
        if data is None:
            return None

        try:
            return TypeAdapter(type(data)).dump_json(data).decode()
        except Exception:
            pass

        try:
            return json.dumps(data, default=str)
        except Exception as e:
            logger.warning(f"Failed to serialize workflow data of type {type(data).__name__}: {e}")
            return json.dumps(
                {"error": "serialization_failed", "type": type(data).__name__}
            )


class DataDeserializer:
    """Rebuild a typed value from its stored JSON form."""

    @staticmethod
    def deserialize(raw: Optional[str], data_type: Type[T]) -> Optional[T]:
        if raw is None or not raw.strip():
            return None

        try:
            return TypeAdapter(data_type).validate_json(raw)
        except Exception as e:
            raise ValueError(
                f"Failed to deserialize data to '{getattr(data_type, '__name__', data_type)}': {e}"
            )


def serialize_data(data: Any) -> Optional[str]:
    return DataSerializer.serialize(data)


def deserialize_data(raw: Optional[str], data_type: Type[T]) -> Optional[T]:
    return DataDeserializer.deserialize(raw, data_type)
