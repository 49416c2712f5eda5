"""
Value codecs: structured values <-> stored text.
"""

import dataclasses
import json
from abc import ABC, abstractmethod
from typing import Any, Optional

from .exceptions import DecodeError, EncodeError


class Codec(ABC):
    """Abstract base class for value codecs."""

    @abstractmethod
    def encode(self, value: Any) -> str:
        """Encode a value to text. Raises EncodeError on failure."""
        pass

    @abstractmethod
    def decode(self, raw: str) -> Any:
        """Decode stored text to a value. Raises DecodeError on failure."""
        pass


class JsonCodec(Codec):
    """
    JSON codec.

    With ``model`` set to a dataclass type, values are encoded with
    ``dataclasses.asdict`` and decoded back into instances of ``model``.
    """

    def __init__(self, model: Optional[type] = None, sort_keys: bool = False) -> None:
        if model is not None and not dataclasses.is_dataclass(model):
            raise TypeError(f"JsonCodec model must be a dataclass type, got {model!r}")
        self.model = model
        self.sort_keys = sort_keys

    def encode(self, value: Any) -> str:
        if self.model is not None and dataclasses.is_dataclass(value) and not isinstance(value, type):
            value = dataclasses.asdict(value)
        try:
            return json.dumps(value, sort_keys=self.sort_keys)
        except (TypeError, ValueError) as e:
            raise EncodeError(f"Cannot encode {type(value).__name__} as JSON: {e}")

    def decode(self, raw: Any) -> Any:
        if isinstance(raw, bytes):
            try:
                raw = raw.decode("utf-8")
            except UnicodeDecodeError as e:
                raise DecodeError(f"Stored value is not UTF-8 text: {e}")
        try:
            value = json.loads(raw)
        except (TypeError, json.JSONDecodeError) as e:
            raise DecodeError(f"Stored value is not valid JSON: {e}")

        if self.model is None:
            return value
        if not isinstance(value, dict):
            raise DecodeError(f"Expected a JSON object for {self.model.__name__}, got {type(value).__name__}")
        try:
            return self.model(**value)
        except TypeError as e:
            raise DecodeError(f"Cannot build {self.model.__name__}: {e}")


DEFAULT_CODEC = JsonCodec()
