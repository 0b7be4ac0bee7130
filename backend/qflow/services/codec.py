"""
Data Flow Codec.

Converts values moving between nodes into type-tagged WireValues and back.

Strategy selection (encode):
- JSON-native scalar/collection values -> canonical JSON (sorted keys, compact)
- opaque types and anything JSON cannot represent faithfully (tuples, sets,
  bytes, arbitrary objects) -> pickle with a fixed protocol
- any encoded payload above `spill_threshold_bytes` -> stored in the blob
  store by content hash; the WireValue then carries only a BlobRef

Encoding the same value with the same strategy yields identical bytes, so
spilled blobs deduplicate by checksum. Before pickling, dicts and sets are
rebuilt in sorted order so equal values do not differ by insertion order.

decode() checks the wire type against the expected type with the
Compatibility Resolver before touching the payload.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import math
import pickle
import time
from collections import Counter, deque
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict

from qflow.errors import CodecError, TypeMismatchError, UnknownTypeError
from qflow.models.types import ConversionOperator, TypeCategory
from qflow.services.type_registry import TypeRegistry
from qflow.storage.blob_store import BlobNotFoundError, BlobRef, BlobStore

logger = logging.getLogger(__name__)

PICKLE_PROTOCOL = 4

Encoding = Literal["json", "pickle", "blob"]


class WireValue(BaseModel):
    model_config = ConfigDict(ser_json_bytes="base64", val_json_bytes="base64")

    type_id: str
    encoding: Encoding
    payload: bytes | None = None
    blob: BlobRef | None = None
    size: int
    checksum: str

    def summary(self) -> dict[str, Any]:
        return {
            "type_id": self.type_id,
            "encoding": self.encoding,
            "size": self.size,
            "checksum": self.checksum,
            "blob_id": self.blob.blob_id if self.blob else None,
        }


class CodecSample(BaseModel):
    operation: Literal["encode", "decode"]
    encoding: str
    type_id: str
    size: int
    duration_ms: float


def _is_json_native(value: Any) -> bool:
    if value is None or isinstance(value, (bool, int, str)):
        return True
    if isinstance(value, float):
        return math.isfinite(value)
    if type(value) is list:
        return all(_is_json_native(item) for item in value)
    if type(value) is dict:
        return all(isinstance(k, str) and _is_json_native(v) for k, v in value.items())
    return False


def _ordered(items: list, key=None) -> list:
    try:
        return sorted(items, key=key)
    except TypeError:
        return items


def _canonical(value: Any, memo: dict[int, Any] | None = None) -> Any:
    """
    Rebuild plain containers with a deterministic iteration order. Members
    that cannot be compared keep their original order; shared and cyclic
    references are preserved through `memo`.
    """
    if memo is None:
        memo = {}
    kind = type(value)
    if kind not in (dict, list, tuple, set, frozenset):
        return value
    if id(value) in memo:
        return memo[id(value)]

    if kind is list:
        rebuilt = memo[id(value)] = []
        rebuilt.extend(_canonical(item, memo) for item in value)
        return rebuilt
    if kind is dict:
        rebuilt = memo[id(value)] = {}
        items = [(_canonical(k, memo), _canonical(v, memo)) for k, v in value.items()]
        rebuilt.update(_ordered(items, key=lambda item: item[0]))
        return rebuilt

    members = [_canonical(item, memo) for item in value]
    rebuilt = tuple(members) if kind is tuple else kind(_ordered(members))
    memo[id(value)] = rebuilt
    return rebuilt


def _canonical_json(value: Any) -> bytes:
    return json.dumps(
        value,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        allow_nan=False,
    ).encode("utf-8")


class DataFlowCodec:
    def __init__(
        self,
        type_registry: TypeRegistry,
        blob_store: BlobStore,
        spill_threshold_bytes: int = 1024 * 1024,
        max_samples: int = 1000,
    ):
        self.type_registry = type_registry
        self.blob_store = blob_store
        self.spill_threshold_bytes = spill_threshold_bytes
        self._samples: deque[CodecSample] = deque(maxlen=max_samples)

    # ------------------------------------------------------------------
    # Encode
    # ------------------------------------------------------------------

    def _select_strategy(self, value: Any, type_id: str) -> Literal["json", "pickle"]:
        data_type = self.type_registry.get(type_id)
        if data_type.category == TypeCategory.OPAQUE:
            return "pickle"
        if _is_json_native(value):
            return "json"
        return "pickle"

    def encode(self, value: Any, type_id: str) -> WireValue:
        start = time.perf_counter()
        try:
            strategy = self._select_strategy(value, type_id)
        except UnknownTypeError as e:
            raise CodecError(str(e)) from e

        try:
            if strategy == "json":
                data = _canonical_json(value)
            else:
                data = pickle.dumps(_canonical(value), protocol=PICKLE_PROTOCOL)
        except (TypeError, ValueError, pickle.PicklingError, AttributeError) as e:
            raise CodecError(f"Cannot encode value of type {type(value).__name__}: {e}") from e

        checksum = hashlib.sha256(data).hexdigest()
        if len(data) > self.spill_threshold_bytes:
            ref = self.blob_store.put(data, inner_encoding=strategy)
            wire = WireValue(
                type_id=type_id,
                encoding="blob",
                blob=ref,
                size=len(data),
                checksum=checksum,
            )
        else:
            wire = WireValue(
                type_id=type_id,
                encoding=strategy,
                payload=data,
                size=len(data),
                checksum=checksum,
            )

        self._record("encode", wire, start)
        return wire

    # ------------------------------------------------------------------
    # Decode
    # ------------------------------------------------------------------

    def _payload_bytes(self, wire: WireValue) -> tuple[bytes, str]:
        if wire.encoding == "blob":
            if wire.blob is None:
                raise CodecError("Blob wire value has no blob reference")
            try:
                data = self.blob_store.get(wire.blob.blob_id)
            except BlobNotFoundError as e:
                raise CodecError(f"Blob {wire.blob.blob_id} not found") from e
            inner = wire.blob.inner_encoding
        else:
            if wire.payload is None:
                raise CodecError("Wire value has no payload")
            data = wire.payload
            inner = wire.encoding

        if hashlib.sha256(data).hexdigest() != wire.checksum:
            raise CodecError("Checksum mismatch for wire value payload")
        return data, inner

    def decode(self, wire: WireValue, expected_type: str) -> Any:
        start = time.perf_counter()
        try:
            compatible = self.type_registry.is_compatible(wire.type_id, expected_type)
        except UnknownTypeError as e:
            raise CodecError(str(e)) from e
        if not compatible:
            raise TypeMismatchError(wire.type_id, expected_type)

        data, inner = self._payload_bytes(wire)
        try:
            if inner == "json":
                value = json.loads(data.decode("utf-8"))
            elif inner == "pickle":
                value = pickle.loads(data)
            else:
                raise CodecError(f"Unknown encoding '{inner}'")
        except CodecError:
            raise
        except Exception as e:
            raise CodecError(f"Malformed {inner} payload: {type(e).__name__}: {e}") from e

        self._record("decode", wire, start)
        return value

    async def encode_async(self, value: Any, type_id: str) -> WireValue:
        return await asyncio.to_thread(self.encode, value, type_id)

    async def decode_async(self, wire: WireValue, expected_type: str) -> Any:
        return await asyncio.to_thread(self.decode, wire, expected_type)

    # ------------------------------------------------------------------
    # Conversion / lifecycle
    # ------------------------------------------------------------------

    def convert(self, wire: WireValue, operator: ConversionOperator) -> WireValue:
        """Apply an explicit conversion: decode as the source type, re-encode as the target."""
        value = self.decode(wire, operator.source_type)
        try:
            converted = operator.apply(value)
        except Exception as e:
            raise CodecError(f"Conversion '{operator.name}' failed: {type(e).__name__}: {e}") from e
        return self.encode(converted, operator.target_type)

    def retain(self, wire: WireValue) -> None:
        if wire.encoding == "blob" and wire.blob is not None:
            self.blob_store.acquire(wire.blob.blob_id)

    def release(self, wire: WireValue) -> None:
        if wire.encoding == "blob" and wire.blob is not None:
            self.blob_store.release(wire.blob.blob_id)

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------

    def _record(self, operation: str, wire: WireValue, start: float) -> None:
        sample = CodecSample(
            operation=operation,
            encoding=wire.encoding,
            type_id=wire.type_id,
            size=wire.size,
            duration_ms=(time.perf_counter() - start) * 1000,
        )
        self._samples.append(sample)
        logger.debug(
            "codec %s %s type=%s size=%d %.3fms",
            operation, wire.encoding, wire.type_id, wire.size, sample.duration_ms,
        )

    def samples(self) -> list[CodecSample]:
        return list(self._samples)

    def stats(self) -> dict[str, Any]:
        samples = list(self._samples)
        by_encoding = Counter(f"{s.operation}:{s.encoding}" for s in samples)
        return {
            "samples": len(samples),
            "by_encoding": dict(by_encoding),
            "bytes_encoded": sum(s.size for s in samples if s.operation == "encode"),
            "bytes_decoded": sum(s.size for s in samples if s.operation == "decode"),
            "avg_duration_ms": (
                sum(s.duration_ms for s in samples) / len(samples) if samples else 0.0
            ),
        }
