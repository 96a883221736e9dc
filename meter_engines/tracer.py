"""
meter_engines.tracer -- Engine invocation tracer emitting METER_ENGINE_TRACE.

Responsibility:
    ``@traced_engine`` wraps each public engine entry point and logs one
    structured record per call: which engine ran, a fingerprint of the
    ledger inputs it was asked about, how long it took and, for rule
    checks, whether the candidate was accepted.

Architecture position:
    Engines -- infrastructure support for the pure calculation layer.
    Emits a log record only; does not introduce I/O into engines.

Invariants enforced:
    - Fingerprints are deterministic: mappings are keyed in sorted order,
      frozen DTOs reduce to their fields, Decimals render via ``str``.
    - The decorator never mutates inputs or results.

Failure modes:
    - Fingerprint fields missing from kwargs are recorded as "null".

Audit relevance:
    A rejected contribution or reading leaves a trace with
    ``outcome="rejected"`` and the error codes, next to the service's own
    warning record, so a disputed balance can be replayed from the log.

Usage:
    from meter_engines.tracer import traced_engine

    @traced_engine("constraints", "1.0", fingerprint_fields=("purchase_id",))
    def check_single_contribution(self, *, purchase_id, snapshot):
        ...
"""

from __future__ import annotations

import dataclasses
import functools
import hashlib
import time
from collections.abc import Callable, Mapping
from enum import Enum
from typing import Any

from meter_kernel.logging_config import get_logger

_logger = get_logger("engines.tracer")


def _canonicalize(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, Enum):
        return str(value.value)
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        body = {f.name: getattr(value, f.name) for f in dataclasses.fields(value)}
        return f"{type(value).__name__}{_canonicalize(body)}"
    if isinstance(value, Mapping):
        pairs = sorted((str(k), _canonicalize(v)) for k, v in value.items())
        return "{" + ",".join(f"{k}:{v}" for k, v in pairs) + "}"
    if isinstance(value, (list, tuple, frozenset, set)):
        items = [_canonicalize(v) for v in value]
        if not isinstance(value, (list, tuple)):
            items.sort()
        return "[" + ",".join(items) + "]"
    return str(value)


def compute_input_fingerprint(
    fingerprint_fields: tuple[str, ...],
    kwargs: dict[str, Any],
) -> str:
    """16-character SHA-256 prefix over the selected keyword inputs."""
    digest = hashlib.sha256()
    for name in fingerprint_fields:
        digest.update(f"{name}={_canonicalize(kwargs.get(name))};".encode())
    return digest.hexdigest()[:16]


def _outcome(result: Any) -> dict[str, Any]:
    """Accept/reject summary for results that carry ``is_valid``."""
    is_valid = getattr(result, "is_valid", None)
    if not isinstance(is_valid, bool):
        return {}
    codes = [e.code for e in getattr(result, "errors", ())]
    return {"outcome": "accepted" if is_valid else "rejected", "error_codes": codes}


def traced_engine(
    engine_name: str,
    engine_version: str,
    fingerprint_fields: tuple[str, ...] = (),
) -> Callable:
    """
    Decorator that emits METER_ENGINE_TRACE for pure engine invocations.

    Args:
        engine_name: Engine identifier (e.g., "chronology").
        engine_version: Engine version (e.g., "1.0").
        fingerprint_fields: Keyword argument names included in the
            input fingerprint hash.
    """

    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            started = time.perf_counter()
            result = func(*args, **kwargs)
            elapsed_ms = (time.perf_counter() - started) * 1000

            record = {
                "trace_type": "METER_ENGINE_TRACE",
                "engine_name": engine_name,
                "engine_version": engine_version,
                "function": func.__qualname__,
                "input_fingerprint": (
                    compute_input_fingerprint(fingerprint_fields, kwargs)
                    if fingerprint_fields
                    else ""
                ),
                "duration_ms": round(elapsed_ms, 2),
            }
            record.update(_outcome(result))
            _logger.info("METER_ENGINE_TRACE", extra=record)
            return result

        return wrapper

    return decorator
