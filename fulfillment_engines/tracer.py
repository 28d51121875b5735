"""
fulfillment_engines.tracer -- FULFILLMENT_ENGINE_TRACE records for engine calls.

Responsibility:
    ``@traced_engine`` wraps a pure engine function and emits one structured
    log record per call: engine name and version, a fingerprint of the
    selected arguments, the call duration and, when a ``summarize`` hook is
    given, a few outcome fields (for the lot selector: allocated and unmet
    quantity, pick count).

Architecture position:
    Engines -- support for the pure selection layer.  Emits a log record
    only; never touches the session, the clock or its inputs.

Invariants enforced:
    - Same bound arguments give the same fingerprint, whether they were
      passed positionally or by keyword, and regardless of dict ordering.
    - The fingerprint is SHA-256 truncated to 16 hex chars.

Failure modes:
    - Exceptions raised by the engine propagate unchanged; no trace is
      emitted for a failed call.
"""

from __future__ import annotations

import functools
import hashlib
import inspect
import time
from collections.abc import Callable, Mapping
from datetime import date
from enum import Enum
from typing import Any
from uuid import UUID

from fulfillment_kernel.logging_config import get_logger

logger = get_logger("engines.tracer")

TRACE_MESSAGE = "FULFILLMENT_ENGINE_TRACE"


def _canonicalize(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, Enum):
        return _canonicalize(value.value)
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, str, UUID, date)):
        return str(value)
    if isinstance(value, Mapping):
        items = sorted(value.items(), key=lambda kv: str(kv[0]))
        return "{" + ",".join(f"{k}:{_canonicalize(v)}" for k, v in items) + "}"
    if isinstance(value, (list, tuple)):
        return "[" + ",".join(_canonicalize(v) for v in value) + "]"
    return repr(value)


def compute_input_fingerprint(
    fingerprint_fields: tuple[str, ...],
    arguments: Mapping[str, Any],
) -> str:
    """Fingerprint of ``arguments`` restricted to ``fingerprint_fields``; absent fields count as null."""
    canonical = "|".join(
        f"{name}={_canonicalize(arguments.get(name))}" for name in fingerprint_fields
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:16]


def traced_engine(
    engine_name: str,
    engine_version: str,
    fingerprint_fields: tuple[str, ...] = (),
    summarize: Callable[[Any], dict[str, Any]] | None = None,
) -> Callable:
    """
    Decorator that emits FULFILLMENT_ENGINE_TRACE for each successful call.

    Args:
        engine_name: Engine identifier, e.g. ``"lot_selector"``.
        engine_version: Engine version, e.g. ``"1.0"``.
        fingerprint_fields: Parameter names hashed into ``input_fingerprint``.
        summarize: Optional hook mapping the engine result to extra trace
            fields.
    """

    def decorator(func: Callable) -> Callable:
        signature = inspect.signature(func)

        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            fingerprint = ""
            if fingerprint_fields:
                bound = signature.bind(*args, **kwargs)
                bound.apply_defaults()
                fingerprint = compute_input_fingerprint(fingerprint_fields, bound.arguments)

            started = time.monotonic()
            result = func(*args, **kwargs)
            duration_ms = round((time.monotonic() - started) * 1000, 2)

            extra: dict[str, Any] = {
                "trace_type": TRACE_MESSAGE,
                "engine_name": engine_name,
                "engine_version": engine_version,
                "input_fingerprint": fingerprint,
                "duration_ms": duration_ms,
            }
            if summarize is not None:
                extra.update(summarize(result))
            logger.info(TRACE_MESSAGE, extra=extra)
            return result

        return wrapper

    return decorator
