"""
payloads.py
===========

JSON payloads stored in the `coefficient_vector_json` column.

A success payload always carries `coefficients`, `inference`, `software` and
`config_hash`; a failure payload carries `error` and `error_details` instead
of the estimates. The design blocks written by the runner (`specification`,
`bandwidths`, `sample`) sit next to them at the top level:

  {"coefficients": {...}, "inference": {...}, "software": {...},
   "config_hash": "sha256:...", "specification": {...}, "bandwidths": {...},
   "sample": {...}, "warnings": [...]}

Non-finite floats are written as null so every payload is strict JSON.
"""

from __future__ import annotations

import hashlib
import json
import math
import sys
import traceback
from importlib import metadata
from typing import Any

NUMERICAL_STACK: tuple[str, ...] = ("numpy", "pandas", "scipy", "statsmodels", "pyfixest")

DESIGN_BLOCKS: tuple[str, ...] = ("specification", "bandwidths", "sample")

TRACEBACK_FRAMES = 6


def config_hash(config: dict[str, Any]) -> str:
    canon = json.dumps(config, sort_keys=True, separators=(",", ":"))
    return "sha256:" + hashlib.sha256(canon.encode("utf-8")).hexdigest()


def _version(dist: str) -> str | None:
    try:
        return metadata.version(dist)
    except metadata.PackageNotFoundError:
        return None


def software_block() -> dict[str, Any]:
    """Interpreter, package and numerical-stack versions for one run."""
    stack = {name: _version(name) for name in NUMERICAL_STACK}
    return {
        "python": "%d.%d.%d" % sys.version_info[:3],
        "asiste_rd": _version("asiste-rd"),
        "packages": {k: v for k, v in stack.items() if v is not None},
    }


def _one_line(text: str, limit: int) -> str:
    text = " ".join((text or "").split())
    return text if len(text) <= limit else text[: limit - 3] + "..."


def error_details_from_exception(e: BaseException, *, stage: str) -> dict[str, Any]:
    frames = traceback.extract_tb(e.__traceback__)[-TRACEBACK_FRAMES:]
    return {
        "stage": stage,
        "exception_type": type(e).__name__,
        "exception_message": _one_line(str(e), 500),
        "frames": [f"{f.filename.rsplit('/', 1)[-1]}:{f.lineno} in {f.name}" for f in frames],
    }


def _design_blocks(blocks: dict[str, Any] | None) -> dict[str, Any]:
    blocks = dict(blocks or {})
    unknown = sorted(set(blocks) - set(DESIGN_BLOCKS))
    if unknown:
        raise ValueError(f"Unknown payload blocks: {unknown}")
    return blocks


def make_success_payload(
    *,
    coefficients: dict[str, Any],
    inference: dict[str, Any],
    software: dict[str, Any],
    config_hash: str,
    blocks: dict[str, Any] | None = None,
    warnings: list[str] | None = None,
) -> dict[str, Any]:
    payload = {
        "coefficients": dict(coefficients),
        "inference": dict(inference),
        "software": software,
        "config_hash": config_hash,
        **_design_blocks(blocks),
    }
    if warnings:
        payload["warnings"] = list(warnings)
    return payload


def make_failure_payload(
    *,
    error: str,
    error_details: dict[str, Any],
    software: dict[str, Any],
    config_hash: str,
    blocks: dict[str, Any] | None = None,
) -> dict[str, Any]:
    return {
        "error": _one_line(error, 500) or "run_success=0",
        "error_details": error_details,
        "software": software,
        "config_hash": config_hash,
        **_design_blocks(blocks),
    }


def to_json(payload: dict[str, Any]) -> str:
    return json.dumps(_finite(payload), sort_keys=True)


def _finite(obj: Any) -> Any:
    if isinstance(obj, dict):
        return {k: _finite(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [_finite(v) for v in obj]
    if isinstance(obj, float) and not math.isfinite(obj):
        return None
    return obj
