"""
shepherd_kernel.domain.spec -- Resource specs and effective-spec resolution.

Responsibility:
    Hold the requested VM resource specification, encode it to the
    immutable event payload, validate approver overrides, and compute the
    effective spec a worker executes.

Architecture position:
    Kernel > Domain.  Pure functions and frozen dataclasses, zero I/O.

Invariants enforced:
    - Payload bytes are canonical JSON (sorted keys, no whitespace), so the
      same spec always encodes to the same bytes.
    - Overrides are field-level: each non-null overridable field replaces the
      payload's field; null or absent keeps the original.
    - ``modified_by`` / ``modified_reason`` are audit fields and never
      override anything.

Failure modes:
    - InvalidResourceSpecError: spec incomplete for the operation.
    - InvalidModifiedSpecError: override names unknown fields or bad values.
    - EffectiveSpecError: stored bytes cannot be decoded.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, fields, replace
from typing import Any, Mapping

from shepherd_kernel.domain.types import Operation
from shepherd_kernel.exceptions import (
    EffectiveSpecError,
    InvalidModifiedSpecError,
    InvalidResourceSpecError,
)

OVERRIDABLE_FIELDS: tuple[str, ...] = (
    "cluster",
    "namespace",
    "template_id",
    "cpu",
    "memory_mb",
    "disk_gb",
)
AUDIT_FIELDS: tuple[str, ...] = ("modified_by", "modified_reason")

_INT_FIELDS = frozenset({"cpu", "memory_mb", "disk_gb"})


@dataclass(frozen=True)
class ResourceSpec:
    """Requested (or effective) VM resource specification."""

    cluster: str | None = None
    namespace: str | None = None
    name: str | None = None
    service_id: str | None = None
    template_id: str | None = None
    cpu: int | None = None
    memory_mb: int | None = None
    disk_gb: int | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ResourceSpec:
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise InvalidResourceSpecError(
                "decode", [f"unknown field '{k}'" for k in unknown],
            )
        errors = _type_errors(data)
        if errors:
            raise InvalidResourceSpecError("decode", errors)
        return cls(**dict(data))

    def to_dict(self) -> dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}

    def validate_for(self, operation: Operation) -> None:
        """Raise InvalidResourceSpecError if the spec cannot drive ``operation``."""
        errors = _type_errors(self.to_dict())
        for required in ("cluster", "namespace"):
            if not getattr(self, required):
                errors.append(f"{required} is required")

        if operation == Operation.CREATE_VM:
            for required in ("service_id", "template_id", "cpu", "memory_mb"):
                if getattr(self, required) is None:
                    errors.append(f"{required} is required")
        else:
            if not self.name:
                errors.append("name is required")
            if operation == Operation.MODIFY_VM and all(
                getattr(self, f) is None for f in _INT_FIELDS
            ):
                errors.append("modify requires at least one of cpu, memory_mb, disk_gb")

        if errors:
            raise InvalidResourceSpecError(operation.value, errors)


@dataclass(frozen=True)
class ModifiedSpec:
    """Approver override. Every field optional; None keeps the original."""

    cluster: str | None = None
    namespace: str | None = None
    template_id: str | None = None
    cpu: int | None = None
    memory_mb: int | None = None
    disk_gb: int | None = None
    modified_by: str | None = None
    modified_reason: str | None = None

    def overrides(self) -> dict[str, Any]:
        return {
            name: getattr(self, name)
            for name in OVERRIDABLE_FIELDS
            if getattr(self, name) is not None
        }

    def to_dict(self) -> dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


def _type_errors(data: Mapping[str, Any]) -> list[str]:
    errors = []
    for key, value in data.items():
        if value is None:
            continue
        if key in _INT_FIELDS:
            if isinstance(value, bool) or not isinstance(value, int):
                errors.append(f"{key} must be an integer")
            elif value <= 0:
                errors.append(f"{key} must be positive")
        elif not isinstance(value, str):
            errors.append(f"{key} must be a string")
    return errors


# =============================================================================
# Encoding
# =============================================================================


def canonical_json(data: Mapping[str, Any]) -> bytes:
    return json.dumps(data, sort_keys=True, separators=(",", ":")).encode("utf-8")


def encode_payload(spec: ResourceSpec) -> bytes:
    """Encode a spec as the immutable event payload."""
    return canonical_json(spec.to_dict())


def parse_modified_spec(data: Mapping[str, Any] | ModifiedSpec) -> ModifiedSpec:
    """Validate an approver override.

    Raises:
        InvalidModifiedSpecError: unknown fields, wrong types, or non-positive
            resources.
    """
    if isinstance(data, ModifiedSpec):
        data = asdict(data)
    if not isinstance(data, Mapping):
        raise InvalidModifiedSpecError("override must be a mapping")

    allowed = set(OVERRIDABLE_FIELDS) | set(AUDIT_FIELDS)
    unknown = tuple(sorted(set(data) - allowed))
    if unknown:
        raise InvalidModifiedSpecError(
            f"unknown fields: {', '.join(unknown)}", fields=unknown,
        )

    errors = _type_errors(data)
    if errors:
        raise InvalidModifiedSpecError("; ".join(errors))
    return ModifiedSpec(**dict(data))


def encode_modified_spec(modified: ModifiedSpec) -> bytes:
    return canonical_json(modified.to_dict())


def _decode_object(raw: bytes, what: str) -> dict[str, Any]:
    try:
        decoded = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise EffectiveSpecError(f"{what} is not valid JSON: {exc}") from exc
    if not isinstance(decoded, dict):
        raise EffectiveSpecError(f"{what} must decode to an object")
    return decoded


def decode_payload(payload: bytes) -> ResourceSpec:
    data = _decode_object(payload, "payload")
    try:
        return ResourceSpec.from_dict(data)
    except InvalidResourceSpecError as exc:
        raise EffectiveSpecError(f"payload: {'; '.join(exc.field_errors)}") from exc


# =============================================================================
# Effective spec
# =============================================================================


def get_effective_spec(
    payload: bytes,
    modified_spec: bytes | None = None,
) -> ResourceSpec:
    """Resolve what a worker should execute.

    Decodes the immutable payload, then applies each non-null overridable
    field of ``modified_spec``.  With no override the payload spec is
    returned unchanged.
    """
    spec = decode_payload(payload)
    if modified_spec is None:
        return spec

    data = _decode_object(modified_spec, "modified spec")
    try:
        override = parse_modified_spec(data)
    except InvalidModifiedSpecError as exc:
        raise EffectiveSpecError(f"modified spec: {exc.reason}") from exc

    return replace(spec, **override.overrides())
