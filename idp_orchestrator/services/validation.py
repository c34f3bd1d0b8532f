"""Name and resource-quantity validation shared by every request path.

All functions are pure: they raise a :class:`ValidationError` subclass naming
the offending field, or return normalized values.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Dict, Optional

from ..orchestration.errors import InvalidName, InvalidQuantity, NotFound, RequestExceedsLimit, UnknownPoolType
from ..orchestration.models import ProvisioningRequest, ResourceLimits, SubjectKind
from . import catalog

NAMESPACE_NAME_PATTERN = re.compile(r"^[a-z0-9][a-z0-9-]*[a-z0-9]$")
CLUSTER_NAME_PATTERN = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9-]*[a-zA-Z0-9]$")

NAME_RULES = {
    SubjectKind.NAMESPACE: (NAMESPACE_NAME_PATTERN, 3, 63),
    SubjectKind.CLUSTER: (CLUSTER_NAME_PATTERN, 3, 30),
}

MAX_NODES_RANGE = (1, 100)

_QUANTITY_PATTERN = re.compile(r"^(?P<magnitude>[0-9]+(?:\.[0-9]+)?)(?P<unit>[A-Za-z]*)$")


class Dimension(str, Enum):
    CPU = "cpu"
    MEMORY = "memory"


UNIT_FACTORS: Dict[str, Decimal] = {
    "": Decimal(1),
    "m": Decimal("0.001"),
    "Ki": Decimal(1024),
    "Mi": Decimal(1024) ** 2,
    "Gi": Decimal(1024) ** 3,
    "Ti": Decimal(1024) ** 4,
}

UNIT_DIMENSIONS: Dict[str, Optional[Dimension]] = {
    "": None,
    "m": Dimension.CPU,
    "Ki": Dimension.MEMORY,
    "Mi": Dimension.MEMORY,
    "Gi": Dimension.MEMORY,
    "Ti": Dimension.MEMORY,
}


@dataclass(frozen=True)
class ResourceQuantity:
    """A magnitude with a unit suffix; ``dimension`` is None for bare numbers."""

    magnitude: Decimal
    unit: str = ""
    dimension: Optional[Dimension] = None

    @property
    def base_value(self) -> Decimal:
        return self.magnitude * UNIT_FACTORS[self.unit]

    def scaled(self, factor: int) -> "ResourceQuantity":
        return ResourceQuantity(self.magnitude * factor, self.unit, self.dimension)

    def __str__(self) -> str:
        return f"{format_magnitude(self.magnitude)}{self.unit}"


def format_magnitude(value: Decimal) -> str:
    """Render without exponent or trailing zeros: 2.50 -> '2.5', 2E+3 -> '2000'."""

    normalized = value.normalize()
    if normalized == normalized.to_integral_value():
        return str(normalized.quantize(Decimal(1)))
    return format(normalized, "f")


def validate_name(name: str, kind: SubjectKind = SubjectKind.NAMESPACE) -> str:
    pattern, min_length, max_length = NAME_RULES[kind]
    if not name or not min_length <= len(name) <= max_length:
        raise InvalidName(
            f"{kind.value} name must be {min_length}-{max_length} characters long",
            field="name",
        )
    if not pattern.match(name):
        if kind == SubjectKind.NAMESPACE:
            message = "namespace name must be lowercase alphanumeric with interior hyphens"
        else:
            message = "cluster name must start and end with alphanumeric characters and can contain hyphens"
        raise InvalidName(message, field="name")
    return name


def parse_quantity(
    value: str, dimension: Optional[Dimension] = None, *, field: str = "quantity"
) -> ResourceQuantity:
    match = _QUANTITY_PATTERN.match(str(value).strip()) if value is not None else None
    if not match:
        raise InvalidQuantity(f"{value!r} is not a valid resource quantity", field=field)
    unit = match.group("unit")
    if unit not in UNIT_FACTORS:
        raise InvalidQuantity(f"unsupported unit {unit!r} in {value!r}", field=field)
    unit_dimension = UNIT_DIMENSIONS[unit]
    if dimension is not None and unit_dimension not in (None, dimension):
        raise InvalidQuantity(
            f"unit {unit!r} is not valid for {dimension.value} quantities", field=field
        )
    try:
        magnitude = Decimal(match.group("magnitude"))
    except InvalidOperation as exc:
        raise InvalidQuantity(f"{value!r} is not numeric", field=field) from exc
    return ResourceQuantity(magnitude=magnitude, unit=unit, dimension=dimension or unit_dimension)


def compare_limits(
    request: ResourceQuantity, limit: ResourceQuantity, *, field: str = "limit"
) -> None:
    """Reject when ``request`` exceeds ``limit`` after unit normalization.

    Comparing quantities of different dimensions is a programming error and
    raises ``TypeError`` rather than a validation error.
    """

    if request.dimension and limit.dimension and request.dimension != limit.dimension:
        raise TypeError(
            f"cannot compare {request.dimension.value} quantity with {limit.dimension.value} quantity"
        )
    if request.base_value > limit.base_value:
        raise RequestExceedsLimit(
            f"request {request} exceeds limit {limit}",
            field=field,
            details={"request": str(request), "limit": str(limit)},
        )


def validate_resource_limits(limits: ResourceLimits) -> Dict[str, Dict[str, ResourceQuantity]]:
    parsed: Dict[str, Dict[str, ResourceQuantity]] = {}
    for dimension, pair in ((Dimension.CPU, limits.cpu), (Dimension.MEMORY, limits.memory)):
        prefix = f"resource_limits.{dimension.value}"
        request = parse_quantity(pair.request, dimension, field=f"{prefix}.request")
        limit = parse_quantity(pair.limit, dimension, field=f"{prefix}.limit")
        compare_limits(request, limit, field=f"{prefix}.request")
        parsed[dimension.value] = {"request": request, "limit": limit}
    return parsed


def validate_request(request: ProvisioningRequest) -> ProvisioningRequest:
    """Re-validate the domain invariants the schema layer cannot express."""

    validate_name(request.name, request.kind)
    if request.kind == SubjectKind.NAMESPACE:
        validate_resource_limits(request.resource_limits)
    else:
        try:
            catalog.describe(request.node_pool_type or "")
        except NotFound:
            raise UnknownPoolType(
                f"unknown node pool type {request.node_pool_type!r}", field="node_pool_type"
            ) from None
        low, high = MAX_NODES_RANGE
        if not low <= request.advanced.max_nodes <= high:
            raise InvalidQuantity(
                f"max nodes must be between {low} and {high}", field="advanced.max_nodes"
            )
    return request


__all__ = [
    "Dimension",
    "ResourceQuantity",
    "format_magnitude",
    "validate_name",
    "parse_quantity",
    "compare_limits",
    "validate_resource_limits",
    "validate_request",
]
