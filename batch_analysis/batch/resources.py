"""Compute resource requests that scale with the input recording.

A resource is either a constant or a polynomial in the recording's
duration (seconds) or size (bytes). Scripts declare resources this way,
the submission adds a base allowance on top, and the result is evaluated
to integers just before the job goes to the remote queue.
"""

from dataclasses import dataclass, field, fields, replace
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any, Mapping, Optional, Union

from batch_analysis.errors import ValidationError


class ScalingProperty(str, Enum):
    """Recording attribute a polynomial is evaluated against."""

    DURATION = "duration"
    SIZE = "size"


def _to_decimal(value: Any) -> Decimal:
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise ValidationError(f"Cannot coerce {value!r} to a resource value")
    if isinstance(value, (int, str)):
        return Decimal(value)
    if isinstance(value, float):
        return Decimal(str(value))
    raise ValidationError(f"Cannot coerce {value!r} to a resource value")


@dataclass(frozen=True)
class Polynomial:
    """Resource expressed as a polynomial.

    Coefficients are in descending order of exponent, e.g. ``[a, b, c]``
    is ``a*x^2 + b*x + c``.
    """

    coefficients: tuple[Decimal, ...]
    property: ScalingProperty

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Polynomial":
        try:
            raw_coefficients = data["coefficients"]
            prop = ScalingProperty(data["property"])
        except (KeyError, ValueError) as e:
            raise ValidationError(f"Invalid polynomial resource: {data!r}") from e
        return cls(
            coefficients=tuple(_to_decimal(c) for c in raw_coefficients),
            property=prop,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "coefficients": [float(c) for c in self.coefficients],
            "property": self.property.value,
        }

    def calculate(self, recording_duration: Any, recording_size: Any) -> int:
        """Evaluate the polynomial, rounding half away from zero."""
        if self.property == ScalingProperty.DURATION:
            x = _to_decimal(recording_duration)
        else:
            x = _to_decimal(recording_size)

        # Horner form; Decimal refuses 0 ** 0
        total = Decimal(0)
        for c in self.coefficients:
            total = total * x + c
        return int(total.quantize(Decimal(1), rounding=ROUND_HALF_UP))

    def combine(self, other: "Polynomial") -> "Polynomial":
        """Add coefficients term by term, aligned on the constant term."""
        if self.property != other.property:
            raise ValidationError(
                "Cannot combine polynomials with different properties: "
                f"{self.property.value} and {other.property.value}"
            )

        a = list(reversed(self.coefficients))
        b = list(reversed(other.coefficients))
        width = max(len(a), len(b))
        a += [Decimal(0)] * (width - len(a))
        b += [Decimal(0)] * (width - len(b))

        combined = tuple(reversed([x + y for x, y in zip(a, b)]))
        return Polynomial(coefficients=combined, property=self.property)

    def add_constant(self, value: Decimal) -> "Polynomial":
        if not self.coefficients:
            return replace(self, coefficients=(value,))
        *head, last = self.coefficients
        return replace(self, coefficients=(*head, last + value))


Resource = Union[Decimal, Polynomial]


def coerce_resource(value: Any) -> Optional[Resource]:
    """Build a resource from its JSON form (number or polynomial object)."""
    if value is None or isinstance(value, Polynomial):
        return value
    if isinstance(value, Mapping):
        return Polynomial.from_dict(value)
    return _to_decimal(value)


def combine_resources(a: Optional[Resource], b: Optional[Resource]) -> Optional[Resource]:
    if a is None and b is None:
        return None

    a = Decimal(0) if a is None else a
    b = Decimal(0) if b is None else b

    if isinstance(a, Polynomial) and isinstance(b, Polynomial):
        return a.combine(b)
    if isinstance(a, Polynomial):
        return a.add_constant(b)
    if isinstance(b, Polynomial):
        return b.add_constant(a)
    return a + b


@dataclass(frozen=True)
class DynamicResourceList:
    """The four resources a job may request.

    ``walltime`` is in seconds and ``mem`` in bytes.
    """

    ncpus: Optional[Resource] = None
    walltime: Optional[Resource] = None
    mem: Optional[Resource] = None
    ngpus: Optional[Resource] = None

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "DynamicResourceList":
        if not data:
            return cls()
        unknown = set(data) - {f.name for f in fields(cls)}
        if unknown:
            raise ValidationError(f"Unknown resources: {', '.join(sorted(unknown))}")
        return cls(**{key: coerce_resource(value) for key, value in data.items()})

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, Polynomial):
                result[f.name] = value.to_dict()
            elif value is not None:
                result[f.name] = float(value)
        return result

    def combine(self, other: "DynamicResourceList") -> "DynamicResourceList":
        """Sum two resource lists field by field.

        Raises:
            ValidationError: If two polynomials for the same resource scale
                with different properties
        """
        return DynamicResourceList(
            **{
                f.name: combine_resources(getattr(self, f.name), getattr(other, f.name))
                for f in fields(self)
            }
        )

    def calculate(
        self,
        recording_duration: Any,
        recording_size: Any,
        minimums: Optional[Mapping[str, int]] = None,
    ) -> dict[str, int]:
        """Resolve every resource to an integer.

        A minimum both floors the value and stands in for a missing one.
        Resources that remain unset are left out of the result.
        """
        minimums = minimums or {}
        result: dict[str, int] = {}

        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, Polynomial):
                calculated: Optional[int] = value.calculate(
                    recording_duration, recording_size
                )
            elif value is not None:
                calculated = int(value)
            else:
                calculated = None

            minimum = minimums.get(f.name)
            if minimum is not None and (calculated is None or minimum > calculated):
                calculated = minimum

            if calculated is not None:
                result[f.name] = calculated

        return result


# Allowance added to every script's request: six download attempts with a
# 180 s pause plus two minutes of slack.
BASE_RESOURCES = DynamicResourceList(walltime=Decimal(1200))

MINIMUM_RESOURCES: dict[str, int] = {
    "walltime": 1200,
    "ncpus": 1,
    "mem": 2 * 1024**3,
}
