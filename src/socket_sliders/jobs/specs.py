"""Geometry request specs: intake validation and unit normalization.

Submissions arrive in the client shape (unit-tagged measurements, camelCase
keys, single ``socketConfig`` or batch ``socketConfigs``). Intake validates
them once and converts every measurement to millimeters; the queue and the
pipeline only ever see :class:`NormalizedSpec`.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

MM_PER_INCH = 25.4
MAX_SPECS_PER_JOB = 20
NOMINAL_MIN = 1
NOMINAL_MAX = 99

ORIENTATIONS = ("vertical", "horizontal")
UNITS = ("mm", "in")
VERTICAL_LABEL_POSITIONS = (
    "topLeft",
    "topMid",
    "topRight",
    "bottomLeft",
    "bottomMid",
    "bottomRight",
)
HORIZONTAL_LABEL_POSITIONS = ("top", "bottom")
DEFAULT_LABEL_POSITION = {"vertical": "bottomMid", "horizontal": "top"}


class PayloadValidationError(ValueError):
    """Submission payload failed intake validation."""


@dataclass(slots=True, frozen=True)
class Measurement:
    """Unit-tagged length as submitted by a client."""

    value: float
    unit: str

    def to_millimeters(self) -> float:
        if self.unit == "mm":
            return self.value
        return self.value * MM_PER_INCH


@dataclass(slots=True, frozen=True)
class NormalizedSpec:
    """One socket holder request with every length in millimeters."""

    orientation: str
    outer_diameter_mm: float
    label_position: str
    length_mm: float | None = None
    nominal_metric: int | None = None
    nominal_numerator: int | None = None
    nominal_denominator: int | None = None

    @property
    def is_metric(self) -> bool:
        return self.nominal_metric is not None

    def nominal_label(self) -> str:
        if self.is_metric:
            return f"{self.nominal_metric}mm"
        return f'{self.nominal_numerator}/{self.nominal_denominator}"'

    def to_dict(self) -> dict[str, Any]:
        return {
            "orientation": self.orientation,
            "outer_diameter_mm": self.outer_diameter_mm,
            "length_mm": self.length_mm,
            "nominal_metric": self.nominal_metric,
            "nominal_numerator": self.nominal_numerator,
            "nominal_denominator": self.nominal_denominator,
            "label_position": self.label_position,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> NormalizedSpec:
        return cls(
            orientation=str(raw["orientation"]),
            outer_diameter_mm=float(raw["outer_diameter_mm"]),
            length_mm=_optional_float(raw.get("length_mm")),
            nominal_metric=_optional_int(raw.get("nominal_metric")),
            nominal_numerator=_optional_int(raw.get("nominal_numerator")),
            nominal_denominator=_optional_int(raw.get("nominal_denominator")),
            label_position=str(raw["label_position"]),
        )


@dataclass(slots=True, frozen=True)
class JobPayload:
    """Normalized job payload; a batch is simply more than one spec."""

    specs: tuple[NormalizedSpec, ...]

    def __post_init__(self) -> None:
        if not 1 <= len(self.specs) <= MAX_SPECS_PER_JOB:
            raise PayloadValidationError(
                f"A job must carry between 1 and {MAX_SPECS_PER_JOB} specs, "
                f"got {len(self.specs)}.",
            )

    @property
    def is_batch(self) -> bool:
        return len(self.specs) > 1

    def to_dict(self) -> dict[str, Any]:
        return {"specs": [spec.to_dict() for spec in self.specs]}

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> JobPayload:
        specs = raw.get("specs")
        if not isinstance(specs, list):
            raise TypeError("payload.specs must be an array")
        return cls(specs=tuple(NormalizedSpec.from_dict(item) for item in specs))


def parse_submission(raw: object) -> JobPayload:
    """Validate a single (``socketConfig``) or batch (``socketConfigs``) submission."""

    if not isinstance(raw, dict):
        raise PayloadValidationError("Submission must be a JSON object.")
    if "socketConfig" in raw and "socketConfigs" in raw:
        raise PayloadValidationError("Submission must use either socketConfig or socketConfigs.")
    if "socketConfig" in raw:
        return JobPayload(specs=(normalize_socket_config(raw["socketConfig"], index=0),))
    configs = raw.get("socketConfigs")
    if not isinstance(configs, list):
        raise PayloadValidationError("Submission requires socketConfig or socketConfigs.")
    if not 1 <= len(configs) <= MAX_SPECS_PER_JOB:
        raise PayloadValidationError(
            f"socketConfigs must contain between 1 and {MAX_SPECS_PER_JOB} entries.",
        )
    return JobPayload(
        specs=tuple(
            normalize_socket_config(config, index=index) for index, config in enumerate(configs)
        ),
    )


def normalize_socket_config(raw: object, *, index: int = 0) -> NormalizedSpec:
    """Validate one client socket configuration and convert it to millimeters."""

    where = f"socketConfigs[{index}]"
    if not isinstance(raw, dict):
        raise PayloadValidationError(f"{where} must be an object.")

    orientation = raw.get("orientation")
    if orientation not in ORIENTATIONS:
        raise PayloadValidationError(
            f"{where}.orientation must be one of {', '.join(ORIENTATIONS)}.",
        )

    outer_diameter = _parse_measurement(raw.get("outerDiameter"), where=f"{where}.outerDiameter")

    length_mm: float | None = None
    if orientation == "horizontal":
        length = _parse_measurement(raw.get("length"), where=f"{where}.length")
        length_mm = _round_mm(length.to_millimeters())
    elif raw.get("length") is not None:
        raise PayloadValidationError(f"{where}.length is not allowed for vertical sockets.")

    allowed_positions = (
        VERTICAL_LABEL_POSITIONS if orientation == "vertical" else HORIZONTAL_LABEL_POSITIONS
    )
    label_position = raw.get("labelPosition") or DEFAULT_LABEL_POSITION[orientation]
    if label_position not in allowed_positions:
        raise PayloadValidationError(
            f"{where}.labelPosition for {orientation} sockets must be one of "
            f"{', '.join(allowed_positions)}.",
        )

    is_metric = raw.get("isMetric")
    if not isinstance(is_metric, bool):
        raise PayloadValidationError(f"{where}.isMetric must be a boolean.")
    if is_metric:
        if raw.get("nominalNumerator") is not None or raw.get("nominalDenominator") is not None:
            raise PayloadValidationError(
                f"{where} metric sockets must not set nominalNumerator/nominalDenominator.",
            )
        return NormalizedSpec(
            orientation=orientation,
            outer_diameter_mm=_round_mm(outer_diameter.to_millimeters()),
            length_mm=length_mm,
            nominal_metric=_parse_nominal(
                raw.get("nominalMetric"),
                where=f"{where}.nominalMetric",
            ),
            label_position=label_position,
        )

    if raw.get("nominalMetric") is not None:
        raise PayloadValidationError(f"{where} imperial sockets must not set nominalMetric.")
    return NormalizedSpec(
        orientation=orientation,
        outer_diameter_mm=_round_mm(outer_diameter.to_millimeters()),
        length_mm=length_mm,
        nominal_numerator=_parse_nominal(
            raw.get("nominalNumerator"),
            where=f"{where}.nominalNumerator",
        ),
        nominal_denominator=_parse_nominal(
            raw.get("nominalDenominator"),
            where=f"{where}.nominalDenominator",
        ),
        label_position=label_position,
    )


def _parse_measurement(raw: object, *, where: str) -> Measurement:
    if not isinstance(raw, dict):
        raise PayloadValidationError(f"{where} must be an object with value and unit.")
    value = raw.get("value")
    unit = raw.get("unit")
    if isinstance(value, bool) or not isinstance(value, int | float) or value <= 0:
        raise PayloadValidationError(f"{where}.value must be a positive number.")
    if unit not in UNITS:
        raise PayloadValidationError(f"{where}.unit must be one of {', '.join(UNITS)}.")
    return Measurement(value=float(value), unit=unit)


def _parse_nominal(raw: object, *, where: str) -> int:
    if isinstance(raw, bool) or not isinstance(raw, int):
        raise PayloadValidationError(f"{where} must be an integer.")
    if not NOMINAL_MIN <= raw <= NOMINAL_MAX:
        raise PayloadValidationError(f"{where} must be within {NOMINAL_MIN}..{NOMINAL_MAX}.")
    return raw


def _round_mm(value: float) -> float:
    return round(value, 3)


def _optional_float(value: object) -> float | None:
    return None if value is None else float(value)  # type: ignore[arg-type]


def _optional_int(value: object) -> int | None:
    return None if value is None else int(value)  # type: ignore[call-overload]
