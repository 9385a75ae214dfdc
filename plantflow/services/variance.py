"""
Variance Evaluator.

Compares observed quantities against their theoretical reference and
classifies the deviation into ok / warning / critical bands.  Pure functions:
thresholds are always supplied by the caller so business policy can vary per
document type.

Bands are upper-inclusive, (lo, hi]: a deviation exactly equal to the
warning threshold is ``ok``, exactly equal to critical is ``warning``.

Usage:
    from plantflow.services.variance import evaluate, evaluate_all

    check = evaluate("cement", 1000, 1020, VarianceThreshold(2, 5))
    check.band            # Band.OK  (2.0% sits on the warning boundary)
    report = evaluate_all(measurements, thresholds)
    report.has_critical
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from plantflow.workflow.types import Measurement, VarianceMode, VarianceThreshold


class Band(str, Enum):
    OK = "ok"
    WARNING = "warning"
    CRITICAL = "critical"


@dataclass(frozen=True)
class VarianceCheck:
    field: str
    theoretical: float
    observed: float
    percent_deviation: float
    band: Band
    mode: VarianceMode = VarianceMode.RELATIVE
    unconfigured: bool = False

    def to_dict(self) -> dict:
        return {
            "field": self.field,
            "theoretical": self.theoretical,
            "observed": self.observed,
            "percent_deviation": round(self.percent_deviation, 4),
            "band": self.band.value,
            "mode": self.mode.value,
            "unconfigured": self.unconfigured,
        }


@dataclass(frozen=True)
class VarianceReport:
    checks: tuple = field(default_factory=tuple)

    @property
    def has_critical(self) -> bool:
        return any(c.band == Band.CRITICAL for c in self.checks)

    @property
    def has_warning(self) -> bool:
        return any(c.band == Band.WARNING for c in self.checks)

    @property
    def worst_band(self) -> Band:
        if self.has_critical:
            return Band.CRITICAL
        if self.has_warning:
            return Band.WARNING
        return Band.OK

    def by_band(self, band: Band) -> list[VarianceCheck]:
        return [c for c in self.checks if c.band == band]

    def to_dict(self) -> dict:
        return {
            "band": self.worst_band.value,
            "has_critical": self.has_critical,
            "has_warning": self.has_warning,
            "checks": [c.to_dict() for c in self.checks],
        }


def percent_deviation(theoretical: float, observed: float) -> float:
    """|observed - theoretical| / theoretical * 100, or 0 when theoretical <= 0."""
    if theoretical <= 0:
        return 0.0
    return abs(observed - theoretical) * 100 / theoretical


def classify(deviation: float, thresholds: VarianceThreshold) -> Band:
    if deviation > thresholds.critical:
        return Band.CRITICAL
    if deviation > thresholds.warning:
        return Band.WARNING
    return Band.OK


def evaluate(
    field_name: str,
    theoretical: float,
    observed: float,
    thresholds: VarianceThreshold,
) -> VarianceCheck:
    """Classify a single measurement."""
    theoretical = float(theoretical)
    observed = float(observed)

    if thresholds.mode == VarianceMode.ABSOLUTE:
        deviation = abs(observed - theoretical)
    else:
        # No ratio is possible against a zero reference.
        if theoretical <= 0:
            return VarianceCheck(field_name, theoretical, observed, 0.0, Band.OK, thresholds.mode)
        deviation = percent_deviation(theoretical, observed)

    return VarianceCheck(
        field=field_name,
        theoretical=theoretical,
        observed=observed,
        percent_deviation=deviation,
        band=classify(deviation, thresholds),
        mode=thresholds.mode,
    )


def evaluate_all(
    measurements: list[Measurement],
    thresholds: dict[str, VarianceThreshold],
    *,
    fields: tuple | list | None = None,
) -> VarianceReport:
    """Evaluate every measurement; restrict to ``fields`` when given.

    A measurement whose field has no configured threshold is reported as
    ``ok`` with ``unconfigured=True`` rather than silently dropped.
    """
    checks = []
    for m in measurements:
        if fields is not None and m.field not in fields:
            continue
        th = thresholds.get(m.field)
        if th is None:
            checks.append(VarianceCheck(
                field=m.field,
                theoretical=float(m.theoretical),
                observed=float(m.observed),
                percent_deviation=0.0,
                band=Band.OK,
                unconfigured=True,
            ))
            continue
        checks.append(evaluate(m.field, m.theoretical, m.observed, th))
    return VarianceReport(checks=tuple(checks))
