"""
Variance Evaluator unit tests.

Tests cover:
  - percent deviation formula and the zero-reference rule
  - band boundaries (upper-inclusive)
  - absolute mode (humidity)
  - report aggregation and unconfigured fields
"""
import pytest

from plantflow.services.variance import (
    Band,
    classify,
    evaluate,
    evaluate_all,
    percent_deviation,
)
from plantflow.workflow.types import Measurement, VarianceMode, VarianceThreshold

CEMENT = VarianceThreshold(warning=2, critical=5)
HUMIDITY = VarianceThreshold(warning=10, critical=15, mode=VarianceMode.ABSOLUTE)


class TestPercentDeviation:
    def test_reference_example(self):
        assert percent_deviation(1000, 1020) == 2.0

    def test_under_delivery_is_absolute(self):
        assert percent_deviation(1000, 970) == 3.0

    @pytest.mark.parametrize("theoretical", [0, -5])
    def test_non_positive_reference_yields_zero(self, theoretical):
        assert percent_deviation(theoretical, 40) == 0.0


class TestClassify:
    @pytest.mark.parametrize("deviation,band", [
        (0.0, Band.OK),
        (2.0, Band.OK),
        (2.01, Band.WARNING),
        (5.0, Band.WARNING),
        (5.01, Band.CRITICAL),
    ])
    def test_bands_are_upper_inclusive(self, deviation, band):
        assert classify(deviation, CEMENT) == band


class TestEvaluate:
    def test_warning_boundary_is_not_critical(self):
        check = evaluate("cement", 1000, 1020, CEMENT)
        assert check.percent_deviation == 2.0
        assert check.band == Band.OK
        assert check.band != Band.CRITICAL

    def test_critical(self):
        check = evaluate("water", 180, 200, CEMENT)
        assert check.band == Band.CRITICAL
        assert check.percent_deviation == pytest.approx(11.111, rel=1e-3)

    def test_zero_theoretical_is_ok(self):
        check = evaluate("additive", 0, 3.5, CEMENT)
        assert check.band == Band.OK
        assert check.percent_deviation == 0.0

    def test_absolute_mode_uses_raw_difference(self):
        check = evaluate("humidity", 0, 18, HUMIDITY)
        assert check.mode == VarianceMode.ABSOLUTE
        assert check.percent_deviation == 18
        assert check.band == Band.CRITICAL

    def test_absolute_mode_warning(self):
        assert evaluate("humidity", 2, 14, HUMIDITY).band == Band.WARNING

    def test_to_dict(self):
        data = evaluate("cement", 1000, 1060, CEMENT).to_dict()
        assert data["band"] == "critical"
        assert data["field"] == "cement"
        assert data["mode"] == "relative"
        assert data["unconfigured"] is False


class TestEvaluateAll:
    def test_report_flags(self):
        report = evaluate_all(
            [
                Measurement("cement", 1000, 1030),
                Measurement("sand", 2000, 2010),
            ],
            {"cement": CEMENT, "sand": CEMENT},
        )
        assert report.has_warning is True
        assert report.has_critical is False
        assert report.worst_band == Band.WARNING
        assert [c.field for c in report.by_band(Band.OK)] == ["sand"]

    def test_critical_wins(self):
        report = evaluate_all(
            [Measurement("cement", 1000, 1030), Measurement("water", 100, 120)],
            {"cement": CEMENT, "water": CEMENT},
        )
        assert report.has_critical is True
        assert report.to_dict()["band"] == "critical"

    def test_unconfigured_field_reported_ok(self):
        report = evaluate_all([Measurement("slump", 10, 30)], {"cement": CEMENT})
        assert len(report.checks) == 1
        assert report.checks[0].unconfigured is True
        assert report.checks[0].band == Band.OK

    def test_fields_filter(self):
        report = evaluate_all(
            [Measurement("cement", 1000, 1100), Measurement("humidity", 0, 20)],
            {"cement": CEMENT, "humidity": HUMIDITY},
            fields=("humidity",),
        )
        assert [c.field for c in report.checks] == ["humidity"]

    def test_empty_report(self):
        report = evaluate_all([], {"cement": CEMENT})
        assert report.worst_band == Band.OK
        assert report.to_dict()["checks"] == []
