"""Tests for additive risk scoring."""

from datetime import timedelta

import pytest

from sessionguard.service.risk import RiskAssessmentEngine, RiskContext
from sessionguard.storage.models import (
    DeviceDescriptor,
    DeviceType,
    GeolocationContext,
    SecurityLevel,
    SessionRecord,
)

KNOWN_DEVICE = DeviceDescriptor(
    type=DeviceType.DESKTOP, fingerprint="a" * 32, name="Chrome on Windows"
)
HOME = GeolocationContext(country="US", city="Austin")


@pytest.fixture
def engine(clock):
    return RiskAssessmentEngine(clock=clock)


def quiet_context(**overrides):
    """A context that triggers no rule; tests switch rules on one at a time."""
    values = dict(
        user_id="user-1",
        ip_address="8.8.8.8",
        device=KNOWN_DEVICE,
        geolocation=HOME,
    )
    values.update(overrides)
    return RiskContext(**values)


def history(clock, count, age=timedelta(hours=1)):
    created = clock.now - age
    return [SessionRecord.new(f"t{i}", "user-1", created) for i in range(count)]


class TestAssess:
    def test_quiet_context_is_normal(self, engine):
        risk = engine.assess(quiet_context())

        assert risk.score == 0
        assert risk.level == SecurityLevel.NORMAL
        assert risk.factors == ()
        assert risk.recommendations == ()
        assert risk.degraded is False

    def test_new_device_with_three_failures_is_high_risk(self, engine):
        risk = engine.assess(quiet_context(is_new_device=True, consecutive_failures=3))

        assert risk.score == 70
        assert risk.level == SecurityLevel.HIGH_RISK
        assert risk.factors == ("new_device", "authentication_failures")
        assert risk.recommendations == (
            "Consider enabling device verification",
            "Monitor for brute force attacks",
            "Enhanced security measures recommended",
        )

    def test_failure_points_are_capped(self, engine):
        risk = engine.assess(quiet_context(consecutive_failures=10))

        assert risk.score == 60

    def test_score_is_clamped(self, engine, clock):
        risk = engine.assess(
            RiskContext(
                user_id="user-1",
                ip_address="unknown",
                device=None,
                geolocation=GeolocationContext(country="RU"),
                is_new_device=True,
                is_new_location=True,
                time_of_day=clock.now.replace(hour=3),
                consecutive_failures=8,
                session_history=history(clock, 11),
            )
        )

        assert risk.score == 100
        assert risk.level == SecurityLevel.CRITICAL
        assert "Immediate security review required" in risk.recommendations

    def test_suspicious_and_untrusted_are_exclusive(self, engine):
        risk = engine.assess(quiet_context(geolocation=GeolocationContext(country="CN")))

        assert risk.score == 40
        assert risk.factors == ("suspicious_country",)

    def test_untrusted_country(self, engine):
        risk = engine.assess(quiet_context(geolocation=GeolocationContext(country="MX")))

        assert risk.score == 15
        assert risk.factors == ("untrusted_country",)

    def test_country_codes_are_case_insensitive(self, engine):
        assert engine.assess(quiet_context(geolocation=GeolocationContext(country="br"))).score == 0

    def test_missing_country_adds_nothing(self, engine):
        assert engine.assess(quiet_context(geolocation=None)).score == 0

    @pytest.mark.parametrize("hour,flagged", [(1, False), (2, True), (6, True), (7, False)])
    def test_suspicious_time_window(self, engine, clock, hour, flagged):
        risk = engine.assess(quiet_context(time_of_day=clock.now.replace(hour=hour)))

        assert ("suspicious_time" in risk.factors) is flagged

    def test_no_time_of_day_skips_hour_rule(self, clock):
        """Test that server time is never scored as the user's local hour."""
        clock.now = clock.now.replace(hour=3)
        engine = RiskAssessmentEngine(clock=clock)

        risk = engine.assess(quiet_context(is_new_device=True, consecutive_failures=3))

        assert "suspicious_time" not in risk.factors
        assert risk.score == 70
        assert risk.level == SecurityLevel.HIGH_RISK

    @pytest.mark.parametrize("ip_address", [None, "", "unknown"])
    def test_missing_ip(self, engine, ip_address):
        risk = engine.assess(quiet_context(ip_address=ip_address))

        assert risk.score == 15
        assert risk.factors == ("no_ip_address",)

    def test_missing_fingerprint(self, engine):
        device = DeviceDescriptor(type=DeviceType.DESKTOP, name="Chrome on Windows")

        risk = engine.assess(quiet_context(device=device))

        assert risk.factors == ("no_device_fingerprint",)
        assert risk.score == 10

    def test_excessive_sessions_threshold(self, engine, clock):
        at_limit = engine.assess(quiet_context(session_history=history(clock, 10)))
        over_limit = engine.assess(quiet_context(session_history=history(clock, 11)))

        assert "excessive_sessions" not in at_limit.factors
        assert "excessive_sessions" in over_limit.factors
        assert over_limit.score == 20

    def test_old_sessions_do_not_count(self, engine, clock):
        old = history(clock, 20, age=timedelta(hours=25))

        assert engine.assess(quiet_context(session_history=old)).score == 0

    def test_elevated_level_recommendation(self, engine):
        risk = engine.assess(quiet_context(is_new_device=True, device=None))

        assert risk.score == 35
        assert risk.level == SecurityLevel.ELEVATED
        assert risk.recommendations[-1] == "Additional verification may be required"

    def test_internal_error_fails_safe(self, engine):
        """Test that a scoring failure never reports a normal level."""
        broken = quiet_context(session_history=[object()])

        risk = engine.assess(broken)

        assert risk.score == 25
        assert risk.level == SecurityLevel.ELEVATED
        assert risk.factors == ("calculation_error",)
        assert risk.recommendations == ("Security assessment temporarily unavailable",)
        assert risk.degraded is True


class TestComponentRisk:
    def test_device_risk(self, engine):
        assert engine.assess_device_risk(KNOWN_DEVICE) == 0
        assert engine.assess_device_risk(DeviceDescriptor.unknown()) == 30
        assert engine.assess_device_risk(None) == 30
        no_fingerprint = DeviceDescriptor(type=DeviceType.MOBILE, name="Android Phone")
        assert engine.assess_device_risk(no_fingerprint) == 10

    def test_location_risk(self, engine):
        assert engine.assess_location_risk(HOME) == 0
        assert engine.assess_location_risk(None) == 5
        assert engine.assess_location_risk(GeolocationContext(country="KP")) == 40
        assert engine.assess_location_risk(GeolocationContext(country="MX")) == 15
