"""
Alerting Tests.

Alert policy (level, confidence floor, throttle) and formatting.
"""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from domain_risk.alerting import LoggingAlertSender, RiskAlertingService
from domain_risk.config import AlertingConfig
from domain_risk.profile import DomainProfile
from domain_risk.types import Contribution, MetricId, MetricResult, RiskAssessment, RiskLevel


NOW = datetime(2026, 3, 2, 12, 0, 0, tzinfo=timezone.utc).timestamp()


def _assessment(level=RiskLevel.CRITICAL, confidence=0.9, score=0.92):
    return RiskAssessment(
        domain="evil.com",
        risk_score=score,
        confidence=confidence,
        risk_level=level,
        contributions=[
            Contribution(MetricId.REPUTATION, 1.0, 0.4, 0.4, 0.9),
            Contribution(MetricId.ENTROPY, 0.8, 0.25, 0.2, 0.9),
        ],
        metrics=[
            MetricResult(MetricId.REPUTATION, 1.0, 0.9),
            MetricResult(MetricId.ENTROPY, 0.8, 0.9),
        ],
    )


@pytest.fixture
def profile():
    return DomainProfile.create("evil.com", NOW)


@pytest.fixture
def service():
    return RiskAlertingService(AlertingConfig())


class TestShouldAlert:
    """Tests for the alert policy."""

    def test_critical_confident(self, service, profile):
        assert service.should_alert(_assessment(), profile, NOW) is True

    def test_not_critical(self, service, profile):
        assert service.should_alert(_assessment(level=RiskLevel.HIGH), profile, NOW) is False

    def test_confidence_floor_is_exclusive(self, service, profile):
        assert service.should_alert(_assessment(confidence=0.7), profile, NOW) is False

    def test_throttled(self, service, profile):
        profile.last_alerted = NOW - 299
        assert service.should_alert(_assessment(), profile, NOW) is False

        profile.last_alerted = NOW - 300
        assert service.should_alert(_assessment(), profile, NOW) is True

    def test_disabled(self, profile):
        service = RiskAlertingService(AlertingConfig(enabled=False))
        assert service.should_alert(_assessment(), profile, NOW) is False


class TestProcess:
    """Tests for RiskAlertingService.process."""

    def test_build_alert(self, service):
        alert = service.build_alert(_assessment(), NOW)

        assert alert.title == "Critical risk detected: evil.com"
        assert alert.message == "Highest contribution from reputation (1.00)"
        assert alert.context == {"reputation": 1.0, "entropy": 0.8}
        assert "Score: 0.92" in alert.to_text()
        assert alert.to_dict()["risk_level"] == "critical"

    @pytest.mark.asyncio
    async def test_returns_timestamp_when_sent(self, profile):
        sender = MagicMock()
        sender.send = AsyncMock(return_value=True)
        service = RiskAlertingService(senders=[sender])

        assert await service.process(_assessment(), profile, NOW) == NOW
        # the service leaves the profile to the engine
        assert profile.last_alerted is None

    @pytest.mark.asyncio
    async def test_one_failing_sender_does_not_block_others(self, profile):
        broken = MagicMock()
        broken.send = AsyncMock(side_effect=RuntimeError("down"))
        working = MagicMock()
        working.send = AsyncMock(return_value=True)
        service = RiskAlertingService(senders=[broken, working])

        assert await service.process(_assessment(), profile, NOW) == NOW
        working.send.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_logging_sender(self, caplog):
        service = RiskAlertingService()
        alert = service.build_alert(_assessment(), NOW)

        with caplog.at_level("WARNING", logger="domain_risk.alerting"):
            assert await LoggingAlertSender().send(alert) is True

        assert "CRITICAL RISK: evil.com" in caplog.text

    @pytest.mark.asyncio
    async def test_added_sender_receives_alert(self, profile):
        service = RiskAlertingService(senders=[])
        assert await service.process(_assessment(), profile, NOW) is None

        sender = MagicMock()
        sender.send = AsyncMock(return_value=True)
        service.add_sender(sender)

        assert await service.process(_assessment(), profile, NOW) == NOW
        sender.send.assert_awaited_once()
