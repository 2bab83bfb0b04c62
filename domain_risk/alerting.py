"""
Domain Risk Engine - Alerting.

============================================================
PURPOSE
============================================================
Hand critical assessments to the host's notification layer.

Provides:
- Alert formatting with metric context
- Per-domain throttling via the profile's last_alerted
- Pluggable senders (logging by default)

============================================================
ALERT POLICY
============================================================
- Alert only on CRITICAL risk with confidence above the floor
- At most one alert per domain per throttle window (5 minutes)
- A failing sender never breaks the evaluation

============================================================
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol

from .clock import from_epoch
from .config import AlertingConfig
from .profile import DomainProfile
from .types import RiskAssessment, RiskLevel


logger = logging.getLogger(__name__)


# ============================================================
# ALERT MESSAGE DATACLASS
# ============================================================


@dataclass(frozen=True)
class RiskAlert:
    """
    Structured alert for a risky domain.

    ============================================================
    FIELDS
    ============================================================
    - domain: Registrable domain
    - risk_score / confidence: From the assessment
    - risk_level: Always CRITICAL today
    - title / message: Human-readable text
    - timestamp: When the alert was raised
    - context: Per-metric values
    ============================================================
    """

    domain: str
    risk_score: float
    confidence: float
    risk_level: RiskLevel
    title: str
    message: str
    timestamp: datetime
    context: Dict[str, Any] = field(default_factory=dict)

    def to_text(self) -> str:
        """Plain-text rendering for notification bodies."""
        lines = [
            self.title,
            f"Domain: {self.domain}",
            f"Score: {self.risk_score:.2f} (confidence {self.confidence:.2f})",
            f"Time: {self.timestamp.strftime('%Y-%m-%d %H:%M:%S UTC')}",
        ]
        if self.context:
            lines.append("Metrics: " + ", ".join(f"{k}={v:.2f}" for k, v in self.context.items()))
        return "\n".join(lines)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "domain": self.domain,
            "risk_score": self.risk_score,
            "confidence": self.confidence,
            "risk_level": self.risk_level.value,
            "title": self.title,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
            "context": self.context,
        }


# ============================================================
# ALERT SENDER PROTOCOL
# ============================================================


class AlertSender(Protocol):
    """
    Protocol for alert destinations.

    Hosts plug in their own (desktop notification, webhook, ...).
    """

    async def send(self, alert: RiskAlert) -> bool:
        """
        Send an alert.

        Returns:
            True if sent successfully
        """
        ...


class LoggingAlertSender:
    """Write alerts to the module logger."""

    async def send(self, alert: RiskAlert) -> bool:
        logger.warning(f"CRITICAL RISK: {alert.domain} score={alert.risk_score:.3f} - {alert.message}")
        return True


# ============================================================
# RISK ALERTING SERVICE
# ============================================================


class RiskAlertingService:
    """
    Decides whether an assessment warrants an alert and sends it.

    The service keeps no state of its own: throttling reads the
    profile's ``last_alerted`` and the engine stores the returned
    timestamp back on the profile.
    """

    def __init__(
        self,
        config: Optional[AlertingConfig] = None,
        senders: Optional[List[AlertSender]] = None,
    ):
        self._config = config or AlertingConfig()
        self._senders: List[AlertSender] = list(senders) if senders is not None else [LoggingAlertSender()]

    def add_sender(self, sender: AlertSender) -> None:
        self._senders.append(sender)

    def update_config(self, config: AlertingConfig) -> None:
        self._config = config

    def should_alert(
        self,
        assessment: RiskAssessment,
        profile: DomainProfile,
        now: float,
    ) -> bool:
        if not self._config.enabled:
            return False
        if not assessment.is_critical:
            return False
        if assessment.confidence <= self._config.min_confidence:
            return False
        if profile.last_alerted is not None and now - profile.last_alerted < self._config.throttle_seconds:
            logger.debug(f"Alert for {assessment.domain} throttled")
            return False
        return True

    def build_alert(self, assessment: RiskAssessment, now: float) -> RiskAlert:
        context = {m.metric_id.value: m.value for m in assessment.metrics}
        top = max(assessment.contributions, key=lambda c: c.contribution, default=None)
        if top is not None:
            message = f"Highest contribution from {top.metric_id.value} ({top.value:.2f})"
        else:
            message = f"Risk level at {assessment.risk_level.value}"

        return RiskAlert(
            domain=assessment.domain,
            risk_score=assessment.risk_score,
            confidence=assessment.confidence,
            risk_level=assessment.risk_level,
            title=f"Critical risk detected: {assessment.domain}",
            message=message,
            timestamp=from_epoch(now),
            context=context,
        )

    async def process(
        self,
        assessment: RiskAssessment,
        profile: DomainProfile,
        now: float,
    ) -> Optional[float]:
        """
        Alert on ``assessment`` if due.

        Args:
            assessment: Fresh assessment
            profile: Live profile (read for throttling only)
            now: Current epoch seconds

        Returns:
            ``now`` when at least one sender accepted the alert,
            otherwise None
        """
        if not self.should_alert(assessment, profile, now):
            return None

        alert = self.build_alert(assessment, now)
        sent = False
        for sender in self._senders:
            try:
                if await sender.send(alert):
                    sent = True
            except Exception as e:
                logger.error(f"Alert sender {type(sender).__name__} failed for {alert.domain}: {e}")

        return now if sent else None


__all__ = [
    "RiskAlert",
    "AlertSender",
    "LoggingAlertSender",
    "RiskAlertingService",
]
