"""
Alert notifiers - where budget alerts go once committed

The engine hands every new alert to an AlertNotifier after the write that
created it commits, using the alert contract:
{budgetId, alertType, severity, message, createdAt}.
"""

from typing import Any, Protocol

from campus_ledger.kernel.logging import get_logger

logger = get_logger(__name__)


class AlertNotifier(Protocol):
    """Receives committed budget alerts"""

    def notify(self, alert: dict[str, Any]) -> None:
        """Deliver one alert; raising leaves it marked un-notified"""
        ...


class LoggingAlertNotifier:
    """Writes alerts to the structured log at a level matching severity"""

    def notify(self, alert: dict[str, Any]) -> None:
        log = logger.error if alert.get("severity") == "critical" else logger.warning
        log(
            "Budget alert",
            budget_id=alert.get("budgetId"),
            alert_type=alert.get("alertType"),
            severity=alert.get("severity"),
            message=alert.get("message"),
        )
