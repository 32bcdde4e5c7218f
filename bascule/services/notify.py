"""Canal de notification (chat) pour les déploiements et alertes."""
from __future__ import annotations

import getpass
import json
import logging
import socket
import time
from enum import Enum
from typing import Optional, Protocol
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen


class Severity(str, Enum):
    INFO = "INFO"
    WARNING = "WARNING"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


_LOG_LEVELS = {
    Severity.INFO: logging.INFO,
    Severity.WARNING: logging.WARNING,
    Severity.HIGH: logging.ERROR,
    Severity.CRITICAL: logging.CRITICAL,
}
_COLORS = {
    Severity.INFO: "good",
    Severity.WARNING: "warning",
    Severity.HIGH: "danger",
    Severity.CRITICAL: "danger",
}


class NotificationChannel(Protocol):
    def notify(self, severity: Severity, environment: str, message: str) -> None: ...


class LogNotifier:
    def __init__(self, logger: Optional[logging.Logger] = None) -> None:
        self.logger = logger or logging.getLogger(__name__)

    def notify(self, severity: Severity, environment: str, message: str) -> None:
        self.logger.log(_LOG_LEVELS[severity], "[%s] %s: %s", severity.value, environment, message)


class SlackNotifier(LogNotifier):
    """Webhook Slack entrant ; la notification est aussi journalisée.

    Un webhook injoignable ne doit pas masquer l'erreur d'origine : l'échec
    d'envoi est tracé en warning.
    """

    def __init__(self, webhook_url: str, logger: Optional[logging.Logger] = None, timeout: float = 10) -> None:
        super().__init__(logger)
        self.webhook_url = webhook_url
        self.timeout = timeout

    def _payload(self, severity: Severity, environment: str, message: str) -> dict:
        title = "🚨 ALERTE DÉPLOIEMENT" if severity in (Severity.HIGH, Severity.CRITICAL) else "Déploiement"
        return {
            "text": title,
            "attachments": [
                {
                    "color": _COLORS[severity],
                    "fields": [
                        {"title": "Environnement", "value": environment, "short": True},
                        {"title": "Sévérité", "value": severity.value, "short": True},
                        {"title": "Message", "value": message, "short": False},
                        {"title": "Horodatage", "value": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()), "short": True},
                        {"title": "Opérateur", "value": f"{getpass.getuser()}@{socket.gethostname()}", "short": True},
                    ],
                }
            ],
        }

    def notify(self, severity: Severity, environment: str, message: str) -> None:
        super().notify(severity, environment, message)
        data = json.dumps(self._payload(severity, environment, message)).encode("utf-8")
        req = Request(self.webhook_url, data=data, method="POST", headers={"Content-Type": "application/json"})
        try:
            with urlopen(req, timeout=self.timeout):  # nosec - URL de webhook configurée
                pass
        except (HTTPError, URLError) as exc:
            self.logger.warning("Notification Slack non envoyée: %s", exc)
