"""
Operator alerts for dependency outages and degraded guardrails.

An alert is always written to ALERTS_DIR as JSON. It is also rendered on
stderr with rich when CONSOLE_ENABLED, and posted to SLACK_WEBHOOK_URL
for warning and critical levels.
"""

import json
import os
import uuid
from dataclasses import dataclass, asdict, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Optional

import requests
from rich.console import Console
from rich.panel import Panel
from rich.text import Text


class AlertLevel(Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


@dataclass
class Alert:
    level: str
    title: str
    message: str
    metadata: dict[str, Any] = field(default_factory=dict)
    source: str = "flowguard"
    alert_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    @property
    def filename(self) -> str:
        stamp = self.created_at[:19].replace("-", "").replace(":", "").replace("T", "_")
        return f"{self.level}_{stamp}_{self.alert_id[:8]}.json"


ALERTS_DIR = Path(os.getenv("FLOWGUARD_ALERTS_DIR", ".hive-mind/alerts"))
CONSOLE_ENABLED = os.getenv("FLOWGUARD_ALERTS_CONSOLE", "true").strip().lower() in {"1", "true", "yes", "on"}

SLACK_LEVELS = {AlertLevel.WARNING.value, AlertLevel.CRITICAL.value}

# level -> (rich style, slack color)
LEVEL_STYLES = {
    AlertLevel.INFO.value: ("blue", "#36a64f"),
    AlertLevel.WARNING.value: ("yellow", "#ffcc00"),
    AlertLevel.CRITICAL.value: ("red bold", "#ff0000"),
}

console = Console(stderr=True)


def send_alert(
    level: AlertLevel | str,
    title: str,
    message: str,
    metadata: Optional[dict[str, Any]] = None,
    source: str = "flowguard",
    console_output: Optional[bool] = None,
    slack_webhook: bool = True
) -> Alert:
    """
    Record an alert and fan it out.

    Args:
        level: info, warning or critical
        title: One-line headline, e.g. "Circuit breaker OPEN: stripe"
        message: Operator-facing detail
        metadata: Structured context (breaker name, counts, tenant)
        source: Emitting component
        console_output: Override CONSOLE_ENABLED for this alert
        slack_webhook: Allow Slack delivery for warning/critical alerts
    """
    alert = Alert(
        level=level.value if isinstance(level, AlertLevel) else level,
        title=title,
        message=message,
        metadata=metadata or {},
        source=source,
    )

    ALERTS_DIR.mkdir(parents=True, exist_ok=True)
    with open(ALERTS_DIR / alert.filename, "w", encoding="utf-8") as f:
        json.dump(asdict(alert), f, indent=2, default=str)

    if CONSOLE_ENABLED if console_output is None else console_output:
        console.print(_render(alert))

    if slack_webhook and alert.level in SLACK_LEVELS:
        _post_to_slack(alert)

    return alert


def _render(alert: Alert) -> Panel:
    style = LEVEL_STYLES.get(alert.level, ("white", ""))[0]
    body = Text(alert.message)
    for key, value in alert.metadata.items():
        body.append(f"\n{key}: ", style="dim")
        body.append(str(value))
    body.append(f"\n{alert.source} @ {alert.created_at}", style="dim")
    return Panel(body, title=Text(alert.title, style=style), border_style=style.split()[0])


def _post_to_slack(alert: Alert) -> bool:
    webhook_url = os.getenv("SLACK_WEBHOOK_URL")
    if not webhook_url:
        return False

    fields = [
        {"title": "Level", "value": alert.level.upper(), "short": True},
        {"title": "Source", "value": alert.source, "short": True},
    ]
    fields += [{"title": k, "value": str(v)[:100], "short": True} for k, v in list(alert.metadata.items())[:5]]
    payload = {
        "attachments": [{
            "color": LEVEL_STYLES.get(alert.level, ("", "#808080"))[1],
            "title": alert.title,
            "text": alert.message,
            "fields": fields,
            "footer": f"Alert ID: {alert.alert_id}",
        }]
    }

    try:
        response = requests.post(webhook_url, json=payload, timeout=10)
    except requests.RequestException as e:
        console.print(f"[dim]Slack webhook failed: {e}[/dim]")
        return False
    return response.status_code == 200


def get_alerts(level: Optional[str] = None, limit: int = 50) -> list[Alert]:
    """Stored alerts, newest first."""
    if not ALERTS_DIR.exists():
        return []
    files = sorted(ALERTS_DIR.glob(f"{level}_*.json" if level else "*.json"), reverse=True)
    alerts = []
    for path in files[:limit]:
        with open(path, "r", encoding="utf-8") as f:
            alerts.append(Alert(**json.load(f)))
    return alerts


def send_critical(title: str, message: str, metadata: Optional[dict[str, Any]] = None, source: str = "flowguard", **kwargs) -> Alert:
    return send_alert(AlertLevel.CRITICAL, title, message, metadata, source, **kwargs)


def send_warning(title: str, message: str, metadata: Optional[dict[str, Any]] = None, source: str = "flowguard", **kwargs) -> Alert:
    return send_alert(AlertLevel.WARNING, title, message, metadata, source, **kwargs)


def send_info(title: str, message: str, metadata: Optional[dict[str, Any]] = None, source: str = "flowguard", **kwargs) -> Alert:
    return send_alert(AlertLevel.INFO, title, message, metadata, source, **kwargs)
