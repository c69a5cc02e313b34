"""
Discord webhook notifier.

Every alert is rendered and logged. Alerts for validators with alerting
switched off stop there; the rest are posted to the webhook, followed by a
fixed pause so a burst of alerts stays under Discord's rate limit.
"""

import logging
import time
from typing import Optional

import requests

from alerts import AlertEvent, render_message, render_text
from monitor_config import MonitorConfig

logger = logging.getLogger(__name__)

BOT_USERNAME = 'Validator Monitoring Bot'


class DiscordNotifier:
    def __init__(self, config: MonitorConfig, session: requests.Session = None):
        self.network = config.network
        self.explorer_url = config.explorer_url
        self.webhook_url = config.discord_webhook_url
        self.delay = config.notification_delay_seconds
        self.timeout = config.request_timeout
        self.session = session or requests.Session()
        self.sent = 0

        if not self.webhook_url:
            logger.warning("DISCORD_WEBHOOK_URL not set, alerts will only be logged")

    def notify(self, event: AlertEvent) -> bool:
        """Log an alert and post it to Discord. Returns True if it was delivered."""
        logger.warning(render_text(event, self.network, self.explorer_url))

        if not event.is_active:
            logger.debug(f"Alerting disabled for validator {event.validator_index}, not sending")
            return False
        if not self.webhook_url:
            return False

        payload = {
            'username': BOT_USERNAME,
            'embeds': [render_message(event, self.network, self.explorer_url)],
        }
        delivered = self._post(payload)
        if delivered:
            self.sent += 1
        time.sleep(self.delay)
        return delivered

    def _post(self, payload: dict, retry: bool = True) -> bool:
        try:
            response = self.session.post(self.webhook_url, json=payload, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            logger.error(f"Failed to send Discord alert: {e}")
            return False

        if response.status_code == 429 and retry:
            wait = self._retry_after(response)
            logger.warning(f"Discord rate limited, retrying in {wait:.1f}s")
            time.sleep(wait)
            return self._post(payload, retry=False)

        if response.status_code >= 300:
            logger.error(f"Discord webhook returned HTTP {response.status_code}: {response.text[:200]}")
            return False
        return True

    def _retry_after(self, response: requests.Response) -> float:
        retry_after: Optional[float] = None
        try:
            retry_after = float(response.json().get('retry_after'))
        except (ValueError, TypeError, AttributeError):
            header = response.headers.get('Retry-After')
            if header:
                try:
                    retry_after = float(header)
                except ValueError:
                    retry_after = None
        return retry_after if retry_after is not None else self.delay
