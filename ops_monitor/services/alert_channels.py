"""Alert delivery channels.

Each channel turns an Alert into one transport-specific notification. The
AlertingService only sees the `deliver()` interface; which channels exist is
decided by configuration in `build_channels()`.
"""

import asyncio
import html
import logging
import smtplib
from abc import ABC, abstractmethod
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any, Dict, List, Optional

import httpx
from twilio.rest import Client

from ops_monitor.lib.config import AlertChannelConfig
from ops_monitor.models.alert import Alert, AlertSeverity

logger = logging.getLogger(__name__)

FOOTER = 'Lion Football Academy Monitoring'
PAGERDUTY_EVENTS_URL = 'https://events.pagerduty.com/v2/enqueue'

SLACK_COLORS = {
    AlertSeverity.CRITICAL: '#ff0000',
    AlertSeverity.WARNING: '#ffaa00',
    AlertSeverity.INFO: '#36a64f',
}

SLACK_EMOJIS = {
    AlertSeverity.CRITICAL: ':rotating_light:',
    AlertSeverity.WARNING: ':warning:',
    AlertSeverity.INFO: ':information_source:',
}

DISCORD_COLORS = {
    AlertSeverity.CRITICAL: 16711680,
    AlertSeverity.WARNING: 16776960,
    AlertSeverity.INFO: 65280,
}


def _humanize(key: str) -> str:
    return key.replace('_', ' ').strip().capitalize()


def _detail_items(alert: Alert) -> List[tuple]:
    return [(key, value) for key, value in alert.data.items() if key != 'message']


class AlertChannel(ABC):
    """A destination alerts can be delivered to."""

    name: str = 'channel'

    def accepts(self, alert: Alert) -> bool:
        """Whether this channel wants the alert at all."""
        return True

    @abstractmethod
    async def deliver(self, alert: Alert) -> None:
        """Send the alert.

        Raises:
            Exception: Any transport failure; the caller logs it and moves on
        """


class HttpChannel(AlertChannel):
    """Base for channels that POST JSON to a URL."""

    timeout: float = 10.0

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._transport = transport

    async def _post_json(self, url: str, payload: Dict[str, Any], headers: Optional[Dict[str, str]] = None) -> None:
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            response = await client.post(url, json=payload, headers=headers)
            response.raise_for_status()


class SlackChannel(HttpChannel):
    name = 'slack'

    def __init__(self, webhook_url: str, channel: str = '#alerts', username: str = 'LFA Monitor', transport=None):
        super().__init__(transport)
        self.webhook_url = webhook_url
        self.channel = channel
        self.username = username

    def build_payload(self, alert: Alert) -> Dict[str, Any]:
        fields = [
            {'title': 'Alert ID', 'value': alert.alert_id, 'short': True},
            {'title': 'Severity', 'value': alert.severity.value.upper(), 'short': True},
            {'title': 'Timestamp', 'value': alert.first_seen.isoformat(), 'short': True},
            {'title': 'Occurrences', 'value': str(alert.occurrences), 'short': True},
        ]
        fields.extend(
            {'title': _humanize(key), 'value': str(value), 'short': True}
            for key, value in _detail_items(alert)
        )
        return {
            'username': self.username,
            'channel': self.channel,
            'text': f'{SLACK_EMOJIS[alert.severity]} *{alert.severity.value.upper()} ALERT*',
            'attachments': [{
                'color': SLACK_COLORS[alert.severity],
                'title': alert.message,
                'fields': fields,
                'footer': FOOTER,
                'ts': int(alert.first_seen.timestamp()),
            }],
        }

    async def deliver(self, alert: Alert) -> None:
        await self._post_json(self.webhook_url, self.build_payload(alert))


class DiscordChannel(HttpChannel):
    name = 'discord'

    def __init__(self, webhook_url: str, transport=None):
        super().__init__(transport)
        self.webhook_url = webhook_url

    def build_payload(self, alert: Alert) -> Dict[str, Any]:
        return {
            'embeds': [{
                'title': f'{alert.severity.value.upper()} ALERT',
                'description': alert.message,
                'color': DISCORD_COLORS[alert.severity],
                'fields': [
                    {'name': 'Alert ID', 'value': alert.alert_id, 'inline': True},
                    {'name': 'Timestamp', 'value': alert.first_seen.isoformat(), 'inline': True},
                    {'name': 'Occurrences', 'value': str(alert.occurrences), 'inline': True},
                ],
                'footer': {'text': FOOTER},
                'timestamp': alert.first_seen.isoformat(),
            }],
        }

    async def deliver(self, alert: Alert) -> None:
        await self._post_json(self.webhook_url, self.build_payload(alert))


class WebhookChannel(HttpChannel):
    """Generic JSON webhook for other tooling."""

    name = 'webhook'

    def __init__(self, url: str, headers: Optional[Dict[str, str]] = None, service_name: str = 'lion-football-academy', transport=None):
        super().__init__(transport)
        self.url = url
        self.headers = headers or {}
        self.service_name = service_name

    def build_payload(self, alert: Alert) -> Dict[str, Any]:
        return {
            'alert_id': alert.alert_id,
            'severity': alert.severity.value,
            'message': alert.message,
            'timestamp': alert.first_seen.isoformat(),
            'last_seen': alert.last_seen.isoformat(),
            'occurrences': alert.occurrences,
            'data': alert.data,
            'service': self.service_name,
        }

    async def deliver(self, alert: Alert) -> None:
        await self._post_json(self.url, self.build_payload(alert), self.headers)


class PagerDutyChannel(HttpChannel):
    name = 'pagerduty'

    def __init__(self, routing_key: str, source: str = 'lion-football-academy', events_url: str = PAGERDUTY_EVENTS_URL, transport=None):
        super().__init__(transport)
        self.routing_key = routing_key
        self.source = source
        self.events_url = events_url

    def build_payload(self, alert: Alert) -> Dict[str, Any]:
        return {
            'routing_key': self.routing_key,
            'event_action': 'trigger',
            'dedup_key': alert.key,
            'payload': {
                'summary': alert.message,
                'source': self.source,
                'severity': alert.severity.value,
                'timestamp': alert.first_seen.isoformat(),
                'custom_details': alert.data,
            },
        }

    async def deliver(self, alert: Alert) -> None:
        await self._post_json(self.events_url, self.build_payload(alert))


class EmailChannel(AlertChannel):
    """SMTP delivery; the blocking send runs in a worker thread."""

    name = 'email'

    def __init__(
        self,
        host: str,
        port: int,
        recipients: List[str],
        sender: str,
        username: Optional[str] = None,
        password: Optional[str] = None,
        use_tls: bool = True,
    ):
        self.host = host
        self.port = port
        self.recipients = recipients
        self.sender = sender
        self.username = username
        self.password = password
        self.use_tls = use_tls

    def build_message(self, alert: Alert) -> MIMEMultipart:
        severity = alert.severity.value.upper()
        color = '#ff0000' if alert.severity == AlertSeverity.CRITICAL else '#ffaa00'
        details = ''.join(
            f'<li><strong>{html.escape(str(key))}:</strong> {html.escape(str(value))}</li>'
            for key, value in _detail_items(alert)
        )
        body = (
            f'<h2 style="color: {color}">{severity} ALERT</h2>'
            f'<p><strong>Message:</strong> {html.escape(alert.message)}</p>'
            f'<p><strong>Alert ID:</strong> {html.escape(alert.alert_id)}</p>'
            f'<p><strong>Timestamp:</strong> {alert.first_seen.isoformat()}</p>'
            f'<p><strong>Occurrences:</strong> {alert.occurrences}</p>'
        )
        if details:
            body += f'<h3>Alert Details:</h3><ul>{details}</ul>'
        body += f'<hr><p><small>{FOOTER}</small></p>'

        message = MIMEMultipart('alternative')
        message['Subject'] = f'[{severity}] {alert.message}'
        message['From'] = self.sender
        message['To'] = ', '.join(self.recipients)
        message.attach(MIMEText(f'{severity} ALERT: {alert.message}', 'plain'))
        message.attach(MIMEText(body, 'html'))
        return message

    def _send(self, message: MIMEMultipart) -> None:
        with smtplib.SMTP(self.host, self.port, timeout=30) as server:
            if self.use_tls:
                server.starttls()
            if self.username and self.password:
                server.login(self.username, self.password)
            server.send_message(message)

    async def deliver(self, alert: Alert) -> None:
        await asyncio.to_thread(self._send, self.build_message(alert))


class SmsChannel(AlertChannel):
    """Twilio SMS, used for critical alerts only."""

    name = 'sms'

    def __init__(self, account_sid: str, auth_token: str, from_number: str, recipients: List[str], client: Optional[Client] = None):
        self.from_number = from_number
        self.recipients = recipients
        self._account_sid = account_sid
        self._auth_token = auth_token
        self._client = client

    @property
    def client(self) -> Client:
        if self._client is None:
            self._client = Client(self._account_sid, self._auth_token)
        return self._client

    def accepts(self, alert: Alert) -> bool:
        return alert.severity == AlertSeverity.CRITICAL

    async def deliver(self, alert: Alert) -> None:
        body = f'CRITICAL ALERT: {alert.message} - Lion Football Academy Monitor'
        for recipient in self.recipients:
            await asyncio.to_thread(
                self.client.messages.create,
                body=body,
                from_=self.from_number,
                to=recipient,
            )


def build_channels(
    config: AlertChannelConfig,
    service_name: str = 'lion-football-academy',
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Dict[str, AlertChannel]:
    """Instantiate every channel whose settings are present.

    Args:
        config: Channel destinations and credentials
        service_name: Source name reported to webhook and PagerDuty
        transport: Optional httpx transport shared by HTTP channels (tests)

    Returns:
        Mapping of channel name to channel
    """
    channels: Dict[str, AlertChannel] = {}
    enabled = config.enabled_channels()

    if 'slack' in enabled:
        channels['slack'] = SlackChannel(config.slack_webhook_url, config.slack_channel, transport=transport)
    if 'discord' in enabled:
        channels['discord'] = DiscordChannel(config.discord_webhook_url, transport=transport)
    if 'webhook' in enabled:
        channels['webhook'] = WebhookChannel(config.webhook_url, service_name=service_name, transport=transport)
    if 'pagerduty' in enabled:
        channels['pagerduty'] = PagerDutyChannel(config.pagerduty_routing_key, source=service_name, transport=transport)
    if 'email' in enabled:
        channels['email'] = EmailChannel(
            host=config.smtp_host,
            port=config.smtp_port,
            recipients=config.email_to,
            sender=config.smtp_from,
            username=config.smtp_user,
            password=config.smtp_password,
            use_tls=config.smtp_use_tls,
        )
    if 'sms' in enabled:
        channels['sms'] = SmsChannel(
            config.twilio_account_sid,
            config.twilio_auth_token,
            config.twilio_from_number,
            config.sms_to,
        )

    logger.info(f'Alert channels enabled: {sorted(channels) or "none"}')
    return channels
