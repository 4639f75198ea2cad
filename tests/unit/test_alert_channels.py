"""
Unit tests for alert delivery channels.

HTTP channels post to an httpx.MockTransport; SMTP and Twilio are mocked.
"""

import json
from datetime import datetime, timezone
from unittest.mock import MagicMock, Mock, patch

import httpx
import pytest

from ops_monitor.lib.config import AlertChannelConfig
from ops_monitor.models.alert import Alert, AlertSeverity
from ops_monitor.services.alert_channels import (
    DiscordChannel,
    EmailChannel,
    PagerDutyChannel,
    SlackChannel,
    SmsChannel,
    WebhookChannel,
    build_channels,
)


def make_alert(severity=AlertSeverity.CRITICAL, **data):
    moment = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
    return Alert(
        alert_id='service_down_backend_health',
        severity=severity,
        message='Service down: Backend API',
        data={'message': 'Service down: Backend API', **data},
        first_seen=moment,
        last_seen=moment,
    )


@pytest.fixture
def captured():
    return []


@pytest.fixture
def transport(captured):
    def handler(request: httpx.Request) -> httpx.Response:
        captured.append(request)
        return httpx.Response(200)

    return httpx.MockTransport(handler)


# ============================================================================
# HTTP channels
# ============================================================================

class TestHttpChannels:

    @pytest.mark.asyncio
    async def test_slack_payload(self, transport, captured):
        channel = SlackChannel('https://hooks.slack.com/services/T/B/X', '#ops', transport=transport)

        await channel.deliver(make_alert(status_code=503))

        payload = json.loads(captured[0].content)
        attachment = payload['attachments'][0]
        assert payload['channel'] == '#ops'
        assert attachment['color'] == '#ff0000'
        assert {'title': 'Status code', 'value': '503', 'short': True} in attachment['fields']

    @pytest.mark.asyncio
    async def test_discord_payload(self, transport, captured):
        channel = DiscordChannel('https://discord.com/api/webhooks/1/abc', transport=transport)

        await channel.deliver(make_alert(AlertSeverity.WARNING))

        embed = json.loads(captured[0].content)['embeds'][0]
        assert embed['title'] == 'WARNING ALERT'
        assert embed['color'] == 16776960

    @pytest.mark.asyncio
    async def test_webhook_sends_custom_headers(self, transport, captured):
        channel = WebhookChannel('https://ops.example.com/hook', headers={'X-Token': 't'}, transport=transport)

        await channel.deliver(make_alert(incident_id='incident_1'))

        payload = json.loads(captured[0].content)
        assert captured[0].headers['X-Token'] == 't'
        assert payload['service'] == 'lion-football-academy'
        assert payload['data']['incident_id'] == 'incident_1'

    @pytest.mark.asyncio
    async def test_pagerduty_uses_alert_key_for_dedup(self, transport, captured):
        channel = PagerDutyChannel('routing-key', transport=transport)

        await channel.deliver(make_alert())

        payload = json.loads(captured[0].content)
        assert str(captured[0].url) == 'https://events.pagerduty.com/v2/enqueue'
        assert payload['dedup_key'] == 'service_down_backend_health_critical'
        assert payload['payload']['severity'] == 'critical'

    @pytest.mark.asyncio
    async def test_http_error_status_raises(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(500))
        channel = SlackChannel('https://hooks.slack.com/services/T/B/X', transport=transport)

        with pytest.raises(httpx.HTTPStatusError):
            await channel.deliver(make_alert())


# ============================================================================
# Email and SMS
# ============================================================================

class TestEmailAndSms:

    def test_email_message_escapes_details(self):
        channel = EmailChannel('smtp.local', 587, ['ops@lfa.com'], 'alerts@lfa.com')

        message = channel.build_message(make_alert(error='<script>'))

        assert message['Subject'] == '[CRITICAL] Service down: Backend API'
        assert '&lt;script&gt;' in message.get_payload()[1].get_payload()

    @pytest.mark.asyncio
    async def test_email_delivery_uses_smtp(self):
        channel = EmailChannel('smtp.local', 587, ['ops@lfa.com'], 'alerts@lfa.com', username='u', password='p')

        with patch('ops_monitor.services.alert_channels.smtplib.SMTP') as smtp:
            server = MagicMock()
            smtp.return_value.__enter__.return_value = server
            await channel.deliver(make_alert())

        server.starttls.assert_called_once()
        server.login.assert_called_once_with('u', 'p')
        server.send_message.assert_called_once()

    def test_sms_accepts_critical_only(self):
        channel = SmsChannel('sid', 'token', '+15550000', ['+15551111'], client=Mock())

        assert channel.accepts(make_alert(AlertSeverity.CRITICAL)) is True
        assert channel.accepts(make_alert(AlertSeverity.WARNING)) is False

    @pytest.mark.asyncio
    async def test_sms_sent_to_every_recipient(self):
        client = Mock()
        channel = SmsChannel('sid', 'token', '+15550000', ['+15551111', '+15552222'], client=client)

        await channel.deliver(make_alert())

        recipients = [call.kwargs['to'] for call in client.messages.create.call_args_list]
        assert recipients == ['+15551111', '+15552222']
        assert client.messages.create.call_args.kwargs['from_'] == '+15550000'


# ============================================================================
# Configuration
# ============================================================================

class TestBuildChannels:

    def test_only_configured_channels_are_built(self):
        config = AlertChannelConfig(
            slack_webhook_url='https://hooks.slack.com/services/T/B/X',
            pagerduty_routing_key='key',
            smtp_host='smtp.local',
        )

        channels = build_channels(config)

        assert sorted(channels) == ['pagerduty', 'slack']

    def test_sms_requires_complete_twilio_settings(self):
        partial = AlertChannelConfig(twilio_account_sid='sid', twilio_auth_token='token', sms_to=['+15551111'])
        complete = partial.model_copy(update={'twilio_from_number': '+15550000'})

        assert 'sms' not in build_channels(partial)
        assert isinstance(build_channels(complete)['sms'], SmsChannel)
