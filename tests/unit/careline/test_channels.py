"""Delivery channel tests against fake providers (no network)."""

from typing import Any

import aiosmtplib
import httpx
import pytest
from conftest import FakeTransport

from careline.config import EmailChannelConfig, VoiceChannelConfig
from careline.domain.errors import ChannelFailure, ChannelUnavailable
from careline.domain.models import EventType, NotificationEvent
from careline.services.channels import messages
from careline.services.channels.email import EmailChannel
from careline.services.channels.push import PushChannel
from careline.services.channels.voice import VoiceChannel

VOICE_CONFIG = VoiceChannelConfig(
    account_sid="AC0123456789",
    auth_token="token",
    from_number="+15550009999",
)
EMAIL_CONFIG = EmailChannelConfig(
    smtp_host="smtp.example.com",
    smtp_port=2525,
    username="alerts@example.com",
    password="secret",
)


def sos_event() -> NotificationEvent:
    return NotificationEvent(
        type=EventType.EMERGENCY_TRIGGERED,
        payload={
            "alert_id": "a1",
            "elder_name": "Margaret",
            "location_text": "12 Elm St",
            "created_at": "2026-03-02T08:00:00+00:00",
            "notes": None,
        },
    )


class TestMessages:
    def test_emergency_text_names_elder_and_location(self) -> None:
        text = messages.text_body(sos_event())

        assert "Margaret" in text
        assert "12 Elm St" in text
        assert "Notes: -" in text

    def test_missing_payload_fields_render_as_dash(self) -> None:
        event = NotificationEvent(type=EventType.MEDICATION_AUTO_MISSED, payload={})

        assert messages.subject(event) == "Missed dose: - did not take -"

    def test_html_body_is_escaped(self) -> None:
        event = NotificationEvent(
            type=EventType.MEDICATION_REMINDER,
            payload={"medication_name": "<script>", "dosage": "1", "scheduled_time": "08:00"},
        )

        html = messages.html_body(event)

        assert "<script>" not in html
        assert "&lt;script&gt;" in html

    @pytest.mark.parametrize("event_type", list(EventType))
    def test_every_event_type_has_templates(self, event_type: EventType) -> None:
        event = NotificationEvent(type=event_type, payload={})

        assert messages.subject(event)
        assert messages.text_body(event)


class TestPushChannel:
    @pytest.mark.asyncio
    async def test_send_to_attached_transport(self) -> None:
        channel = PushChannel()
        transport = FakeTransport()
        channel.attach("t1", transport)
        event = sos_event()

        result = await channel.send("t1", event)

        assert result.unwrap() == "t1"
        assert transport.messages == [event.to_message()]

    @pytest.mark.asyncio
    async def test_send_to_unknown_transport_fails(self) -> None:
        result = await PushChannel().send("ghost", sos_event())

        assert isinstance(result.unwrap_err(), ChannelFailure)

    @pytest.mark.asyncio
    async def test_broadcast_isolates_dead_transports(self) -> None:
        channel = PushChannel()
        healthy = FakeTransport()
        channel.attach("dead", FakeTransport(fail=True))
        channel.attach("healthy", healthy)

        delivered = await channel.broadcast(sos_event())

        assert delivered == 1
        assert healthy.events() == ["emergency-triggered"]

    @pytest.mark.asyncio
    async def test_dead_transport_is_a_channel_failure(self) -> None:
        channel = PushChannel()
        channel.attach("dead", FakeTransport(fail=True))

        result = await channel.send("dead", sos_event())

        error = result.unwrap_err()
        assert isinstance(error, ChannelFailure)
        assert "socket closed" in str(error)

    def test_detach_forgets_transport(self) -> None:
        channel = PushChannel()
        channel.attach("t1", FakeTransport())

        assert channel.detach("t1") is not None
        assert channel.detach("t1") is None
        assert channel.transport_ids() == []


class TestVoiceChannel:
    @pytest.mark.asyncio
    async def test_posts_message_to_provider(self) -> None:
        captured: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            captured.append(request)
            return httpx.Response(201, json={"sid": "SM42", "status": "queued"})

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        channel = VoiceChannel(VOICE_CONFIG, client=client)

        result = await channel.send("+15550000002", sos_event())

        assert result.unwrap() == "SM42"
        request = captured[0]
        assert request.url.path == "/2010-04-01/Accounts/AC0123456789/Messages.json"
        assert request.headers["authorization"].startswith("Basic ")
        form = dict(httpx.QueryParams(request.content.decode()))
        assert form["To"] == "+15550000002"
        assert form["From"] == "+15550009999"
        assert "Margaret" in form["Body"]
        await client.aclose()

    @pytest.mark.asyncio
    async def test_provider_rejection_is_a_failure(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(400, json={"message": "Invalid 'To' Phone Number"})

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            result = await VoiceChannel(VOICE_CONFIG, client=client).send("bogus", sos_event())

        error = result.unwrap_err()
        assert isinstance(error, ChannelFailure)
        assert "Invalid 'To' Phone Number" in str(error)

    @pytest.mark.asyncio
    async def test_network_error_is_a_failure(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            result = await VoiceChannel(VOICE_CONFIG, client=client).send("+1555", sos_event())

        assert isinstance(result.unwrap_err(), ChannelFailure)

    @pytest.mark.asyncio
    async def test_unconfigured_channel_is_unavailable(self) -> None:
        channel = VoiceChannel(VoiceChannelConfig())

        result = await channel.send("+1555", sos_event())

        assert channel.is_configured is False
        assert isinstance(result.unwrap_err(), ChannelUnavailable)


class TestEmailChannel:
    @pytest.mark.asyncio
    async def test_sends_multipart_message(self, monkeypatch: pytest.MonkeyPatch) -> None:
        sent: list[tuple[Any, dict[str, Any]]] = []

        async def fake_send(message: Any, **kwargs: Any) -> tuple[dict[str, Any], str]:
            sent.append((message, kwargs))
            return {}, "250 OK queued"

        monkeypatch.setattr(aiosmtplib, "send", fake_send)

        result = await EmailChannel(EMAIL_CONFIG).send("daniel@example.com", sos_event())

        assert result.unwrap() == "250 OK queued"
        message, kwargs = sent[0]
        assert message["To"] == "daniel@example.com"
        assert message["From"] == "alerts@example.com"
        assert message["Subject"] == "EMERGENCY: Margaret needs help"
        assert [part.get_content_type() for part in message.get_payload()] == [
            "text/plain",
            "text/html",
        ]
        assert kwargs["hostname"] == "smtp.example.com"
        assert kwargs["port"] == 2525
        assert kwargs["start_tls"] is True

    @pytest.mark.asyncio
    async def test_smtp_error_is_a_failure(self, monkeypatch: pytest.MonkeyPatch) -> None:
        async def fake_send(message: Any, **kwargs: Any) -> tuple[dict[str, Any], str]:
            raise aiosmtplib.SMTPConnectError("connection refused")

        monkeypatch.setattr(aiosmtplib, "send", fake_send)

        result = await EmailChannel(EMAIL_CONFIG).send("daniel@example.com", sos_event())

        assert isinstance(result.unwrap_err(), ChannelFailure)

    @pytest.mark.asyncio
    async def test_unconfigured_channel_is_unavailable(self) -> None:
        result = await EmailChannel(EmailChannelConfig()).send("x@example.com", sos_event())

        assert isinstance(result.unwrap_err(), ChannelUnavailable)
