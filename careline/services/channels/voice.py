"""Voice/text message channel backed by the Twilio Messages REST API."""

import httpx
import structlog

from careline.config import VoiceChannelConfig
from careline.domain.errors import ChannelFailure, ChannelUnavailable
from careline.domain.models import Channel, NotificationEvent
from careline.services.channels import messages
from careline.services.result import Result

logger = structlog.get_logger()

# Carrier limit for a concatenated SMS
MAX_BODY_LENGTH = 1600


class VoiceChannel:
    name = Channel.VOICE

    def __init__(self, config: VoiceChannelConfig, client: httpx.AsyncClient | None = None) -> None:
        self.config = config
        self._client = client
        self._owns_client = client is None
        self.logger = logger.bind(component="voice_channel")

    @property
    def is_configured(self) -> bool:
        return self.config.is_configured

    @property
    def messages_url(self) -> str:
        return f"{self.config.api_base_url}/Accounts/{self.config.account_sid}/Messages.json"

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.config.timeout_seconds)
        return self._client

    async def send(self, target: str, event: NotificationEvent) -> Result[str, Exception]:
        if not self.is_configured:
            return Result.err(ChannelUnavailable("voice channel has no provider credentials"))

        body = messages.text_body(event)[:MAX_BODY_LENGTH]
        try:
            response = await self._http().post(
                self.messages_url,
                data={"To": target, "From": self.config.from_number, "Body": body},
                auth=(self.config.account_sid or "", self.config.auth_token or ""),
                timeout=self.config.timeout_seconds,
            )
        except httpx.HTTPError as e:
            self.logger.warning("voice_send_failed", event_type=event.type.value, error=str(e))
            return Result.err(ChannelFailure(f"provider unreachable: {e}"))

        if response.is_error:
            detail = _provider_message(response)
            self.logger.warning(
                "voice_send_rejected",
                event_type=event.type.value,
                status_code=response.status_code,
                detail=detail,
            )
            return Result.err(
                ChannelFailure(f"provider rejected message ({response.status_code}): {detail}")
            )

        message_sid = _provider_sid(response)
        self.logger.info("voice_message_sent", event_type=event.type.value, message_sid=message_sid)
        return Result.ok(message_sid)

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None


def _provider_message(response: httpx.Response) -> str:
    try:
        return str(response.json().get("message", response.reason_phrase))
    except ValueError:
        return response.reason_phrase


def _provider_sid(response: httpx.Response) -> str:
    try:
        return str(response.json().get("sid", "unknown"))
    except ValueError:
        return "unknown"
