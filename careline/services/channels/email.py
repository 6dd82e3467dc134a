"""Electronic-mail channel over SMTP."""

from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

import aiosmtplib
import structlog

from careline.config import EmailChannelConfig
from careline.domain.errors import ChannelFailure, ChannelUnavailable
from careline.domain.models import Channel, NotificationEvent
from careline.services.channels import messages
from careline.services.result import Result

logger = structlog.get_logger()


class EmailChannel:
    name = Channel.EMAIL

    def __init__(self, config: EmailChannelConfig) -> None:
        self.config = config
        self.logger = logger.bind(component="email_channel")

    @property
    def is_configured(self) -> bool:
        return self.config.is_configured

    def build_message(self, target: str, event: NotificationEvent) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        msg["From"] = self.config.from_address or ""
        msg["To"] = target
        msg["Subject"] = messages.subject(event)
        msg.attach(MIMEText(messages.text_body(event), "plain"))
        msg.attach(MIMEText(messages.html_body(event), "html"))
        return msg

    async def send(self, target: str, event: NotificationEvent) -> Result[str, Exception]:
        if not self.is_configured:
            return Result.err(ChannelUnavailable("e-mail channel has no SMTP credentials"))

        try:
            _, response = await aiosmtplib.send(
                self.build_message(target, event),
                hostname=self.config.smtp_host,
                port=self.config.smtp_port,
                username=self.config.username,
                password=self.config.password,
                start_tls=self.config.start_tls,
                timeout=self.config.timeout_seconds,
            )
        except (aiosmtplib.SMTPException, OSError) as e:
            self.logger.warning("email_send_failed", event_type=event.type.value, error=str(e))
            return Result.err(ChannelFailure(f"smtp delivery failed: {e}"))

        self.logger.info("email_sent", event_type=event.type.value)
        return Result.ok(response)
