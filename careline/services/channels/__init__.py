"""Delivery channels: live push, voice/text message and e-mail."""

from careline.services.channels.base import DeliveryChannel, PushTransport
from careline.services.channels.email import EmailChannel
from careline.services.channels.push import PushChannel
from careline.services.channels.voice import VoiceChannel

__all__ = [
    "DeliveryChannel",
    "EmailChannel",
    "PushChannel",
    "PushTransport",
    "VoiceChannel",
]
