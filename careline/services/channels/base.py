"""
Delivery channel contracts.

A channel turns one NotificationEvent into one delivery attempt for one
target. Expected failures come back as Result errors; ChannelUnavailable in
the error slot means the channel was never attempted.
"""

from typing import Any, Protocol

from careline.domain.models import Channel, NotificationEvent
from careline.services.result import Result


class PushTransport(Protocol):
    """A live connection to a client. Starlette/FastAPI WebSockets satisfy this."""

    async def send_json(self, message: dict[str, Any]) -> None: ...


class DeliveryChannel(Protocol):
    name: Channel

    @property
    def is_configured(self) -> bool: ...

    async def send(self, target: str, event: NotificationEvent) -> Result[str, Exception]:
        """Attempt one delivery. Ok carries a provider reference or short detail."""
        ...
