"""
Live push channel over connected client transports (e.g. WebSockets).

Transports are attached and detached by the engine as clients connect; the
presence registry decides which transport a user's events go to.
"""

import asyncio
from typing import Any

import structlog

from careline.domain.errors import ChannelFailure
from careline.domain.models import Channel, NotificationEvent
from careline.services.channels.base import PushTransport
from careline.services.result import Result

logger = structlog.get_logger()


class PushChannel:
    name = Channel.PUSH

    def __init__(self) -> None:
        self._transports: dict[str, PushTransport] = {}
        self.logger = logger.bind(component="push_channel")

    @property
    def is_configured(self) -> bool:
        return True

    def attach(self, transport_id: str, transport: PushTransport) -> None:
        self._transports[transport_id] = transport

    def detach(self, transport_id: str) -> PushTransport | None:
        return self._transports.pop(transport_id, None)

    def transport_ids(self) -> list[str]:
        return list(self._transports)

    async def send(self, target: str, event: NotificationEvent) -> Result[str, Exception]:
        transport = self._transports.get(target)
        if transport is None:
            return Result.err(ChannelFailure(f"transport {target} is not connected"))
        return await self._deliver(target, transport, event.to_message())

    async def broadcast(self, event: NotificationEvent) -> int:
        """Send to every attached transport; returns how many accepted the message."""
        message = event.to_message()
        targets = list(self._transports.items())
        async with asyncio.TaskGroup() as tg:
            tasks = [
                tg.create_task(self._deliver(transport_id, transport, message))
                for transport_id, transport in targets
            ]
        delivered = sum(1 for task in tasks if task.result().is_ok())
        self.logger.debug(
            "broadcast_sent", event_type=event.type.value, delivered=delivered, total=len(tasks)
        )
        return delivered

    async def _deliver(
        self, transport_id: str, transport: PushTransport, message: dict[str, Any]
    ) -> Result[str, Exception]:
        try:
            await transport.send_json(message)
        except Exception as e:
            # A dead socket must not take down the caller; the edge will unregister it.
            self.logger.warning(
                "push_send_failed",
                transport_id=transport_id,
                event_type=message["event"],
                error=str(e),
            )
            return Result.err(ChannelFailure(f"push to {transport_id} failed: {e}"))
        return Result.ok(transport_id)
