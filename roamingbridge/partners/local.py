from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Callable, Dict, List, Optional, Union

from .service import (
    GetChargeDetailRecordsCommand,
    PartnerClient,
    PartnerCommand,
    PartnerStatus,
    RawResponse,
)

logger = logging.getLogger(__name__)

Reply = Union[RawResponse, PartnerStatus, BaseException, Callable[[PartnerCommand], Any]]


class LocalPartnerClient(PartnerClient):
    """In-process partner that answers from a reply table.

    Every command kind is accepted unless :meth:`reply` configured something
    else.  A reply may be a :class:`RawResponse`, a bare
    :class:`PartnerStatus`, an exception instance to raise, or a callable
    (plain or coroutine) that receives the command.
    """

    def __init__(self, latency: float = 0.0) -> None:
        self.latency = latency
        self.sent: List[PartnerCommand] = []
        self._replies: Dict[type, Reply] = {}
        self._latencies: Dict[type, float] = {}

    def reply(
        self,
        command_type: type,
        response: Reply,
        latency: Optional[float] = None,
    ) -> None:
        self._replies[command_type] = response
        if latency is not None:
            self._latencies[command_type] = latency

    def sent_of(self, command_type: type) -> List[PartnerCommand]:
        return [command for command in self.sent if isinstance(command, command_type)]

    async def send(self, command: PartnerCommand) -> RawResponse:
        self.sent.append(command)
        delay = self._latencies.get(type(command), self.latency)
        if delay:
            await asyncio.sleep(delay)

        reply = self._replies.get(type(command))
        if reply is None:
            if isinstance(command, GetChargeDetailRecordsCommand):
                return RawResponse(PartnerStatus.ACCEPTED, {"records": []})
            return RawResponse(PartnerStatus.ACCEPTED)
        if isinstance(reply, BaseException):
            raise reply
        if callable(reply) and not isinstance(reply, (RawResponse, PartnerStatus)):
            reply = reply(command)
            if inspect.isawaitable(reply):
                reply = await reply
        if isinstance(reply, PartnerStatus):
            reply = RawResponse(reply)
        logger.debug("Local partner answered %s with %s", type(command).__name__, reply.status.value)
        return reply
