"""Partner interface used by the command dispatcher.

A partner is whatever executes a command on the far side: an OCPP charge
point, a roaming hub, or an in-process stand-in.  Adapters translate the
command dataclasses below into their own protocol and return the reply as a
:class:`RawResponse`.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Mapping, Optional, Union

from ..core.domain import AuthorizationSet, Credential
from ..ids import EntityId


class PartnerStatus(str, Enum):
    ACCEPTED = "Accepted"
    REJECTED = "Rejected"
    OCCUPIED = "Occupied"
    FAULTED = "Faulted"
    UNAVAILABLE = "Unavailable"
    UNKNOWN_TARGET = "UnknownTarget"
    ERROR = "Error"
    NOT_SUPPORTED = "NotSupported"


@dataclass(frozen=True, slots=True)
class RawResponse:
    """A partner reply before it is interpreted by the dispatcher.

    ``payload`` may carry ``meter_stop`` (Wh) for RemoteStop and a list of
    charge detail records under ``records`` for record queries.
    """

    status: PartnerStatus
    payload: Mapping[str, Any] = field(default_factory=dict)
    message: str = ""


@dataclass(frozen=True, slots=True)
class ReserveCommand:
    entity_id: EntityId
    reservation_id: str
    start: datetime
    duration: Optional[timedelta] = None
    authorization: AuthorizationSet = AuthorizationSet()
    provider_id: Optional[str] = None


@dataclass(frozen=True, slots=True)
class CancelReservationCommand:
    entity_id: EntityId
    reservation_id: str


@dataclass(frozen=True, slots=True)
class RemoteStartCommand:
    entity_id: EntityId
    session_id: str
    credential: Optional[Credential] = None
    provider_id: Optional[str] = None
    reservation_id: Optional[str] = None


@dataclass(frozen=True, slots=True)
class RemoteStopCommand:
    entity_id: EntityId
    session_id: str


@dataclass(frozen=True, slots=True)
class GetChargeDetailRecordsCommand:
    start: datetime
    end: datetime
    provider_id: Optional[str] = None


PartnerCommand = Union[
    ReserveCommand,
    CancelReservationCommand,
    RemoteStartCommand,
    RemoteStopCommand,
    GetChargeDetailRecordsCommand,
]


class PartnerClient(ABC):
    """Abstract transport invoked by the command dispatcher."""

    @abstractmethod
    async def send(self, command: PartnerCommand) -> RawResponse:
        """Deliver ``command`` and return the partner's reply.

        Exceptions and timeouts propagate; the dispatcher turns them into
        ``Error`` and ``Timeout`` outcomes.
        """

    async def close(self) -> None:
        """Release transport resources."""
