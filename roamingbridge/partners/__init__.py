from .local import LocalPartnerClient
from .service import (
    CancelReservationCommand,
    GetChargeDetailRecordsCommand,
    PartnerClient,
    PartnerStatus,
    RawResponse,
    RemoteStartCommand,
    RemoteStopCommand,
    ReserveCommand,
)
