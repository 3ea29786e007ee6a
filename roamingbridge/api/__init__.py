"""HTTP control API.

:func:`create_app` wires a FastAPI application to a running dispatcher and
diff engine.  Command endpoints return the :class:`CommandResultOut` on
success and raise an ``HTTPException`` carrying the same body otherwise.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse

from .. import config
from ..core.diff import DiffEngine
from ..core.results import CommandResult, Outcome
from ..dispatcher import CommandDispatcher
from ..errors import MalformedIdentifier
from ..ids import parse_entity_id, parse_operator_id
from .models import (
    AdminStatusReq,
    CancelReservationReq,
    CommandResultOut,
    EntityStatusOut,
    ReserveReq,
    StartReq,
    StatusDiffOut,
    StatusValueOut,
    StopReq,
)

logger = logging.getLogger(__name__)

HTTP_STATUS = {
    Outcome.SUCCESS: 200,
    Outcome.UNKNOWN_TARGET: 404,
    Outcome.CONFLICT: 409,
    Outcome.REJECTED: 409,
    Outcome.INVALID_TRANSITION: 409,
    Outcome.OUT_OF_SERVICE: 409,
    Outcome.OUT_OF_ORDER: 409,
    Outcome.CANCELLED: 409,
    Outcome.TIMEOUT: 504,
    Outcome.ERROR: 502,
}


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _respond(result: CommandResult) -> CommandResultOut:
    body = CommandResultOut.from_domain(result)
    if not result.ok:
        raise HTTPException(
            status_code=HTTP_STATUS.get(result.outcome, 500),
            detail=body.model_dump(mode="json"),
        )
    return body


def create_app(
    dispatcher: CommandDispatcher,
    diff_engine: DiffEngine,
    api_key: str = config.API_KEY,
) -> FastAPI:
    lifecycle = dispatcher.lifecycle
    app = FastAPI(title="RoamingBridge Control API", version="0.1.0")

    def require_key(x_api_key: Optional[str] = Header(default=None)):
        if api_key and x_api_key != api_key:
            raise HTTPException(status_code=401, detail="invalid api key")

    router = APIRouter(prefix="/api/v1", dependencies=[Depends(require_key)])

    @app.exception_handler(MalformedIdentifier)
    async def malformed_identifier(request: Request, exc: MalformedIdentifier):
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        logger.info(">>> %s %s", request.method, request.url.path)
        try:
            response = await call_next(request)
        except Exception:
            logger.exception("Handler crashed")
            raise
        logger.info("<<< %s %s -> %s", request.method, request.url.path, response.status_code)
        return response

    @app.get("/api/v1/health")
    def health():
        return {
            "ok": True,
            "time": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "entities": len(lifecycle),
        }

    @router.get("/status", response_model=Dict[str, StatusValueOut])
    def status_snapshot(operator: Optional[str] = None):
        operator_id = parse_operator_id(operator) if operator else None
        snapshot = lifecycle.snapshot(operator_id)
        return {str(k): StatusValueOut.from_domain(v) for k, v in sorted(snapshot.items())}

    @router.get("/evses/{entity_id}", response_model=EntityStatusOut)
    def entity_status(entity_id: str):
        view = lifecycle.describe(parse_entity_id(entity_id))
        if view is None:
            raise HTTPException(status_code=404, detail="EVSE not found")
        return EntityStatusOut.from_domain(view)

    @router.get("/evses/{entity_id}/schedule", response_model=List[StatusValueOut])
    def entity_schedule(entity_id: str, start: datetime, end: datetime):
        parsed = parse_entity_id(entity_id)
        start, end = _aware(start), _aware(end)
        if parsed not in lifecycle:
            raise HTTPException(status_code=404, detail="EVSE not found")
        if end < start:
            raise HTTPException(status_code=400, detail="end precedes start")
        return [StatusValueOut.from_domain(v) for v in lifecycle.schedule_of(parsed).slice(start, end)]

    @router.post("/evses/{entity_id}/admin-status", response_model=EntityStatusOut)
    async def change_admin_status(entity_id: str, req: AdminStatusReq):
        parsed = parse_entity_id(entity_id)
        if parsed not in lifecycle:
            raise HTTPException(status_code=404, detail="EVSE not found")
        async with lifecycle.locked(parsed):
            transition = lifecycle.set_admin_status(parsed, req.admin_status)
        if not transition.ok:
            raise HTTPException(status_code=HTTP_STATUS[transition.outcome], detail=transition.message)
        return EntityStatusOut.from_domain(lifecycle.describe(parsed))

    @router.get("/diff", response_model=StatusDiffOut)
    def status_diff(operator: Optional[str] = None):
        operator_id = parse_operator_id(operator) if operator else None
        return StatusDiffOut.from_domain(diff_engine.peek(operator_id))

    @router.post("/diff/take", response_model=StatusDiffOut)
    def take_status_diff(operator: Optional[str] = None):
        """Return the diff and move the baseline forward."""
        operator_id = parse_operator_id(operator) if operator else None
        return StatusDiffOut.from_domain(diff_engine.take(operator_id))

    @router.post("/reserve", response_model=CommandResultOut)
    async def reserve(req: ReserveReq):
        result = await dispatcher.reserve(
            parse_entity_id(req.entity_id),
            start=_aware(req.start),
            duration=req.duration,
            authorization=req.authorization.to_domain(),
            reservation_id=req.reservation_id,
            provider_id=req.provider_id,
            correlation_id=req.correlation_id,
            timeout=req.timeout,
        )
        return _respond(result)

    @router.post("/cancel-reservation", response_model=CommandResultOut)
    async def cancel_reservation(req: CancelReservationReq):
        if req.reservation_id is None and req.entity_id is None:
            raise HTTPException(status_code=400, detail="reservationId or entityId is required")
        result = await dispatcher.cancel_reservation(
            req.reservation_id,
            parse_entity_id(req.entity_id) if req.entity_id else None,
            req.reason,
            correlation_id=req.correlation_id,
            timeout=req.timeout,
        )
        return _respond(result)

    @router.post("/start", response_model=CommandResultOut)
    async def start(req: StartReq):
        result = await dispatcher.remote_start(
            parse_entity_id(req.entity_id),
            credential=req.credential.to_domain() if req.credential else None,
            provider_id=req.provider_id,
            reservation_id=req.reservation_id,
            session_id=req.session_id,
            correlation_id=req.correlation_id,
            timeout=req.timeout,
        )
        return _respond(result)

    @router.post("/stop", response_model=CommandResultOut)
    async def stop(req: StopReq):
        if req.entity_id is None and req.session_id is None:
            raise HTTPException(status_code=400, detail="entityId or sessionId is required")
        result = await dispatcher.remote_stop(
            parse_entity_id(req.entity_id) if req.entity_id else None,
            session_id=req.session_id,
            samples=[s.to_domain() for s in req.samples],
            correlation_id=req.correlation_id,
            timeout=req.timeout,
        )
        return _respond(result)

    @router.get("/cdrs", response_model=CommandResultOut)
    async def charge_detail_records(
        start: datetime,
        end: datetime,
        provider_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ):
        result = await dispatcher.get_charge_detail_records(
            _aware(start),
            _aware(end),
            provider_id,
            correlation_id=correlation_id,
        )
        return _respond(result)

    app.include_router(router)
    return app
