"""Process entry point: OCPP server, HTTP API and background loops in one event loop.

Managed EVSEs are listed in ``ROAMINGBRIDGE_CONNECTORS`` as comma separated
``<EVSE id>=<charge point id>/<connector id>`` entries, for example
``DE*GEF*E1234*1=CP_1/1,DE*GEF*E1234*2=CP_1/2``.
"""

from __future__ import annotations

import asyncio
import logging
from typing import List, Tuple

import uvicorn

from . import config
from .api import create_app
from .core.diff import DiffEngine, StatusDiff
from .core.events import EventBus
from .core.lifecycle import SessionLifecycle
from .dispatcher import CommandDispatcher
from .ids import EntityId, parse_entity_id
from .partners.ocpp16 import ConnectorMap, OCPPPartnerClient
from .store import RecordStore

logger = logging.getLogger(__name__)


def parse_connectors(text: str) -> List[Tuple[EntityId, str, int]]:
    entries = []
    for item in filter(None, (part.strip() for part in text.split(","))):
        evse, _, location = item.partition("=")
        cp_id, _, connector = location.partition("/")
        if not cp_id or not connector.isdigit():
            raise ValueError(f"Invalid connector mapping {item!r}")
        entries.append((parse_entity_id(evse.strip()), cp_id.strip(), int(connector)))
    return entries


async def log_diff(diff: StatusDiff) -> None:
    logger.info(
        "Status diff %s: %s",
        diff.operator_id or "fleet",
        {
            "new": {str(k): v.kind.value for k, v in diff.new_status.items()},
            "changed": {str(k): v.kind.value for k, v in diff.changed_status.items()},
            "removed": sorted(str(k) for k in diff.removed_ids),
        },
    )


async def run_http_api(app) -> None:
    server_config = uvicorn.Config(
        app,
        host=config.HTTP_HOST,
        port=config.HTTP_PORT,
        loop="asyncio",
        log_level=config.LOG_LEVEL.lower(),
    )
    server = uvicorn.Server(server_config)
    await server.serve()


async def main() -> None:
    bus = EventBus()
    records = RecordStore()
    lifecycle = SessionLifecycle(bus=bus, records=records)
    connectors = ConnectorMap(parse_connectors(config.CONNECTORS))
    for entity_id in connectors:
        lifecycle.register(entity_id)

    partner = OCPPPartnerClient(lifecycle, connectors)
    dispatcher = CommandDispatcher(lifecycle, partner)
    diff_engine = DiffEngine(lifecycle, clock=lifecycle.clock, bus=bus)
    app = create_app(dispatcher, diff_engine)

    await bus.start()
    tasks = [
        asyncio.create_task(partner.serve(), name="ocpp-server"),
        asyncio.create_task(run_http_api(app), name="http-api"),
        asyncio.create_task(lifecycle.run_expiry_loop(), name="reservation-sweeper"),
        asyncio.create_task(diff_engine.run(log_diff), name="diff-push"),
    ]
    logger.info(
        "⚡ Central listening on ws://%s:%s/ocpp/<ChargePointID> | HTTP :%s | %d EVSEs",
        config.OCPP_HOST,
        config.OCPP_PORT,
        config.HTTP_PORT,
        len(connectors),
    )
    try:
        done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in done:
            if not task.cancelled() and task.exception() is not None:
                logger.error("%s stopped", task.get_name(), exc_info=task.exception())
    finally:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await dispatcher.drain()
        await partner.close()
        await bus.close()


def run() -> None:
    logging.basicConfig(level=config.LOG_LEVEL)
    asyncio.run(main())


if __name__ == "__main__":
    run()
