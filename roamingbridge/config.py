"""Runtime settings.

Every value can be overridden with a ``ROAMINGBRIDGE_<NAME>`` environment
variable.  Components take these as constructor defaults so tests can pass
their own values without touching the environment.
"""

from __future__ import annotations

import os


def _env(name: str, default: str) -> str:
    return os.environ.get(f"ROAMINGBRIDGE_{name}", default)


# Seconds a caller waits for a command result before getting a Timeout.
COMMAND_TIMEOUT = float(_env("COMMAND_TIMEOUT", "30"))
# Seconds a partner exchange may run in the background after the caller left.
PARTNER_TIMEOUT = float(_env("PARTNER_TIMEOUT", "60"))

EVENT_QUEUE_SIZE = int(_env("EVENT_QUEUE_SIZE", "1000"))
DELIVERY_ATTEMPTS = int(_env("DELIVERY_ATTEMPTS", "3"))
DELIVERY_RETRY_DELAY = float(_env("DELIVERY_RETRY_DELAY", "0.5"))

CORRELATION_CACHE_SIZE = int(_env("CORRELATION_CACHE_SIZE", "10000"))

EXPIRY_SWEEP_INTERVAL = float(_env("EXPIRY_SWEEP_INTERVAL", "30"))
DIFF_PUSH_INTERVAL = float(_env("DIFF_PUSH_INTERVAL", "60"))

OCPP_HOST = _env("OCPP_HOST", "0.0.0.0")
OCPP_PORT = int(_env("OCPP_PORT", "9000"))
OCPP_RESPONSE_TIMEOUT = int(_env("OCPP_RESPONSE_TIMEOUT", "30"))

HTTP_HOST = _env("HTTP_HOST", "0.0.0.0")
HTTP_PORT = int(_env("HTTP_PORT", "8080"))
# Empty string disables the X-API-Key check.
API_KEY = _env("API_KEY", "")

LOG_LEVEL = _env("LOG_LEVEL", "INFO")

# Comma separated "<EVSE id>=<charge point id>/<connector id>" entries.
CONNECTORS = _env("CONNECTORS", "")
