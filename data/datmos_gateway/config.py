# Copyright © 2025-26 l5yth & contributors
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Configuration helpers for the datmos gateway."""

from __future__ import annotations

import os
from datetime import datetime, timezone
from typing import Any

DEFAULT_BUCKET = "datmos"
"""InfluxDB bucket used when :envvar:`DATMOS_BUCKET` is unset."""

DEFAULT_MEASURE = "environment"
"""Measurement name used when :envvar:`DATMOS_MEASURE` is unset."""

DEFAULT_WATCHDOG_TIMEOUT_SECS = 2.0 * 60
"""Radio silence tolerated before the receive context is restarted."""

DEFAULT_SINK_TIMEOUT_SECS = 10.0
"""Upper bound for a single metric write, well below the watchdog period."""

DEFAULT_EVENT_POLL_SECS = 1.0
"""Interval at which the gateway loop rechecks its stop conditions."""

DEFAULT_CLOSE_TIMEOUT_SECS = 5.0
"""Grace period for packet source shutdown routines to complete."""

DEVICES_PATH = os.environ.get("DATMOS_DEVICES")
"""Path of the JSON device file holding names and calibration coefficients."""

HOSTNAME = os.environ.get("DATMOS_HOSTNAME", "").rstrip("/")
ORG = os.environ.get("DATMOS_ORG", "")
TOKEN = os.environ.get("DATMOS_TOKEN", "")
BUCKET = os.environ.get("DATMOS_BUCKET") or DEFAULT_BUCKET
MEASURE = os.environ.get("DATMOS_MEASURE") or DEFAULT_MEASURE

SOURCE = os.environ.get("DATMOS_SOURCE")
"""Packet source target.

Either ``module:attribute`` naming a radio driver factory or the path of a
hex replay file. See :func:`datmos_gateway.radio.create_packet_source`.
"""

DRY_RUN = os.environ.get("DATMOS_DRY_RUN") == "1"
"""When ``True``, compensated readings are logged instead of written."""

DEBUG = os.environ.get("DEBUG") == "1" or os.environ.get("DATMOS_TRACE") == "1"

_WATCHDOG_TIMEOUT_SECS = DEFAULT_WATCHDOG_TIMEOUT_SECS
_SINK_TIMEOUT_SECS = DEFAULT_SINK_TIMEOUT_SECS
_EVENT_POLL_SECS = DEFAULT_EVENT_POLL_SECS
_CLOSE_TIMEOUT_SECS = DEFAULT_CLOSE_TIMEOUT_SECS


def missing_required() -> list[str]:
    """Return the names of required environment settings that are unset.

    The InfluxDB connection settings are only required when writes are
    enabled, i.e. outside of :data:`DRY_RUN`.
    """

    missing = []
    if not DEVICES_PATH:
        missing.append("DATMOS_DEVICES")
    if not DRY_RUN:
        for name, value in (
            ("DATMOS_HOSTNAME", HOSTNAME),
            ("DATMOS_ORG", ORG),
            ("DATMOS_TOKEN", TOKEN),
        ):
            if not value:
                missing.append(name)
    return missing


def _debug_log(
    message: str,
    *,
    context: str | None = None,
    severity: str = "debug",
    always: bool = False,
    **metadata: Any,
) -> None:
    """Print ``message`` with a UTC timestamp when ``DEBUG`` is enabled.

    Parameters:
        message: Text to display when debug logging is active.
        context: Optional logical component emitting the message.
        severity: Log level label to embed in the formatted output.
        always: When ``True``, bypasses the :data:`DEBUG` guard.
        **metadata: Additional structured log metadata.
    """

    normalized_severity = severity.lower()

    if not DEBUG and not always and normalized_severity == "debug":
        return

    timestamp = datetime.now(timezone.utc).isoformat(timespec="milliseconds")
    timestamp = timestamp.replace("+00:00", "Z")
    parts = [f"[{timestamp}]", "[datmos]", f"[{normalized_severity}]"]
    if context:
        parts.append(f"context={context}")
    for key, value in sorted(metadata.items()):
        parts.append(f"{key}={value!r}")
    parts.append(message)
    print(" ".join(parts), flush=True)


__all__ = [
    "BUCKET",
    "DEBUG",
    "DEVICES_PATH",
    "DRY_RUN",
    "HOSTNAME",
    "MEASURE",
    "ORG",
    "SOURCE",
    "TOKEN",
    "_CLOSE_TIMEOUT_SECS",
    "_EVENT_POLL_SECS",
    "_SINK_TIMEOUT_SECS",
    "_WATCHDOG_TIMEOUT_SECS",
    "_debug_log",
    "missing_required",
]
