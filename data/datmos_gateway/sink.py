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

"""Metric sinks receiving one point per compensated measurement."""

from __future__ import annotations

import math
import urllib.parse
import urllib.request
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone

from .. import VERSION
from . import config


class MetricSinkError(RuntimeError):
    """Raised when a metric point could not be written."""


@dataclass(frozen=True)
class MetricPoint:
    """A named measurement with tags, fields and a timestamp."""

    measurement: str
    tags: Mapping[str, str] = field(default_factory=dict)
    fields: Mapping[str, float] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_line_protocol(self) -> str:
        """Serialise the point into a single InfluxDB line protocol record."""

        if not self.fields:
            raise ValueError("a metric point needs at least one field")
        head = _escape_measurement(self.measurement)
        for key in sorted(self.tags):
            head += f",{_escape_key(key)}={_escape_key(self.tags[key])}"
        body = ",".join(
            f"{_escape_key(key)}={_format_field(self.fields[key])}"
            for key in sorted(self.fields)
        )
        return f"{head} {body} {_timestamp_ns(self.timestamp)}"


def _escape_measurement(value: str) -> str:
    return str(value).replace(",", r"\,").replace(" ", r"\ ")


def _escape_key(value: str) -> str:
    # tag keys, tag values and field keys share the same escaping rules
    return str(value).replace(",", r"\,").replace(" ", r"\ ").replace("=", r"\=")


def _format_field(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        number = float(value)
        if not math.isfinite(number):
            raise ValueError(f"non-finite field value: {value!r}")
        return repr(number)
    return '"' + str(value).replace("\\", "\\\\").replace('"', r"\"") + '"'


def _timestamp_ns(timestamp: datetime) -> int:
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)
    delta = timestamp - datetime(1970, 1, 1, tzinfo=timezone.utc)
    return (delta.days * 86400 + delta.seconds) * 10**9 + delta.microseconds * 1000


class MetricSink:
    """Destination for compensated measurements."""

    def write(self, point: MetricPoint) -> None:
        raise NotImplementedError

    def close(self) -> None:
        """Release connections held by the sink."""


class DryRunSink(MetricSink):
    """Sink that only logs points, used when writes are disabled."""

    def write(self, point: MetricPoint) -> None:
        config._debug_log(
            f"Dry run: {point.to_line_protocol()}",
            context="sink.dry_run",
            severity="info",
        )


class InfluxDBSink(MetricSink):
    """Write points to the InfluxDB v2 ``/api/v2/write`` endpoint."""

    def __init__(
        self,
        hostname: str,
        org: str,
        bucket: str,
        token: str,
        *,
        timeout: float | None = None,
    ) -> None:
        self.hostname = hostname.rstrip("/")
        self.org = org
        self.bucket = bucket
        self.token = token
        self.timeout = config._SINK_TIMEOUT_SECS if timeout is None else timeout

    @property
    def url(self) -> str:
        query = urllib.parse.urlencode(
            {"org": self.org, "bucket": self.bucket, "precision": "ns"}
        )
        return f"{self.hostname}/api/v2/write?{query}"

    def write(self, point: MetricPoint) -> None:
        """Send ``point`` in a single blocking request.

        Raises:
            MetricSinkError: When the request fails or is rejected.
        """

        data = (point.to_line_protocol() + "\n").encode("utf-8")
        req = urllib.request.Request(
            self.url,
            data=data,
            headers={
                "Content-Type": "text/plain; charset=utf-8",
                "Accept": "application/json",
                "Authorization": f"Token {self.token}",
                "User-Agent": f"datmos-gateway/{VERSION}",
            },
            method="POST",
        )

        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as resp:
                resp.read()
        except Exception as exc:
            raise MetricSinkError(
                f"write to {self.hostname} failed: {exc.__class__.__name__}: {exc}"
            ) from exc


__all__ = [
    "DryRunSink",
    "InfluxDBSink",
    "MetricPoint",
    "MetricSink",
    "MetricSinkError",
]
