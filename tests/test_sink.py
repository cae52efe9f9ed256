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
"""Unit tests for :mod:`data.datmos_gateway.sink`."""

from __future__ import annotations

import urllib.error
from datetime import datetime, timezone

import pytest

from data.datmos_gateway import sink

TIMESTAMP = datetime(2026, 3, 1, 12, 0, 0, 250000, tzinfo=timezone.utc)


def _point(**overrides):
    values = {
        "measurement": "environment",
        "tags": {"name": "unnamed", "id": "01"},
        "fields": {"temperature": 77.5, "humidity": 40.0, "rssi": -90},
        "timestamp": TIMESTAMP,
    }
    values.update(overrides)
    return sink.MetricPoint(**values)


def test_line_protocol_sorts_tags_and_fields():
    line = _point().to_line_protocol()

    assert line == (
        "environment,id=01,name=unnamed "
        "humidity=40.0,rssi=-90.0,temperature=77.5 "
        "1772366400250000000"
    )


def test_line_protocol_escapes_special_characters():
    line = _point(
        measurement="env data",
        tags={"name": "back yard,north=1"},
        fields={"vbat": 3.3},
    ).to_line_protocol()

    assert line.startswith(r"env\ data,name=back\ yard\,north\=1 vbat=3.3 ")


def test_line_protocol_rejects_empty_and_non_finite_fields():
    with pytest.raises(ValueError):
        _point(fields={}).to_line_protocol()
    with pytest.raises(ValueError):
        _point(fields={"pressure": float("nan")}).to_line_protocol()


def test_naive_timestamps_are_treated_as_utc():
    naive = _point(timestamp=datetime(1970, 1, 1, 0, 0, 1))

    assert naive.to_line_protocol().endswith(" 1000000000")


class _Response:
    def __init__(self):
        self.read_called = False

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def read(self):
        self.read_called = True
        return b""


def test_influxdb_sink_posts_line_protocol(monkeypatch):
    requests = []

    def fake_urlopen(req, timeout):
        requests.append((req, timeout))
        return _Response()

    monkeypatch.setattr(sink.urllib.request, "urlopen", fake_urlopen)
    target = sink.InfluxDBSink(
        "http://influx:8086/", "home", "datmos", "secret", timeout=3
    )

    target.write(_point())

    req, timeout = requests[0]
    assert timeout == 3
    assert req.get_method() == "POST"
    assert req.full_url == (
        "http://influx:8086/api/v2/write?org=home&bucket=datmos&precision=ns"
    )
    assert req.get_header("Authorization") == "Token secret"
    assert req.data.decode("utf-8") == _point().to_line_protocol() + "\n"


def test_influxdb_sink_wraps_transport_errors(monkeypatch):
    def failing_urlopen(req, timeout):
        raise urllib.error.URLError("connection refused")

    monkeypatch.setattr(sink.urllib.request, "urlopen", failing_urlopen)
    target = sink.InfluxDBSink("http://influx:8086", "home", "datmos", "secret")

    with pytest.raises(sink.MetricSinkError) as excinfo:
        target.write(_point())

    assert "connection refused" in str(excinfo.value)
    assert target.timeout == sink.config._SINK_TIMEOUT_SECS


def test_dry_run_sink_only_logs(log_calls):
    sink.DryRunSink().write(_point())

    message, kwargs = log_calls[0]
    assert message.startswith("Dry run: environment,id=01")
    assert kwargs["severity"] == "info"
