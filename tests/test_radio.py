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
"""Unit tests for :mod:`data.datmos_gateway.radio`."""

from __future__ import annotations

import threading

import pytest
from pubsub import pub

from data.datmos_gateway import radio


def test_parse_replay_line_skips_blank_and_comment_lines():
    assert radio.parse_replay_line("") is None
    assert radio.parse_replay_line("   \n") is None
    assert radio.parse_replay_line("# captured 2026-03-01\n") is None


def test_parse_replay_line_reads_frame_and_link_quality():
    packet, quality = radio.parse_replay_line("01aB  -90 7.5 -1200\n")

    assert packet == b"\x01\xab"
    assert quality == radio.LinkQuality(rssi=-90.0, snr=7.5, fei=-1200.0)


def test_parse_replay_line_defaults_missing_metadata():
    packet, quality = radio.parse_replay_line("0102 -71")

    assert packet == b"\x01\x02"
    assert quality == radio.LinkQuality(rssi=-71.0)


@pytest.mark.parametrize("line", ["zz", "012", "0102 loud"])
def test_parse_replay_line_rejects_malformed_input(line):
    with pytest.raises(ValueError):
        radio.parse_replay_line(line)


@pytest.mark.parametrize("target", [None, "", "   "])
def test_create_packet_source_requires_target(target):
    with pytest.raises(radio.NoAvailablePacketSource):
        radio.create_packet_source(target)


@pytest.mark.parametrize("target", ["mock", "IDLE", "none"])
def test_create_packet_source_idle_targets(target):
    source, resolved = radio.create_packet_source(target)

    assert isinstance(source, radio.IdlePacketSource)
    assert resolved == "mock"


def test_create_packet_source_loads_factory():
    target = "data.datmos_gateway.radio:IdlePacketSource"

    source, resolved = radio.create_packet_source(target)

    assert isinstance(source, radio.IdlePacketSource)
    assert resolved == target


@pytest.mark.parametrize(
    "target", ["collections:OrderedDict", "datmos_missing_driver:create"]
)
def test_create_packet_source_rejects_bad_factories(target):
    with pytest.raises(radio.NoAvailablePacketSource):
        radio.create_packet_source(target)


def test_create_packet_source_replays_existing_files(tmp_path):
    path = tmp_path / "capture.hex"
    path.write_text("", encoding="utf-8")

    source, resolved = radio.create_packet_source(str(path))

    assert isinstance(source, radio.ReplayPacketSource)
    assert source.path == path
    assert resolved == f"replay://{path}"


def test_create_packet_source_rejects_missing_paths(tmp_path):
    with pytest.raises(radio.NoAvailablePacketSource):
        radio.create_packet_source(str(tmp_path / "missing.hex"))


def test_idle_source_tracks_receive_context():
    source = radio.IdlePacketSource()

    source.start_rx(threading.Event())
    assert source.active is True
    assert source.link_quality() == radio.LinkQuality()

    source.stop_rx()
    assert source.active is False


def test_replay_source_publishes_frames(tmp_path, calibration_frame, log_calls):
    """Replayed frames are published with the metadata of their line."""

    path = tmp_path / "capture.hex"
    path.write_text(
        "# two frames\n"
        f"{calibration_frame.hex()} -97 7.25 -1220\n"
        "not-hex\n"
        "\n"
        "02AA -80\n",
        encoding="utf-8",
    )
    source = radio.ReplayPacketSource(path)
    received = []
    done = threading.Event()

    def listener(packet, source=None):
        received.append((packet, source, source.link_quality()))
        if len(received) == 2:
            done.set()

    pub.subscribe(listener, radio.RECEIVE_TOPIC)
    try:
        source.start_rx(threading.Event())
        assert done.wait(5.0)
        source.stop_rx()
    finally:
        pub.unsubscribe(listener, radio.RECEIVE_TOPIC)

    assert [packet for packet, _, _ in received] == [calibration_frame, b"\x02\xaa"]
    assert all(origin is source for _, origin, _ in received)
    assert received[0][2] == radio.LinkQuality(-97.0, 7.25, -1220.0)
    assert received[1][2] == radio.LinkQuality(rssi=-80.0)
    skipped = [
        kw for message, kw in log_calls if message == "Skipping malformed replay line"
    ]
    assert [kw["line"] for kw in skipped] == [3]


def test_replay_source_requires_file(tmp_path):
    source = radio.ReplayPacketSource(tmp_path / "missing.hex")

    with pytest.raises(FileNotFoundError):
        source.start_rx(threading.Event())
