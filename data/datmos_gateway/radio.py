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

"""Packet source interface and the implementations shipped with the gateway.

Radio drivers deliver frames by publishing them on :data:`RECEIVE_TOPIC`
through :mod:`pubsub`. The gateway subscribes to that topic and queries
:meth:`PacketSource.link_quality` after each delivered frame.
"""

from __future__ import annotations

import importlib
import threading
from dataclasses import dataclass
from pathlib import Path

from pubsub import pub

from . import config

RECEIVE_TOPIC = "datmos.receive"
"""Pubsub topic carrying raw frames as the ``packet`` argument."""


@dataclass(frozen=True)
class LinkQuality:
    """Radio metadata of the most recently received packet."""

    rssi: float = 0.0
    snr: float = 0.0
    fei: float = 0.0


class NoAvailablePacketSource(RuntimeError):
    """Raised when no packet source can be created."""


class PacketSource:
    """Base class for radio drivers feeding the gateway.

    A receive context is started with a cancellation token; the driver must
    stop publishing once the token is set or :meth:`stop_rx` is called.
    """

    def start_rx(self, cancel: threading.Event) -> None:
        raise NotImplementedError

    def stop_rx(self) -> None:
        raise NotImplementedError

    def link_quality(self) -> LinkQuality:
        raise NotImplementedError

    def close(self) -> None:
        """Release hardware resources. Called once on shutdown."""

    def publish(self, packet: bytes) -> None:
        """Deliver ``packet`` to every subscriber of :data:`RECEIVE_TOPIC`."""

        pub.sendMessage(RECEIVE_TOPIC, packet=bytes(packet), source=self)


class IdlePacketSource(PacketSource):
    """Source that never delivers packets, used for ``mock`` targets."""

    def __init__(self) -> None:
        self.active = False

    def start_rx(self, cancel: threading.Event) -> None:
        self.active = True

    def stop_rx(self) -> None:
        self.active = False

    def link_quality(self) -> LinkQuality:
        return LinkQuality()


class ReplayPacketSource(PacketSource):
    """Replay hex-encoded frames from a text file.

    Each non-empty line holds one frame as hexadecimal digits, optionally
    followed by whitespace separated ``rssi snr fei`` values. Lines starting
    with ``#`` are ignored. Every receive context replays the file from the
    start.
    """

    def __init__(self, path: str | Path, *, interval: float = 0.0) -> None:
        self.path = Path(path)
        self.interval = max(0.0, interval)
        self._lock = threading.Lock()
        self._link_quality = LinkQuality()
        self._cancel: threading.Event | None = None
        self._thread: threading.Thread | None = None

    def start_rx(self, cancel: threading.Event) -> None:
        if not self.path.is_file():
            raise FileNotFoundError(f"replay file not found: {self.path}")
        self._cancel = cancel
        self._thread = threading.Thread(
            target=self._replay, args=(cancel,), name="datmos-replay", daemon=True
        )
        self._thread.start()

    def stop_rx(self) -> None:
        if self._cancel is not None:
            self._cancel.set()
        thread = self._thread
        self._thread = None
        if thread is not None and thread is not threading.current_thread():
            thread.join(config._CLOSE_TIMEOUT_SECS)

    def link_quality(self) -> LinkQuality:
        with self._lock:
            return self._link_quality

    def _replay(self, cancel: threading.Event) -> None:
        with self.path.open("r", encoding="utf-8") as handle:
            for line_number, line in enumerate(handle, start=1):
                if cancel.is_set():
                    return
                try:
                    parsed = parse_replay_line(line)
                except ValueError as exc:
                    config._debug_log(
                        "Skipping malformed replay line",
                        context="radio.replay",
                        severity="warn",
                        line=line_number,
                        error_message=str(exc),
                    )
                    continue
                if parsed is None:
                    continue
                packet, quality = parsed
                with self._lock:
                    self._link_quality = quality
                try:
                    self.publish(packet)
                except Exception as exc:
                    config._debug_log(
                        "Failed to publish replayed packet",
                        context="radio.replay",
                        severity="warn",
                        line=line_number,
                        error_class=exc.__class__.__name__,
                        error_message=str(exc),
                    )
                if self.interval and cancel.wait(self.interval):
                    return
        config._debug_log(
            "Replay file exhausted",
            context="radio.replay",
            severity="info",
            path=str(self.path),
        )


def parse_replay_line(line: str) -> tuple[bytes, LinkQuality] | None:
    """Return the frame and link metadata encoded in ``line``.

    Returns ``None`` for blank and comment lines.

    Raises:
        ValueError: When the line holds malformed hex or metadata.
    """

    stripped = line.strip()
    if not stripped or stripped.startswith("#"):
        return None
    columns = stripped.split()
    packet = bytes.fromhex(columns[0])
    metrics = [float(value) for value in columns[1:4]]
    metrics.extend([0.0] * (3 - len(metrics)))
    return packet, LinkQuality(*metrics)


def _load_factory(spec: str):
    module_name, _, attribute = spec.partition(":")
    module = importlib.import_module(module_name)
    factory = module
    for part in attribute.split("."):
        factory = getattr(factory, part)
    return factory


def create_packet_source(target: str | None) -> tuple[PacketSource, str]:
    """Return a packet source for ``target`` and its resolved description.

    Parameters:
        target: ``mock`` for an idle source, ``module:attribute`` naming a
            driver factory callable, or the path of a hex replay file.

    Raises:
        NoAvailablePacketSource: When ``target`` cannot be resolved.
    """

    value = (target or "").strip()
    if not value:
        raise NoAvailablePacketSource("no packet source configured (DATMOS_SOURCE)")
    if value.lower() in {"mock", "none", "idle"}:
        config._debug_log(
            "Using idle packet source", context="radio.create", target=value
        )
        return IdlePacketSource(), "mock"

    module_name, sep, attribute = value.partition(":")
    if sep and module_name and attribute and not Path(value).exists():
        try:
            factory = _load_factory(value)
            source = factory()
        except Exception as exc:
            raise NoAvailablePacketSource(
                f"cannot load packet source {value!r}: {exc}"
            ) from exc
        if not isinstance(source, PacketSource):
            raise NoAvailablePacketSource(
                f"{value!r} did not produce a PacketSource: {type(source).__name__}"
            )
        return source, value

    path = Path(value)
    if path.is_file():
        return ReplayPacketSource(path), f"replay://{path}"
    raise NoAvailablePacketSource(f"packet source not found: {value!r}")


__all__ = [
    "RECEIVE_TOPIC",
    "IdlePacketSource",
    "LinkQuality",
    "NoAvailablePacketSource",
    "PacketSource",
    "ReplayPacketSource",
    "create_packet_source",
    "parse_replay_line",
]
