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

"""Runtime entry point and receive loop of the datmos gateway."""

from __future__ import annotations

import enum
import queue
import signal
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Union

from pubsub import pub

from . import config, handlers, radio
from .devices import DeviceConfig, format_device_id
from .radio import RECEIVE_TOPIC, LinkQuality, PacketSource
from .sink import DryRunSink, InfluxDBSink, MetricPoint, MetricSink


class LoopState(enum.Enum):
    IDLE = "idle"
    LISTENING = "listening"
    TERMINATED = "terminated"


@dataclass(frozen=True)
class FrameReceived:
    packet: bytes
    received_at: datetime
    link_quality: LinkQuality = field(default_factory=LinkQuality)


@dataclass(frozen=True)
class WatchdogExpired:
    generation: int


@dataclass(frozen=True)
class ReloadRequested:
    pass


@dataclass(frozen=True)
class ShutdownRequested:
    reason: str = "signal"


Event = Union[FrameReceived, WatchdogExpired, ReloadRequested, ShutdownRequested]


class DeviceSaveError(RuntimeError):
    """Raised when the device file cannot be written on shutdown."""


class Watchdog:
    """Restartable timer reporting radio silence as :class:`WatchdogExpired`.

    Every :meth:`arm` or :meth:`disarm` starts a new generation. Expiry events
    of older generations are stale and must be ignored by the consumer, which
    makes a reset atomic with respect to an expiry that is already queued.
    """

    def __init__(
        self,
        timeout: float,
        on_expire: Callable[[WatchdogExpired], None],
        *,
        timer_factory: Callable[..., threading.Timer] = threading.Timer,
    ) -> None:
        self.timeout = timeout
        self._on_expire = on_expire
        self._timer_factory = timer_factory
        self._lock = threading.Lock()
        self._timer = None
        self.generation = 0

    def arm(self) -> None:
        with self._lock:
            self._cancel_timer()
            self.generation += 1
            timer = self._timer_factory(
                self.timeout, self._expire, args=(self.generation,)
            )
            timer.daemon = True
            self._timer = timer
        timer.start()

    reset = arm

    def disarm(self) -> None:
        with self._lock:
            self._cancel_timer()
            self.generation += 1

    def is_current(self, event: WatchdogExpired) -> bool:
        with self._lock:
            return event.generation == self.generation

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _expire(self, generation: int) -> None:
        with self._lock:
            if generation != self.generation:
                return
        self._on_expire(WatchdogExpired(generation))


def _stop_source(source: PacketSource | None) -> None:
    """Stop the receive context of ``source`` while respecting timeouts."""

    if source is None:
        return

    def _do_stop() -> None:
        try:
            source.stop_rx()
        except Exception as exc:
            config._debug_log(
                "Error stopping packet source",
                context="daemon.close",
                severity="warn",
                error_class=exc.__class__.__name__,
                error_message=str(exc),
            )

    if config._CLOSE_TIMEOUT_SECS <= 0:
        _do_stop()
        return

    stop_thread = threading.Thread(target=_do_stop, name="datmos-stop", daemon=True)
    stop_thread.start()
    stop_thread.join(config._CLOSE_TIMEOUT_SECS)
    if stop_thread.is_alive():
        config._debug_log(
            "Packet source stop timed out",
            context="daemon.close",
            severity="warn",
            timeout_seconds=config._CLOSE_TIMEOUT_SECS,
        )


class Gateway:
    """Single-threaded receive loop multiplexing frames, timers and signals.

    Parameters:
        state: Device config and calibration state owned by the loop.
        source: Packet source delivering frames on :data:`RECEIVE_TOPIC`.
        sink: Destination for compensated metric points.
        devices_path: Device file used for reloads and persistence.
        stop: Optional upstream cancellation token.
        watchdog_timeout: Radio silence tolerated before a restart.
        timer_factory: Replacement for :class:`threading.Timer` in tests.
    """

    def __init__(
        self,
        state: handlers.GatewayState,
        source: PacketSource,
        sink: MetricSink,
        *,
        devices_path: str,
        stop: threading.Event | None = None,
        watchdog_timeout: float | None = None,
        timer_factory: Callable[..., threading.Timer] = threading.Timer,
    ) -> None:
        self.state = state
        self.source = source
        self.sink = sink
        self.devices_path = devices_path
        self.stop = stop
        self.events: queue.SimpleQueue[Event] = queue.SimpleQueue()
        self.status = LoopState.IDLE
        self.restarts = 0
        self._cancel: threading.Event | None = None
        self._subscribed = False
        if watchdog_timeout is None:
            watchdog_timeout = config._WATCHDOG_TIMEOUT_SECS
        self.watchdog = Watchdog(
            watchdog_timeout, self.post, timer_factory=timer_factory
        )

    def post(self, event: Event) -> None:
        """Queue ``event`` for the loop. Safe from any thread and signal handler."""

        self.events.put(event)

    def _on_receive(self, packet, source=None) -> None:
        """Pubsub listener resetting the watchdog at the moment of receipt."""

        if source is not None and source is not self.source:
            return
        if self.status is not LoopState.LISTENING:
            return
        self.watchdog.reset()
        try:
            quality = self.source.link_quality()
        except Exception as exc:
            config._debug_log(
                "Failed to read link quality",
                context="daemon.receive",
                severity="warn",
                error_class=exc.__class__.__name__,
                error_message=str(exc),
            )
            quality = LinkQuality()
        self.post(
            FrameReceived(
                packet=bytes(packet),
                received_at=datetime.now(timezone.utc),
                link_quality=quality,
            )
        )

    def _open_receive_context(self) -> None:
        self._cancel = threading.Event()
        self.source.start_rx(self._cancel)

    def _close_receive_context(self) -> None:
        if self._cancel is not None:
            self._cancel.set()
            self._cancel = None
        _stop_source(self.source)

    def start(self) -> None:
        """Open the packet source and arm the watchdog."""

        if self.status is not LoopState.IDLE:
            return
        pub.subscribe(self._on_receive, RECEIVE_TOPIC)
        self._subscribed = True
        # Listening before the context opens so no early frame is dropped.
        self.status = LoopState.LISTENING
        self._open_receive_context()
        self.watchdog.arm()
        config._debug_log("Listening", context="daemon.start", severity="info")

    def run(self) -> None:
        """Process events until shutdown or upstream cancellation."""

        try:
            self.start()
            while self.status is LoopState.LISTENING:
                if self.stop is not None and self.stop.is_set():
                    self.handle_event(ShutdownRequested("cancelled"))
                    break
                try:
                    event = self.events.get(timeout=config._EVENT_POLL_SECS)
                except queue.Empty:
                    continue
                self.handle_event(event)
        finally:
            if self.status is not LoopState.TERMINATED:
                self.shutdown("exit")

    def handle_event(self, event: Event) -> None:
        if isinstance(event, FrameReceived):
            self._handle_frame(event)
        elif isinstance(event, WatchdogExpired):
            if self.watchdog.is_current(event):
                self._restart_receive_context()
        elif isinstance(event, ReloadRequested):
            self._reload()
        elif isinstance(event, ShutdownRequested):
            config._debug_log(
                "Shutting down",
                context="daemon.shutdown",
                severity="info",
                reason=event.reason,
            )
            self.shutdown(event.reason)
        else:
            raise TypeError(f"unexpected event: {event!r}")

    def _handle_frame(self, event: FrameReceived) -> None:
        try:
            point = handlers.handle_frame(
                self.state,
                event.packet,
                link_quality=lambda: event.link_quality,
                received_at=event.received_at,
            )
        except Exception as exc:
            config._debug_log(
                "Failed to handle frame",
                context="daemon.frame",
                severity="warn",
                error_class=exc.__class__.__name__,
                error_message=str(exc),
                packet=event.packet.hex().upper(),
            )
            return
        if point is not None:
            self._emit(point)

    def _emit(self, point: MetricPoint) -> None:
        try:
            self.sink.write(point)
        except Exception as exc:
            config._debug_log(
                "Failed to write metric point",
                context="daemon.emit",
                severity="warn",
                device_id=point.tags.get("id"),
                error_class=exc.__class__.__name__,
                error_message=str(exc),
            )

    def _restart_receive_context(self) -> None:
        config._debug_log(
            "No packets received; restarting receive context",
            context="daemon.watchdog",
            severity="warn",
            timeout_seconds=self.watchdog.timeout,
        )
        self._close_receive_context()
        self.restarts += 1
        try:
            self._open_receive_context()
        except Exception as exc:
            config._debug_log(
                "Failed to reopen packet source",
                context="daemon.watchdog",
                severity="error",
                error_class=exc.__class__.__name__,
                error_message=str(exc),
            )
        self.watchdog.arm()

    def _reload(self) -> None:
        config._debug_log(
            "Reloading device config",
            context="daemon.reload",
            severity="info",
            path=self.devices_path,
        )
        try:
            devices = self.state.devices.reload(self.devices_path)
        except Exception as exc:
            config._debug_log(
                "Device config reload failed",
                context="daemon.reload",
                severity="warn",
                error_class=exc.__class__.__name__,
                error_message=str(exc),
            )
            return
        self.state.apply_reload(devices)
        _log_devices(devices)

    def shutdown(self, reason: str = "shutdown") -> None:
        """Persist the device config and release the receive context.

        Raises:
            DeviceSaveError: When the device file cannot be written. The
                receive context is released regardless.
        """

        if self.status is LoopState.TERMINATED:
            return
        try:
            try:
                self.state.devices.save(self.devices_path)
            except OSError as exc:
                raise DeviceSaveError(
                    f"cannot write {self.devices_path}: {exc}"
                ) from exc
            config._debug_log(
                "Saved device config",
                context="daemon.shutdown",
                severity="info",
                path=self.devices_path,
                devices=len(self.state.devices),
                reason=reason,
            )
        finally:
            self.status = LoopState.TERMINATED
            self.watchdog.disarm()
            self._close_receive_context()
            try:
                self.source.close()
            except Exception as exc:
                config._debug_log(
                    "Error closing packet source",
                    context="daemon.shutdown",
                    severity="warn",
                    error_class=exc.__class__.__name__,
                    error_message=str(exc),
                )
            if self._subscribed:
                pub.unsubscribe(self._on_receive, RECEIVE_TOPIC)
                self._subscribed = False


def install_signal_handlers(gateway: Gateway) -> list[int]:
    """Map process signals to gateway events.

    ``SIGUSR1`` and ``SIGHUP`` reload the device file; ``SIGINT`` and
    ``SIGTERM`` shut down. A second ``SIGINT`` raises
    :class:`KeyboardInterrupt`. Handlers are only installed from the main
    thread.
    """

    if threading.current_thread() is not threading.main_thread():
        return []

    def handle_reload(*_args) -> None:
        gateway.post(ReloadRequested())

    def handle_sigterm(*_args) -> None:
        gateway.post(ShutdownRequested("SIGTERM"))

    interrupted = threading.Event()

    def handle_sigint(signum, frame) -> None:
        if interrupted.is_set() or gateway.status is LoopState.TERMINATED:
            signal.default_int_handler(signum, frame)
            return
        interrupted.set()
        gateway.post(ShutdownRequested("SIGINT"))

    installed = []
    for name, handler in (
        ("SIGUSR1", handle_reload),
        ("SIGHUP", handle_reload),
        ("SIGINT", handle_sigint),
        ("SIGTERM", handle_sigterm),
    ):
        signum = getattr(signal, name, None)
        if signum is None:
            continue
        signal.signal(signum, handler)
        installed.append(signum)
    return installed


def _log_devices(devices: DeviceConfig) -> None:
    for device_id in sorted(devices):
        record = devices[device_id]
        config._debug_log(
            "Known device",
            context="daemon.devices",
            severity="info",
            device_id=format_device_id(device_id),
            name=record.name,
            calibrated=record.calibrated,
        )


def _load_devices(path: str) -> DeviceConfig:
    try:
        return DeviceConfig.load(path)
    except FileNotFoundError:
        config._debug_log(
            "Device file does not exist, will write one on exit",
            context="daemon.main",
            severity="info",
            path=path,
        )
        return DeviceConfig()


def _log_save_failure(path: str, exc: BaseException) -> None:
    config._debug_log(
        "Failed to save device config",
        context="daemon.main",
        severity="error",
        path=path,
        error_class=exc.__class__.__name__,
        error_message=str(exc),
    )


def _create_sink() -> MetricSink:
    if config.DRY_RUN:
        return DryRunSink()
    return InfluxDBSink(config.HOSTNAME, config.ORG, config.BUCKET, config.TOKEN)


def main(
    packet_source: PacketSource | None = None,
    sink: MetricSink | None = None,
    stop: threading.Event | None = None,
) -> None:
    """Run the gateway until interrupted."""

    missing = config.missing_required()
    if missing:
        config._debug_log(
            "Required environment variables undefined",
            context="daemon.main",
            severity="error",
            missing=missing,
        )
        raise SystemExit(1)

    devices_path = config.DEVICES_PATH
    config._debug_log(
        "Gateway starting",
        context="daemon.main",
        severity="info",
        devices=devices_path,
        hostname=config.HOSTNAME or "(dry run)",
        org=config.ORG,
        bucket=config.BUCKET,
        measure=config.MEASURE,
        token="********" if config.TOKEN else "",
        dry_run=config.DRY_RUN,
    )

    try:
        devices = _load_devices(devices_path)
    except Exception as exc:
        config._debug_log(
            "Failed to read device file",
            context="daemon.main",
            severity="error",
            path=devices_path,
            error_class=exc.__class__.__name__,
            error_message=str(exc),
        )
        raise SystemExit(1) from exc
    _log_devices(devices)

    state = handlers.GatewayState.from_devices(devices, measure=config.MEASURE)
    gateway: Gateway | None = None
    failed = False
    try:
        if sink is None:
            sink = _create_sink()
        if packet_source is None:
            packet_source, resolved = radio.create_packet_source(config.SOURCE)
            config._debug_log(
                "Using packet source",
                context="daemon.main",
                severity="info",
                target=resolved,
            )
        gateway = Gateway(
            state, packet_source, sink, devices_path=devices_path, stop=stop
        )
        install_signal_handlers(gateway)
        gateway.run()
    except KeyboardInterrupt:  # pragma: no cover - interactive only
        config._debug_log(
            "Received KeyboardInterrupt; shutting down",
            context="daemon.main",
            severity="info",
        )
    except DeviceSaveError as exc:
        _log_save_failure(devices_path, exc.__cause__ or exc)
        failed = True
    except Exception as exc:
        config._debug_log(
            "Gateway stopped after an unrecoverable error",
            context="daemon.main",
            severity="error",
            error_class=exc.__class__.__name__,
            error_message=str(exc),
        )
        failed = True
    finally:
        try:
            if gateway is None:
                state.devices.save(devices_path)
            elif gateway.status is not LoopState.TERMINATED:
                gateway.shutdown("exit")
        except Exception as exc:
            _log_save_failure(devices_path, exc.__cause__ or exc)
            raise SystemExit(1) from exc
        finally:
            if sink is not None:
                sink.close()

    if failed:
        raise SystemExit(1)


__all__ = [
    "DeviceSaveError",
    "Event",
    "FrameReceived",
    "Gateway",
    "LoopState",
    "ReloadRequested",
    "ShutdownRequested",
    "Watchdog",
    "WatchdogExpired",
    "install_signal_handlers",
    "main",
]
