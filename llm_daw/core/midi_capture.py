"""MIDI device enumeration and note-event capture using mido/rtmidi.

Raw channel-voice bytes are decoded here rather than trusted to the port's
message parser, so every backend sees the same Note On / Note Off rules.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Any, Protocol

import mido

from .constants import STATUS_NOTE_OFF, STATUS_NOTE_ON
from .errors import UnsupportedCapability
from .observers import ObserverRegistry, Unsubscribe

log = logging.getLogger(__name__)

CONNECTED = "connected"
DISCONNECTED = "disconnected"

NOTE_ON = "note_on"
NOTE_OFF = "note_off"

Dispatcher = Callable[..., Any]


@dataclass(frozen=True, slots=True)
class DeviceInfo:
    """A MIDI input device as last seen by :meth:`MidiCaptureService.refresh_devices`."""

    id: str
    name: str
    manufacturer: str = "Unknown"
    state: str = CONNECTED

    @property
    def connected(self) -> bool:
        return self.state == CONNECTED

    def to_dict(self) -> dict[str, str]:
        return {"id": self.id, "name": self.name, "manufacturer": self.manufacturer, "state": self.state}


@dataclass(frozen=True, slots=True)
class NoteEvent:
    """A decoded note message."""

    pitch: int       # 0-127
    velocity: int    # 0-127, 0 for every Note Off
    channel: int     # 0-15
    timestamp: float


def decode_message(data: Sequence[int], timestamp: float = 0.0) -> tuple[str, NoteEvent] | None:
    """Decode raw MIDI bytes into ``(kind, event)``.

    Returns ``None`` for messages shorter than three bytes and for anything
    that is not a note message.  Note On with velocity 0 is a Note Off;
    a real Note Off keeps its release velocity.
    """
    if len(data) < 3:
        return None
    status = data[0]
    command = status & 0xF0
    channel = status & 0x0F
    pitch = data[1] & 0x7F
    velocity = data[2] & 0x7F

    if command == STATUS_NOTE_ON and velocity > 0:
        return NOTE_ON, NoteEvent(pitch, velocity, channel, timestamp)
    if command == STATUS_NOTE_OFF:
        return NOTE_OFF, NoteEvent(pitch, velocity, channel, timestamp)
    if command == STATUS_NOTE_ON:
        return NOTE_OFF, NoteEvent(pitch, 0, channel, timestamp)
    return None


# ── Backends ───────────────────────────────────────────────


class MidiInputPort(Protocol):
    def close(self) -> None: ...


class MidiBackend(Protocol):
    """What the capture service needs from a MIDI driver."""

    def input_names(self) -> list[str]: ...

    def open_input(self, name: str, callback: Callable[[Sequence[int]], None]) -> MidiInputPort: ...


class MidoBackend:
    """Input ports through mido's default (rtmidi) backend.

    Port names double as device ids; rtmidi does not report manufacturers.
    """

    def input_names(self) -> list[str]:
        try:
            return list(mido.get_input_names())
        except (ImportError, OSError, RuntimeError) as exc:
            raise UnsupportedCapability(f"MIDI input unavailable: {exc}") from exc

    def open_input(self, name: str, callback: Callable[[Sequence[int]], None]) -> MidiInputPort:
        def on_message(msg: mido.Message) -> None:
            callback(msg.bytes())

        return mido.open_input(name, callback=on_message)


# ── Service ────────────────────────────────────────────────


class MidiCaptureService:
    """Enumerates MIDI inputs and delivers note events to subscribers.

    One device is attached at a time.  Each attachment gets a generation
    number; messages arriving from an older generation are dropped, so no
    event from the previous device is delivered once ``select_device``
    returns.

    ``dispatcher`` (e.g. ``loop.call_soon_threadsafe``) moves delivery from
    the driver thread onto the caller's event loop.  Without one,
    subscribers run on the driver thread.
    """

    def __init__(
        self,
        backend: MidiBackend | None = None,
        *,
        dispatcher: Dispatcher | None = None,
        clock: Callable[[], float] = time.perf_counter,
    ) -> None:
        self._backend: MidiBackend = backend if backend is not None else MidoBackend()
        self._dispatcher = dispatcher
        self._clock = clock
        self._supported: bool | None = None
        self._devices: dict[str, DeviceInfo] = {}
        self._port: MidiInputPort | None = None
        self._active_id: str | None = None
        self._generation = 0
        self._disposed = False
        self.note_on_listeners: ObserverRegistry[NoteEvent] = ObserverRegistry("note_on")
        self.note_off_listeners: ObserverRegistry[NoteEvent] = ObserverRegistry("note_off")
        self.device_listeners: ObserverRegistry[list[DeviceInfo]] = ObserverRegistry("device_change")

    @property
    def supported(self) -> bool:
        return bool(self._supported)

    @property
    def active_device_id(self) -> str | None:
        return self._active_id

    def initialize(self) -> bool:
        """Detect MIDI capability and populate the device list.

        An unsupported platform is recorded permanently: later calls become
        no-ops returning empty results.  Never raises.
        """
        if self._supported is not None:
            return self._supported
        try:
            names = self._backend.input_names()
        except UnsupportedCapability as exc:
            log.warning("MIDI capture disabled: %s", exc)
            self._supported = False
            return False
        self._supported = True
        self._apply_names(names)
        log.info("MIDI capture ready, %d input(s)", len(names))
        return True

    def list_devices(self) -> list[DeviceInfo]:
        if not self._supported:
            return []
        return list(self._devices.values())

    def select_device(self, device_id: str | None) -> bool:
        """Attach to ``device_id``; ``None`` detaches.

        Returns True when a device is attached after the call.
        """
        if not self._supported or self._disposed:
            return False
        self._detach()
        if device_id is None:
            return False
        info = self._devices.get(device_id)
        if info is None or not info.connected:
            log.warning("MIDI device not available: %s", device_id)
            return False

        generation = self._generation
        try:
            self._port = self._backend.open_input(
                device_id, lambda data: self._on_raw(generation, data),
            )
        except (OSError, RuntimeError):
            log.exception("Failed to open MIDI device %s", device_id)
            self._port = None
            return False
        self._active_id = device_id
        log.info("Opened MIDI device: %s", device_id)
        return True

    def refresh_devices(self) -> list[DeviceInfo]:
        """Re-enumerate devices, notify subscribers and repair the selection."""
        if not self._supported or self._disposed:
            return []
        try:
            names = self._backend.input_names()
        except UnsupportedCapability as exc:
            log.warning("MIDI enumeration failed: %s", exc)
            names = []
        devices = self._apply_names(names)
        self.device_listeners.emit_safely(devices)

        active = self._devices.get(self._active_id) if self._active_id else None
        if active is not None and not active.connected:
            log.info("MIDI device disconnected: %s", active.id)
            self._detach()
        if self._active_id is None:
            first = next((d for d in devices if d.connected), None)
            if first is not None:
                self.select_device(first.id)
        return devices

    async def watch_devices(self, interval: float) -> None:
        """Poll ``refresh_devices`` every ``interval`` seconds until cancelled."""
        while not self._disposed:
            await asyncio.sleep(interval)
            self.refresh_devices()

    # ── Subscriptions ──

    def on_note_on(self, callback: Callable[[NoteEvent], None]) -> Unsubscribe:
        return self.note_on_listeners.subscribe(callback)

    def on_note_off(self, callback: Callable[[NoteEvent], None]) -> Unsubscribe:
        return self.note_off_listeners.subscribe(callback)

    def on_device_change(self, callback: Callable[[list[DeviceInfo]], None]) -> Unsubscribe:
        return self.device_listeners.subscribe(callback)

    def dispose(self) -> None:
        """Detach the device and drop every subscriber.  Idempotent."""
        if self._disposed:
            return
        self._detach()
        self.note_on_listeners.clear()
        self.note_off_listeners.clear()
        self.device_listeners.clear()
        self._disposed = True

    # ── Internal ──

    def _apply_names(self, names: list[str]) -> list[DeviceInfo]:
        seen = set(names)
        for name in names:
            self._devices[name] = DeviceInfo(id=name, name=name)
        for device_id, info in list(self._devices.items()):
            if device_id not in seen and info.connected:
                self._devices[device_id] = DeviceInfo(
                    id=info.id, name=info.name, manufacturer=info.manufacturer, state=DISCONNECTED,
                )
        return list(self._devices.values())

    def _detach(self) -> None:
        self._generation += 1
        port, self._port = self._port, None
        self._active_id = None
        if port is not None:
            try:
                port.close()
            except (OSError, RuntimeError):
                log.warning("Error closing MIDI port", exc_info=True)
            log.info("MIDI port closed")

    def _on_raw(self, generation: int, data: Sequence[int]) -> None:
        """Driver-thread callback."""
        if generation != self._generation:
            return
        decoded = decode_message(data, self._clock())
        if decoded is None:
            return
        if self._dispatcher is not None:
            self._dispatcher(self._deliver, generation, *decoded)
        else:
            self._deliver(generation, *decoded)

    def _deliver(self, generation: int, kind: str, event: NoteEvent) -> None:
        # Re-checked here: a switch may happen between driver and loop thread
        if generation != self._generation:
            return
        if kind == NOTE_ON:
            self.note_on_listeners.emit_safely(event)
        else:
            self.note_off_listeners.emit_safely(event)
