"""Entry point: headless capture-and-record session on the asyncio loop."""

from __future__ import annotations

import argparse
import asyncio
import logging

from .core.autosave import SaveScheduler
from .core.config import ConfigManager, get_config
from .core.errors import Failure
from .core.midi_capture import MidiCaptureService
from .core.persistence import PersistenceGateway
from .core.recording import RecordingCoordinator
from .core.store import ProjectStore, open_project
from .core.transport import MidiOutputEngine, NullSoundEngine, TempoClock

log = logging.getLogger(__name__)


def _parse_args(argv: list[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="llm-daw", description="Record live MIDI into an llm-daw project")
    parser.add_argument("--db", help="SQLAlchemy database URL (overrides config)")
    parser.add_argument("--project", help="Project id to open (default: last opened)")
    parser.add_argument("--new", action="store_true", help="Start a fresh project")
    parser.add_argument("--device", help="MIDI input port name")
    parser.add_argument("--bpm", type=float, help="Tempo for a fresh project")
    parser.add_argument("--record", action="store_true", help="Start recording immediately")
    parser.add_argument("--silent", action="store_true", help="Do not open a MIDI output port")
    parser.add_argument("--list-devices", action="store_true", help="List MIDI inputs and exit")
    parser.add_argument("--list-projects", action="store_true", help="List stored projects and exit")
    parser.add_argument("-v", "--verbose", action="store_true")
    return parser.parse_args(argv)


async def _list_projects(gateway: PersistenceGateway) -> None:
    result = await gateway.list_projects()
    if isinstance(result, Failure):
        print(f"Could not list projects: {result.message}")
        return
    for summary in result:
        print(f"{summary.id}  {summary.name}  {summary.bpm} bpm  updated {summary.updated_at:%Y-%m-%d %H:%M}")


async def _prepare_store(
    gateway: PersistenceGateway, args: argparse.Namespace, config: ConfigManager,
) -> ProjectStore:
    """Open the requested (or last) project; a fresh one gets the configured defaults."""
    project_id = None if args.new else (args.project or config.get("project.last_project_id") or None)
    store = await open_project(gateway, project_id)
    if store.is_new:
        store.set_name(config.get("project.name"))
        store.set_bpm(args.bpm or config.get("project.bpm"))
        store.add_track("instrument")
    config.set("project.last_project_id", store.project_id)
    return store


async def run_session(args: argparse.Namespace, config: ConfigManager) -> None:
    gateway = PersistenceGateway(args.db or config.database_url(), echo=bool(config.get("database.echo")))
    gateway.create_schema()
    if args.list_projects:
        await _list_projects(gateway)
        gateway.dispose()
        return

    store = await _prepare_store(gateway, args, config)
    scheduler = SaveScheduler(
        store,
        gateway,
        float(config.get("persistence.autosave_delay")),
        autosave=bool(config.get("persistence.autosave", True)),
    )
    scheduler.start()

    loop = asyncio.get_running_loop()
    capture = MidiCaptureService(dispatcher=loop.call_soon_threadsafe)
    capture.initialize()
    wanted = args.device or config.get("midi.last_device")
    if not (wanted and capture.select_device(wanted)):
        capture.refresh_devices()
    if capture.active_device_id:
        config.set("midi.last_device", capture.active_device_id)

    engine = NullSoundEngine() if args.silent else MidiOutputEngine(config.get("midi.output_port", ""))
    clock = TempoClock(store.project.bpm)
    coordinator = RecordingCoordinator(
        store, clock, engine, min_note_beats=float(config.get("recording.min_note_beats")),
    )
    coordinator.attach(capture)
    clock.play()
    if args.record:
        coordinator.start()

    watcher = asyncio.create_task(capture.watch_devices(float(config.get("midi.poll_interval"))))
    log.info("Session running on project %s (Ctrl+C to stop)", store.project_id)
    try:
        await asyncio.Event().wait()
    finally:
        watcher.cancel()
        coordinator.stop()
        coordinator.detach()
        capture.dispose()
        clock.pause()
        if isinstance(engine, MidiOutputEngine):
            engine.close()
        scheduler.close()
        result = await scheduler.flush()
        if result is not None:
            log.info("Final save: %s", scheduler.status.value)
        gateway.dispose()


def main(argv: list[str] | None = None) -> None:
    args = _parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )
    if args.list_devices:
        capture = MidiCaptureService()
        if not capture.initialize():
            print("MIDI input is not available on this system")
            return
        for device in capture.list_devices():
            print(f"{device.name}  ({device.state})")
        return

    try:
        asyncio.run(run_session(args, get_config()))
    except KeyboardInterrupt:
        log.info("Stopped")


if __name__ == "__main__":
    main()
