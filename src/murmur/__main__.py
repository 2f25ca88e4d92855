"""
Console push-button dictation.

Press Enter to start and stop recording, ``c`` to cancel, ``m`` to list
models, ``u <model>`` to switch models, ``h`` for recent history and ``q``
to quit.
"""

import argparse
import signal
import sys
from concurrent.futures import TimeoutError as FutureTimeout

from . import __app_name__, __version__
from .core import events
from .core.errors import MurmurError
from .core.events import Event
from .core.settings import get_settings
from .engine import DictationEngine
from .utils.logger import get_logger, shutdown_logging

logger = get_logger(__name__)


def _print_event(event: Event) -> None:
    payload = event.payload
    if event.name == events.RECORDING_STARTED:
        print("\n🔴 Recording... (Enter to stop, c to cancel)")
    elif event.name == events.RECORDING_STOPPED:
        print("Processing...")
    elif event.name == events.TRANSCRIPTION_COMPLETE:
        if payload["text"]:
            copied = " (copied)" if payload["auto_copied"] else ""
            print(f"🦜 Transcribed{copied}: {payload['text']}")
        else:
            print(f"Nothing transcribed ({payload.get('annotation') or 'empty'}).")
    elif event.name == events.TRANSCRIPTION_ERROR:
        print(f"Error: {payload['message']}")
    elif event.name == events.APP_NOTICE:
        print(payload["message"])
    elif event.name == events.MODEL_DOWNLOAD_PROGRESS:
        print(f"\rDownloading {payload['file_name']}: {payload['percent']}%", end="")
    elif event.name == events.MODEL_DOWNLOAD_COMPLETE:
        print(f"\nDownloaded {payload['file_name']}.")
    elif event.name == events.MODEL_DOWNLOAD_FAILED:
        print(f"\nDownload of {payload['file_name']} failed: {payload['message']}")


def _print_models(engine: DictationEngine) -> None:
    for model in engine.list_models():
        marks = ("*" if model.active else " ") + ("i" if model.installed else " ")
        print(f" {marks} {model.file_name:<48} {model.label} ({model.quality})")


def _print_history(engine: DictationEngine) -> None:
    for record in engine.get_history():
        print(f" {record.created_at:%Y-%m-%d %H:%M} [{record.model}] {record.text}")


def _wait(future, timeout: float = 10.0) -> None:
    try:
        future.result(timeout)
    except MurmurError as e:
        logger.debug(f"Intent failed: {e}")
    except FutureTimeout:
        pass


def run(engine: DictationEngine) -> None:
    status = engine.audio_input_status()
    if not status.ok:
        print(status.message)

    print(f"\nReady! Active model: {engine.active_model or 'none'}.")
    print("Press [Enter] to start/stop, [c] cancel, [m] models, [u <model>] use model,")
    print("[h] history, [q] quit.")

    for line in sys.stdin:
        command = line.strip()
        if command == "":
            _wait(engine.toggle())
        elif command == "c":
            _wait(engine.cancel())
        elif command == "m":
            _print_models(engine)
        elif command.startswith("u "):
            file_name = command[2:].strip()
            try:
                engine.switch_active_model(file_name).result()
                print(f"Active model: {engine.active_model}")
            except MurmurError as e:
                print(f"Error: {e.user_message}")
        elif command == "h":
            _print_history(engine)
        elif command == "q":
            break
        else:
            print(f"Unknown command {command!r}")


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(prog="murmur", description="Local dictation.")
    parser.add_argument("--model", help="model to activate (downloaded if needed)")
    parser.add_argument("--device", help="input device name")
    parser.add_argument(
        "--version", action="version", version=f"{__app_name__} {__version__}"
    )
    args = parser.parse_args(argv)

    settings = get_settings()
    if args.device:
        settings.input_device = args.device

    engine = DictationEngine(settings=settings, persist_settings=True)
    engine.subscribe(_print_event)

    def signal_handler(signum, frame):
        engine.shutdown()
        shutdown_logging()
        sys.exit(0)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        if args.model:
            engine.switch_active_model(args.model).result()
        run(engine)
    except MurmurError as e:
        print(f"Error: {e.user_message}")
        return 1
    finally:
        engine.shutdown()
        shutdown_logging()
    return 0


if __name__ == "__main__":
    sys.exit(main())
