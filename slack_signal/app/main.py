import asyncio
import os
import signal
from pathlib import Path

from dotenv import load_dotenv
from loguru import logger

from ..bridge.core import SignalBridge
from ..shared.config import Config
from ..shared.config_keys import ConfigKeys
from ..shared.exceptions import (
    APIConnectionError,
    AuthenticationError,
    ConfigurationError,
)

STOP_FILE_POLL_INTERVAL = 0.5
RUNTIME_DIR = Path("data")

_STARTUP_EXIT_CODES: tuple[tuple[type[Exception], int], ...] = (
    (ConfigurationError, 2),
    (AuthenticationError, 3),
    (APIConnectionError, 4),
)


def pid_file_path() -> Path:
    return RUNTIME_DIR / "slack-signal.pid"


def stop_file_path() -> Path:
    return RUNTIME_DIR / "slack-signal.stop"


def load_config() -> Config:
    load_dotenv()
    config = Config()
    config.load()
    return config


class BridgeRunner:
    """Runs one bridge in the foreground until a signal or the stop file ends it.

    While the bridge is up its pid is kept in ``data/slack-signal.pid``; the
    CLI reads it for ``status`` and asks for shutdown by creating the stop
    file next to it.
    """

    def __init__(self, config: Config | None = None, bridge: SignalBridge | None = None):
        self.config = config
        self.bridge = bridge
        self._stop_requested: asyncio.Event | None = None
        self._signals: list[signal.Signals] = []

    def request_stop(self, reason: str) -> None:
        if self._stop_requested is None or self._stop_requested.is_set():
            return
        logger.info(f"{reason}; shutting down...")
        self._stop_requested.set()

    async def run(self) -> None:
        self._stop_requested = asyncio.Event()
        config = self.config or load_config()
        sink_id = logger.add(
            Path(config.get(ConfigKeys.LOG_PATH)),
            level=config.get(ConfigKeys.LOG_LEVEL),
            rotation="10 MB",
            compression="zip",
            enqueue=True,
        )
        stop_file_path().unlink(missing_ok=True)
        try:
            logger.info("Starting Slack Signal bridge...")
            if self.bridge is None:
                self.bridge = SignalBridge(config)
            async with self.bridge:
                self._write_pid()
                self._install_signal_handlers()
                watcher = asyncio.create_task(self._watch_stop_file(), name="stop-file-watch")
                try:
                    await self._stop_requested.wait()
                finally:
                    watcher.cancel()
                    await asyncio.gather(watcher, return_exceptions=True)
                    self._remove_signal_handlers()
        finally:
            self._clear_runtime_files()
            logger.info("Bridge shut down")
            await logger.complete()
            logger.remove(sink_id)

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        wanted = [signal.SIGINT, signal.SIGTERM]
        if hasattr(signal, "SIGHUP"):
            wanted.append(signal.SIGHUP)
        for sig in wanted:
            try:
                loop.add_signal_handler(sig, self.request_stop, f"Received {sig.name}")
            except (NotImplementedError, RuntimeError):
                logger.warning(f"Signal handler not supported here: {sig.name}")
                continue
            self._signals.append(sig)

    def _remove_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        while self._signals:
            loop.remove_signal_handler(self._signals.pop())

    async def _watch_stop_file(self) -> None:
        stop_file = stop_file_path()
        while not stop_file.exists():
            await asyncio.sleep(STOP_FILE_POLL_INTERVAL)
        self.request_stop("Stop file detected")

    @staticmethod
    def _write_pid() -> None:
        path = pid_file_path()
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(str(os.getpid()), encoding="utf-8")

    @staticmethod
    def _clear_runtime_files() -> None:
        path = pid_file_path()
        try:
            if path.read_text(encoding="utf-8").strip() == str(os.getpid()):
                path.unlink()
        except OSError:
            pass
        stop_file_path().unlink(missing_ok=True)


def main() -> int:
    try:
        asyncio.run(BridgeRunner().run())
    except KeyboardInterrupt:
        return 130
    except Exception as e:
        for error_type, code in _STARTUP_EXIT_CODES:
            if isinstance(e, error_type):
                logger.error(f"Startup error: {e}")
                return code
        logger.exception("Unhandled exception while running the bridge")
        return 1
    logger.info("Bye")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
