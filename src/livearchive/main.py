"""
Live session archiver - Main Orchestrator.

Coordinates all modules:
1. Poll the AcFun live list and diff consecutive snapshots
2. Store every new live session
3. Resolve and backfill the playback link of every ended session
4. Serve the interactive command shell
"""

import asyncio
import os
import signal
import sys
from typing import Optional

import yaml

from .acfun_api import AcFunAPI
from .commands import CommandShell, QuerySurface
from .config import Config, load_config
from .errors import FatalError
from .finalizer import Finalizer, FinalizerPool
from .logger import get_logger, setup_logging
from .poller import SnapshotPoller
from .reconciler import Reconciler
from .resolver import PlaybackResolver
from .session import SessionPool
from .store import SessionStore

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_CONFIG = 2


class ArchiverApp:
    """
    Main application.

    Owns the shared store and session pool and passes them explicitly to
    every component. Shutdown is requested through one event, set by
    signals, by the quit command or by a fatal error in any task.
    """

    def __init__(self, config: Config):
        """Initialize application with configuration."""
        self.config = config
        self._logger = get_logger('app')

        self.stop_event = asyncio.Event()
        self.fatal_error: Optional[FatalError] = None

        self.api = AcFunAPI(config.acfun)
        self.store = SessionStore(config.storage.database_file, config.storage.table)
        self.pool = SessionPool()

        self.resolver = PlaybackResolver(
            self.api,
            retry_delay=config.finalizer.retry_delay,
            aliyun_marker=config.acfun.aliyun_marker,
            tencent_marker=config.acfun.tencent_marker
        )

        self.finalizers = FinalizerPool(
            Finalizer(self.resolver, self.store, self.pool, config.finalizer),
            self.pool,
            on_fatal=self._on_fatal
        )

        self.reconciler = Reconciler(
            poller=SnapshotPoller(self.api, self.pool, config.polling),
            store=self.store,
            pool=self.pool,
            finalizers=self.finalizers,
            config=config.polling,
            stop_event=self.stop_event,
            aux_lookup=self.api.get_live_cut_num
        )

        self.shell = CommandShell(QuerySurface(self.store, self.resolver), self.stop_event)
        self._shell_task: Optional[asyncio.Task] = None

    def stop(self) -> None:
        """Request an orderly shutdown."""
        if not self.stop_event.is_set():
            self._logger.info("Shutdown requested, please wait...")
        self.stop_event.set()

    def _on_fatal(self, error: FatalError) -> None:
        if self.fatal_error is None:
            self.fatal_error = error
            self._logger.critical(f"Fatal error: {error}")
        self.stop()

    def _on_shell_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is None:
            return
        if isinstance(exc, FatalError):
            self._on_fatal(exc)
        else:
            self._logger.error(f"Command shell crashed: {exc!r}", exc_info=exc)
            self._on_fatal(FatalError(f"Command shell crashed: {exc!r}"))

    async def start(self) -> int:
        """
        Run until shutdown.

        Returns:
            Process exit status.
        """
        self._logger.info("Starting live session archiver...")

        try:
            await self._run()
        except FatalError as e:
            self._on_fatal(e)
        finally:
            await self._cleanup()

        return EXIT_FATAL if self.fatal_error is not None else EXIT_OK

    async def _run(self) -> None:
        await self.store.open()

        if not await self.api.connect():
            raise FatalError("Failed to connect to AcFun API")

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, self.stop)

        try:
            self._shell_task = asyncio.create_task(self.shell.run(), name="command-shell")
            self._shell_task.add_done_callback(self._on_shell_done)

            await self.reconciler.run()
        finally:
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.remove_signal_handler(sig)

    async def _cleanup(self) -> None:
        """Cleanup resources."""
        self._logger.info("Cleaning up...")

        if self._shell_task and not self._shell_task.done():
            self._shell_task.cancel()
            try:
                await self._shell_task
            except asyncio.CancelledError:
                pass

        # Running finalizers are not waited for
        await self.finalizers.abandon()

        try:
            await asyncio.wait_for(self.api.disconnect(), timeout=5.0)
        except Exception as e:
            self._logger.warning(f"Error disconnecting AcFun API: {e}")

        await self.store.close()
        self._logger.info("Cleanup complete")


async def main(config_path: Optional[str] = None) -> int:
    """Main entry point."""
    config_path = config_path or os.environ.get('LIVEARCHIVE_CONFIG', 'config.yaml')

    try:
        config = load_config(config_path)
    except FileNotFoundError as e:
        print(f"Error: {e}")
        return EXIT_CONFIG
    except (ValueError, yaml.YAMLError) as e:
        print(f"Configuration error: {e}")
        return EXIT_CONFIG

    setup_logging(
        level=config.logging.level,
        log_file=config.logging.file,
        max_size_mb=config.logging.max_size_mb,
        backup_count=config.logging.backup_count
    )

    app = ArchiverApp(config)
    return await app.start()


def run() -> None:
    """Console script entry point."""
    sys.exit(asyncio.run(main()))


if __name__ == '__main__':
    run()
