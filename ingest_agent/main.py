"""
OPC UA ingestion agent.

Discovers the variable nodes of the configured namespace/id range, subscribes
to all of them in batches and streams every numeric change into the time-series
store. While the OPC UA session answers, a heartbeat file is touched so the
watchdog can tell a live agent from a stalled one.
"""
import asyncio
import logging
import os
import signal
import sys
from concurrent.futures import ThreadPoolExecutor
from typing import Optional

from common.catalog import Catalog, load_catalog
from common.config import Settings, get_settings
from common.errors import AlreadyRunningError
from common.logging_setup import configure_logging
from common.manifest import write_manifest
from common.store import TimescaleStore
from ingest_agent.discovery import discover, namespace_range_filter
from ingest_agent.heartbeat import HeartbeatWriter
from ingest_agent.lock import EXIT_ALREADY_RUNNING, InstanceLock
from ingest_agent.remote import RemoteSession
from ingest_agent.sink import TimeSeriesSink
from ingest_agent.subscriptions import SubscriptionEngine, SubscriptionReport

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FATAL = 1


def build_sink(settings: Settings) -> TimeSeriesSink:
    store = TimescaleStore(settings.dsn, settings.db_table)
    return TimeSeriesSink(
        store,
        batch_size=settings.sink_batch_size,
        flush_interval=settings.sink_flush_interval,
        max_retries=settings.sink_max_retries,
        retry_delay=settings.sink_retry_delay,
    )


class IngestionService:
    def __init__(
        self,
        settings: Settings,
        session=None,
        sink: Optional[TimeSeriesSink] = None,
        catalog: Optional[Catalog] = None,
        lock: Optional[InstanceLock] = None,
    ):
        self.settings = settings
        self.session = session or RemoteSession(settings.opcua_endpoint, settings.opcua_timeout)
        self.sink = sink or build_sink(settings)
        self.catalog = catalog if catalog is not None else load_catalog(settings.catalog_file)
        self.lock = lock or InstanceLock(settings.lock_file)
        self.engine = SubscriptionEngine(self.session, self.sink, self.catalog, settings)
        self.heartbeat = HeartbeatWriter(
            settings.heartbeat_file, settings.heartbeat_interval, self.session.check_alive
        )
        self.stop_event = asyncio.Event()
        self._session_ready = asyncio.Event()
        # Sink I/O gets its own thread so a hung store write can be abandoned at exit.
        self._io = ThreadPoolExecutor(max_workers=1, thread_name_prefix="sink-io")
        self.report: Optional[SubscriptionReport] = None
        self.forced_exit = False
        self._connected = False
        self._cleaned_up = False

    def request_stop(self) -> None:
        if not self.stop_event.is_set():
            logger.info("Stop requested")
        self.stop_event.set()

    # ------------------------------------------------------------
    # startup
    # ------------------------------------------------------------

    async def start(self) -> SubscriptionReport:
        store = getattr(self.sink, "store", None)
        if store is not None and hasattr(store, "ensure_schema"):
            await self._offload(store.ensure_schema)
        self.sink.start()

        logger.info(f"Connecting to OPC UA server at: {self.settings.opcua_endpoint}")
        await self.session.connect()
        self._connected = True
        self._session_ready.set()

        logger.info("Searching for all variable nodes...")
        include = namespace_range_filter(
            self.settings.discovery_namespace,
            self.settings.discovery_id_min,
            self.settings.discovery_id_max,
        )
        nodes = await discover(
            self.session, self.settings.discovery_root, include, self.settings.browse_page_size
        )
        logger.info(
            f"Found {len(nodes)} variable nodes in ns={self.settings.discovery_namespace} and "
            f"i={self.settings.discovery_id_min}-{self.settings.discovery_id_max}"
        )
        write_manifest(self.settings.manifest_file, nodes)

        self.report = await self.engine.subscribe_all(nodes)
        logger.info("All subscriptions set up")
        return self.report

    # ------------------------------------------------------------
    # run loop
    # ------------------------------------------------------------

    async def run(self) -> None:
        """Acquire the instance lock, start up and serve until stopped or a fatal error."""
        self.lock.acquire()
        try:
            await self._serve()
        finally:
            await self.shutdown()

    async def _serve(self) -> None:
        # The heartbeat beats and stop requests are honoured while subscriptions are still being set up.
        startup = asyncio.create_task(self.start())
        heartbeat = asyncio.create_task(self._heartbeat())
        stopper = asyncio.create_task(self.stop_event.wait())
        status = None
        try:
            done, _ = await asyncio.wait({startup, heartbeat, stopper}, return_when=asyncio.FIRST_COMPLETED)
            if startup in done:
                startup.result()
                status = asyncio.create_task(self._status_loop())
                await asyncio.wait({heartbeat, stopper}, return_when=asyncio.FIRST_COMPLETED)
            elif stopper in done:
                logger.info("Stop requested during startup, abandoning subscription setup")
        finally:
            self.stop_event.set()
            tasks = [t for t in (startup, heartbeat, status, stopper) if t is not None]
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
        if not heartbeat.cancelled() and heartbeat.exception() is not None:
            raise heartbeat.exception()

    async def _heartbeat(self) -> None:
        await self._session_ready.wait()
        await self.heartbeat.run(self.stop_event)

    async def _offload(self, fn):
        return await asyncio.get_running_loop().run_in_executor(self._io, fn)

    async def _status_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.status_log_interval)
            stats = self.sink.stats
            logger.info(
                f"Still receiving data... {len(self.engine.registry)} monitored, "
                f"{stats.written} written, {stats.buffered} buffered, {stats.dropped} dropped"
            )

    # ------------------------------------------------------------
    # shutdown
    # ------------------------------------------------------------

    async def shutdown(self) -> bool:
        """Run cleanup within the shutdown timeout. Returns False if it had to give up."""
        try:
            await asyncio.wait_for(self.cleanup(), timeout=self.settings.shutdown_timeout)
        except asyncio.TimeoutError:
            logger.error(f"Cleanup did not finish within {self.settings.shutdown_timeout}s, forcing exit")
            self.forced_exit = True
            self.lock.release()
            # A store call stuck in the sink thread is left behind; main() exits with os._exit.
            self._io.shutdown(wait=False, cancel_futures=True)
            return False
        self._io.shutdown(wait=False)
        return True

    async def cleanup(self) -> None:
        """Flush sink, close sink, terminate subscriptions, close session, disconnect."""
        if self._cleaned_up:
            return
        self._cleaned_up = True
        logger.info("Cleaning up...")

        steps = [
            ("flush sink", lambda: self._offload(self.sink.flush)),
            ("close sink", lambda: self._offload(self.sink.close)),
            ("terminate subscriptions", self.engine.terminate),
        ]
        if self._connected:
            steps.append(("close session", self.session.close_session))
            steps.append(("disconnect", self.session.disconnect))

        for name, step in steps:
            try:
                await step()
            except Exception as e:
                logger.error(f"Cleanup step '{name}' failed: {e}")

        self.lock.release()
        logger.info("All connections closed")


async def run_service(service: IngestionService) -> int:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, service.request_stop)

    def on_unhandled(loop, context):
        logger.error(f"Unhandled fault: {context.get('message')}", exc_info=context.get("exception"))
        service.request_stop()

    loop.set_exception_handler(on_unhandled)

    try:
        await service.run()
    except AlreadyRunningError as e:
        logger.warning(str(e))
        return EXIT_ALREADY_RUNNING
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        return EXIT_FATAL
    return EXIT_OK


def main() -> int:
    settings = get_settings()
    configure_logging("ingest", settings.log_level, settings.log_dir)
    logger.info("Starting OPC UA ingestion agent...")
    service = IngestionService(settings)
    code = asyncio.run(run_service(service))
    if service.forced_exit:
        logging.shutdown()
        os._exit(EXIT_FATAL)
    return code


if __name__ == "__main__":
    sys.exit(main())
