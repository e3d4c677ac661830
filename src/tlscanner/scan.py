from typing import AsyncIterator, Awaitable, Callable, Iterable, List, Optional, TextIO, Union
from datetime import datetime, timezone
import dataclasses
import asyncio
import logging
import signal
import time

from .targets import InputError, Target, enumerate_targets
from .addresses import parse_cidr
from .prober import DEFAULT_PORT, DEFAULT_TIMEOUT, CSV_HEADER, ProbeResult, format_record, probe
from .geo import DEFAULT_DATABASE_PATHS, GeoLookup
from .crawl import fetch_domains

logger = logging.getLogger(__name__)

# Default number of concurrent scanning workers.
DEFAULT_THREAD_COUNT: int = 10
# How often the driving loop checks for shutdown, in seconds.
DEFAULT_POLL_INTERVAL: float = 1.0
# Longest wait for busy workers after a shutdown request, in seconds.
DEFAULT_SHUTDOWN_TIMEOUT: float = 30.0
# Pause between two probes of the same worker, in seconds.
DEFAULT_WORKER_PAUSE: float = 0.05
DEFAULT_OUTPUT_PATH: str = 'out.csv'
# Log a progress line every this many scanned targets.
PROGRESS_EVERY: int = 10
# Polling interval while waiting for workers to drain, in seconds.
DRAIN_POLL_INTERVAL: float = 0.1

Prober = Callable[..., Awaitable[Optional[ProbeResult]]]

@dataclasses.dataclass
class ScanSettings:
    """
    Everything a scan run needs. Exactly one of `address`, `input_file` or `url` selects the targets.
    Values are validated once, on creation.
    """
    address: Optional[str] = None
    input_file: Optional[str] = None
    url: Optional[str] = None
    thread_count: int = DEFAULT_THREAD_COUNT
    port: int = DEFAULT_PORT
    timeout_in_seconds: float = DEFAULT_TIMEOUT
    enable_ipv6: bool = False
    output_path: Optional[str] = DEFAULT_OUTPUT_PATH
    geoip_database: Optional[str] = None
    poll_interval: float = DEFAULT_POLL_INTERVAL
    shutdown_timeout: float = DEFAULT_SHUTDOWN_TIMEOUT
    worker_pause: float = DEFAULT_WORKER_PAUSE

    def __post_init__(self) -> None:
        given = [value for value in (self.address, self.input_file, self.url) if value and value.strip()]
        if len(given) != 1:
            raise ValueError('You must specify one and only one of address, input file, or URL')
        if self.thread_count < 1:
            raise ValueError(f'Thread count must be at least 1, got {self.thread_count}')
        if not 1 <= self.port <= 65535:
            raise ValueError(f'Port must be between 1 and 65535, got {self.port}')
        for name in ('timeout_in_seconds', 'poll_interval', 'shutdown_timeout'):
            if getattr(self, name) <= 0:
                raise ValueError(f'{name} must be positive, got {getattr(self, name)}')
        if self.worker_pause < 0:
            raise ValueError(f'worker_pause cannot be negative, got {self.worker_pause}')

@dataclasses.dataclass
class ScanSummary:
    scanned: int
    feasible: int
    elapsed: float

@dataclasses.dataclass
class ScanSession:
    """
    Shared state of one scan run. Methods that mutate counters never await, so each update
    is atomic for the tasks of the event loop.
    """
    scanned_count: int = 0
    feasible_count: int = 0
    pulled_count: int = 0
    active_workers: int = 0
    shutting_down: bool = False
    start_time: Optional[float] = None
    started_at: Optional[datetime] = None

    def start(self) -> None:
        if self.start_time is not None:
            raise RuntimeError('Scan session already started')
        self.start_time = time.monotonic()
        self.started_at = datetime.now(tz=timezone.utc).replace(microsecond=0)

    @property
    def elapsed(self) -> float:
        if self.start_time is None:
            return 0.0
        return time.monotonic() - self.start_time

    @property
    def rate(self) -> float:
        elapsed = self.elapsed
        return self.scanned_count / elapsed if elapsed > 0 else 0.0

    def record(self, result: Optional[ProbeResult]) -> bool:
        """ Counts one finished probe. Returns True if it was feasible. """
        self.scanned_count += 1
        if result is not None and result.feasible:
            self.feasible_count += 1
            return True
        return False

    def summary(self) -> ScanSummary:
        return ScanSummary(scanned=self.scanned_count, feasible=self.feasible_count, elapsed=self.elapsed)

class TargetCursor:
    """
    Single shared position in a target sequence. Each target is handed to exactly one caller.
    """
    def __init__(self, targets: AsyncIterator[Target], session: ScanSession):
        self._targets = targets
        self._session = session
        self._lock = asyncio.Lock()
        self.exhausted = False

    async def pull(self) -> Optional[Target]:
        """ Next target, or None once the sequence is over. """
        async with self._lock:
            if self.exhausted:
                return None
            try:
                target = await anext(self._targets)
            except StopAsyncIteration:
                self.exhausted = True
                return None
            self._session.pulled_count += 1
            return target

    async def aclose(self) -> None:
        async with self._lock:
            self.exhausted = True
            aclose = getattr(self._targets, 'aclose', None)
            if aclose is not None:
                await aclose()

class OutputWriter:
    """
    CSV sink for feasible results. Every write is one complete, flushed line.
    """
    def __init__(self, stream: TextIO, close_stream: bool = True):
        self.stream = stream
        self.close_stream = close_stream
        self.closed = False
        self.records_written = 0
        self._write_line(CSV_HEADER)

    @classmethod
    def open(cls, path: str) -> 'OutputWriter':
        return cls(open(path, 'w', encoding='utf-8', newline=''))

    def _write_line(self, line: str) -> None:
        self.stream.write(line + '\n')
        self.stream.flush()

    def write(self, result: ProbeResult) -> None:
        if self.closed:
            logger.warning(f'Output already closed, dropping result for {result.address}')
            return
        self._write_line(format_record(result))
        self.records_written += 1

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.stream.flush()
        if self.close_stream:
            self.stream.close()

    def __enter__(self) -> 'OutputWriter':
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

class Scanner:
    """
    Runs a pool of workers over one target sequence, counts results and streams the feasible
    ones to the output. Shutdown is cooperative: `request_shutdown` sets a flag that workers
    check before pulling their next target.
    """
    def __init__(
        self,
        settings: ScanSettings,
        geo: Optional[GeoLookup] = None,
        prober: Optional[Prober] = None,
        install_signal_handlers: bool = True,
        ):
        self.settings = settings
        self.geo = geo
        self.prober = prober or probe
        self.install_signal_handlers = install_signal_handlers
        self.session = ScanSession()
        self._handled_signals: List[signal.Signals] = []

    def request_shutdown(self, reason: str = 'shutdown request') -> None:
        """ Asks all workers to stop. Safe to call repeatedly and from signal handlers. """
        if self.session.shutting_down:
            return
        logger.info(f'Received {reason}, shutting down gracefully...')
        self.session.shutting_down = True

    def _log_progress(self) -> None:
        session = self.session
        logger.info(f'Progress: scanned={session.scanned_count}, feasible={session.feasible_count}, '
                    f'rate={session.rate:.2f}/s, elapsed={session.elapsed:.1f}s')

    async def _worker(self, cursor: TargetCursor, sink: Optional[OutputWriter]) -> None:
        settings = self.settings
        session = self.session
        session.active_workers += 1
        try:
            while not session.shutting_down:
                target = await cursor.pull()
                if target is None:
                    break

                try:
                    result = await self.prober(target, settings.port, settings.timeout_in_seconds, self.geo, settings.enable_ipv6)
                except Exception as e:
                    # Only this target is lost, the worker moves on to the next one.
                    logger.debug(f'Scan error {target.origin}: {e!r}')
                    result = None

                if session.record(result) and sink is not None:
                    sink.write(result)
                if session.scanned_count % PROGRESS_EVERY == 0:
                    self._log_progress()

                await asyncio.sleep(settings.worker_pause)
        except Exception:
            logger.exception('Unexpected error in scanning worker')
            self.request_shutdown('fatal error')
        finally:
            session.active_workers -= 1

    def _on_loop_exception(self, loop: asyncio.AbstractEventLoop, context: dict) -> None:
        loop.default_exception_handler(context)
        self.request_shutdown('unhandled error')

    def _install_handlers(self, loop: asyncio.AbstractEventLoop) -> None:
        loop.set_exception_handler(self._on_loop_exception)
        if not self.install_signal_handlers:
            return
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_shutdown, sig.name)
            except (NotImplementedError, RuntimeError, ValueError) as e:
                # Not supported on this platform or outside the main thread.
                logger.debug(f'Cannot handle {sig.name}: {e!r}')
                continue
            self._handled_signals.append(sig)

    def _remove_handlers(self, loop: asyncio.AbstractEventLoop) -> None:
        for sig in self._handled_signals:
            loop.remove_signal_handler(sig)
        self._handled_signals.clear()
        loop.set_exception_handler(None)

    async def _drain(self, workers: List['asyncio.Task[None]']) -> None:
        """ Waits, up to the shutdown timeout, for in-flight probes to finish. """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.settings.shutdown_timeout
        while self.session.active_workers > 0 and loop.time() < deadline:
            await asyncio.sleep(DRAIN_POLL_INTERVAL)

        stragglers = [worker for worker in workers if not worker.done()]
        if stragglers:
            logger.warning(f'{len(stragglers)} workers still busy after {self.settings.shutdown_timeout}s, cancelling them')
            for worker in stragglers:
                worker.cancel()
        await asyncio.gather(*workers, return_exceptions=True)

    async def run_scan(self, source: Union[str, Iterable[str]], sink: Optional[OutputWriter] = None) -> ScanSummary:
        """
        Scans every target of `source` (see `enumerate_targets`) with `thread_count` workers.

        Returns when the source is exhausted, or after a shutdown request once workers have
        drained. The sink is closed in both cases.
        """
        settings = self.settings
        session = self.session
        loop = asyncio.get_running_loop()
        cursor = TargetCursor(enumerate_targets(source, settings.enable_ipv6), session)

        self._install_handlers(loop)
        session.start()
        logger.info(f'Started {settings.thread_count} scanning workers at {session.started_at}')
        if isinstance(source, str) and parse_cidr(source.strip()) is None:
            logger.info('Starting infinite scanning mode - press Ctrl+C to stop')

        workers = [asyncio.create_task(self._worker(cursor, sink), name=f'scan-worker-{i}') for i in range(settings.thread_count)]
        try:
            pending = set(workers)
            while pending and not session.shutting_down:
                _, pending = await asyncio.wait(pending, timeout=settings.poll_interval)
            if session.shutting_down:
                await self._drain(workers)
        finally:
            # Workers are all done here unless this coroutine itself was cancelled.
            for worker in workers:
                if not worker.done():
                    worker.cancel()
            await asyncio.gather(*workers, return_exceptions=True)
            await cursor.aclose()
            if sink is not None:
                sink.close()
            self._remove_handlers(loop)

        summary = session.summary()
        if session.shutting_down:
            logger.info(f'Shutdown complete: {summary.elapsed:.1f}s - total scanned: {summary.scanned}, feasible found: {summary.feasible}')
        else:
            logger.info(f'Scanning completed: elapsed={summary.elapsed:.1f}s, total scanned={summary.scanned}, feasible found={summary.feasible}')
        return summary

async def load_source(settings: ScanSettings) -> Union[str, List[str]]:
    """
    Target source selected by the settings: the address itself, the lines of the input file,
    or the domains linked from the URL.
    """
    if settings.address:
        return settings.address.strip()
    if settings.input_file:
        try:
            with open(settings.input_file, 'r', encoding='utf-8') as f:
                return f.read().splitlines()
        except OSError as e:
            raise InputError(f'Could not read input file {settings.input_file}: {e}') from e
    assert settings.url is not None # Guaranteed by ScanSettings validation.
    return await fetch_domains(settings.url)

async def run(settings: ScanSettings) -> ScanSummary:
    """
    Complete scan as started from the command line: loads the source and GeoIP database,
    opens the output file and runs the scanner until completion or shutdown.
    """
    source = await load_source(settings)

    paths = [settings.geoip_database] if settings.geoip_database else list(DEFAULT_DATABASE_PATHS)
    geo = GeoLookup.open(paths)
    try:
        sink = OutputWriter.open(settings.output_path) if settings.output_path else None
    except OSError as e:
        geo.close()
        raise InputError(f'Could not open output file {settings.output_path}: {e}') from e

    try:
        return await Scanner(settings, geo).run_scan(source, sink)
    finally:
        geo.close()
