"""Collector module for periodic KPI sampling.

Groups KPIs by their effective sampling frequency and runs one worker
thread per group. Every tick a worker executes its whole batch of queries
against Thanos and persists the results (or error counts) through the
Database interface. The controlling thread only waits for the run deadline
or an interrupt, then cancels and drains every worker.
"""

import logging
import math
import threading
import time
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

import database
from config import Config, ConfigError, Query, format_duration
from database import Database
from reporter import QueryInfo, QueryResult, Reporter
from thanos_client import ThanosClient, batch_deadline

logger = logging.getLogger(__name__)

# Added to the run duration so the last scheduled tick is not lost to jitter
DURATION_BUFFER_SECONDS = 0.1

REASON_DURATION = "Duration completed"
REASON_INTERRUPTED = "Interrupted by user"


def group_kpis_by_frequency(
    queries: List[Query], default_frequency: float
) -> Dict[float, List[Query]]:
    """Partition KPIs by effective sampling frequency.

    Args:
        queries: KPI definitions
        default_frequency: Frequency in seconds for KPIs without a positive override

    Returns:
        Dict mapping frequency (seconds) to the KPIs sampled at that frequency,
        in input order
    """
    groups: Dict[float, List[Query]] = {}

    for query in queries:
        frequency = query.effective_frequency(default_frequency)
        groups.setdefault(frequency, []).append(query)

    if groups:
        logger.info(f"Grouped all KPIs into {len(groups)} unique frequency groups")
        for frequency, group in groups.items():
            logger.info(f"  Frequency {format_duration(frequency)}: {len(group)} KPIs")

    return groups


def calculate_total_samples(frequency: float, duration: float) -> int:
    """Estimate how many samples a group takes during the run.

    The first sample runs immediately at t=0, then one every ``frequency``
    seconds. Used for progress output only.
    """
    # Tolerate float error so 0.3 / 0.1 counts as 3 intervals
    return math.floor(duration / frequency + 1e-9) + 1


def execute_query(
    query: Query,
    db: Database,
    client: ThanosClient,
    reporter: Reporter,
    cluster_id: int,
    info: QueryInfo,
    deadline: float,
) -> QueryResult:
    """Execute one KPI and persist its outcome.

    Query failures increment the KPI's error counter. Storage failures are
    logged and reported; neither is raised.
    """
    outcome = client.execute(query.promquery, deadline)

    if not outcome.success:
        logger.warning(f"Query {query.id} failed: {outcome.error}")
        try:
            db.increment_query_error(query.id)
        except Exception as e:
            logger.warning(f"Failed to increment error count for {query.id}: {e}")
        result = QueryResult(success=False, error=outcome.error, warnings=outcome.warnings)
        reporter.print_query_result(info, result)
        return result

    if outcome.warnings:
        logger.info(f"Query {query.id} returned warnings: {outcome.warnings}")

    try:
        db.store_sample_results(cluster_id, query.id, outcome.samples)
    except Exception as e:
        logger.warning(f"Failed to store results for {query.id}: {e}")
        result = QueryResult(
            success=False,
            error=RuntimeError(f"failed to store: {e}"),
            warnings=outcome.warnings,
        )
        reporter.print_query_result(info, result)
        return result

    logger.debug(f"Stored {len(outcome.samples)} samples for {query.id}")
    result = QueryResult(success=True, warnings=outcome.warnings)
    reporter.print_query_result(info, result)
    return result


def run_queries(
    queries: List[Query],
    config: Config,
    db: Database,
    client: ThanosClient,
    reporter: Reporter,
    frequency: float,
    sample_number: int,
    total_samples: int,
) -> None:
    """Execute one sample of a frequency group.

    All queries share one deadline of QUERY_TIMEOUT_PER_KPI_SECONDS per
    query in the batch.

    Raises:
        sqlite3.Error, psycopg.Error: If the cluster row cannot be resolved
    """
    if not queries:
        return

    cluster_id = db.get_or_create_cluster(config.cluster.name, config.cluster.type)
    deadline = batch_deadline(len(queries))

    for query in queries:
        info = QueryInfo(
            query_id=query.id,
            promquery=query.promquery,
            frequency_seconds=frequency,
            sample_number=sample_number,
            total_samples=total_samples,
        )
        execute_query(query, db, client, reporter, cluster_id, info, deadline)


def validate_run(queries: List[Query], config: Config) -> None:
    """Reject configurations that must never start a run.

    Raises:
        ConfigError: If there are no KPIs or the sampling configuration is
            not finite and positive
    """
    if not queries:
        raise ConfigError("no KPIs to collect")
    frequency = config.sampling.frequency_seconds
    duration = config.sampling.duration_seconds
    if not math.isfinite(frequency) or frequency <= 0:
        raise ConfigError("sampling frequency must be a finite number greater than 0")
    if not math.isfinite(duration) or duration <= 0:
        raise ConfigError("duration must be a finite number greater than 0")


def _next_tick(start: float, frequency: float, now: float) -> float:
    """Return the first tick strictly after ``now`` on the grid start + k*frequency."""
    return start + (math.floor((now - start) / frequency) + 1) * frequency


class Collector:
    """Runs all frequency groups for one collection run.

    A Collector is single use: start() launches the worker threads,
    shutdown() cancels and joins them, and a stopped collector cannot be
    restarted.
    """

    def __init__(
        self,
        queries: List[Query],
        config: Config,
        db: Database,
        reporter: Reporter,
        client_factory: Optional[Callable[[], ThanosClient]] = None,
        duration_buffer: float = DURATION_BUFFER_SECONDS,
    ) -> None:
        """Initialize the collector.

        Args:
            queries: Loaded and validated KPI definitions
            config: Runtime configuration
            db: Open Database shared by all worker threads
            reporter: Shared operator output sink
            client_factory: Builds one query client per worker thread
            duration_buffer: Seconds added to the run duration

        Raises:
            ConfigError: If there are no KPIs or the sampling configuration
                is not positive
        """
        validate_run(queries, config)

        self._queries = list(queries)
        self._config = config
        self._db = db
        self._reporter = reporter
        self._client_factory = client_factory or (
            lambda: ThanosClient.from_config(config.thanos)
        )
        self._duration_buffer = duration_buffer

        self._cancel_event = threading.Event()
        self._threads: List[threading.Thread] = []
        self._state_lock = threading.Lock()
        self._started = False
        self._stopped = False

    @property
    def stopped(self) -> bool:
        return self._stopped

    @property
    def threads(self) -> List[threading.Thread]:
        return list(self._threads)

    def start(self) -> None:
        """Start one worker thread per frequency group.

        Raises:
            RuntimeError: If the collector was already started
        """
        with self._state_lock:
            if self._stopped:
                raise RuntimeError("collector has been shut down")
            if self._started:
                raise RuntimeError("collector can only be started once")
            self._started = True

            groups = group_kpis_by_frequency(
                self._queries, self._config.sampling.frequency_seconds
            )
            for frequency, group in groups.items():
                thread = threading.Thread(
                    target=self._run_group,
                    args=(frequency, group),
                    name=f"kpi-group-{format_duration(frequency)}",
                    daemon=True,
                )
                self._threads.append(thread)
                thread.start()

    def wait(self, interrupt_event: threading.Event) -> str:
        """Block until the run deadline passes or an interrupt arrives.

        Returns:
            The shutdown reason
        """
        timeout = self._config.sampling.duration_seconds + self._duration_buffer
        if interrupt_event.wait(timeout=timeout):
            logger.info("Program interrupted")
            return REASON_INTERRUPTED

        logger.info("Duration timer expired")
        return REASON_DURATION

    def shutdown(self) -> None:
        """Cancel every worker and wait for all of them to exit.

        Safe to call more than once; after the first call the collector
        cannot be started again.
        """
        with self._state_lock:
            self._started = True
            self._stopped = True
            self._cancel_event.set()
            threads = list(self._threads)

        for thread in threads:
            thread.join()

    def run(self, interrupt_event: Optional[threading.Event] = None) -> str:
        """Run the whole collection and return the shutdown reason."""
        if interrupt_event is None:
            interrupt_event = threading.Event()

        duration = self._config.sampling.duration_seconds
        deadline = datetime.now().astimezone() + timedelta(seconds=duration)
        self._reporter.print_startup(
            format_duration(duration), deadline.isoformat(timespec="seconds")
        )

        try:
            self.start()
            reason = self.wait(interrupt_event)
        finally:
            self.shutdown()

        self._reporter.print_shutdown(reason)
        return reason

    def _run_group(self, frequency: float, queries: List[Query]) -> None:
        """Worker loop for one frequency group.

        Samples immediately, then on every tick of a fixed grid anchored at
        the thread start. Ticks missed while a batch overran are collapsed
        into one, and no sample starts after cancellation.
        """
        total_samples = calculate_total_samples(
            frequency, self._config.sampling.duration_seconds
        )
        logger.info(
            f"Starting thread for {len(queries)} KPIs with frequency "
            f"{format_duration(frequency)} (total samples: {total_samples})"
        )

        try:
            client = self._client_factory()
        except Exception:
            logger.exception(
                f"Failed to create query client for frequency {format_duration(frequency)} KPIs"
            )
            return

        sample_count = 0
        start = time.monotonic()
        next_tick = start

        try:
            while True:
                timeout = max(0.0, next_tick - time.monotonic())
                if self._cancel_event.wait(timeout=timeout):
                    break

                sample_count += 1
                self._run_sample(client, queries, frequency, sample_count, total_samples)

                next_tick = max(
                    next_tick + frequency,
                    _next_tick(start, frequency, time.monotonic()),
                )
        finally:
            client.close()

        logger.info(
            f"KPI group (frequency {format_duration(frequency)}) stopped after "
            f"{sample_count} samples"
        )

    def _run_sample(
        self,
        client: ThanosClient,
        queries: List[Query],
        frequency: float,
        sample_number: int,
        total_samples: int,
    ) -> None:
        logger.info(
            f"Running sample {sample_number}/{total_samples} for {len(queries)} KPIs "
            f"with frequency {format_duration(frequency)}"
        )
        try:
            run_queries(
                queries,
                self._config,
                self._db,
                client,
                self._reporter,
                frequency,
                sample_number,
                total_samples,
            )
        except Exception:
            logger.exception(
                f"Sample {sample_number} failed for frequency {format_duration(frequency)} KPIs"
            )


def run(
    queries: List[Query],
    config: Config,
    db: Optional[Database] = None,
    reporter: Optional[Reporter] = None,
    interrupt_event: Optional[threading.Event] = None,
    client_factory: Optional[Callable[[], ThanosClient]] = None,
    duration_buffer: float = DURATION_BUFFER_SECONDS,
) -> str:
    """Run a complete collection and block until it finishes.

    Args:
        queries: Loaded and validated KPI definitions
        config: Runtime configuration
        db: Open Database; when omitted one is opened from config.database
            and closed before returning
        reporter: Operator output sink (defaults to stdout)
        interrupt_event: Set to stop the run early
        client_factory: Builds one query client per worker thread
        duration_buffer: Seconds added to the run duration

    Returns:
        The shutdown reason

    Raises:
        ConfigError: If the configuration is unusable; nothing is started
    """
    validate_run(queries, config)

    owns_db = db is None
    if owns_db:
        db = database.init_database(config.database)

    try:
        collector = Collector(
            queries,
            config,
            db,
            reporter or Reporter(),
            client_factory=client_factory,
            duration_buffer=duration_buffer,
        )
        return collector.run(interrupt_event)
    finally:
        if owns_db:
            db.close()
