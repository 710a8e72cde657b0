"""Recurring evaluation of every active session on a bounded worker pool"""
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, List, Optional, Set

from raid_engine.config import settings
from raid_engine.session_registry import SessionRegistry, TrackingSession

logger = logging.getLogger(__name__)

class PollingScheduler:
    """
    Fixed-interval ticker that fans session evaluations out to a thread pool.

    A session whose previous evaluation is still running is skipped for the
    tick, so one slow platform call never queues up behind itself.
    """

    def __init__(self, registry: SessionRegistry, evaluate: Callable[[TrackingSession], Any],
                 interval_seconds: float = settings.TICK_INTERVAL_SECONDS,
                 max_workers: int = settings.MAX_WORKERS,
                 on_tick: Optional[Callable[[], Any]] = None):
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.registry = registry
        self.evaluate = evaluate
        self.interval_seconds = interval_seconds
        self.max_workers = max_workers
        self.on_tick = on_tick

        self._executor: Optional[ThreadPoolExecutor] = None
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._in_flight: Set[TrackingSession] = set()
        self._in_flight_lock = threading.Lock()
        self._lifecycle_lock = threading.Lock()

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _ensure_executor(self) -> ThreadPoolExecutor:
        with self._lifecycle_lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix='raid-eval')
            return self._executor

    def start(self) -> None:
        if self.is_running:
            return
        self._stop_event.clear()
        self._ensure_executor()
        self._thread = threading.Thread(target=self._run, name='raid-scheduler', daemon=True)
        self._thread.start()
        logger.info(f"Scheduler started (every {self.interval_seconds}s, {self.max_workers} workers)")

    def _run(self) -> None:
        while not self._stop_event.wait(self.interval_seconds):
            try:
                self.tick()
            except Exception:
                logger.exception("Scheduler tick failed")

    def tick(self) -> List[Future]:
        """Submit one evaluation per active session; returns the submitted futures"""
        executor = self._ensure_executor()
        futures = []
        skipped = 0
        for session in self.registry.list_active():
            with self._in_flight_lock:
                if session in self._in_flight:
                    skipped += 1
                    continue
                self._in_flight.add(session)
            try:
                futures.append(executor.submit(self._evaluate_one, session))
            except RuntimeError:
                # Executor shut down mid-tick
                with self._in_flight_lock:
                    self._in_flight.discard(session)
                break

        if skipped:
            logger.debug(f"Skipped {skipped} sessions still being evaluated")

        if self.on_tick is not None:
            try:
                self.on_tick()
            except Exception:
                logger.exception("Tick hook failed")
        return futures

    def _evaluate_one(self, session: TrackingSession) -> Any:
        try:
            return self.evaluate(session)
        except Exception:
            logger.exception(f"Evaluation of session {session.key} failed")
            return None
        finally:
            with self._in_flight_lock:
                self._in_flight.discard(session)

    def stop(self, wait: bool = True) -> None:
        self._stop_event.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=self.interval_seconds + 1)
        self._thread = None

        with self._lifecycle_lock:
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=wait, cancel_futures=True)
        with self._in_flight_lock:
            self._in_flight.clear()
        logger.info("Scheduler stopped")
