"""Background worker for analysis runs.

Daemon thread with its own asyncio event loop:
- Queue-based job processing with Semaphore concurrency control
- Each job runs AnalysisOrchestrator.run() via asyncio.to_thread
- A run id is accepted once until its execution finishes
"""

import asyncio
import logging
import threading
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, List, Optional, Set

from ..constants import RestartMode

if TYPE_CHECKING:
    from .orchestrator import AnalysisOrchestrator

logger = logging.getLogger(__name__)


@dataclass
class AnalysisJob:
    """A request to execute one run."""
    run_id: str
    mode: RestartMode = RestartMode.RESUME


class AnalysisWorker:
    """Execute analysis runs off the request thread.

    Lifecycle:
    1. start() spawns daemon thread with asyncio loop
    2. submit() hands a job to the loop (buffered until the loop is up)
    3. _process_job_sync() calls orchestrator.run() in a worker thread
    4. stop() signals shutdown
    """

    def __init__(
        self,
        orchestrator: "AnalysisOrchestrator",
        max_concurrent: int = 2,
        poll_interval: float = 1.0,
    ):
        self._orchestrator = orchestrator
        self.max_concurrent = max_concurrent
        self.poll_interval = poll_interval

        self._queue: Optional[asyncio.Queue] = None
        self._running = False
        self._thread: Optional[threading.Thread] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._semaphore: Optional[asyncio.Semaphore] = None

        self._lock = threading.Lock()
        self._active: Set[str] = set()
        self._buffer: List[AnalysisJob] = []
        self._ready = threading.Event()

    @property
    def is_running(self) -> bool:
        return self._running

    def start(self):
        """Start the background worker thread."""
        if self._running:
            logger.warning("Analysis worker already running")
            return
        self._running = True
        self._ready.clear()
        self._thread = threading.Thread(
            target=self._run_loop, daemon=True, name="analysis-worker"
        )
        self._thread.start()
        logger.info("Analysis worker started")

    def stop(self):
        """Stop the background worker."""
        self._running = False
        if self._thread:
            self._thread.join(timeout=5.0)
        logger.info("Analysis worker stopped")

    def submit(self, run_id: str, mode: RestartMode = RestartMode.RESUME) -> bool:
        """Queue a run for execution.

        Returns False if the run is already queued or executing.
        """
        job = AnalysisJob(run_id=str(run_id), mode=RestartMode(mode))
        with self._lock:
            if job.run_id in self._active or self._orchestrator.is_executing(job.run_id):
                return False
            self._active.add(job.run_id)
            if not self._ready.is_set():
                self._buffer.append(job)
                return True

        self._loop.call_soon_threadsafe(self._queue.put_nowait, job)
        return True

    def wait_idle(self, timeout: float = 30.0) -> bool:
        """Block until no job is queued or running (used by the CLI and tests)."""
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            with self._lock:
                if not self._active:
                    return True
            time.sleep(0.05)
        return False

    def _run_loop(self):
        """Run the async event loop in the background thread."""
        self._loop = asyncio.new_event_loop()
        asyncio.set_event_loop(self._loop)
        self._queue = asyncio.Queue()
        self._semaphore = asyncio.Semaphore(self.max_concurrent)

        with self._lock:
            for job in self._buffer:
                self._queue.put_nowait(job)
            self._buffer.clear()
            self._ready.set()

        try:
            self._loop.run_until_complete(self._main_loop())
        except Exception as e:
            logger.error(f"Analysis worker loop error: {e}", exc_info=True)
        finally:
            self._ready.clear()
            self._loop.close()

    async def _main_loop(self):
        """Main processing loop."""
        tasks = set()
        while self._running:
            try:
                job = await asyncio.wait_for(self._queue.get(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                continue
            task = asyncio.create_task(self._process_with_semaphore(job))
            tasks.add(task)
            task.add_done_callback(tasks.discard)

        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _process_with_semaphore(self, job: AnalysisJob):
        """Process job with semaphore for concurrency control."""
        async with self._semaphore:
            await asyncio.to_thread(self._process_job_sync, job)

    def _process_job_sync(self, job: AnalysisJob):
        """Execute one run (runs in thread pool)."""
        logger.info(f"Processing analysis run {job.run_id} ({job.mode.value})")
        try:
            self._orchestrator.run(job.run_id, job.mode)
        except Exception as e:
            logger.error(f"Analysis run {job.run_id} failed: {e}", exc_info=True)
        finally:
            with self._lock:
                self._active.discard(job.run_id)
