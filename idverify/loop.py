"""
Periodic camera loops
---------------------
A loop owns one camera while it runs. It initializes once (camera, models,
reference data), then ticks on a fixed interval in a worker thread until it
finishes itself or is stopped. A tick never starts while the previous one is
still inside a recognition/detection call.
"""

import logging
import threading
import time

from idverify.errors import InitializationError

logger = logging.getLogger(__name__)

JOIN_TIMEOUT = 10.0


class PeriodicLoop:
    """Base class for the ID scan loop and the face verification loop."""

    name = "loop"

    def __init__(self, camera, interval, on_status=None, on_init_error=None,
                 initial_delay=0.0, clock=time.monotonic):
        self.camera = camera
        self.interval = interval
        self.initial_delay = initial_delay
        self.on_status = on_status
        self.on_init_error = on_init_error
        self.clock = clock

        self.status = "Initializing..."
        self.error = None
        self.tick_errors = 0
        self.is_ready = False

        self._tick_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread = None

    # -- status --------------------------------------------------------

    def set_status(self, status):
        if status == self.status:
            return
        self.status = status
        logger.debug(f"[{self.name}] {status}")
        if self.on_status:
            self.on_status(status)

    @property
    def stopped(self):
        return self._stop_event.is_set()

    @property
    def running(self):
        return self._thread is not None and self._thread.is_alive() and not self.stopped

    # -- lifecycle -----------------------------------------------------

    def initialize(self):
        """Bring up camera and capabilities. Raises InitializationError."""
        if self.is_ready:
            return
        self.camera.open()
        self._initialize()
        self.is_ready = True

    def _initialize(self):
        pass

    def start(self):
        """Run initialize() and the tick loop in a worker thread."""
        if self._thread is not None:
            raise RuntimeError(f"{self.name} loop already started")
        self._thread = threading.Thread(
            target=self._run, name=f"idverify-{self.name}", daemon=True
        )
        self._thread.start()

    def prepare(self):
        """
        initialize() with failures routed to on_init_error instead of raised.

        Returns:
            bool: True when the loop is ready to tick
        """
        try:
            self.initialize()
        except InitializationError as e:
            self._fail_initialization(e)
            return False
        except Exception as e:
            self._fail_initialization(InitializationError(str(e)))
            return False
        return True

    def _run(self):
        if not self.prepare():
            return

        if self.initial_delay and self._stop_event.wait(self.initial_delay):
            return

        self._on_started()
        while not self._stop_event.is_set():
            self.tick()
            if self._stop_event.wait(self.interval):
                break

    def _on_started(self):
        pass

    def _fail_initialization(self, error):
        logger.error(f"[{self.name}] initialization failed: {error}")
        self.error = str(error)
        self.set_status(self.error)
        self._finish()
        if self.on_init_error:
            self.on_init_error(error)

    def tick(self):
        """
        Run one iteration. Returns False when skipped because the loop is
        stopped or the previous tick has not returned yet.
        """
        if not self._tick_lock.acquire(blocking=False):
            logger.debug(f"[{self.name}] previous tick still running, skipping")
            return False
        try:
            if self._stop_event.is_set():
                return False
            self._tick()
        except Exception as e:
            self.tick_errors += 1
            logger.warning(f"[{self.name}] tick error: {e}", exc_info=True)
        finally:
            self._tick_lock.release()
        return True

    def _tick(self):
        raise NotImplementedError

    def _finish(self):
        """End the loop from inside a tick and hand the camera back."""
        self._stop_event.set()
        self.camera.release()

    def stop(self):
        """Cancel the timer, wait for the worker and release the camera."""
        self._stop_event.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(JOIN_TIMEOUT)
            if thread.is_alive():
                logger.warning(f"[{self.name}] worker did not exit within {JOIN_TIMEOUT}s")
        self.camera.release()
