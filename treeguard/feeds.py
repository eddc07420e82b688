import logging
import time
from threading import Lock, Timer
from typing import Callable


logger = logging.getLogger(__name__)

_EMPTY = object()


class Throttle:
    """Deliver at most one value per ``interval`` seconds.

    Values arriving inside the window replace each other; the last one is
    delivered when the window closes, so the newest state always gets out.
    """

    def __init__(self, callback: Callable, interval: float, clock: Callable[[], float] = time.monotonic) -> None:
        self.callback = callback
        self.interval = float(interval)
        self.clock = clock
        self._lock = Lock()
        self._last = None
        self._pending = _EMPTY
        self._timer: Timer | None = None
        self._cancelled = False

    def __call__(self, value) -> None:
        with self._lock:
            if self._cancelled:
                return
            now = self.clock()
            if self._last is None or now - self._last >= self.interval:
                self._last = now
                self._pending = _EMPTY
                deliver = True
            else:
                self._pending = value
                deliver = False
                if self._timer is None:
                    self._timer = Timer(self.interval - (now - self._last), self._fire)
                    self._timer.daemon = True
                    self._timer.start()
        if deliver:
            self._send(value)

    def _fire(self) -> None:
        with self._lock:
            self._timer = None
            value, self._pending = self._pending, _EMPTY
            if value is _EMPTY or self._cancelled:
                return
            self._last = self.clock()
        self._send(value)

    def _send(self, value) -> None:
        try:
            self.callback(value)
        except Exception:
            logger.error("throttled callback failed", exc_info=True)

    def cancel(self) -> None:
        with self._lock:
            self._cancelled = True
            self._pending = _EMPTY
            if self._timer:
                self._timer.cancel()
                self._timer = None


def throttled(subscribe: Callable[[Callable], Callable[[], None]], callback: Callable, interval: float) -> Callable[[], None]:
    """Subscribe through a ``Throttle``; the handle detaches both."""
    throttle = Throttle(callback, interval)
    unsubscribe = subscribe(throttle)

    def detach() -> None:
        unsubscribe()
        throttle.cancel()

    return detach
