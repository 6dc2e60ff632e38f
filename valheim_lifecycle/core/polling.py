"""Bounded polling helpers for readiness, exit and idle indicators."""

import time


def poll_until(check, timeout, interval=1.0, cancel_event=None, sleep=time.sleep, clock=time.monotonic):
    """Call ``check`` until it returns truthy, ``timeout`` elapses, or cancellation.

    Returns True only when ``check`` succeeded. Waiting uses ``cancel_event``
    when given so a shutdown request interrupts the wait immediately.
    """
    deadline = clock() + max(0.0, float(timeout))
    while True:
        if check():
            return True
        if cancel_event is not None and cancel_event.is_set():
            return False
        remaining = deadline - clock()
        if remaining <= 0:
            return False
        pause = min(interval, remaining)
        if cancel_event is not None:
            cancel_event.wait(pause)
        else:
            sleep(pause)
