from __future__ import annotations

import threading
from concurrent.futures import Future, wait
from typing import Callable, TypeVar

_T = TypeVar("_T")


class CallTimedOut(TimeoutError):
    def __init__(self, name: str, timeout_s: float):
        super().__init__(f"{name} did not finish within {timeout_s:.1f}s")
        self.name = name
        self.timeout_s = timeout_s


def call_with_timeout(fn: Callable[[], _T], *, timeout_s: float, name: str = "call") -> _T:
    """Run fn on a daemon thread and wait at most timeout_s for its result.

    Exceptions raised by fn propagate unchanged. On timeout the thread is
    abandoned and CallTimedOut is raised; being a daemon, a hung call does not
    keep the process alive at exit.
    """

    future: Future[_T] = Future()

    def _run() -> None:
        if not future.set_running_or_notify_cancel():
            return
        try:
            result = fn()
        except BaseException as exc:
            future.set_exception(exc)
        else:
            future.set_result(result)

    worker = threading.Thread(target=_run, name=f"fieldtrack-{name}", daemon=True)
    worker.start()
    done, _ = wait([future], timeout=max(0.01, float(timeout_s)))
    if not done:
        raise CallTimedOut(name, timeout_s)
    return future.result()
