"""
background.py — fire-and-forget side effects.

Best-effort work (DNS binding today) is submitted here and never joined by
the run that triggered it. A failing task is logged; nothing is raised back to
the submitter.
"""

import logging
from concurrent.futures import Future, ThreadPoolExecutor

log = logging.getLogger(__name__)


class BackgroundTasks:
    def __init__(self, max_workers: int = 4, name: str = "deep-signal-bg"):
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix=name)

    def submit(self, label: str, fn, *args, **kwargs) -> Future:
        def run():
            try:
                return fn(*args, **kwargs)
            except Exception as exc:
                log.warning(f"  Background task '{label}' failed: {exc}")
                return None

        return self._executor.submit(run)

    def shutdown(self, wait: bool = True):
        self._executor.shutdown(wait=wait)

