"""
Project Name: Meshflash
Copyright (c) 2025 Henrik Olsson

Permission is hereby granted under MIT license.

Progress Reporting Module
"""

import queue
import logging
import threading
from typing import Callable, Iterable, Iterator, Optional, Tuple

import tqdm
from tqdm.contrib.logging import logging_redirect_tqdm

from meshflash.models import FlashPhase, ProgressEvent

logger = logging.getLogger("Progress")

bar_format = "{l_bar}{bar}| {n_fmt}/{total_fmt} [{elapsed}<{remaining}]"

ProgressCallback = Callable[[int, int], None]


class ClassProgressHandler:
    """
    Reports (current, total) progress either to a callback or, when no
    callback is given, to a tqdm bar on the console.
    """

    def __init__(self, progress_callback: Optional[ProgressCallback] = None, desc: str = None):
        self.progress_callback = progress_callback
        self.desc = desc
        self.pbar = None
        self.current_step = 0
        self.total_steps = 0

    def start(self, total_steps: int):
        self.total_steps = total_steps
        self.current_step = 0
        if self.progress_callback:
            self.progress_callback(self.current_step, total_steps)
        else:
            if self.pbar:
                self.pbar.close()
            self.pbar = tqdm.tqdm(total=total_steps, desc=self.desc, bar_format=bar_format)

    def update(self, completed_steps: int):
        self.current_step += completed_steps
        if self.progress_callback:
            self.progress_callback(self.current_step, self.total_steps)
        if self.pbar:
            self.pbar.update(completed_steps)

    def set_progress(self, current: int, total: int):
        if self.total_steps != total or (not self.pbar and not self.progress_callback):
            self.start(total)

        self.current_step = current
        if self.progress_callback:
            self.progress_callback(current, total)
        if self.pbar:
            self.pbar.n = current
            self.pbar.refresh()

    def close(self):
        if self.pbar:
            self.pbar.close()
            self.pbar = None


_DONE = object()


class ProgressChannel:
    """
    Runs a blocking step on a worker thread and hands the (written, total)
    values it reports to the consuming thread, in order.

    Example:
        channel = ProgressChannel(lambda report: client.write_image(t, image, report))
        for written, total in channel:
            ...
        result = channel.result

    Values that do not move forward are dropped. An exception raised by the
    step is re-raised from the iteration once the reported values are drained.
    """

    def __init__(self, step: Callable[[ProgressCallback], object], name: str = "flash-worker"):
        self._step = step
        self._queue = queue.Queue()
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)
        self.result = None
        self._error: Optional[Exception] = None

    def _report(self, written: int, total: int):
        self._queue.put((written, total))

    def _run(self):
        try:
            self.result = self._step(self._report)
        except Exception as e:
            self._error = e
        finally:
            self._queue.put(_DONE)

    def __iter__(self) -> Iterator[Tuple[int, int]]:
        self._thread.start()
        last = -1
        while True:
            item = self._queue.get()
            if item is _DONE:
                break
            written, total = item
            if written <= last:
                continue
            last = written
            yield written, total
        self._thread.join()
        if self._error is not None:
            raise self._error


def follow_events(events: Iterable[ProgressEvent], log: logging.Logger = logger) -> ProgressEvent:
    """
    Consumes a flash event stream on the console: phase changes are logged and
    byte progress drives a tqdm bar per image. Returns the last event.
    """
    handler = None
    image_index = None
    last = None
    with logging_redirect_tqdm():
        try:
            for event in events:
                last = event
                if event.phase == FlashPhase.IN_PROGRESS and event.bytes_total:
                    if event.image_index != image_index:
                        if handler:
                            handler.close()
                        image_index = event.image_index
                        handler = ClassProgressHandler(
                            desc=f"Image {event.image_index}/{event.image_count}"
                        )
                    handler.set_progress(event.bytes_written, event.bytes_total)
                    continue
                if handler:
                    handler.close()
                    handler = None
                    image_index = None
                if event.phase == FlashPhase.FAILED:
                    log.error(event.message)
                else:
                    log.info(event.message)
        finally:
            if handler:
                handler.close()
    return last
