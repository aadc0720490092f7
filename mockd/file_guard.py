#!python
# -*- coding: utf-8 -*-

import os
import threading
from typing import Any, Callable, Dict, Tuple

import inotify.adapters
import inotify.constants

from .logger import log

Callback = Callable[[], Any]

# create, remove, rename and write of a watched file
WATCHED_EVENTS = (
    inotify.constants.IN_CREATE
    | inotify.constants.IN_DELETE
    | inotify.constants.IN_MOVED_FROM
    | inotify.constants.IN_MOVED_TO
    | inotify.constants.IN_CLOSE_WRITE
)


def split_name(fname: str) -> Tuple[str, str]:
    fullname = os.path.abspath(fname)
    return os.path.dirname(fullname), os.path.basename(fullname)


class Guard(threading.Thread):
    """Call back when a watched file changes.

    Directories are watched instead of the files themselves, so a file
    that is replaced by an editor or removed and created again stays
    watched. Callbacks run one after the other on this thread, in the
    order the events arrive."""

    def __init__(self, timeout_s: float = 1) -> None:
        super().__init__(name="mockd-guard", daemon=True)
        self.files: Dict[str, Dict[str, Callback]] = dict()
        self.lock = threading.Lock()
        self.keep_running = True
        self.timeout_s = timeout_s
        self.inotify = inotify.adapters.Inotify()

    def watch(self, fname: str, callback: Callback) -> None:
        """Register callback for fname, replacing an earlier one"""
        dirname, basename = split_name(fname)
        with self.lock:
            if dirname not in self.files:
                self.inotify.add_watch(dirname, WATCHED_EVENTS)
                self.files[dirname] = dict()
            self.files[dirname][basename] = callback
        log(__name__).info("add watcher %s", os.path.join(dirname, basename))

    def unwatch(self, fname: str) -> None:
        dirname, basename = split_name(fname)
        with self.lock:
            self.files.get(dirname, dict()).pop(basename, None)

    def lookup(self, dirname: str, fname: str) -> Callback | None:
        with self.lock:
            return self.files.get(dirname, dict()).get(fname)

    def handle_refresh(self, callback: Callback) -> None:
        try:
            callback()
        except KeyboardInterrupt:
            raise
        except Exception:
            log(__name__).error("Error in callback", exc_info=True)

    def dispatch(self, event: tuple) -> None:
        _, type_names, dirname, fname = event
        callback = self.lookup(dirname, fname)
        if callback is None:
            return
        log(__name__).info(
            "Modification on %s detected: %s", os.path.join(dirname, fname), ",".join(type_names)
        )
        self.handle_refresh(callback)

    def run(self) -> None:
        log(__name__).info("Guard thread started")
        while self.keep_running:
            try:
                events = self.inotify.event_gen(yield_nones=False, timeout_s=self.timeout_s)
                for event in events:
                    if not self.keep_running:
                        break
                    self.dispatch(event)
            except Exception:
                log(__name__).error("Exception in Guard", exc_info=True)

        with self.lock:
            for dirname in self.files:
                try:
                    self.inotify.remove_watch(dirname)
                except Exception:
                    log(__name__).debug("Failed to remove watch on %s", dirname, exc_info=True)
            self.files = dict()
        log(__name__).info("Guard thread stopped")

    def stop(self) -> None:
        self.keep_running = False
        if self.is_alive():
            self.join()
