"""
Watches ~/.aws/config and ~/.aws/credentials for changes.

When either file changes (e.g. `aws configure sso` added a profile) a
ProfilesChanged event is put on the scheduler's inbound queue; the main loop
reloads the profile list on its next drain.
"""
import logging
import os
import queue
import time
from dataclasses import dataclass
from typing import Iterable, Optional

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

logger = logging.getLogger("cloudctl.watcher")


@dataclass(frozen=True)
class ProfilesChanged:
    path: str


class ProfileFileHandler(FileSystemEventHandler):
    """Handles file system events on the AWS profile files."""

    def __init__(self, paths: Iterable, events: queue.Queue, cooldown_period: float = 2.0):
        self.paths = {os.path.abspath(str(p)) for p in paths}
        self.events = events
        self.cooldown_period = cooldown_period
        self.last_event_time = 0.0

    def _handle(self, event) -> None:
        if event.is_directory:
            return
        src_path = os.path.abspath(str(event.src_path))
        if src_path not in self.paths:
            return

        # Editors and the aws CLI write several times in a row
        current_time = time.time()
        if current_time - self.last_event_time < self.cooldown_period:
            logger.debug(f"Ignoring event due to cooldown: {src_path}")
            return
        self.last_event_time = current_time

        logger.info(f"Detected change in AWS profile file: {src_path}")
        self.events.put(ProfilesChanged(src_path))

    def on_created(self, event):
        self._handle(event)

    def on_modified(self, event):
        self._handle(event)


def start_profile_watcher(paths: Iterable, events: queue.Queue) -> Optional[Observer]:
    """
    Start a watchdog observer for the given files.

    Returns:
        The running Observer, or None when none of the parent directories exist.
    """
    paths = [os.path.abspath(str(p)) for p in paths]
    handler = ProfileFileHandler(paths, events)
    observer = Observer()

    scheduled = set()
    for path in paths:
        parent_dir = os.path.dirname(path)
        if not os.path.isdir(parent_dir):
            logger.warning(f"Parent directory does not exist: {parent_dir}")
            continue
        if parent_dir not in scheduled:
            observer.schedule(handler, parent_dir, recursive=False)
            scheduled.add(parent_dir)
        logger.info(f"Monitoring file: {path}")

    if not scheduled:
        return None
    observer.daemon = True
    observer.start()
    return observer
