from __future__ import annotations

import logging
import threading

from ebs_tagger.src.dispatcher import WatchDispatcher
from ebs_tagger.src.leader import LeaseLeaderElector

LOGGER = logging.getLogger(__name__)


class LeadershipCoordinator:
    """Runs the PVC watch dispatcher only while this replica holds the lease.

    ``on_started_leading`` starts the dispatcher; ``on_stopped_leading``
    stops it and waits for every namespace thread to exit before returning,
    which the elector relies on before releasing the lease.  If the threads
    do not stop in time, the lease is left to expire instead of being
    released and the process is asked to shut down.

    With ``exit_on_lost`` (the default) a replica that loses leadership after
    having led requests shutdown so the orchestrator restarts it fresh.
    """

    def __init__(
        self,
        elector: LeaseLeaderElector,
        dispatcher: WatchDispatcher,
        shutdown_event: threading.Event,
        exit_on_lost: bool = True,
        stop_timeout_seconds: float = 45.0,
    ) -> None:
        self.elector = elector
        self.dispatcher = dispatcher
        self.shutdown_event = shutdown_event
        self.exit_on_lost = exit_on_lost
        self.stop_timeout_seconds = stop_timeout_seconds
        self.leading = threading.Event()
        self.lost_leadership = False
        self.unclean_stop = False
        self._lock = threading.Lock()

    def on_started_leading(self) -> None:
        with self._lock:
            if self.shutdown_event.is_set():
                return
            if self.dispatcher.running:
                LOGGER.error(
                    "Refusing to start PVC watchers while previous watchers are still running"
                )
                self.unclean_stop = True
                self.shutdown_event.set()
                return
            self.dispatcher.start()
            self.leading.set()

    def on_stopped_leading(self) -> None:
        with self._lock:
            was_leading = self.leading.is_set()
            self.leading.clear()
            stopped = self.dispatcher.stop(timeout=self.stop_timeout_seconds)
            if not stopped:
                LOGGER.error(
                    "PVC watchers did not stop within %ss; leaving lease %s to expire "
                    "and shutting down",
                    self.stop_timeout_seconds,
                    self.elector.lease_name,
                )
                self.elector.release_on_cancel = False
                self.unclean_stop = True
                self.shutdown_event.set()
                return

            if was_leading and not self.shutdown_event.is_set():
                self.lost_leadership = True
                LOGGER.info("Leader lost: %s", self.elector.identity)
                if self.exit_on_lost:
                    self.shutdown_event.set()

    def on_new_leader(self, identity: str) -> None:
        if identity == self.elector.identity:
            return
        LOGGER.info("New leader elected: %s", identity)

    def run(self) -> None:
        """Block in the election loop until shutdown is requested."""
        self.elector.run(
            on_started_leading=self.on_started_leading,
            on_stopped_leading=self.on_stopped_leading,
            stop_event=self.shutdown_event,
            on_new_leader=self.on_new_leader,
        )
