"""Background supervision of broker connections."""

from __future__ import annotations

import threading
from typing import Dict, Optional, Sequence

from imgpipe.broker.client import BrokerClient, ConnectionState
from imgpipe.core.errors import BrokerConnectionError
from imgpipe.core.logging import get_logger

logger = get_logger(__name__)


class ConnectionSupervisor:
    """Probe clients periodically and reconnect once per dropped connection.

    A client that is ``connected`` but fails its liveness probe has lost its
    connection. The supervisor makes a single reconnect attempt for that event.
    When the attempt fails the client is left ``disconnected`` and is not
    retried here; the next publish or poll reconnects on demand.
    """

    def __init__(self, clients: Sequence[BrokerClient], interval: float = 5.0) -> None:
        self._clients = list(clients)
        self._interval = interval
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def states(self) -> Dict[str, ConnectionState]:
        return {client.name: client.state for client in self._clients}

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def check(self) -> None:
        """Run one probe pass over every supervised client."""

        for client in self._clients:
            if client.state is not ConnectionState.connected:
                continue
            if client.is_alive():
                continue

            logger.warning("broker_connection_lost", client=client.name)
            client.mark_disconnected()
            try:
                client.reconnect()
            except BrokerConnectionError as exc:
                logger.error("broker_reconnect_failed", client=client.name, error=str(exc))
            else:
                logger.info("broker_reconnected", client=client.name)

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="broker-supervisor", daemon=True)
        self._thread.start()

    def stop(self, timeout: float | None = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout if timeout is not None else self._interval + 1)
            self._thread = None

    def _run(self) -> None:
        logger.info("broker_supervisor_started", clients=list(self.states))
        while not self._stop.wait(self._interval):
            self.check()
        logger.info("broker_supervisor_stopped")
