"""Gateway: the single context object shared by the polling worker and the HTTP handlers."""

import logging
import threading
from typing import Any

from .bridge import ProtocolBridge
from .engine import PollingEngine, PollingSettings
from .errors import GatewayError
from .link import LinkEvent, hardware_address, on_link_event
from .registry import RegisterRegistry
from .transport import Transport
from .types import PollOutcome

logger = logging.getLogger(__name__)


class Gateway:
    """
    Owns the register registry, the transport session, the polling engine and the
    protocol bridge. Constructed once at startup and passed to whoever needs it.
    """

    def __init__(
        self,
        registry: RegisterRegistry,
        transport: Transport,
        settings: PollingSettings | None = None,
    ) -> None:
        self.registry = registry
        self.transport = transport
        self.engine = PollingEngine(registry, transport, settings)
        self.bridge = ProtocolBridge(self.engine)
        self._cancel = threading.Event()
        self._worker: threading.Thread | None = None
        self._outcome: PollOutcome | None = None
        self._started = False

    @property
    def last_outcome(self) -> PollOutcome | None:
        return self._outcome

    def start(self, probe: bool = True) -> None:
        """Open the transport and, optionally, read the first characteristic once."""
        on_link_event(LinkEvent.STARTED)
        self.transport.open()
        self._started = True
        on_link_event(LinkEvent.UP, hardware_address())
        logger.info("Modbus master stack initialized...")
        if probe and len(self.registry):
            first = next(iter(self.registry))
            try:
                self.engine.read_characteristic(first.cid)
            except GatewayError as e:
                logger.error("Characteristic #%d (%s) read fail, err = %s.", first.cid, first.name, e)

    def _run_worker(self) -> None:
        try:
            self._outcome = self.engine.run_polling_cycle(self._cancel)
        except Exception:
            logger.exception("Polling worker failed")

    def start_polling(self) -> threading.Thread:
        """Run one polling cycle on a background thread."""
        if self._worker is not None and self._worker.is_alive():
            return self._worker
        self._cancel.clear()
        self._worker = threading.Thread(target=self._run_worker, name="mbgateway-poll", daemon=True)
        self._worker.start()
        return self._worker

    def stop(self, timeout: float | None = 5.0) -> None:
        """Cancel the polling worker, wait for it, and release the transport."""
        self._cancel.set()
        if self._worker is not None:
            self._worker.join(timeout)
            self._worker = None
        if self._started:
            self.transport.close()
            self._started = False
            on_link_event(LinkEvent.DOWN)
        on_link_event(LinkEvent.STOPPED)

    def __enter__(self) -> "Gateway":
        self.start(probe=False)
        return self

    def __exit__(self, *args: Any) -> None:
        self.stop()
