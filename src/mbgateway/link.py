"""Link-state notifications. The gateway never waits on these; it only logs them."""

import logging
import uuid
from enum import Enum

logger = logging.getLogger(__name__)


class LinkEvent(str, Enum):
    UP = "up"
    DOWN = "down"
    STARTED = "started"
    STOPPED = "stopped"


def hardware_address() -> str:
    """MAC-style identifier of this host, as reported with the Up event."""
    node = uuid.getnode()
    return ":".join(f"{(node >> shift) & 0xFF:02x}" for shift in range(40, -1, -8))


def on_link_event(event: LinkEvent, hw_addr: str | None = None) -> None:
    if event is LinkEvent.UP:
        logger.info("Link Up")
        if hw_addr:
            logger.info("Link HW Addr %s", hw_addr)
    elif event is LinkEvent.DOWN:
        logger.info("Link Down")
    elif event is LinkEvent.STARTED:
        logger.info("Link Started")
    elif event is LinkEvent.STOPPED:
        logger.info("Link Stopped")


def on_address(ip: str, port: int) -> None:
    logger.info("Got address %s:%d", ip, port)
