import asyncio
import signal
from typing import Callable, List, Optional

from stream_queue.core.logging import get_logger

logger = get_logger(__name__)

STOP_SIGNALS = (signal.SIGTERM, signal.SIGINT)


def install_signal_handlers(on_stop: Callable[[], None],
                            on_reload: Optional[Callable[[], None]] = None) -> List[int]:
    """
    Route SIGTERM/SIGINT to ``on_stop`` and SIGHUP to ``on_reload`` on the running loop.

    Returns the signals that were installed so they can be removed later.
    Platforms or threads without loop signal support get none.
    """
    loop = asyncio.get_running_loop()
    installed = []
    wanted = [(sig, on_stop) for sig in STOP_SIGNALS]
    if on_reload is not None and hasattr(signal, "SIGHUP"):
        wanted.append((signal.SIGHUP, on_reload))

    for sig, callback in wanted:
        try:
            loop.add_signal_handler(sig, callback)
        except (NotImplementedError, RuntimeError, ValueError) as e:
            logger.warning("Signal handling disabled", signal=int(sig), error=str(e))
            continue
        installed.append(sig)

    if installed:
        logger.info("Signal handlers registered", signals=[int(s) for s in installed])
    return installed


def remove_signal_handlers(installed: List[int]):
    loop = asyncio.get_running_loop()
    for sig in installed:
        loop.remove_signal_handler(sig)
