import asyncio
import logging
from typing import Awaitable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def with_timeout(label: str, awaitable: Awaitable[T], timeout_s: float) -> T:
    """Await ``awaitable`` with a deadline, logging timeouts and failures."""
    logger.debug("▶ %s (timeout=%ss)", label, timeout_s)
    try:
        res = await asyncio.wait_for(awaitable, timeout=timeout_s)
        logger.debug("✅ %s", label)
        return res
    except asyncio.TimeoutError:
        logger.error("⏰ TIMEOUT in %s after %.1fs", label, timeout_s)
        raise
    except Exception:
        logger.exception("❌ ERROR in %s", label)
        raise
