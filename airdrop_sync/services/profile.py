"""User profile lookup with not-found retry."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

from ..errors import StoreError
from ..resilience import Sleep
from ..store.postgrest import PostgrestStore

logger = logging.getLogger(__name__)


async def load_profile(
    store: PostgrestStore,
    user_id: str,
    retries: int = 5,
    delay: float = 0.5,
    sleep: Sleep = asyncio.sleep,
) -> Optional[dict[str, Any]]:
    """Load the ``users`` row for ``user_id``.

    A freshly signed-up user's row may not exist yet, so "not found" errors
    are retried with a growing delay (x1.5) and then reported as ``None``.
    Any other store error is raised.
    """
    if not user_id:
        logger.warning("load_profile called without user_id")
        return None

    while True:
        try:
            return await store.select("users", {"id": user_id}, single=True)
        except StoreError as e:
            if not e.is_not_found():
                logger.error(
                    "Error loading profile: code=%s message=%s details=%s hint=%s",
                    e.code, e.message, e.details, e.hint,
                )
                raise
            if retries <= 0:
                logger.warning("Profile not found for user %s after retries", user_id)
                return None
            await sleep(delay)
            retries -= 1
            delay *= 1.5
