from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from storagegate.core.config import get_settings
from storagegate.core.errors import StorageBackendError


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CallPolicy:
    # External calls in the request path are bounded and never retried silently.
    timeout_ms: int


def default_call_policy() -> CallPolicy:
    return CallPolicy(timeout_ms=get_settings().object_storage_timeout_ms)


async def bounded_call(
    func: Callable[[], Awaitable[Any]],
    *,
    operation: str,
    policy: CallPolicy | None = None,
) -> Any:
    # Enforce the timeout and surface it as a retryable backend error for the caller.
    policy = policy or default_call_policy()
    try:
        return await asyncio.wait_for(func(), timeout=policy.timeout_ms / 1000.0)
    except asyncio.TimeoutError as exc:
        logger.warning("external_call_timeout operation=%s timeout_ms=%s", operation, policy.timeout_ms)
        raise StorageBackendError(
            f"{operation} timed out",
            details={"operation": operation, "timeout_ms": policy.timeout_ms},
        ) from exc
