"""Helpers for crossing the ChainClient boundary.

Every failure that is not already a domain error (transport errors,
timeouts, reverted receipts) surfaces as ChainCallFailed. Writes are never
retried here; idempotent reads are retried with tenacity.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from secure_ops.domain.exceptions import ChainCallFailed, SecureOpsError
from secure_ops.logging_config import get_logger

if TYPE_CHECKING:
    from secure_ops.domain.protocols import (
        CallDescriptor,
        ChainClient,
        ChainQuery,
        Receipt,
        TransactionHandle,
    )

logger = get_logger(__name__)


async def submit_call(
    chain: ChainClient, call: CallDescriptor, timeout: float
) -> TransactionHandle:
    """Submit a call, giving up after ``timeout`` seconds."""
    try:
        async with asyncio.timeout(timeout):
            return await chain.submit(call)
    except SecureOpsError:
        raise
    except TimeoutError as exc:
        logger.warning("chain.submit_timeout", function=call.function, timeout=timeout)
        raise ChainCallFailed(f"{call.function} submission timed out after {timeout}s") from exc
    except Exception as exc:
        logger.warning("chain.submit_failed", function=call.function, error=str(exc))
        raise ChainCallFailed(f"{call.function} submission failed: {exc}") from exc


async def wait_receipt(
    handle: TransactionHandle, timeout: float, require_success: bool = True
) -> Receipt:
    """Wait for a receipt; by default a reverted receipt raises ChainCallFailed."""
    try:
        async with asyncio.timeout(timeout):
            receipt = await handle.wait()
    except SecureOpsError:
        raise
    except TimeoutError as exc:
        raise ChainCallFailed(
            f"No receipt for {handle.tx_hash} after {timeout}s", tx_hash=handle.tx_hash
        ) from exc
    except Exception as exc:
        raise ChainCallFailed(f"Receipt wait failed: {exc}", tx_hash=handle.tx_hash) from exc

    if require_success and not receipt.success:
        raise ChainCallFailed(
            f"Transaction reverted: {receipt.error or 'no reason given'}",
            tx_hash=receipt.tx_hash,
        )
    return receipt


async def submit_and_wait(chain: ChainClient, call: CallDescriptor, timeout: float) -> Receipt:
    """Submit a call and wait for its successful receipt."""
    handle = await submit_call(chain, call, timeout)
    return await wait_receipt(handle, timeout)


async def read_with_retry(chain: ChainClient, query: ChainQuery, attempts: int) -> Any:
    """Run a read-only query, retrying transient failures with exponential backoff."""
    async for attempt in AsyncRetrying(
        stop=stop_after_attempt(max(1, attempts)),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=5),
        retry=retry_if_exception_type(ChainCallFailed),
        reraise=True,
    ):
        with attempt:
            try:
                return await chain.read(query)
            except SecureOpsError:
                raise
            except Exception as exc:
                logger.warning("chain.read_failed", query=query.name, error=str(exc))
                raise ChainCallFailed(f"Read {query.name} failed: {exc}") from exc
    raise AssertionError("unreachable")
