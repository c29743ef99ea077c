"""
Inclusion polling for submitted user operations.

The poller captures the chain head once, then queries EntryPoint
UserOperationEvent logs for the operation over a bounded backward window
until a match is found or the timeout elapses. Sleeping and the clock are
injectable so tests never wait in real time.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterator, Optional

from ..config import PollingConfig
from ..deadline import Deadline, within
from ..rpc_client import ChainProvider
from .entrypoint import USER_OPERATION_EVENT_TOPIC, UserOperationEvent, pad_topic

logger = logging.getLogger(__name__)

SleepFn = Callable[[float], Awaitable[None]]
ClockFn = Callable[[], float]


@dataclass(frozen=True)
class FixedIntervalRetry:
    """Retry schedule with a constant delay and a wall-clock budget (seconds)."""
    interval_seconds: float
    timeout_seconds: float

    @classmethod
    def from_ms(cls, interval_ms: int, timeout_ms: int) -> "FixedIntervalRetry":
        return cls(interval_seconds=interval_ms / 1000, timeout_seconds=timeout_ms / 1000)

    def delays(self) -> Iterator[float]:
        while True:
            yield self.interval_seconds


class ConfirmationPoller:
    """Waits for a UserOperationEvent matching (user_op_hash, sender)."""

    def __init__(
        self,
        provider: ChainProvider,
        entry_point: str,
        config: Optional[PollingConfig] = None,
        sleep: SleepFn = asyncio.sleep,
        clock: ClockFn = time.monotonic,
    ):
        self._provider = provider
        self._entry_point = entry_point
        self._config = config or PollingConfig()
        self._sleep = sleep
        self._clock = clock

    def _log_filter(self, sender: str, user_op_hash: str, from_block: int) -> dict:
        return {
            "address": self._entry_point,
            "topics": [USER_OPERATION_EVENT_TOPIC, user_op_hash, pad_topic(sender)],
            "fromBlock": hex(from_block),
            "toBlock": "latest",
        }

    async def await_inclusion(
        self,
        sender: str,
        user_op_hash: str,
        timeout_ms: Optional[int] = None,
        interval_ms: Optional[int] = None,
        deadline: Optional[Deadline] = None,
    ) -> Optional[UserOperationEvent]:
        """
        Poll for the inclusion event of ``user_op_hash``.

        Args:
            sender: Wallet address that sent the operation
            user_op_hash: Hash returned by the bundler
            timeout_ms: Wall-clock budget, defaults to PollingConfig.timeout_ms
            interval_ms: Delay between log queries, defaults to PollingConfig.interval_ms
            deadline: Optional overall deadline for every chain call

        Returns:
            The first matching event, or None when the timeout elapses
        """
        policy = FixedIntervalRetry.from_ms(
            self._config.interval_ms if interval_ms is None else interval_ms,
            self._config.timeout_ms if timeout_ms is None else timeout_ms,
        )

        head = await self._provider.get_block_number(deadline=deadline)
        if policy.timeout_seconds <= 0:
            logger.debug(f"Zero timeout for {user_op_hash}, not polling")
            return None

        from_block = max(0, head - self._config.lookback_blocks)
        log_filter = self._log_filter(sender, user_op_hash, from_block)
        end_time = self._clock() + policy.timeout_seconds
        attempts = 0

        delays = policy.delays()
        while self._clock() < end_time:
            attempts += 1
            logs = await self._provider.get_logs(log_filter, deadline=deadline)
            logger.debug(
                "Finding user operation %s from block %d (attempt %d)",
                user_op_hash, from_block, attempts,
            )
            if logs:
                event = UserOperationEvent.from_log(logs[0])
                logger.info(
                    f"UserOperation {user_op_hash} included in tx {event.transaction_hash}"
                )
                return event

            delay = min(next(delays), max(0.0, end_time - self._clock()))
            await within(deadline, self._sleep(delay), "confirmation_poll")

        logger.warning(
            f"UserOperation {user_op_hash} not found after {attempts} attempts "
            f"({policy.timeout_seconds:.0f}s)"
        )
        return None
