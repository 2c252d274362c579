"""
Lifecycle Gate

Two independent state axes per token, both driven by the ledger:

Lock:        LOCKED → UNLOCKED             (creator buys past 2% of max supply)
Completion:  NOT_COMPLETED → COMPLETED     (migration, terminal)

Neither axis ever moves backwards. The gate remembers the furthest state it
has seen for each token, so a lagging read cannot re-open a completed token
or re-lock an unlocked one.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional
import logging

from core.exceptions import TokenLaunchCompleted, TokenLocked
from core.models import TokenMarketState, TradeDirection

logger = logging.getLogger(__name__)


class LockState(Enum):
    LOCKED = "locked"
    UNLOCKED = "unlocked"


class CompletionState(Enum):
    NOT_COMPLETED = "not_completed"
    COMPLETED = "completed"


class LockPolicy(Enum):
    """What a LOCKED token means for third-party trading."""
    ADVISORY = "advisory"  # warn only
    BLOCK = "block"        # refuse buys and sells until unlocked

    @classmethod
    def parse(cls, value) -> "LockPolicy":
        if isinstance(value, cls):
            return value
        return cls(str(value).strip().lower())


VALID_TRANSITIONS = {
    LockState.LOCKED: {LockState.UNLOCKED},
    LockState.UNLOCKED: set(),
    CompletionState.NOT_COMPLETED: {CompletionState.COMPLETED},
    CompletionState.COMPLETED: set(),
}


@dataclass(frozen=True)
class LifecycleStatus:
    token_address: str
    lock: LockState
    completion: CompletionState

    @property
    def can_trade(self) -> bool:
        return self.completion is CompletionState.NOT_COMPLETED

    @property
    def locked(self) -> bool:
        return self.lock is LockState.LOCKED


def can_trade(state: TokenMarketState) -> bool:
    return not state.completed


class LifecycleGate:
    """
    Decides whether a trade may proceed given fresh ledger state.

    Keeps one LifecycleStatus per token observed, for the gate's lifetime and
    never pruned. Both axes only move forward, so an entry never goes stale;
    the gate is meant to live for one session, where the token set is small.
    """

    def __init__(self, lock_policy: LockPolicy = LockPolicy.ADVISORY):
        self.lock_policy = LockPolicy.parse(lock_policy)
        self._seen: Dict[str, LifecycleStatus] = {}
        logger.info(f"LifecycleGate initialized (lock_policy={self.lock_policy.value})")

    def observe(self, state: TokenMarketState) -> LifecycleStatus:
        """Merge a ledger read into the remembered status, never regressing an axis."""
        lock = LockState.UNLOCKED if state.unlocked else LockState.LOCKED
        completion = CompletionState.COMPLETED if state.completed else CompletionState.NOT_COMPLETED

        previous = self._seen.get(state.address)
        if previous is not None:
            lock = self._advance(previous.lock, lock, state.address)
            completion = self._advance(previous.completion, completion, state.address)

        status = LifecycleStatus(token_address=state.address, lock=lock, completion=completion)
        self._seen[state.address] = status
        return status

    @staticmethod
    def _advance(current: Enum, observed: Enum, address: str) -> Enum:
        if observed is current or observed in VALID_TRANSITIONS[current]:
            return observed
        logger.warning(
            f"Ignoring lifecycle regression for {address}: {current.value} -> {observed.value}"
        )
        return current

    def status(self, token_address: str) -> Optional[LifecycleStatus]:
        return self._seen.get(token_address)

    def check(self, state: TokenMarketState, direction: TradeDirection) -> LifecycleStatus:
        """
        Raise if the trade must not be submitted.

        Raises:
            TokenLaunchCompleted: token migrated; both directions disabled for good
            TokenLocked: token locked and lock policy is BLOCK
        """
        status = self.observe(state)
        direction = TradeDirection.parse(direction)

        if not status.can_trade:
            raise TokenLaunchCompleted(
                f"Trading disabled: {state.address} completed its launch and migrated",
                token_address=state.address,
            )

        if status.locked:
            if self.lock_policy is LockPolicy.BLOCK:
                raise TokenLocked(
                    f"{state.address} is locked until the creator holds "
                    f"{state.unlock_threshold} tokens (has {state.creator_purchased})",
                    token_address=state.address,
                )
            logger.info(f"{direction.value} on locked token {state.address} allowed (advisory lock policy)")

        return status
