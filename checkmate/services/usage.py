import asyncio
import hashlib
import logging
from datetime import datetime, timezone
from typing import Callable

from pydantic import BaseModel

from checkmate.stores.kv import KVStore

log = logging.getLogger(__name__)

PER_CALLER_DAILY_LIMIT = 5
GLOBAL_DAILY_LIMIT = 100


class QuotaStatus(BaseModel):
    allowed: bool
    caller_remaining: int
    global_remaining: int


class UsageEnvelope(BaseModel):
    remaining: int
    limit: int
    allowed: bool = True


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def hash_caller(caller_id: str) -> str:
    return hashlib.sha256(caller_id.encode("utf-8")).hexdigest()


class UsageLimiter:
    """
    Daily per-caller and global quotas over a plain get/set store.

    Counters are read then written without any compare-and-swap, so two
    overlapping increments can collapse into one. The quota is a soft cap.
    """

    def __init__(
        self,
        store: KVStore,
        per_caller_limit: int = PER_CALLER_DAILY_LIMIT,
        global_limit: int = GLOBAL_DAILY_LIMIT,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.per_caller_limit = per_caller_limit
        self.global_limit = global_limit
        self.clock = clock

    def date_key(self) -> str:
        return self.clock().astimezone(timezone.utc).strftime("%Y-%m-%d")

    def _keys(self, caller_id: str) -> tuple[str, str]:
        date_key = self.date_key()
        return f"ip:{hash_caller(caller_id)}:{date_key}", f"global:{date_key}"

    async def _get_count(self, key: str) -> int:
        try:
            value = await self.store.get(key)
        except Exception as e:
            log.warning(f"Usage store read failed for {key}, assuming zero: {e}")
            return 0
        if value is None:
            return 0
        try:
            return max(0, int(value))
        except ValueError:
            log.warning(f"Non-integer usage counter at {key}: {value!r}")
            return 0

    async def check_quota(self, caller_id: str) -> QuotaStatus:
        caller_key, global_key = self._keys(caller_id)
        caller_count, global_count = await asyncio.gather(
            self._get_count(caller_key), self._get_count(global_key)
        )

        caller_remaining = max(0, self.per_caller_limit - caller_count)
        global_remaining = max(0, self.global_limit - global_count)
        return QuotaStatus(
            allowed=caller_remaining > 0 and global_remaining > 0,
            caller_remaining=caller_remaining,
            global_remaining=global_remaining,
        )

    async def record_usage(self, caller_id: str) -> None:
        caller_key, global_key = self._keys(caller_id)
        caller_count, global_count = await asyncio.gather(
            self._get_count(caller_key), self._get_count(global_key)
        )

        try:
            await self.store.set(caller_key, str(caller_count + 1))
            await self.store.set(global_key, str(global_count + 1))
        except Exception as e:
            log.warning(f"Usage store write failed, usage not recorded: {e}")
            return
        log.info(
            f"Usage recorded: caller={caller_count + 1}/{self.per_caller_limit} "
            f"global={global_count + 1}/{self.global_limit}"
        )

    async def get_usage(self, caller_id: str) -> UsageEnvelope:
        status = await self.check_quota(caller_id)
        return UsageEnvelope(
            remaining=status.caller_remaining,
            limit=self.per_caller_limit,
            allowed=status.allowed,
        )


def make_usage_limiter(
    store: KVStore, per_caller_limit: int, global_limit: int
) -> UsageLimiter:
    return UsageLimiter(
        store=store, per_caller_limit=per_caller_limit, global_limit=global_limit
    )
