"""
Quota Manager

Serialized admission and accounting against OrganizationQuota. All
read-modify-write cycles for a tenant run under one asyncio.Lock so
concurrent jobs of the same organization never lose an update.
"""

import asyncio
import logging
from collections import defaultdict
from typing import Dict, Optional

from .config import QuotaDefaults
from .errors import QuotaExceededError
from .models import OrganizationQuota
from .repositories import QuotaRepository

logger = logging.getLogger(__name__)


class QuotaManager:
    """
    Per-organization quota ledger.

    Responsibilities:
    - Create quotas with default limits on first use
    - Roll the period over when it has ended
    - Admit jobs (active-job slot, credits, tokens, storage) and release them
    - Record token, credit and storage consumption
    """

    def __init__(self, repository: QuotaRepository, defaults: Optional[QuotaDefaults] = None):
        self.repository = repository
        self.defaults = defaults or QuotaDefaults()
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def estimate_tokens(self, total_bytes: int) -> int:
        return int(total_bytes * self.defaults.tokens_per_byte)

    def estimate_cost(self, tokens: int) -> float:
        """Embedding cost in credits for a token count."""
        return tokens / 1000.0 * self.defaults.embedding_cost_per_1k_tokens

    async def _load(self, organization_id: str) -> OrganizationQuota:
        quota = await self.repository.get(organization_id)
        if quota is None:
            quota = OrganizationQuota(
                organization_id=organization_id,
                total_credits=self.defaults.credits,
                max_concurrent_jobs=self.defaults.max_concurrent_jobs,
                max_storage_bytes=self.defaults.max_storage_bytes,
                max_tokens_per_period=self.defaults.max_tokens_per_period,
                period_days=self.defaults.period_days,
            )
            await self.repository.add(quota)
            logger.info(f"📋 Created default quota for organization {organization_id}")
        if quota.needs_period_reset():
            quota.reset_period()
            await self.repository.update(quota)
            logger.info(f"🔄 Quota period reset for organization {organization_id}")
        return quota

    async def get_quota(self, organization_id: str) -> OrganizationQuota:
        async with self._locks[organization_id]:
            return await self._load(organization_id)

    async def admit_job(
        self,
        organization_id: str,
        estimated_tokens: int,
        required_storage_bytes: int = 0
    ) -> OrganizationQuota:
        """
        Check limits and take an active-job slot.

        Raises:
            QuotaExceededError: If any limit would be exceeded; nothing is consumed
        """
        async with self._locks[organization_id]:
            quota = await self._load(organization_id)

            if quota.is_suspended:
                raise QuotaExceededError(
                    f"Organization {organization_id} is suspended: {quota.suspension_reason}"
                )
            if not quota.can_start_job():
                raise QuotaExceededError(
                    f"Organization {organization_id} cannot start a job "
                    f"({quota.active_job_count}/{quota.max_concurrent_jobs} active, "
                    f"{quota.remaining_credits:.4f} credits left)"
                )
            if not quota.has_sufficient_tokens(estimated_tokens):
                raise QuotaExceededError(
                    f"Organization {organization_id} needs ~{estimated_tokens} tokens, "
                    f"{quota.remaining_tokens} left this period"
                )
            estimated_cost = self.estimate_cost(estimated_tokens)
            if not quota.has_sufficient_credits(estimated_cost):
                raise QuotaExceededError(
                    f"Organization {organization_id} needs ~{estimated_cost:.4f} credits, "
                    f"{quota.remaining_credits:.4f} left"
                )
            if not quota.has_sufficient_storage(required_storage_bytes):
                raise QuotaExceededError(
                    f"Organization {organization_id} needs {required_storage_bytes} bytes of storage, "
                    f"{quota.remaining_storage} left"
                )

            quota.increment_active_jobs()
            await self.repository.update(quota)
            logger.info(
                f"✅ Admitted job for {organization_id} "
                f"({quota.active_job_count}/{quota.max_concurrent_jobs} active)"
            )
            return quota

    async def release_job(self, organization_id: str, tokens_used: int = 0, storage_bytes: int = 0) -> OrganizationQuota:
        """Free the active-job slot and charge the job's actual usage."""
        async with self._locks[organization_id]:
            quota = await self._load(organization_id)
            quota.decrement_active_jobs()
            if tokens_used:
                quota.consume_tokens(tokens_used)
                quota.consume_credits(self.estimate_cost(tokens_used))
            if storage_bytes:
                quota.consume_storage(storage_bytes)
            await self.repository.update(quota)
            return quota

    async def release_storage(self, organization_id: str, storage_bytes: int) -> OrganizationQuota:
        async with self._locks[organization_id]:
            quota = await self._load(organization_id)
            quota.release_storage(storage_bytes)
            await self.repository.update(quota)
            return quota

    async def suspend(self, organization_id: str, reason: str) -> None:
        async with self._locks[organization_id]:
            quota = await self._load(organization_id)
            quota.suspend(reason)
            await self.repository.update(quota)
            logger.warning(f"⚠️ Organization {organization_id} suspended: {reason}")

    async def unsuspend(self, organization_id: str) -> None:
        async with self._locks[organization_id]:
            quota = await self._load(organization_id)
            quota.unsuspend()
            await self.repository.update(quota)
