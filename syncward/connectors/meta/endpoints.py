"""SYNCWARD — Meta Insights Source.

Executes one chunk's insights request against the Marketing API, paced by the
tenant's rate limiter, and classifies the result.
"""

import json
from typing import Optional

import httpx

from syncward.config import settings
from syncward.connectors.base import FetchOutcome, InsightsSource, OutcomeKind
from syncward.connectors.meta.client import MetaClient, classify_meta_error
from syncward.connectors.meta.transformer import ENTITY_LEVELS, transform_insight_rows
from syncward.core.errors import MetaAPIError
from syncward.core.logging import get_logger
from syncward.engine.rate_limiter import TenantRateLimiter
from syncward.engine.retry import RetryPolicy
from syncward.models.schemas import DateChunk, TenantEntityKey

logger = get_logger("meta.endpoints")

# Default fields requested from Meta
INSIGHT_FIELDS = (
    "account_id,account_name,campaign_name,campaign_id,adset_name,adset_id,"
    "ad_name,ad_id,impressions,reach,clicks,inline_link_clicks,spend,"
    "ctr,cpc,cpm,actions,action_values"
)


class MetaInsightsSource(InsightsSource):
    """Daily insights for one Meta ad account, one level at a time."""

    def __init__(
        self,
        client: MetaClient,
        limiter: Optional[TenantRateLimiter] = None,
        policy: Optional[RetryPolicy] = None,
    ):
        self.client = client
        self.limiter = limiter
        self.policy = policy or RetryPolicy.from_settings()

    async def _pace(self, page: int) -> None:
        # The worker pool already took a slot for the first page of the job
        if page > 0 and self.limiter is not None:
            await self.limiter.acquire()

    def _params(self, level: str, chunk: DateChunk) -> dict:
        return {
            "fields": INSIGHT_FIELDS,
            "time_range": json.dumps(
                {
                    "since": chunk.start_date.isoformat(),
                    "until": chunk.end_date.isoformat(),
                }
            ),
            "time_increment": "1",
            "level": level,
            "limit": settings.meta_page_limit,
        }

    async def fetch_insights(
        self, key: TenantEntityKey, entity_ref: str, chunk: DateChunk
    ) -> FetchOutcome:
        level = key.entity_type
        if level not in ENTITY_LEVELS:
            return FetchOutcome.fatal(f"Unsupported insight level '{level}'")

        url = f"{self.client.base_url}/{entity_ref}/insights"
        try:
            data = await self.client._paginated_get(
                url, self._params(level, chunk), before_page=self._pace
            )
        except MetaAPIError as e:
            outcome = classify_meta_error(
                e.status_code,
                e.error_code,
                e.error_subcode,
                str(e),
                e.headers,
                e.is_transient,
            )
            if outcome.kind == OutcomeKind.THROTTLED and self.limiter is not None:
                self.limiter.penalize(self.policy.throttle_wait(outcome.retry_after))
            logger.warning(
                f"Insights request for {key} {chunk.start_date}→{chunk.end_date} "
                f"classified {outcome.kind.value}: {outcome.error}",
                extra={"tenant_id": key.tenant_id, "status_code": e.status_code},
            )
            return outcome
        except httpx.TimeoutException as e:
            return FetchOutcome.transient(f"Timeout: {e}")
        except httpx.RequestError as e:
            return FetchOutcome.transient(f"Request error: {e}")

        rows = transform_insight_rows(data, level)
        lo, hi = chunk.start_date.isoformat(), chunk.end_date.isoformat()
        in_range = [r for r in rows if lo <= r.date <= hi]
        if len(in_range) != len(rows):
            logger.warning(
                f"Dropped {len(rows) - len(in_range)} rows outside {lo}→{hi}",
                extra={"tenant_id": key.tenant_id},
            )
        return FetchOutcome.success(in_range)

    async def close(self) -> None:
        await self.client.close()
