"""
Async Supabase helpers for the tables used by the synthesis pipeline.

Provides thin wrappers around the Supabase async client for:
subscriptions, plans, usage_records, synthesis_jobs and the
increment_usage Postgres function. Table names come from TableConfig so
repositories stay schema-agnostic.
"""

from datetime import datetime, timezone
from typing import Any

import structlog
from supabase._async.client import AsyncClient as AsyncSupabaseClient

from ttsgate.config import TableConfig

logger = structlog.get_logger(__name__)


def _first(data: Any) -> dict | None:
    if isinstance(data, list):
        return data[0] if data else None
    return data or None


# ---------------------------------------------------------------------------
# subscriptions / plans
# ---------------------------------------------------------------------------


async def list_user_subscriptions(
    client: AsyncSupabaseClient, tables: TableConfig, user_id: str, limit: int = 10
) -> list[dict]:
    """Latest subscriptions for a user, newest first."""
    response = (
        await client.table(tables.subscriptions)
        .select("*")
        .eq("user_id", user_id)
        .order("created_at", desc=True)
        .limit(limit)
        .execute()
    )
    return response.data or []


async def get_plan(
    client: AsyncSupabaseClient, tables: TableConfig, plan_id: str
) -> dict | None:
    """Fetch a plan row. Returns None if not found."""
    response = (
        await client.table(tables.plans)
        .select("*")
        .eq("id", plan_id)
        .limit(1)
        .execute()
    )
    return _first(response.data)


async def expire_subscription(
    client: AsyncSupabaseClient, tables: TableConfig, subscription_id: str
) -> bool:
    """Set status=expired only if the subscription is still active.

    Returns True when this call performed the transition.
    """
    response = (
        await client.table(tables.subscriptions)
        .update({"status": "expired", "updated_at": datetime.now(timezone.utc).isoformat()})
        .eq("id", subscription_id)
        .eq("status", "active")
        .execute()
    )
    return bool(response.data)


# ---------------------------------------------------------------------------
# usage_records
# ---------------------------------------------------------------------------


async def get_usage_record(
    client: AsyncSupabaseClient, tables: TableConfig, user_id: str, period_key: str
) -> dict | None:
    response = (
        await client.table(tables.usage_records)
        .select("*")
        .eq("user_id", user_id)
        .eq("period_key", period_key)
        .limit(1)
        .execute()
    )
    return _first(response.data)


async def ensure_usage_record(
    client: AsyncSupabaseClient,
    tables: TableConfig,
    user_id: str,
    subscription_id: str | None,
    period_key: str,
) -> dict:
    """Create the period's usage row if missing, never touching existing counters."""
    await (
        client.table(tables.usage_records)
        .upsert(
            {
                "user_id": user_id,
                "subscription_id": subscription_id,
                "period_key": period_key,
            },
            on_conflict="user_id,period_key",
            ignore_duplicates=True,
        )
        .execute()
    )
    row = await get_usage_record(client, tables, user_id, period_key)
    if row is None:
        raise RuntimeError(f"Usage record for {user_id}/{period_key} could not be created")
    return row


async def increment_usage(
    client: AsyncSupabaseClient,
    tables: TableConfig,
    *,
    user_id: str,
    subscription_id: str | None,
    period_key: str,
    characters: int,
    duration_seconds: int,
    used_at: datetime,
) -> dict:
    """Atomic upsert-and-increment of the usage counters (single SQL statement)."""
    response = await client.rpc(
        tables.increment_usage_function,
        {
            "p_user_id": user_id,
            "p_subscription_id": subscription_id,
            "p_period_key": period_key,
            "p_characters": characters,
            "p_duration_seconds": duration_seconds,
            "p_used_at": used_at.isoformat(),
        },
    ).execute()
    row = _first(response.data)
    if row is None:
        raise RuntimeError(f"{tables.increment_usage_function} returned no row")
    return row


async def delete_usage_records(
    client: AsyncSupabaseClient, tables: TableConfig, user_id: str
) -> int:
    response = await client.table(tables.usage_records).delete().eq("user_id", user_id).execute()
    return len(response.data or [])


# ---------------------------------------------------------------------------
# synthesis_jobs
# ---------------------------------------------------------------------------


async def insert_job(client: AsyncSupabaseClient, tables: TableConfig, job_data: dict) -> dict:
    response = await client.table(tables.synthesis_jobs).insert(job_data).execute()
    return _first(response.data) or job_data


async def update_job(
    client: AsyncSupabaseClient, tables: TableConfig, job_id: str, updates: dict
) -> dict | None:
    response = (
        await client.table(tables.synthesis_jobs)
        .update(updates)
        .eq("id", job_id)
        .execute()
    )
    return _first(response.data)


async def record_job_download(
    client: AsyncSupabaseClient, tables: TableConfig, job_id: str, downloaded_at: datetime
) -> dict | None:
    """Increment the download counter in the database; None if the job is gone."""
    response = await client.rpc(
        tables.record_download_function,
        {"p_job_id": job_id, "p_downloaded_at": downloaded_at.isoformat()},
    ).execute()
    return _first(response.data)


async def get_job(
    client: AsyncSupabaseClient, tables: TableConfig, job_id: str
) -> dict | None:
    response = (
        await client.table(tables.synthesis_jobs)
        .select("*")
        .eq("id", job_id)
        .limit(1)
        .execute()
    )
    return _first(response.data)


async def count_processing_jobs(
    client: AsyncSupabaseClient,
    tables: TableConfig,
    user_id: str,
    exclude_job_id: str | None = None,
) -> int:
    query = (
        client.table(tables.synthesis_jobs)
        .select("id", count="exact")
        .eq("user_id", user_id)
        .eq("status", "processing")
    )
    if exclude_job_id:
        query = query.neq("id", exclude_job_id)
    response = await query.execute()
    return response.count or 0


async def list_user_jobs(
    client: AsyncSupabaseClient,
    tables: TableConfig,
    user_id: str,
    *,
    status: str | None,
    offset: int,
    limit: int,
) -> tuple[list[dict], int]:
    """One page of a user's jobs, newest first, plus the total count."""
    query = (
        client.table(tables.synthesis_jobs)
        .select("*", count="exact")
        .eq("user_id", user_id)
    )
    if status:
        query = query.eq("status", status)
    response = (
        await query.order("created_at", desc=True)
        .range(offset, offset + limit - 1)
        .execute()
    )
    return response.data or [], response.count or 0


async def list_jobs_older_than(
    client: AsyncSupabaseClient,
    tables: TableConfig,
    cutoff: datetime,
    status: str,
) -> list[dict]:
    response = (
        await client.table(tables.synthesis_jobs)
        .select("*")
        .eq("status", status)
        .lt("created_at", cutoff.isoformat())
        .order("created_at", desc=False)
        .execute()
    )
    return response.data or []


async def list_job_storage_keys(client: AsyncSupabaseClient, tables: TableConfig) -> set[str]:
    response = (
        await client.table(tables.synthesis_jobs)
        .select("storage_key")
        .not_.is_("storage_key", "null")
        .execute()
    )
    return {row["storage_key"] for row in response.data or [] if row.get("storage_key")}


async def delete_job(client: AsyncSupabaseClient, tables: TableConfig, job_id: str) -> bool:
    response = await client.table(tables.synthesis_jobs).delete().eq("id", job_id).execute()
    return bool(response.data)


async def delete_user_jobs(
    client: AsyncSupabaseClient, tables: TableConfig, user_id: str
) -> list[dict]:
    """Delete all of a user's jobs and return the deleted rows."""
    response = (
        await client.table(tables.synthesis_jobs).delete().eq("user_id", user_id).execute()
    )
    deleted = response.data or []
    logger.info("supabase_user_jobs_deleted", user_id=user_id, count=len(deleted))
    return deleted
