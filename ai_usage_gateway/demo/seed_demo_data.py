# ai_usage_gateway/demo/seed_demo_data.py

import asyncio
from datetime import datetime, timezone

from ai_usage_gateway.core.pricing import calculate_cost
from ai_usage_gateway.storage.db import DEFAULT_DB_PATH
from ai_usage_gateway.storage.models import UsageRecord
from ai_usage_gateway.storage.repository import UsageRepository


def _record(actor_id, feature, model, prompt_tokens, completion_tokens, success=True, error_message=None):
    return UsageRecord(
        actor_id=actor_id,
        group_id="demo-group",
        feature=feature,
        endpoint=f"/api/ai/{feature}",
        model=model,
        prompt_tokens=prompt_tokens,
        completion_tokens=completion_tokens,
        total_tokens=prompt_tokens + completion_tokens,
        cost_cents=calculate_cost(model, prompt_tokens, completion_tokens),
        latency_ms=850,
        success=success,
        error_message=error_message,
        timestamp=datetime.now(timezone.utc)
    )


async def seed(db_path: str = DEFAULT_DB_PATH) -> None:
    repository = UsageRepository(db_path)
    await repository.initialize_schema()

    records = [
        _record("alice", "enhance-shoutout", "gpt-4o-mini", 420, 180),
        _record("alice", "team-narrative", "gpt-4o", 3200, 1100),
        _record("bob", "executive-summary", "gpt-4o", 5200, 1900),
        _record("bob", "generate-bio", "gpt-4o-mini", 0, 0, success=False, error_message="Request timed out"),
    ]
    for record in records:
        await repository.insert_usage_record(record)


if __name__ == "__main__":
    asyncio.run(seed())
    print("Demo usage data inserted")
