from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import text


@dataclass
class SourceWatermark:
    user_id: str
    source_type: str
    status: str
    last_synced_at: datetime | None


def _parse_timestamp(value: Any) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def effective_since(
    watermark: SourceWatermark | None,
    *,
    lookback_days: int,
    now: datetime | None = None,
) -> datetime:
    """Start of the next incremental pull; missing or unparseable watermarks use the lookback window."""
    current = now or datetime.now(timezone.utc)
    fallback = current - timedelta(days=lookback_days)
    if watermark is None:
        return fallback
    synced_at = _parse_timestamp(watermark.last_synced_at)
    if synced_at is None or synced_at > current:
        return fallback
    return synced_at


class SourceWatermarkRepository:
    def __init__(self, db: Any):
        self.db = db

    def get(self, user_id: str, source_type: str) -> SourceWatermark | None:
        result = self.db.execute(
            text(
                """
                SELECT user_id, source_type, status, last_synced_at
                FROM sources
                WHERE user_id = :user_id AND source_type = :source_type
                """
            ),
            {"user_id": user_id, "source_type": source_type},
        )
        row = result.mappings().first()
        if not row:
            return None
        return SourceWatermark(
            user_id=str(row["user_id"]),
            source_type=str(row["source_type"]),
            status=str(row.get("status") or "connected"),
            last_synced_at=_parse_timestamp(row.get("last_synced_at")),
        )

    def advance(self, user_id: str, source_type: str, synced_at: datetime) -> None:
        self.db.execute(
            text(
                """
                INSERT INTO sources (user_id, source_type, status, last_synced_at)
                VALUES (:user_id, :source_type, 'connected', :last_synced_at)
                ON CONFLICT (user_id, source_type)
                DO UPDATE SET last_synced_at = EXCLUDED.last_synced_at, status = 'connected'
                """
            ),
            {"user_id": user_id, "source_type": source_type, "last_synced_at": synced_at},
        )

    def mark_disconnected(self, user_id: str, source_type: str) -> None:
        self.db.execute(
            text(
                """
                UPDATE sources
                SET status = 'disconnected'
                WHERE user_id = :user_id AND source_type = :source_type
                """
            ),
            {"user_id": user_id, "source_type": source_type},
        )
