"""
Shared test fixtures
====================
An in-memory DocumentStore and a pinned clock, so the services can be
exercised end to end with only the Oura HTTP layer mocked (respx).
"""

from __future__ import annotations

import copy
from datetime import date, datetime, timedelta, timezone
from typing import Optional

import pytest

from sleepolympics.config import Settings
from sleepolympics.errors import BatchWriteError
from sleepolympics.services.oura import OuraOAuthClient
from sleepolympics.services.secret_box import SecretBox
from sleepolympics.services.summary import SummaryAggregator
from sleepolympics.services.sync import SyncReconciler
from sleepolympics.services.token_manager import TokenLifecycleManager

USER_ID = "8f14e45f-ceea-467f-a0e6-0123456789ab"
NOW = datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc)

ACCESS_TOKEN = "oura-access-token-0001"
REFRESH_TOKEN = "oura-refresh-token-0001"


class FrozenClock:
    """Callable clock; tests move it with ``advance``."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class InMemoryStore:
    """DocumentStore kept in dicts. ``fail_batches`` holds write call indexes to fail."""

    def __init__(self) -> None:
        self.users: dict[str, dict] = {}
        self.oauth_states: dict[str, dict] = {}
        self.sleep: dict[tuple[str, str], dict] = {}
        self.summaries: dict[str, dict] = {}
        self.batch_writes: list[list[dict]] = []
        self.fail_batches: set[int] = set()

    async def get_user(self, user_id: str) -> Optional[dict]:
        user = self.users.get(user_id)
        return copy.deepcopy(user) if user else None

    async def update_integration(self, user_id, mutate) -> dict:
        if user_id not in self.users:
            raise LookupError(f"User not found: {user_id}")
        current = copy.deepcopy(self.users[user_id].get("oura_integration") or {})
        updated = mutate(current)
        self.users[user_id]["oura_integration"] = updated
        return copy.deepcopy(updated)

    async def put_oauth_state(self, record: dict) -> None:
        self.oauth_states[record["state"]] = dict(record)

    async def pop_oauth_state(self, state: str) -> Optional[dict]:
        return self.oauth_states.pop(state, None)

    async def get_sleep_record(self, user_id: str, date_id: str) -> Optional[dict]:
        row = self.sleep.get((user_id, date_id))
        return copy.deepcopy(row) if row else None

    async def get_sleep_records(self, user_id: str, date_ids: list[str]) -> dict[str, dict]:
        return {
            date_id: copy.deepcopy(self.sleep[(user_id, date_id)])
            for date_id in date_ids
            if (user_id, date_id) in self.sleep
        }

    async def write_sleep_batch(self, user_id: str, rows: list[dict]) -> None:
        call_index = len(self.batch_writes)
        self.batch_writes.append(rows)
        if call_index in self.fail_batches:
            raise BatchWriteError(len(rows), "simulated write failure")
        for row in rows:
            key = (user_id, row["date_id"])
            self.sleep[key] = {
                **self.sleep.get(key, {}),
                **row,
                "user_id": user_id,
                "updated_at": NOW.isoformat(),
            }

    async def list_sleep_records(
        self, user_id: str, start: Optional[date] = None, end: Optional[date] = None
    ) -> list[dict]:
        rows = [row for (owner, _), row in self.sleep.items() if owner == user_id]
        if start is not None:
            rows = [row for row in rows if row["date"] >= start.isoformat()]
        if end is not None:
            rows = [row for row in rows if row["date"] <= end.isoformat()]
        return [copy.deepcopy(row) for row in sorted(rows, key=lambda row: row["date"])]

    async def update_sleep_annotations(self, user_id, date_id, notes, tags) -> Optional[dict]:
        row = self.sleep.get((user_id, date_id))
        if row is None:
            return None
        if notes is not None:
            row["notes"] = notes
        if tags is not None:
            row["tags"] = tags
        return copy.deepcopy(row)

    async def get_summary(self, user_id: str) -> Optional[dict]:
        return copy.deepcopy(self.summaries.get(user_id))

    async def put_summary(self, user_id: str, summary: dict) -> None:
        self.summaries[user_id] = summary


def seed_connected_user(
    store: InMemoryStore,
    box: SecretBox,
    *,
    expires_at: datetime,
    last_sync_date: Optional[datetime] = None,
    token_invalid: bool = False,
    refresh_token: str = REFRESH_TOKEN,
) -> None:
    store.users[USER_ID] = {
        "id": USER_ID,
        "email": "athlete@example.com",
        "oura_integration": {
            "connected": True,
            "access_token": box.encrypt(ACCESS_TOKEN),
            "refresh_token": box.encrypt(refresh_token),
            "expires_at": expires_at.isoformat(),
            "last_refreshed": (NOW - timedelta(days=1)).isoformat(),
            "last_sync_date": last_sync_date.isoformat() if last_sync_date else None,
            "token_invalid": token_invalid,
            "connected_at": (NOW - timedelta(days=30)).isoformat(),
        },
    }


def sleep_row(day: str, score: int, **extra) -> dict:
    row = {
        "user_id": USER_ID,
        "date_id": day,
        "date": day,
        "score": score,
        "metrics": {},
        "tags": [],
        "notes": "",
        "source_data": {"provider": "oura", "source_type": "oura_sleep", "source_id": f"oura-{day}"},
    }
    row.update(extra)
    return row


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def settings() -> Settings:
    return Settings(
        encryption_key="test-encryption-secret",
        oura_client_id="test-client-id",
        oura_client_secret="test-client-secret",
        oura_redirect_uri="http://localhost:8000/api/v1/oura/callback",
        frontend_url="http://localhost:3000/oura",
        environment="development",
        sync_batch_size=25,
    )


@pytest.fixture
def box(settings: Settings) -> SecretBox:
    return SecretBox(settings.encryption_key)


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(NOW)


@pytest.fixture
def oauth(settings: Settings, box: SecretBox) -> OuraOAuthClient:
    return OuraOAuthClient(settings, box)


@pytest.fixture
def tokens(store, oauth, box, settings, clock) -> TokenLifecycleManager:
    return TokenLifecycleManager(store, oauth, box, settings, clock=clock)


@pytest.fixture
def summaries(store, settings, clock) -> SummaryAggregator:
    return SummaryAggregator(store, settings, clock=clock)


@pytest.fixture
def reconciler(store, tokens, oauth, summaries, settings, clock) -> SyncReconciler:
    return SyncReconciler(store, tokens, oauth, summaries, settings, clock=clock)
