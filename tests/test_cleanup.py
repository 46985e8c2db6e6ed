"""Tests for the subscription retention policy."""

from pathlib import Path
from unittest.mock import patch

import pytest

from modelhook.ops.cleanup import CleanupPolicy, CleanupType
from modelhook.ops.recovery import RecoveryManager
from modelhook.subscriptions.models import SubscriptionStatus


@pytest.fixture
def policy(store):
    return CleanupPolicy(store, inactive_days=30, error_days=7, never_triggered_days=14, batch_size=100)


@pytest.fixture
def fleet(store, backdate, ago):
    """One subscription per retention rule plus a fresh one that must survive."""

    async def _build():
        inactive = await store.subscribe("Order", ["created"], "https://hooks.example.com/inactive")
        await store.set_active(inactive.id, False)
        backdate(inactive.id, updated_at=ago(days=40), created_at=ago(days=60))

        failing = await store.subscribe("Order", ["created"], "https://hooks.example.com/failing")
        await store.record_error(failing.id, {"message": "HTTP 500", "code": 500})
        backdate(failing.id, updated_at=ago(days=10))

        silent = await store.subscribe("Order", ["created"], "https://hooks.example.com/silent")
        backdate(silent.id, created_at=ago(days=20))

        fresh = await store.subscribe("Order", ["created"], "https://hooks.example.com/fresh")
        return {"inactive": inactive, "failing": failing, "silent": silent, "fresh": fresh}

    return _build


class TestFindCandidates:

    @pytest.mark.asyncio
    async def test_each_rule(self, policy, fleet):
        subs = await fleet()

        inactive = await policy.find_candidates(CleanupType.INACTIVE)
        errors = await policy.find_candidates("errors")
        never = await policy.find_candidates(CleanupType.NEVER_TRIGGERED)

        assert [s.id for s in inactive["inactive"]] == [subs["inactive"].id]
        assert [s.id for s in errors["errors"]] == [subs["failing"].id]
        # The inactive row was created 60 days ago and never fired, so it matches here too.
        assert {s.id for s in never["never-triggered"]} == {subs["inactive"].id, subs["silent"].id}

    @pytest.mark.asyncio
    async def test_all_counts_each_subscription_once(self, policy, fleet):
        subs = await fleet()

        found = await policy.find_candidates(CleanupType.ALL)

        assert [s.id for s in found["inactive"]] == [subs["inactive"].id]
        assert [s.id for s in found["errors"]] == [subs["failing"].id]
        assert [s.id for s in found["never-triggered"]] == [subs["silent"].id]

    @pytest.mark.asyncio
    async def test_recent_error_not_a_candidate(self, store, policy):
        sub = await store.subscribe("Order", ["created"], "https://hooks.example.com/a")
        await store.record_error(sub.id, {"message": "HTTP 500", "code": 500})

        found = await policy.find_candidates(CleanupType.ERRORS)

        assert found["errors"] == []


class TestRun:

    @pytest.mark.asyncio
    async def test_dry_run_changes_nothing(self, store, policy, fleet):
        await fleet()

        report = await policy.run(CleanupType.ALL, dry_run=True)

        assert report.dry_run is True
        assert report.by_type == {"inactive": 1, "errors": 1, "never-triggered": 1}
        assert len(report.candidates) == 3
        assert report.total_processed == 0
        assert len(await store.all(include_deleted=True)) == 4
        assert await store.count_all() == 4

    @pytest.mark.asyncio
    async def test_declined_confirmation_cancels(self, store, policy, fleet):
        await fleet()
        prompts = []

        def decline(prompt):
            prompts.append(prompt)
            return False

        report = await policy.run(CleanupType.ALL, confirm=decline)

        assert report.cancelled is True
        assert prompts == ["Permanently delete 3 subscription(s)?"]
        assert await store.count_all() == 4

    @pytest.mark.asyncio
    async def test_missing_confirmation_cancels(self, store, policy, fleet):
        await fleet()

        report = await policy.run(CleanupType.ALL)

        assert report.cancelled is True
        assert await store.count_all() == 4

    @pytest.mark.asyncio
    async def test_forced_delete(self, store, policy, fleet):
        subs = await fleet()

        report = await policy.run(CleanupType.ALL, force=True)

        assert report.total_processed == 3
        assert report.total_deleted == 3
        assert report.total_archived == 0
        assert report.by_type == {"inactive": 1, "errors": 1, "never-triggered": 1}
        remaining = await store.all(include_deleted=True)
        assert [s.id for s in remaining] == [subs["fresh"].id]

    @pytest.mark.asyncio
    async def test_confirmed_archive(self, store, policy, fleet):
        subs = await fleet()

        report = await policy.run(CleanupType.ERRORS, archive=True, confirm=lambda prompt: True)

        assert report.total_archived == 1
        assert report.total_deleted == 0
        archived = await store.find_by_id(subs["failing"].id, include_deleted=True)
        assert archived.status == SubscriptionStatus.ARCHIVED.value
        assert await store.find_by_id(subs["failing"].id) is None
        assert await store.count_all() == 3

    @pytest.mark.asyncio
    async def test_nothing_to_do(self, store, policy):
        await store.subscribe("Order", ["created"], "https://hooks.example.com/a")

        report = await policy.run(CleanupType.ALL)

        assert report.cancelled is False
        assert report.total_processed == 0

    @pytest.mark.asyncio
    async def test_processes_in_batches(self, store, policy, backdate, ago):
        for i in range(5):
            sub = await store.subscribe("Order", ["created"], f"https://hooks.example.com/{i}")
            await store.set_active(sub.id, False)
            backdate(sub.id, updated_at=ago(days=40))

        with patch.object(store, "hard_delete_many", wraps=store.hard_delete_many) as spy:
            report = await policy.run(CleanupType.INACTIVE, force=True, batch_size=2)

        assert spy.await_count == 3
        assert report.total_deleted == 5
        assert await store.count_all() == 0

    @pytest.mark.asyncio
    async def test_failed_chunk_retried_per_record(self, store, policy, backdate, ago):
        ids = []
        for i in range(3):
            sub = await store.subscribe("Order", ["created"], f"https://hooks.example.com/{i}")
            await store.set_active(sub.id, False)
            backdate(sub.id, updated_at=ago(days=40))
            ids.append(sub.id)

        real_archive_many = store.archive_many

        async def flaky(chunk):
            if len(chunk) > 1 or chunk[0] == ids[1]:
                raise RuntimeError("database hiccup")
            return await real_archive_many(chunk)

        with patch.object(store, "archive_many", side_effect=flaky):
            report = await policy.run(CleanupType.INACTIVE, force=True, archive=True)

        assert report.total_archived == 2
        assert report.failed == 1
        assert [s.id for s in await store.list_inactive()] == [ids[1]]

    @pytest.mark.asyncio
    async def test_backup_before_cleanup(self, store, fleet, tmp_path):
        await fleet()
        recovery = RecoveryManager(store, tmp_path / "backups", tmp_path / "exports")
        policy = CleanupPolicy(store, recovery=recovery, backup_before_cleanup=True)

        report = await policy.run(CleanupType.ALL, force=True)

        assert report.backup_path is not None
        assert Path(report.backup_path).name.startswith("pre_cleanup_")
        assert report.total_deleted == 3
