"""Tests for the usage ledger (voicegate_api.services.usage_ledger)."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import select
from voicegate_core.plans import PlanTier, UsageKind, WarningLevel
from voicegate_core.state.tables import AssistantTable, AuditLogTable, SyncJobTable
from voicegate_core.sync import DOWNGRADE_PRIORITY

from voicegate_api.services.enforcement_processor import EnforcementProcessor
from voicegate_api.services.usage_ledger import (
    MINUTES_EXHAUSTED_REASON,
    PERIOD_ROLLOVER_REASON,
    TenantNotProvisionedError,
    UsageLedger,
    UsageLimitExceededError,
)

# ---------------------------------------------------------------------------
# can_perform: minutes
# ---------------------------------------------------------------------------


class TestMinutesCheck:
    @pytest.mark.asyncio
    async def test_within_limit_allowed(self, seed, session):
        await seed.tenant("t1", minutes_used=5)
        decision = await UsageLedger(session, tenant_id="t1").can_perform(UsageKind.MINUTES, 3)
        assert decision.allowed is True
        assert decision.current_usage == 5
        assert decision.limit == 10
        assert decision.message is None

    @pytest.mark.asyncio
    async def test_exactly_reaching_limit_allowed(self, seed, session):
        await seed.tenant("t1", minutes_used=9)
        decision = await UsageLedger(session, tenant_id="t1").can_perform("minutes", 1)
        assert decision.allowed is True

    @pytest.mark.asyncio
    async def test_overshoot_refused_with_usage_in_message(self, seed, session):
        await seed.tenant("t1", minutes_used=9)
        decision = await UsageLedger(session, tenant_id="t1").can_perform("minutes", 2)

        assert decision.allowed is False
        assert decision.current_usage == 9
        assert decision.limit == 10
        assert decision.message == (
            "Monthly call minutes limit reached (9/10). Upgrade your plan for more minutes."
        )

    @pytest.mark.asyncio
    async def test_refusal_raises_structured_error(self, seed, session):
        await seed.tenant("t1", minutes_used=9)
        decision = await UsageLedger(session, tenant_id="t1").can_perform("minutes", 2)

        with pytest.raises(UsageLimitExceededError) as excinfo:
            decision.raise_if_refused()
        assert excinfo.value.to_dict() == {
            "code": "USAGE_LIMIT_EXCEEDED",
            "message": decision.message,
            "limit_type": "minutes",
            "current": 9,
            "limit": 10,
        }

    @pytest.mark.asyncio
    async def test_zero_limit_never_allowed(self, seed, session):
        await seed.tenant("t1", minutes_limit=0)
        decision = await UsageLedger(session, tenant_id="t1").can_perform("minutes", 0)
        assert decision.allowed is False

    @pytest.mark.asyncio
    async def test_negative_increment_rejected(self, seed, session):
        await seed.tenant("t1")
        with pytest.raises(ValueError):
            await UsageLedger(session, tenant_id="t1").can_perform("minutes", -1)

    @pytest.mark.asyncio
    async def test_unknown_action_rejected(self, seed, session):
        await seed.tenant("t1")
        with pytest.raises(ValueError):
            await UsageLedger(session, tenant_id="t1").can_perform("sms", 1)

    @pytest.mark.asyncio
    async def test_unprovisioned_tenant(self, session):
        with pytest.raises(TenantNotProvisionedError) as excinfo:
            await UsageLedger(session, tenant_id="ghost").can_perform("minutes", 1)
        assert excinfo.value.tenant_id == "ghost"


# ---------------------------------------------------------------------------
# can_perform: assistants
# ---------------------------------------------------------------------------


class TestAssistantsCheck:
    @pytest.mark.asyncio
    async def test_counts_active_rows_live(self, seed, session):
        await seed.tenant("t1", PlanTier.PRO, assistant_count=0)
        for i in range(3):
            await seed.assistant("t1", f"a{i}", age=i)
        await seed.assistant("t1", "gone", active=False)

        decision = await UsageLedger(session, tenant_id="t1").can_perform(UsageKind.ASSISTANTS)
        assert decision.current_usage == 3
        assert decision.limit == 10
        assert decision.allowed is True

    @pytest.mark.asyncio
    async def test_free_tier_second_assistant_refused(self, seed, session):
        await seed.tenant("t1")
        await seed.assistant("t1", "a1")

        decision = await UsageLedger(session, tenant_id="t1").can_perform("assistants")
        assert decision.allowed is False
        assert decision.message == (
            "Assistant limit reached (1/1). Upgrade your plan to create more assistants."
        )


# ---------------------------------------------------------------------------
# Accounting and summary
# ---------------------------------------------------------------------------


class TestAccounting:
    @pytest.mark.asyncio
    async def test_record_call_minutes_accumulates(self, seed, session):
        await seed.tenant("t1", PlanTier.PRO)
        ledger = UsageLedger(session, tenant_id="t1")
        assert await ledger.record_call_minutes(2.5) == 2.5
        assert await ledger.record_call_minutes(4) == 6.5
        await session.commit()

        decision = await ledger.can_perform("minutes", 0)
        assert decision.current_usage == 6.5

    @pytest.mark.asyncio
    async def test_recording_may_exceed_limit(self, seed, session):
        # Calls are accounted after they happened; the next check refuses.
        await seed.tenant("t1", minutes_used=9)
        ledger = UsageLedger(session, tenant_id="t1")
        assert await ledger.record_call_minutes(3) == 12
        assert (await ledger.can_perform("minutes", 0)).allowed is False

    @pytest.mark.asyncio
    async def test_negative_minutes_rejected(self, seed, session):
        await seed.tenant("t1")
        with pytest.raises(ValueError):
            await UsageLedger(session, tenant_id="t1").record_call_minutes(-1)

    @pytest.mark.asyncio
    async def test_rollover_resets_minutes(self, seed, session):
        await seed.tenant("t1", minutes_used=8)
        ledger = UsageLedger(session, tenant_id="t1")
        start = datetime(2026, 2, 1, tzinfo=UTC)
        assert await ledger.rollover_period(start, start + timedelta(days=28)) == []

        summary = await ledger.usage_summary()
        assert summary["minutes"]["used"] == 0
        assert summary["period_start"] == start.isoformat()

    @pytest.mark.asyncio
    async def test_rollover_rejects_inverted_period(self, seed, session):
        await seed.tenant("t1")
        start = datetime(2026, 2, 1, tzinfo=UTC)
        with pytest.raises(ValueError):
            await UsageLedger(session, tenant_id="t1").rollover_period(start, start)

    @pytest.mark.asyncio
    async def test_refresh_assistant_count(self, seed, session):
        await seed.tenant("t1", PlanTier.PRO)
        await seed.assistant("t1", "a1")
        await seed.assistant("t1", "a2", age=1)
        assert await UsageLedger(session, tenant_id="t1").refresh_assistant_count() == 2

    @pytest.mark.asyncio
    async def test_usage_summary_warning_levels(self, seed, session):
        await seed.tenant("t1", PlanTier.PRO, minutes_used=85)
        for i in range(10):
            await seed.assistant("t1", f"a{i}", age=i)

        ledger = UsageLedger(session, tenant_id="t1")
        summary = await ledger.usage_summary()
        assert summary["plan_tier"] == "pro"
        assert summary["minutes"] == {"used": 85.0, "limit": 100, "percentage": 85.0, "warning_level": "warning"}
        assert summary["assistants"]["percentage"] == 100.0
        assert summary["assistants"]["warning_level"] == "critical"
        assert await ledger.warning_for("minutes") is WarningLevel.WARNING

    @pytest.mark.asyncio
    async def test_provision_new_tenant(self, session):
        ledger = UsageLedger(session, tenant_id="fresh")
        record = await ledger.provision()
        assert record.plan_tier == "free"
        assert record.assistant_limit == 1
        assert record.minutes_limit == 10

        with pytest.raises(ValueError, match="already provisioned"):
            await ledger.provision(PlanTier.PRO)


# ---------------------------------------------------------------------------
# Minutes exhaustion
# ---------------------------------------------------------------------------


async def _jobs(session_factory) -> dict[str, tuple[str, str]]:
    async with session_factory() as db_session:
        rows = (await db_session.execute(select(SyncJobTable))).scalars().all()
    return {row.resource_id: (row.action, row.reason) for row in rows}


async def _limited(session_factory) -> list[str]:
    async with session_factory() as db_session:
        stmt = select(AssistantTable.id).where(AssistantTable.usage_limited.is_(True)).order_by(AssistantTable.id)
        return list((await db_session.execute(stmt)).scalars().all())


class TestMinutesExhaustion:
    @pytest.mark.asyncio
    async def test_reaching_limit_disables_active_assistants(self, seed, session, session_factory, policy):
        await seed.tenant("t1", PlanTier.PRO, minutes_used=95)
        await seed.assistant("t1", "a1")
        await seed.assistant("t1", "a2", age=1)
        await seed.assistant("t1", "gone", active=False)

        await UsageLedger(session, tenant_id="t1", policy=policy).record_call_minutes(5)
        await session.commit()

        assert await _jobs(session_factory) == {
            "a1": ("disable", MINUTES_EXHAUSTED_REASON),
            "a2": ("disable", MINUTES_EXHAUSTED_REASON),
        }
        assert await _limited(session_factory) == ["a1", "a2"]
        jobs = (await session.execute(select(SyncJobTable))).scalars().all()
        assert {job.priority for job in jobs} == {DOWNGRADE_PRIORITY}
        audit = (await session.execute(select(AuditLogTable))).scalars().all()
        assert sorted((a.action, a.resource_id, a.outcome) for a in audit) == [
            ("usage_limited", "a1", "disable_enqueued"),
            ("usage_limited", "a2", "disable_enqueued"),
        ]

    @pytest.mark.asyncio
    async def test_below_limit_enqueues_nothing(self, seed, session, session_factory, policy):
        await seed.tenant("t1", PlanTier.PRO, minutes_used=95)
        await seed.assistant("t1", "a1")

        assert await UsageLedger(session, tenant_id="t1", policy=policy).record_call_minutes(4.5) == 99.5
        await session.commit()

        assert await _jobs(session_factory) == {}
        assert await _limited(session_factory) == []

    @pytest.mark.asyncio
    async def test_further_calls_cap_only_new_assistants(self, seed, session, session_factory, policy):
        await seed.tenant("t1", PlanTier.PRO, minutes_used=99)
        await seed.assistant("t1", "a1")
        ledger = UsageLedger(session, tenant_id="t1", policy=policy)
        await ledger.record_call_minutes(1)
        await session.commit()

        await seed.assistant("t1", "a2", age=1)
        await ledger.record_call_minutes(0.5)
        await session.commit()

        assert set(await _jobs(session_factory)) == {"a1", "a2"}
        audit = (await session.execute(select(AuditLogTable.resource_id))).scalars().all()
        assert sorted(audit) == ["a1", "a2"]

    @pytest.mark.asyncio
    async def test_rollover_restores_capped_assistants(
        self, seed, session, session_factory, provider, policy, fake_provider
    ):
        await seed.tenant("t1", PlanTier.PRO, minutes_used=99)
        for name in ("a1", "a2"):
            await seed.assistant("t1", name, age=int(name[1:]))
            fake_provider.add_assistant(f"ext-{name}")
        ledger = UsageLedger(session, tenant_id="t1", policy=policy)
        await ledger.record_call_minutes(2)
        await session.commit()

        processor = EnforcementProcessor(session_factory, provider, policy=policy, concurrency=1)
        assert (await processor.drain()).succeeded == 2
        assert fake_provider.assistants["ext-a1"]["maxDurationSeconds"] == 10

        start = datetime(2026, 2, 1, tzinfo=UTC)
        assert await ledger.rollover_period(start, start + timedelta(days=28)) == ["a1", "a2"]
        await session.commit()

        assert await _limited(session_factory) == []
        assert (await processor.drain()).succeeded == 2
        assert fake_provider.assistants["ext-a1"]["maxDurationSeconds"] == 300
        async with session_factory() as db_session:
            rows = (await db_session.execute(select(AssistantTable))).scalars().all()
        assert all(row.active for row in rows)
        audit = (await session.execute(select(AuditLogTable.reason).where(AuditLogTable.action == "enabled"))).all()
        assert [reason for (reason,) in audit] == [PERIOD_ROLLOVER_REASON, PERIOD_ROLLOVER_REASON]

    @pytest.mark.asyncio
    async def test_rollover_supersedes_pending_disable(self, seed, session, session_factory, policy):
        await seed.tenant("t1", minutes_used=9)
        await seed.assistant("t1", "a1")
        ledger = UsageLedger(session, tenant_id="t1", policy=policy)
        await ledger.record_call_minutes(1)
        await session.commit()

        start = datetime(2026, 2, 1, tzinfo=UTC)
        assert await ledger.rollover_period(start, start + timedelta(days=28)) == ["a1"]
        await session.commit()

        assert await _jobs(session_factory) == {"a1": ("enable", PERIOD_ROLLOVER_REASON)}

    @pytest.mark.asyncio
    async def test_rollover_stays_within_assistant_limit(self, seed, session, session_factory, policy):
        # Two assistants on a one-assistant plan, both capped.
        await seed.tenant("t1", minutes_used=9)
        await seed.assistant("t1", "a1")
        await seed.assistant("t1", "a2", age=1)
        ledger = UsageLedger(session, tenant_id="t1", policy=policy)
        await ledger.record_call_minutes(1)
        await session.commit()

        start = datetime(2026, 2, 1, tzinfo=UTC)
        assert await ledger.rollover_period(start, start + timedelta(days=28)) == ["a1"]
        await session.commit()

        jobs = await _jobs(session_factory)
        assert (jobs["a1"][0], jobs["a2"][0]) == ("enable", "disable")
        assert await _limited(session_factory) == []
        stmt = select(AuditLogTable.resource_id, AuditLogTable.outcome).where(AuditLogTable.action == "usage_restored")
        restored = sorted(tuple(row) for row in (await session.execute(stmt)).all())
        assert restored == [("a1", "enable_enqueued"), ("a2", "over_assistant_limit")]

    @pytest.mark.asyncio
    async def test_caps_kept_while_minutes_exhausted(self, seed, session, session_factory, policy):
        await seed.tenant("t1", minutes_used=9)
        await seed.assistant("t1", "a1")
        ledger = UsageLedger(session, tenant_id="t1", policy=policy)
        await ledger.record_call_minutes(1)

        assert await ledger.lift_usage_caps("manual") == []
        await session.commit()
        assert await _limited(session_factory) == ["a1"]
