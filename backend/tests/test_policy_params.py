"""
Tests for versioned policy params, eval reports and decision lookup.
"""

from datetime import date

import pytest
from pydantic import ValidationError
from sqlalchemy import select

from conftest import CHANNEL_ID, TENANT_ID, TODAY
from db.models import PolicyEvalReport, PolicyParams
from decisions.engine import DecisionEngineConfig, Direction
from decisions.policy import (
    ACTIVE_VERSION,
    PolicyEvalReportV1,
    PolicyParamsV1,
    candidate_version_for,
    ensure_active,
    load_params,
    upsert_eval_report,
    upsert_params,
)
from decisions.queries import NO_DATA_EVIDENCE, get_decision


async def _params_rows(db) -> list[PolicyParams]:
    async with db.session() as session:
        return list((await session.execute(select(PolicyParams))).scalars().all())


class TestPolicyParamsModel:
    def test_defaults_match_engine(self):
        assert PolicyParamsV1().to_engine_config() == DecisionEngineConfig()

    def test_rejects_out_of_range_threshold(self):
        with pytest.raises(ValidationError):
            PolicyParamsV1(high_concentration_threshold=1.5)

    def test_rejects_other_schema_version(self):
        with pytest.raises(ValidationError):
            PolicyParamsV1.model_validate({"schema_version": 2})

    def test_candidate_version(self):
        assert candidate_version_for(date(2026, 3, 15)) == "candidate-2026-03-15"


class TestPolicyStore:
    async def test_ensure_active_seeds_once(self, db):
        async with db.session() as session:
            first = await ensure_active(session, TENANT_ID, CHANNEL_ID)
            await session.commit()
        async with db.session() as session:
            second = await ensure_active(session, TENANT_ID, CHANNEL_ID)
            await session.commit()

        assert first == second == PolicyParamsV1()
        (row,) = await _params_rows(db)
        assert row.version == ACTIVE_VERSION
        assert row.created_by == "system"

    async def test_ensure_active_returns_stored_params(self, db):
        custom = PolicyParamsV1(min_days_with_data=3, top_n_for_new_asset=5)
        async with db.session() as session:
            await upsert_params(session, TENANT_ID, CHANNEL_ID, ACTIVE_VERSION, custom)
            await session.commit()
        async with db.session() as session:
            active = await ensure_active(session, TENANT_ID, CHANNEL_ID)

        assert active == custom
        assert active.to_engine_config().top_n_for_new_asset == 5

    async def test_unparseable_params_are_reset(self, db):
        async with db.session() as session:
            session.add(
                PolicyParams(
                    tenant_id=TENANT_ID,
                    channel_id=CHANNEL_ID,
                    version=ACTIVE_VERSION,
                    params_json={"schema_version": 99, "min_days_with_data": "many"},
                )
            )
            await session.commit()

        async with db.session() as session:
            assert await load_params(session, TENANT_ID, CHANNEL_ID) is None
            active = await ensure_active(session, TENANT_ID, CHANNEL_ID)
            await session.commit()

        assert active == PolicyParamsV1()
        (row,) = await _params_rows(db)
        assert row.params_json == PolicyParamsV1().model_dump(mode="json")

    async def test_missing_version_loads_none(self, db):
        async with db.session() as session:
            assert await load_params(session, TENANT_ID, CHANNEL_ID, "candidate-2026-01-01") is None

    async def test_eval_report_upsert(self, db):
        report = PolicyEvalReportV1(candidate_version="candidate-2026-03-15", run_for_dt=TODAY)
        async with db.session() as session:
            await upsert_eval_report(session, TENANT_ID, CHANNEL_ID, report)
            await upsert_eval_report(session, TENANT_ID, CHANNEL_ID, report.model_copy(update={"ok": False}))
            await session.commit()
            rows = list((await session.execute(select(PolicyEvalReport))).scalars().all())

        assert len(rows) == 1
        assert rows[0].approved is False
        assert rows[0].replay_metrics_json["ok"] is False
        assert rows[0].replay_metrics_json["run_for_dt"] == "2026-03-15"


class TestDecisionLookup:
    async def test_missing_decision_returns_stub(self, db):
        async with db.session() as session:
            decision = await get_decision(session, TENANT_ID, CHANNEL_ID, TODAY)

        assert decision.direction is Direction.PROTECT
        assert decision.confidence == 0.6
        assert decision.evidence == NO_DATA_EVIDENCE
        assert decision.as_of_dt == TODAY
