"""Integration tests: militant fast-track code issuance and delivery."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest
from sqlalchemy.exc import IntegrityError

from checkpoint.db.models import Persona, QrCode, QrType, UniverseType
from checkpoint.errors import CampaignNotFound, NotPrivileged, PersonaNotFound, QrInactive
from checkpoint.militant import issuer
from checkpoint.qr import registry


class TestIssue:
    @pytest.mark.asyncio
    async def test_one_code_per_privileged_persona(self, db, seed):
        result = await issuer.issue_for_campaign(db, seed.campaign_id)

        assert result["created"] == 1
        assert result["existing"] == 0
        qr = result["codes"][0]
        assert qr.type is QrType.MILITANT_FASTTRACK
        assert qr.owner_persona_id == seed.militant_id
        assert qr.event_id is None
        assert qr.code.startswith(f"QRM-C{seed.campaign_id}-P{seed.militant_id}-")

    @pytest.mark.asyncio
    async def test_issuing_twice_keeps_existing_codes(self, db, seed):
        first = await issuer.issue_for_campaign(db, seed.campaign_id)
        second = await issuer.issue_for_campaign(db, seed.campaign_id)

        assert second["created"] == 0
        assert second["existing"] == 1
        assert second["codes"][0].code == first["codes"][0].code
        assert len(await issuer.list_campaign_codes(db, seed.campaign_id)) == 1

    @pytest.mark.asyncio
    async def test_codes_are_per_campaign(self, db, seed):
        await issuer.issue_for_campaign(db, seed.campaign_id)
        other = await issuer.issue_for_campaign(db, seed.other_campaign_id)
        assert other["created"] == 1

    @pytest.mark.asyncio
    async def test_second_live_code_is_rejected_by_the_database(self, db, seed):
        await issuer.issue_for_campaign(db, seed.campaign_id)
        db.add(QrCode(
            campaign_id=seed.campaign_id,
            type=QrType.MILITANT_FASTTRACK,
            code="QRM-DUPLICATE",
            owner_persona_id=seed.militant_id,
        ))
        with pytest.raises(IntegrityError):
            await db.flush()
        await db.rollback()

    @pytest.mark.asyncio
    async def test_unknown_campaign(self, db, seed):
        with pytest.raises(CampaignNotFound):
            await issuer.issue_for_campaign(db, 9999)


class TestRegenerate:
    @pytest.mark.asyncio
    async def test_replaces_the_lost_code(self, db, seed):
        issued = await issuer.issue_for_campaign(db, seed.campaign_id)
        old_code = issued["codes"][0].code

        new = await issuer.regenerate(db, seed.campaign_id, seed.militant_id)

        assert new.code != old_code
        assert new.active is True
        codes = await issuer.list_campaign_codes(db, seed.campaign_id, include_inactive=True)
        assert {(qr.code, qr.active) for qr in codes} == {(old_code, False), (new.code, True)}
        with pytest.raises(QrInactive):
            await registry.validate(db, old_code)

    @pytest.mark.asyncio
    async def test_issues_when_missing(self, db, seed):
        qr = await issuer.regenerate(db, seed.campaign_id, seed.militant_id)
        assert qr.owner_persona_id == seed.militant_id

    @pytest.mark.asyncio
    async def test_rejects_non_privileged_persona(self, db, seed):
        with pytest.raises(NotPrivileged) as exc_info:
            await issuer.regenerate(db, seed.campaign_id, seed.alice_id)
        assert exc_info.value.context["universe_type"] == "U1"

    @pytest.mark.asyncio
    async def test_unknown_persona(self, db, seed):
        with pytest.raises(PersonaNotFound):
            await issuer.regenerate(db, seed.campaign_id, 9999)


class TestDistributeCodes:
    @pytest.mark.asyncio
    async def test_sends_one_batch_to_the_webhook(self, db, seed, monkeypatch):
        silent = Persona(name="Sin Teléfono", universe_type=UniverseType.PRIVILEGED)
        db.add(silent)
        await db.commit()
        await issuer.issue_for_campaign(db, seed.campaign_id)

        mock_notify = AsyncMock(return_value=True)
        monkeypatch.setattr("checkpoint.militant.issuer.notify", mock_notify)

        stats = await issuer.distribute_codes(db, seed.campaign_id)

        assert stats["total_codes"] == 2
        assert stats["prepared"] == 1
        assert stats["skipped"] == 1
        assert stats["delivered"] is True
        assert stats["errors"] == [f"Persona {silent.id} has no phone number"]

        mock_notify.assert_awaited_once()
        event_type, payload = mock_notify.await_args.args
        assert event_type == "militant_qr_distribution"
        assert payload["campaign_id"] == seed.campaign_id
        (notification,) = payload["notifications"]
        assert notification["persona_id"] == seed.militant_id
        assert notification["phone_number"] == "+525500000002"
        assert notification["qr_code"] in notification["message"]

    @pytest.mark.asyncio
    async def test_webhook_failure_is_reported(self, db, seed, monkeypatch):
        await issuer.issue_for_campaign(db, seed.campaign_id)
        monkeypatch.setattr("checkpoint.militant.issuer.notify", AsyncMock(return_value=False))

        stats = await issuer.distribute_codes(db, seed.campaign_id)

        assert stats["delivered"] is False
        assert stats["errors"] == ["Notification webhook did not accept the batch"]

    @pytest.mark.asyncio
    async def test_no_codes_no_webhook_call(self, db, seed, monkeypatch):
        mock_notify = AsyncMock(return_value=True)
        monkeypatch.setattr("checkpoint.militant.issuer.notify", mock_notify)

        stats = await issuer.distribute_codes(db, seed.campaign_id)

        assert stats["total_codes"] == 0
        mock_notify.assert_not_awaited()
