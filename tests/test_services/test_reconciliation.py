"""Tests for the reconciliation job that backfills missing ledger proofs."""

from __future__ import annotations

import asyncio
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy.exc import OperationalError

from tagchain_escrow.domain.enums import ConfirmationState, EscrowStatus
from tagchain_escrow.domain.exceptions import RejectedError, TransportError
from tagchain_escrow.infrastructure.database.repositories import EscrowLogRepository
from tagchain_escrow.schemas.consensus_messages import message_to_dict
from tagchain_escrow.services.escrow_orchestrator import OrchestratorConfig
from tagchain_escrow.services.reconciliation import ReconciliationService, ReconcileResult


async def _fund_during_outage(orchestrator, ledger, sample_escrow_data):
    await orchestrator.create_escrow(**sample_escrow_data)
    ledger.fail_next(TransportError("connection refused"))
    return await orchestrator.fund_escrow("T1", "transfer", Decimal("100"))


class TestRunOnce:
    @pytest.mark.asyncio
    async def test_outage_is_proven_later(
        self, orchestrator, reconciler, projection, ledger, sample_escrow_data
    ) -> None:
        outcome = await _fund_during_outage(orchestrator, ledger, sample_escrow_data)
        assert not outcome.consensus_confirmed

        report = await reconciler.run_once()

        assert report.to_dict() == {"examined": 1, "proven": 1, "failed": 0, "skipped": 0}
        view = await projection.get_status("T1")
        assert view.status == EscrowStatus.FUNDED
        assert view.consensus_proof_id == ledger.submissions[-1].receipt.proof_id
        assert view.confirmation == ConfirmationState.PROVEN
        assert await projection.list_unproven() == []

    @pytest.mark.asyncio
    async def test_stored_message_is_resubmitted_verbatim(
        self, orchestrator, reconciler, projection, ledger, sample_escrow_data
    ) -> None:
        outcome = await _fund_during_outage(orchestrator, ledger, sample_escrow_data)
        history = await projection.get_history("T1")
        stored = next(e for e in history if e.id == outcome.log_entry_id).message_payload

        await reconciler.run_once()

        assert message_to_dict(ledger.submissions[-1].message) == stored
        assert ledger.submissions[-1].topic_id == "0.0.5001"

    @pytest.mark.asyncio
    async def test_superseded_status_keeps_newer_proof(
        self, orchestrator, reconciler, projection, ledger, sample_escrow_data
    ) -> None:
        fund = await _fund_during_outage(orchestrator, ledger, sample_escrow_data)
        release = await orchestrator.release_escrow("T1", released_by="S")

        report = await reconciler.run_once()

        assert report.proven == 1
        view = await projection.get_status("T1")
        assert view.status == EscrowStatus.RELEASED
        assert view.consensus_proof_id == release.consensus_proof_id
        assert view.confirmation == ConfirmationState.TERMINAL_AND_PROVEN

        fund_entry = next(
            e for e in await projection.get_history("T1") if e.id == fund.log_entry_id
        )
        assert fund_entry.consensus_proof_id == ledger.submissions[-1].receipt.proof_id
        assert fund_entry.consensus_proof_id != release.consensus_proof_id

    @pytest.mark.asyncio
    async def test_entries_are_replayed_in_commit_order(
        self, orchestrator, reconciler, ledger, sample_escrow_data
    ) -> None:
        ledger.fail_next(TransportError("down"), TransportError("down"))
        await orchestrator.create_escrow(**sample_escrow_data)
        await orchestrator.fund_escrow("T1", "mint", Decimal("100"))

        report = await reconciler.run_once()

        assert report.proven == 2
        assert [s.message.type for s in ledger.submissions] == ["escrow.create", "escrow.funded"]

    @pytest.mark.asyncio
    async def test_second_run_is_a_no_op(
        self, orchestrator, reconciler, ledger, sample_escrow_data
    ) -> None:
        await _fund_during_outage(orchestrator, ledger, sample_escrow_data)
        await reconciler.run_once()
        submitted = len(ledger.submissions)

        report = await reconciler.run_once()

        assert report.examined == 0
        assert len(ledger.submissions) == submitted

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error",
        [TransportError("still down"), RejectedError("bad topic", status="INVALID_TOPIC_ID")],
    )
    async def test_failures_are_counted_and_left_unproven(
        self, orchestrator, reconciler, projection, ledger, sample_escrow_data, error
    ) -> None:
        await _fund_during_outage(orchestrator, ledger, sample_escrow_data)
        ledger.fail_next(error)

        report = await reconciler.run_once()

        assert report.failed == 1
        assert report.proven == 0
        assert len(await projection.list_unproven()) == 1

    @pytest.mark.asyncio
    async def test_limit_bounds_the_batch(
        self, orchestrator, reconciler, ledger, sample_escrow_data
    ) -> None:
        ledger.fail_next(TransportError("down"), TransportError("down"))
        await orchestrator.create_escrow(**sample_escrow_data)
        await orchestrator.fund_escrow("T1", "mint", Decimal("100"))

        report = await reconciler.run_once(limit=1)
        assert report.examined == 1

    @pytest.mark.asyncio
    async def test_disabled_ledger_skips(
        self, session_factory, orchestrator, ledger, sample_escrow_data
    ) -> None:
        await _fund_during_outage(orchestrator, ledger, sample_escrow_data)
        config = OrchestratorConfig(
            ledger_enabled=False, escrow_topic="0.0.5001", verification_topic="0.0.5002"
        )
        reconciler = ReconciliationService(session_factory, ledger, config)
        submitted = len(ledger.submissions)

        report = await reconciler.run_once()

        assert report.examined == 0
        assert len(ledger.submissions) == submitted


class TestReconcileEntry:
    @pytest.mark.asyncio
    async def test_already_proven_entry_is_untouched(
        self, orchestrator, reconciler, ledger, sample_escrow_data
    ) -> None:
        outcome = await orchestrator.create_escrow(**sample_escrow_data)

        result = await reconciler.reconcile_entry(outcome.log_entry_id)

        assert result.result == ReconcileResult.ALREADY_PROVEN
        assert result.proof_id == outcome.consensus_proof_id
        assert len(ledger.submissions) == 1

    @pytest.mark.asyncio
    async def test_claimed_elsewhere_is_skipped(
        self, session_factory, orchestrator, orchestrator_config, ledger, sample_escrow_data
    ) -> None:
        outcome = await _fund_during_outage(orchestrator, ledger, sample_escrow_data)
        lock = AsyncMock()
        lock.acquire.return_value = False
        reconciler = ReconciliationService(
            session_factory, ledger, orchestrator_config, lock=lock
        )
        submitted = len(ledger.submissions)

        result = await reconciler.reconcile_entry(outcome.log_entry_id)

        assert result.result == ReconcileResult.SKIPPED
        assert len(ledger.submissions) == submitted
        lock.release.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_claim_is_released_after_work(
        self, session_factory, orchestrator, orchestrator_config, ledger, sample_escrow_data
    ) -> None:
        outcome = await _fund_during_outage(orchestrator, ledger, sample_escrow_data)
        lock = AsyncMock()
        lock.acquire.return_value = True
        reconciler = ReconciliationService(
            session_factory, ledger, orchestrator_config, lock=lock
        )

        result = await reconciler.reconcile_entry(outcome.log_entry_id)

        assert result.result == ReconcileResult.PROVEN
        lock.acquire.assert_awaited_once_with(str(outcome.log_entry_id))
        lock.release.assert_awaited_once_with(str(outcome.log_entry_id))

    @pytest.mark.asyncio
    async def test_verify_entry_does_not_touch_record_proof(
        self, orchestrator, reconciler, projection, ledger, funded_escrow
    ) -> None:
        fund_proof = (await projection.get_status(funded_escrow)).consensus_proof_id
        ledger.fail_next(TransportError("down"))
        outcome = await orchestrator.verify_escrow(funded_escrow, "INSPECTOR-7")

        result = await reconciler.reconcile_entry(outcome.log_entry_id)

        assert result.result == ReconcileResult.PROVEN
        assert ledger.submissions[-1].topic_id == "0.0.5002"
        assert (await projection.get_status(funded_escrow)).consensus_proof_id == fund_proof


class TestOrderingAndIsolation:
    @pytest.mark.asyncio
    async def test_later_entries_wait_for_a_failed_earlier_entry(
        self, orchestrator, reconciler, ledger, sample_escrow_data
    ) -> None:
        ledger.fail_next(TransportError("down"), TransportError("down"), TransportError("down"))
        await orchestrator.create_escrow(**sample_escrow_data)
        await orchestrator.fund_escrow("T1", "mint", Decimal("100"))
        await orchestrator.create_escrow("T2", "B", "S", "50", "USD")

        ledger.fail_next(TransportError("still down"))
        report = await reconciler.run_once()

        assert report.to_dict() == {"examined": 3, "proven": 1, "failed": 1, "skipped": 1}
        assert [s.message.transaction_id for s in ledger.submissions] == ["T2"]

        report = await reconciler.run_once()

        assert report.proven == 2
        assert [m.type for m in ledger.messages_for("T1")] == ["escrow.create", "escrow.funded"]

    @pytest.mark.asyncio
    async def test_storage_failure_on_one_entry_does_not_stop_the_batch(
        self, orchestrator, reconciler, projection, ledger, sample_escrow_data
    ) -> None:
        ledger.fail_next(TransportError("down"), TransportError("down"))
        broken = await orchestrator.create_escrow(**sample_escrow_data)
        await orchestrator.create_escrow("T2", "B", "S", "50", "USD")

        original = EscrowLogRepository.get_by_id

        async def get_by_id(self, log_id):
            if log_id == broken.log_entry_id:
                raise OperationalError("SELECT escrow_logs", {}, Exception("disk I/O error"))
            return await original(self, log_id)

        with patch.object(EscrowLogRepository, "get_by_id", get_by_id):
            report = await reconciler.run_once()

        assert report.to_dict() == {"examined": 2, "proven": 1, "failed": 1, "skipped": 0}
        assert [e.id for e in await projection.list_unproven()] == [broken.log_entry_id]

    @pytest.mark.asyncio
    async def test_attach_failure_is_reported(
        self, orchestrator, reconciler, ledger, sample_escrow_data
    ) -> None:
        outcome = await _fund_during_outage(orchestrator, ledger, sample_escrow_data)
        failure = OperationalError("UPDATE escrow_logs", {}, Exception("disk I/O error"))

        with patch.object(
            EscrowLogRepository, "attach_consensus_proof", AsyncMock(side_effect=failure)
        ):
            result = await reconciler.reconcile_entry(outcome.log_entry_id)

        assert result.result == ReconcileResult.FAILED
        assert result.proof_id == ledger.submissions[-1].receipt.proof_id

    @pytest.mark.asyncio
    async def test_unexpected_client_error_fails_the_entry_only(
        self, orchestrator, reconciler, ledger, sample_escrow_data
    ) -> None:
        await _fund_during_outage(orchestrator, ledger, sample_escrow_data)
        ledger.fail_next(ValueError("bad receipt"))

        report = await reconciler.run_once()

        assert report.failed == 1


class TestInFlightEntries:
    @pytest.mark.asyncio
    async def test_entry_still_being_submitted_is_left_alone(
        self, session_factory, orchestrator, ledger, sample_escrow_data
    ) -> None:
        await orchestrator.create_escrow(**sample_escrow_data)
        config = OrchestratorConfig(
            ledger_enabled=True,
            escrow_topic="0.0.5001",
            verification_topic="0.0.5002",
            submit_timeout_seconds=5.0,
        )
        reconciler = ReconciliationService(session_factory, ledger, config)
        ledger.latency_seconds = 0.3

        funding = asyncio.create_task(orchestrator.fund_escrow("T1", "mint", Decimal("100")))
        await asyncio.sleep(0.1)
        report = await reconciler.run_once()
        outcome = await funding

        assert report.examined == 0
        assert outcome.consensus_confirmed
        assert [m.type for m in ledger.messages_for("T1")] == ["escrow.create", "escrow.funded"]

    def test_default_window_covers_the_submit_deadline(self) -> None:
        config = OrchestratorConfig(
            ledger_enabled=True,
            escrow_topic="0.0.5001",
            verification_topic="0.0.5001",
            submit_timeout_seconds=30.0,
        )
        assert config.reconcile_after_seconds > config.submit_timeout_seconds
