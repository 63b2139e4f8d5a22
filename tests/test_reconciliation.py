"""
Tests for anomaly detection and the correction engine.

These tests verify:
  - detect_anomalies() finds double, excess and phantom refunds and
    cached-balance drift, and ignores operations already corrected
  - Each correction kind writes exactly one audited ledger entry and
    leaves the cached balance consistent with the ledger
  - A refund correction is applied at most once per operation
  - BALANCE_MISMATCH never takes the balance below zero
  - The admin endpoints expose both, and only to admins
"""

import uuid

import pytest
from sqlalchemy import select

from app.exceptions import CorrectionRequestError, OperationNotFoundError
from app.models.account import Account
from app.models.activity_log import ActivityLog
from app.models.operation import Operation
from app.models.transaction import Transaction, TransactionKind
from app.services import activity_service, anomaly_service, ledger_service, operation_service
from app.services.anomaly_service import AnomalyKind
from app.services.correction_service import CorrectionKind, correct


def refund_row(operation_id, amount_cents):
    return Transaction(
        kind=TransactionKind.REFUND,
        amount_cents=amount_cents,
        operation_id=operation_id,
    )


async def double_refunded(db_session, account, amount_cents=2000):
    """A charged operation refunded twice, bypassing the refund guard."""
    operation = await operation_service.create_operation(
        db_session, account, type="renew", amount_cents=amount_cents,
    )
    for _ in range(2):
        await ledger_service.apply_entry(
            db_session, account, TransactionKind.REFUND, amount_cents,
            operation_id=operation.id, notes="Refund",
        )
    await db_session.commit()
    return operation


class TestDetectAnomalies:
    """detect_anomalies() is pure; these cases need no database."""

    def test_clean_ledger(self):
        op = Operation(id=uuid.uuid4(), amount_cents=2000, corrected=False)
        transactions = [
            Transaction(kind=TransactionKind.DEPOSIT, amount_cents=5000),
            Transaction(kind=TransactionKind.OPERATION_DEDUCT, amount_cents=-2000, operation_id=op.id),
            refund_row(op.id, 2000),
        ]
        assert anomaly_service.detect_anomalies(transactions, [op], 5000) == []

    def test_double_refund_is_also_an_over_refund(self):
        op = Operation(id=uuid.uuid4(), amount_cents=2000, corrected=False)
        transactions = [
            Transaction(kind=TransactionKind.DEPOSIT, amount_cents=5000),
            Transaction(kind=TransactionKind.OPERATION_DEDUCT, amount_cents=-2000, operation_id=op.id),
            refund_row(op.id, 2000),
            refund_row(op.id, 2000),
        ]

        anomalies = anomaly_service.detect_anomalies(transactions, [op], 7000)

        kinds = {a.kind for a in anomalies}
        assert kinds == {AnomalyKind.DOUBLE_REFUND, AnomalyKind.OVER_REFUND}
        double = next(a for a in anomalies if a.kind == AnomalyKind.DOUBLE_REFUND)
        assert double.refund_count == 2
        assert double.refunded_cents == 4000
        assert double.severity == "high"

    def test_partial_refunds_within_amount_flag_only_the_count(self):
        op = Operation(id=uuid.uuid4(), amount_cents=2000, corrected=False)
        transactions = [
            Transaction(kind=TransactionKind.DEPOSIT, amount_cents=5000),
            Transaction(kind=TransactionKind.OPERATION_DEDUCT, amount_cents=-2000, operation_id=op.id),
            refund_row(op.id, 500),
            refund_row(op.id, 500),
        ]

        anomalies = anomaly_service.detect_anomalies(transactions, [op], 4000)

        assert [a.kind for a in anomalies] == [AnomalyKind.DOUBLE_REFUND]

    def test_phantom_refund(self):
        op = Operation(id=uuid.uuid4(), amount_cents=0, corrected=False)
        transactions = [refund_row(op.id, 750)]

        anomalies = anomaly_service.detect_anomalies(transactions, [op], 750)

        assert [a.kind for a in anomalies] == [AnomalyKind.PHANTOM_REFUND]
        assert anomalies[0].refunded_cents == 750

    @pytest.mark.parametrize("cached,expected_discrepancy", [(5300, 300), (4800, -200)])
    def test_balance_mismatch(self, cached, expected_discrepancy):
        transactions = [Transaction(kind=TransactionKind.DEPOSIT, amount_cents=5000)]

        anomalies = anomaly_service.detect_anomalies(transactions, [], cached)

        assert len(anomalies) == 1
        assert anomalies[0].kind == AnomalyKind.BALANCE_MISMATCH
        assert anomalies[0].discrepancy_cents == expected_discrepancy
        assert anomalies[0].expected_cents == 5000

    def test_corrected_operations_are_ignored(self):
        op = Operation(id=uuid.uuid4(), amount_cents=2000, corrected=True)
        transactions = [
            Transaction(kind=TransactionKind.DEPOSIT, amount_cents=5000),
            Transaction(kind=TransactionKind.OPERATION_DEDUCT, amount_cents=-2000, operation_id=op.id),
            refund_row(op.id, 2000),
            refund_row(op.id, 2000),
            Transaction(kind=TransactionKind.CORRECTION, amount_cents=-2000, operation_id=op.id),
        ]

        assert anomaly_service.detect_anomalies(transactions, [op], 5000) == []


class TestRefundCorrections:

    async def test_double_refund_clawed_back_once(self, db_session, make_account, reload):
        account = await make_account(balance_cents=5000)
        operation = await double_refunded(db_session, account)
        assert account.balance_cents == 7000

        result = await correct(
            db_session, account.id, CorrectionKind.DOUBLE_REFUND, operation_id=operation.id,
        )
        await db_session.commit()

        assert result.success
        assert result.corrected
        assert result.correction_amount_cents == 2000
        assert result.new_balance_cents == 5000

        txn = await db_session.get(Transaction, result.transaction_id)
        assert txn.kind == TransactionKind.CORRECTION
        assert txn.amount_cents == -2000
        assert txn.notes == (
            "Correct duplicate refund: refunded 2 times totaling $40.00 "
            "from operation worth $20.00"
        )

        operation = await reload(Operation, operation.id)
        assert operation.corrected
        assert operation.corrected_at is not None

        report = await anomaly_service.get_anomaly_report(db_session, account.id)
        assert not report.has_anomalies
        assert report.balance.is_valid

    async def test_refund_correction_is_applied_only_once(self, db_session, make_account):
        account = await make_account(balance_cents=5000)
        operation = await double_refunded(db_session, account)

        await correct(db_session, account.id, CorrectionKind.OVER_REFUND, operation_id=operation.id)
        await db_session.commit()
        again = await correct(
            db_session, account.id, CorrectionKind.DOUBLE_REFUND, operation_id=operation.id,
        )

        assert again.success
        assert not again.corrected
        assert again.already_corrected
        assert again.message == "This operation was previously corrected"
        assert account.balance_cents == 5000

    async def test_over_refund_notes(self, db_session, make_account):
        account = await make_account(balance_cents=5000)
        operation = await double_refunded(db_session, account, amount_cents=1250)

        result = await correct(
            db_session, account.id, CorrectionKind.OVER_REFUND, operation_id=operation.id,
        )

        txn = await db_session.get(Transaction, result.transaction_id)
        assert txn.notes == "Correct excess refund: refunded $25.00 from operation worth $12.50"

    async def test_nothing_to_claw_back(self, db_session, make_account):
        account = await make_account(balance_cents=5000)
        operation = await operation_service.create_operation(
            db_session, account, type="renew", amount_cents=2000,
        )
        await ledger_service.refund_operation(db_session, operation, notes="Refund")
        await db_session.commit()

        result = await correct(
            db_session, account.id, CorrectionKind.OVER_REFUND, operation_id=operation.id,
        )

        assert result.success
        assert not result.corrected
        assert result.message == "No amount to correct"
        assert not operation.corrected

    async def test_operation_id_required(self, db_session, make_account):
        account = await make_account()
        with pytest.raises(CorrectionRequestError):
            await correct(db_session, account.id, CorrectionKind.DOUBLE_REFUND)

    async def test_operation_of_another_account(self, db_session, make_account):
        owner = await make_account(balance_cents=5000)
        other = await make_account()
        operation = await double_refunded(db_session, owner)

        with pytest.raises(OperationNotFoundError):
            await correct(
                db_session, other.id, CorrectionKind.DOUBLE_REFUND, operation_id=operation.id,
            )


class TestBalanceCorrections:

    async def test_initialize_balance_records_deposit(self, db_session, make_account):
        """A balance that predates the ledger becomes an opening DEPOSIT."""
        account = await make_account()
        account.balance_cents = 2500
        await db_session.commit()

        result = await correct(db_session, account.id, CorrectionKind.INITIALIZE_BALANCE)
        await db_session.commit()

        assert result.corrected
        assert result.new_balance_cents == 2500
        txn = await db_session.get(Transaction, result.transaction_id)
        assert txn.kind == TransactionKind.DEPOSIT
        assert txn.amount_cents == 2500
        assert txn.notes == "Initial Balance"

        check = await ledger_service.check_balance(db_session, account.id)
        assert check.is_valid
        assert check.expected_balance_cents == 2500

    async def test_initialize_balance_when_nothing_is_unexplained(self, db_session, make_account):
        account = await make_account(balance_cents=1000)

        result = await correct(db_session, account.id, CorrectionKind.INITIALIZE_BALANCE)

        assert result.success
        assert not result.corrected
        assert result.message == "No excess balance to register as initial balance"

    async def test_add_missing(self, db_session, make_account):
        account = await make_account(balance_cents=5000)
        account.balance_cents -= 300
        await db_session.commit()

        result = await correct(db_session, account.id, CorrectionKind.ADD_MISSING)
        await db_session.commit()

        assert result.corrected
        assert result.correction_amount_cents == 300
        assert account.balance_cents == 5000
        txn = await db_session.get(Transaction, result.transaction_id)
        assert txn.amount_cents == 300
        assert txn.notes == "Adding missing balance: $3.00"

    async def test_mismatch_deducts_excess(self, db_session, make_account):
        account = await make_account(balance_cents=3000)
        account.balance_cents += 500
        await db_session.commit()

        result = await correct(db_session, account.id, CorrectionKind.BALANCE_MISMATCH)
        await db_session.commit()

        assert result.corrected
        assert result.correction_amount_cents == 500
        assert result.shortfall_cents is None
        assert account.balance_cents == 3000
        txn = await db_session.get(Transaction, result.transaction_id)
        assert txn.kind == TransactionKind.CORRECTION
        assert txn.amount_cents == -500
        assert txn.balance_after_cents == 3000

    async def test_mismatch_never_goes_below_zero(self, db_session, make_account):
        """Only the current balance is deducted; the rest is reported as a shortfall."""
        account = await make_account()
        db_session.add(Transaction(
            account_id=account.id,
            kind=TransactionKind.CORRECTION,
            amount_cents=-800,
            balance_after_cents=-800,
        ))
        account.balance_cents = 200
        await db_session.commit()

        result = await correct(db_session, account.id, CorrectionKind.BALANCE_MISMATCH)
        await db_session.commit()

        assert result.corrected
        assert result.correction_amount_cents == 200
        assert result.shortfall_cents == 800
        assert account.balance_cents == 0
        txn = await db_session.get(Transaction, result.transaction_id)
        assert "balance is now zero" in txn.notes

    async def test_short_balance_needs_manual_review(self, db_session, make_account):
        account = await make_account(balance_cents=5000)
        account.balance_cents -= 300
        await db_session.commit()

        result = await correct(db_session, account.id, CorrectionKind.BALANCE_MISMATCH)

        assert not result.success
        assert not result.corrected
        assert result.needs_manual_review
        assert result.suggested_action == CorrectionKind.ADD_MISSING
        assert result.discrepancy_cents == -300
        assert account.balance_cents == 4700

    async def test_matching_balance_is_a_noop(self, db_session, make_account):
        account = await make_account(balance_cents=5000)

        result = await correct(db_session, account.id, CorrectionKind.BALANCE_MISMATCH)

        assert result.success
        assert not result.corrected
        assert result.message == "Balance matches, nothing needs correction"

    @pytest.mark.parametrize("kind", list(CorrectionKind))
    async def test_every_kind_is_a_noop_on_a_consistent_ledger(
        self, kind, db_session, make_account, reload,
    ):
        """Scenario A: nothing is wrong, so no correction writes anything."""
        account = await make_account(balance_cents=5000)
        operation = await operation_service.create_operation(
            db_session, account, type="renew", amount_cents=2000,
        )
        await db_session.commit()
        entries_before = len(await ledger_service.get_account_transactions(db_session, account.id))

        result = await correct(db_session, account.id, kind, operation_id=operation.id)
        await db_session.commit()

        assert result.success
        assert not result.corrected
        assert (await reload(Account, account.id)).balance_cents == 3000
        assert not (await reload(Operation, operation.id)).corrected
        entries_after = await ledger_service.get_account_transactions(db_session, account.id)
        assert len(entries_after) == entries_before

    @pytest.mark.parametrize(
        "drift_cents, kind",
        [
            (1, CorrectionKind.INITIALIZE_BALANCE),
            (1, CorrectionKind.BALANCE_MISMATCH),
            (-1, CorrectionKind.ADD_MISSING),
            (-1, CorrectionKind.BALANCE_MISMATCH),
        ],
    )
    async def test_one_cent_drift_is_left_alone(
        self, drift_cents, kind, db_session, make_account,
    ):
        account = await make_account(balance_cents=5000)
        account.balance_cents += drift_cents
        await db_session.commit()

        result = await correct(db_session, account.id, kind)

        assert result.success
        assert not result.corrected
        assert not result.needs_manual_review
        assert account.balance_cents == 5000 + drift_cents

    async def test_two_cent_shortfall_is_corrected(self, db_session, make_account):
        account = await make_account(balance_cents=5000)
        account.balance_cents -= 2
        await db_session.commit()

        result = await correct(db_session, account.id, CorrectionKind.ADD_MISSING)

        assert result.corrected
        assert result.correction_amount_cents == 2
        assert account.balance_cents == 5000

    async def test_refund_correction_locks_operation_before_account(
        self, db_session, make_account, monkeypatch,
    ):
        account = await make_account(balance_cents=5000)
        operation = await double_refunded(db_session, account)

        order = []
        real_execute = db_session.execute
        real_lock_account = ledger_service.lock_account

        async def recording_execute(statement, *args, **kwargs):
            if getattr(statement, "_for_update_arg", None) is not None:
                order.append(statement.column_descriptions[0]["entity"].__name__)
            return await real_execute(statement, *args, **kwargs)

        async def recording_lock_account(db, account_id):
            order.append("lock_account")
            return await real_lock_account(db, account_id)

        monkeypatch.setattr(db_session, "execute", recording_execute)
        monkeypatch.setattr(ledger_service, "lock_account", recording_lock_account)

        result = await correct(
            db_session, account.id, CorrectionKind.DOUBLE_REFUND, operation_id=operation.id,
        )

        assert result.corrected
        assert order.index("Operation") < order.index("lock_account")

    async def test_correction_is_audited(self, db_session, make_account):
        account = await make_account(balance_cents=5000)
        account.balance_cents -= 300
        await db_session.commit()

        await correct(db_session, account.id, CorrectionKind.ADD_MISSING, created_by="admin-1")
        await db_session.commit()

        entry = (await db_session.execute(
            select(ActivityLog).where(ActivityLog.account_id == account.id)
        )).scalar_one()
        assert entry.action == activity_service.BALANCE_CORRECTED
        assert entry.source == "admin-1"
        assert entry.details["kind"] == "ADD_MISSING"
        assert entry.details["amount_cents"] == 300


class TestAdminReconciliationEndpoints:

    async def test_anomaly_report(self, admin_client, db_session, make_account):
        account = await make_account(balance_cents=5000)
        operation = await double_refunded(db_session, account)

        response = await admin_client.get(f"/admin/accounts/{account.id}/anomalies")

        assert response.status_code == 200
        body = response.json()
        assert body["has_anomalies"] is True
        assert {a["kind"] for a in body["anomalies"]} == {"DOUBLE_REFUND", "OVER_REFUND"}
        assert all(a["operation_id"] == str(operation.id) for a in body["anomalies"])
        assert body["balance"]["is_valid"] is True

    async def test_apply_correction(self, admin_client, db_session, make_account, reload):
        account = await make_account(balance_cents=5000)
        operation = await double_refunded(db_session, account)

        response = await admin_client.post(
            f"/admin/accounts/{account.id}/corrections",
            json={"kind": "DOUBLE_REFUND", "operation_id": str(operation.id)},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["corrected"] is True
        assert body["new_balance_cents"] == 5000
        assert (await reload(Account, account.id)).balance_cents == 5000

        again = await admin_client.post(
            f"/admin/accounts/{account.id}/corrections",
            json={"kind": "DOUBLE_REFUND", "operation_id": str(operation.id)},
        )
        assert again.status_code == 200
        assert again.json()["already_corrected"] is True

    async def test_missing_operation_id_is_bad_request(self, admin_client, make_account):
        account = await make_account()

        response = await admin_client.post(
            f"/admin/accounts/{account.id}/corrections",
            json={"kind": "OVER_REFUND"},
        )

        assert response.status_code == 400

    async def test_members_cannot_correct(self, authenticated_client, make_account):
        account = await make_account()

        response = await authenticated_client.post(
            f"/admin/accounts/{account.id}/corrections",
            json={"kind": "ADD_MISSING"},
        )

        assert response.status_code == 403
