"""
Ledger Accounting Engine - exactly-once application of financial events

Turns approval events into budget-balance mutations. Each upstream document
is identified by its source key ("{collection}:{documentId}"); the balance
update, the transaction, the source-event record and any alerts commit in
one atomic batch, so a redelivered event finds its source event already
processed and changes nothing.

Fun fact: At-least-once delivery plus idempotent consumers is how card
networks avoid charging you twice when the terminal retries a timed-out
payment. Same trick, smaller wallets!
"""

from collections.abc import Callable
from decimal import Decimal
from typing import Any

from campus_ledger.identifiers.allocator import SequentialIdentifierAllocator
from campus_ledger.identifiers.models import academic_year_key
from campus_ledger.kernel.errors import (
    BudgetAccountNotFound,
    DuplicateEventError,
    NotFoundError,
    ValidationError,
    WriteConflict,
)
from campus_ledger.kernel.ids import generate_id, source_key
from campus_ledger.kernel.logging import LogOperation, get_logger
from campus_ledger.kernel.metrics import (
    budget_alerts_total,
    duplicate_events_total,
    ledger_transactions_total,
    source_events_total,
    track_operation,
    update_budget_utilization,
)
from campus_ledger.kernel.policy import LedgerPolicy
from campus_ledger.kernel.retry import run_with_conflict_retry
from campus_ledger.kernel.store import SQLiteDocumentStore, StoreTransaction, WriteOp
from campus_ledger.kernel.time import RealTimeProvider, TimeProvider
from campus_ledger.kernel.validation import parse_non_negative
from campus_ledger.ledger.alerts import AlertNotifier, LoggingAlertNotifier
from campus_ledger.ledger.invariants import (
    alert_message,
    check_account_consistency,
    crossed_alerts,
    parse_amount,
)
from campus_ledger.ledger.models import (
    AccountVerification,
    AlertSeverity,
    AlertType,
    BudgetAccount,
    BudgetAlert,
    ExpenseOutcome,
    FeeCredit,
    LedgerTransaction,
    SelectionCriteria,
    SourceEvent,
    SourceEventRef,
    SourceEventStatus,
    StudentFeeBalance,
    TransactionType,
)

logger = get_logger(__name__)

# Builds extra writes for the same batch: (tx, account, transaction) -> ops
ExtraWrites = Callable[[StoreTransaction, BudgetAccount, LedgerTransaction], list[WriteOp]]


class LedgerAccountingEngine:
    """
    Applies financial events to budget accounts exactly once

    Every mutation reads, decides and writes inside one store transaction,
    so concurrent events against one account queue on the write lock and
    each sees the balance the previous one committed.
    """

    def __init__(
        self,
        store: SQLiteDocumentStore,
        allocator: SequentialIdentifierAllocator,
        policy: LedgerPolicy | None = None,
        time_provider: TimeProvider | None = None,
        notifier: AlertNotifier | None = None,
    ) -> None:
        self.store = store
        self.allocator = allocator
        self.policy = policy or LedgerPolicy()
        self.time_provider = time_provider or RealTimeProvider()
        self.notifier = notifier or LoggingAlertNotifier()

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def open_account(
        self,
        *,
        name: str,
        department: str,
        category: str,
        academic_year: str,
        allocated_amount: Decimal | str | int,
        account_id: str | None = None,
    ) -> BudgetAccount:
        """
        Open an active budget account

        Raises:
            ValidationError: Bad amount or academic year, or the id is taken
        """
        amount = parse_amount(allocated_amount, "allocated_amount")
        academic_year_key(academic_year)
        account = BudgetAccount(
            id=account_id or generate_id(),
            name=name,
            department=department,
            category=category,
            academic_year=academic_year,
            allocated_amount=amount,
            remaining_amount=amount,
            created_at=self.time_provider.now(),
        )
        try:
            [doc] = self.store.commit([account.create_op()])
        except WriteConflict as e:
            raise ValidationError(f"Budget account {account.id} already exists") from e

        logger.info(
            "Budget account opened",
            budget_id=account.id,
            department=department,
            category=category,
            academic_year=academic_year,
        )
        update_budget_utilization(account.id, 0.0)
        return account.model_copy(update={"version": doc.version})

    def get_account(self, account_id: str) -> BudgetAccount:
        account = self.store.load(BudgetAccount, account_id)
        if account is None:
            raise BudgetAccountNotFound(account_id)
        return account

    def list_accounts(self, department: str | None = None) -> list[BudgetAccount]:
        where = {"department": department} if department else None
        return self.store.query_models(BudgetAccount, where=where)

    def find_account_for(self, criteria: SelectionCriteria) -> BudgetAccount | None:
        """
        Pick the account that should absorb an event

        Only active accounts match unless the policy allows exceeded ones.
        Among matches the highest remaining balance wins, then the earliest
        opened. Fallback categories are consulted only if the primary
        category has no match.
        """
        return self._select_account(self.store, criteria)

    def _select_account(
        self, reader: SQLiteDocumentStore | StoreTransaction, criteria: SelectionCriteria
    ) -> BudgetAccount | None:
        for category in criteria.categories():
            candidates = [
                account
                for account in reader.query_models(BudgetAccount, where={"category": category})
                if (criteria.department is None or account.department == criteria.department)
                and (account.is_active() or not self.policy.block_exceeded_accounts)
            ]
            if candidates:
                return min(candidates, key=lambda a: (-a.remaining_amount, a.created_at, a.id))
        return None

    @track_operation("adjust_allocation")
    def adjust_allocation(self, account_id: str, new_amount: Decimal | str | int) -> BudgetAccount:
        """
        Change an account's allocation and recompute utilization and status

        Raising the allocation of an exceeded account returns it to active;
        a later crossing alerts again.
        """
        amount = parse_amount(new_amount, "allocated_amount")

        def attempt(tx: StoreTransaction) -> tuple[BudgetAccount, list[BudgetAlert]]:
            account = tx.load(BudgetAccount, account_id)
            if account is None:
                raise BudgetAccountNotFound(account_id)
            after = account.with_balances(allocated=amount)
            alerts = self._alerts_for(account, after, None)
            [doc, *_] = tx.write([after.update_op(), *(a.create_op() for a in alerts)])
            return after.model_copy(update={"version": doc.version}), alerts

        with LogOperation(logger, "adjust_allocation", budget_id=account_id):
            account, alerts = run_with_conflict_retry(
                lambda: self.store.transact(attempt),
                operation="adjust_allocation",
                **self._retry_kwargs(),
            )
        update_budget_utilization(account.id, float(account.utilization))
        self._deliver_alerts(alerts)
        return account

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    @track_operation("record_expense")
    def record_expense(
        self,
        criteria: SelectionCriteria,
        amount: Any,
        source_event: SourceEventRef,
    ) -> ExpenseOutcome:
        """
        Charge an approved expense to the matching budget account, once

        Args:
            criteria: Which account should absorb the expense
            amount: Expense amount (validated here)
            source_event: Upstream document the expense comes from

        Returns:
            The outcome; `duplicate` is True when the event was already
            processed and nothing changed

        Raises:
            ValidationError: Amount is missing or not positive (recorded as
                processing_failed first)
            ConcurrencyExhaustedError: Conflicting writes outlasted retries
        """
        with LogOperation(
            logger,
            "record_expense",
            source_event=source_event.key,
            department=criteria.department,
            category=criteria.category,
        ):
            return self._apply_transaction(
                criteria, amount, source_event, TransactionType.EXPENSE, require_account=False
            )

    @track_operation("apply_fee_credit")
    def apply_fee_credit(
        self,
        student_id: str,
        amount: Any,
        period: str,
        source_event: SourceEventRef,
    ) -> ExpenseOutcome:
        """
        Fund a student's fee reduction from the scholarship fund, once

        Writes a credit transaction against the fund account, a fee-credit
        record and, when the student has a fee balance for `period`, the
        reduced outstanding balance - all in the same batch.

        Raises:
            ValidationError: Missing student/period or bad amount
            NotFoundError: No usable scholarship fund account
        """
        missing = [name for name, value in (("student_id", student_id), ("period", period)) if not value]
        if missing:
            raise ValidationError("Fee credit is incomplete", missing)

        criteria = SelectionCriteria(
            department=self.policy.scholarship_fund_department,
            category=self.policy.scholarship_fund_category,
        )

        def fee_writes(
            tx: StoreTransaction, account: BudgetAccount, txn: LedgerTransaction
        ) -> list[WriteOp]:
            credit = FeeCredit(
                id=generate_id(),
                student_id=student_id,
                period=period,
                amount=txn.amount,
                budget_account_id=account.id,
                transaction_id=txn.id,
                source_event_id=source_event.key,
                applied_at=txn.processed_at,
            )
            ops = [credit.create_op()]
            balance = tx.load(StudentFeeBalance, StudentFeeBalance.key(student_id, period))
            if balance is not None:
                ops.append(balance.with_credit(txn.amount).update_op())
            return ops

        with LogOperation(
            logger, "apply_fee_credit", source_event=source_event.key, student_id=student_id
        ):
            return self._apply_transaction(
                criteria,
                amount,
                source_event,
                TransactionType.CREDIT,
                require_account=True,
                extra_writes=fee_writes,
            )

    def record_processing_failure(
        self,
        source_event: SourceEventRef,
        error: str,
    ) -> SourceEvent | None:
        """
        Record that an upstream document could not be processed

        Leaves the event unprocessed so a corrected delivery can still be
        applied. Does nothing if the event was already processed.
        """

        def attempt(tx: StoreTransaction) -> SourceEvent | None:
            try:
                prior = self._ensure_unprocessed(source_event.key, tx)
            except DuplicateEventError:
                return None
            event = SourceEvent(
                id=source_event.key,
                source_collection=source_event.collection,
                document_id=source_event.document_id,
                processed=False,
                status=SourceEventStatus.PROCESSING_FAILED,
                error=error,
                processed_at=self.time_provider.now(),
            )
            tx.write([self._event_op(event, prior)])
            return event

        event = run_with_conflict_retry(
            lambda: self.store.transact(attempt),
            operation="record_processing_failure",
            **self._retry_kwargs(),
        )
        if event is not None:
            source_events_total.labels(status=event.status.value).inc()
            logger.error(
                "Source event processing failed",
                source_event=source_event.key,
                error=error,
            )
        return event

    def _apply_transaction(
        self,
        criteria: SelectionCriteria,
        raw_amount: Any,
        source_event: SourceEventRef,
        txn_type: TransactionType,
        *,
        require_account: bool,
        extra_writes: ExtraWrites | None = None,
    ) -> ExpenseOutcome:
        try:
            self._ensure_unprocessed(source_event.key)
        except DuplicateEventError as dup:
            return self._duplicate_outcome(dup)

        try:
            amount = parse_amount(raw_amount)
        except ValidationError as e:
            self.record_processing_failure(source_event, str(e))
            raise

        def attempt(tx: StoreTransaction) -> ExpenseOutcome:
            prior = self._ensure_unprocessed(source_event.key, tx)
            account = self._select_account(tx, criteria)
            now = self.time_provider.now()

            if account is None:
                if require_account:
                    raise NotFoundError(
                        "Budget account", f"{criteria.department or '*'}/{criteria.category}"
                    )
                event = SourceEvent(
                    id=source_event.key,
                    source_collection=source_event.collection,
                    document_id=source_event.document_id,
                    processed=True,
                    status=SourceEventStatus.NO_BUDGET_FOUND,
                    amount=amount,
                    processed_at=now,
                )
                tx.write([self._event_op(event, prior)])
                return ExpenseOutcome(processed=True, status=SourceEventStatus.NO_BUDGET_FOUND)

            txn = LedgerTransaction(
                id=self.allocator.allocate_within(
                    tx, self.policy.transaction_prefix, academic_year_key(account.academic_year)
                ),
                budget_account_id=account.id,
                type=txn_type,
                amount=amount,
                source_event_id=source_event.key,
                description=source_event.description,
                reference=source_event.reference,
                approved_by=source_event.approved_by,
                processed_at=now,
            )
            after = account.with_balances(spent=account.spent_amount + amount, expense_at=now)
            alerts = self._alerts_for(account, after, source_event.key)
            event = SourceEvent(
                id=source_event.key,
                source_collection=source_event.collection,
                document_id=source_event.document_id,
                processed=True,
                status=SourceEventStatus.DEDUCTED,
                budget_account_id=account.id,
                transaction_id=txn.id,
                amount=amount,
                processed_at=now,
            )
            ops = [
                after.update_op(),
                txn.create_op(),
                self._event_op(event, prior),
                *(alert.create_op() for alert in alerts),
            ]
            if extra_writes is not None:
                ops.extend(extra_writes(tx, account, txn))
            tx.write(ops)
            update_budget_utilization(after.id, float(after.utilization))
            return ExpenseOutcome(
                processed=True,
                status=SourceEventStatus.DEDUCTED,
                budget_id=account.id,
                transaction=txn,
                alerts=alerts,
            )

        try:
            outcome = run_with_conflict_retry(
                lambda: self.store.transact(attempt),
                operation=f"post_{txn_type.value}",
                **self._retry_kwargs(),
            )
        except DuplicateEventError as dup:
            # Lost the race to a concurrent delivery of the same event
            return self._duplicate_outcome(dup)

        source_events_total.labels(status=outcome.status.value).inc()
        if outcome.transaction is not None:
            ledger_transactions_total.labels(type=txn_type.value).inc()
            logger.info(
                "Ledger transaction applied",
                transaction_id=outcome.transaction.id,
                budget_id=outcome.budget_id,
                source_event=source_event.key,
                type=txn_type.value,
            )
        else:
            logger.warning(
                "No budget account matches source event",
                source_event=source_event.key,
                department=criteria.department,
                categories=criteria.categories(),
            )
        self._deliver_alerts(outcome.alerts)
        return outcome

    def _ensure_unprocessed(
        self, key: str, reader: SQLiteDocumentStore | StoreTransaction | None = None
    ) -> SourceEvent | None:
        """Return any unprocessed prior record, or raise if already processed"""
        existing = (reader or self.store).load(SourceEvent, key)
        if existing is not None and existing.processed:
            raise DuplicateEventError(key, existing.transaction_id)
        return existing

    def _duplicate_outcome(self, dup: DuplicateEventError) -> ExpenseOutcome:
        event = self.store.load(SourceEvent, dup.source_key)
        txn = self.store.load(LedgerTransaction, dup.transaction_id) if dup.transaction_id else None
        duplicate_events_total.labels(collection=event.source_collection).inc()
        logger.info(
            "Duplicate source event absorbed",
            source_event=dup.source_key,
            transaction_id=dup.transaction_id,
            status=event.status.value,
        )
        return ExpenseOutcome(
            processed=True,
            duplicate=True,
            status=event.status,
            budget_id=event.budget_account_id,
            transaction=txn,
        )

    def _event_op(self, event: SourceEvent, prior: SourceEvent | None) -> WriteOp:
        if prior is None:
            return event.create_op()
        return event.model_copy(update={"version": prior.version}).update_op()

    # ------------------------------------------------------------------
    # Alerts
    # ------------------------------------------------------------------

    def _alerts_for(
        self, before: BudgetAccount, after: BudgetAccount, event_key: str | None
    ) -> list[BudgetAlert]:
        now = self.time_provider.now()
        return [
            BudgetAlert(
                id=generate_id(),
                budget_account_id=after.id,
                alert_type=alert_type,
                severity=(
                    AlertSeverity.CRITICAL
                    if alert_type == AlertType.BUDGET_EXCEEDED
                    else AlertSeverity.WARNING
                ),
                message=alert_message(after, alert_type),
                utilization=after.utilization,
                source_event_id=event_key,
                created_at=now,
            )
            for alert_type in crossed_alerts(before, after, self.policy.high_utilization_threshold)
        ]

    def _deliver_alerts(self, alerts: list[BudgetAlert]) -> None:
        for alert in alerts:
            budget_alerts_total.labels(alert_type=alert.alert_type.value).inc()
            try:
                self.notifier.notify(alert.to_contract())
            except Exception as e:
                # Stays notified=False so staff surfaces can pick it up
                logger.error(
                    "Alert notification failed",
                    alert_id=alert.id,
                    budget_id=alert.budget_account_id,
                    error=str(e),
                )
                continue
            self.store.commit([alert.model_copy(update={"notified": True}).upsert_op()])

    def list_alerts(
        self, account_id: str | None = None, *, unnotified_only: bool = False
    ) -> list[BudgetAlert]:
        where: dict[str, Any] = {}
        if account_id:
            where["budget_account_id"] = account_id
        if unnotified_only:
            where["notified"] = False
        return self.store.query_models(BudgetAlert, where=where or None)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def list_transactions(self, account_id: str | None = None) -> list[LedgerTransaction]:
        where = {"budget_account_id": account_id} if account_id else None
        return self.store.query_models(LedgerTransaction, where=where)

    def get_source_event(self, collection: str, document_id: str) -> SourceEvent | None:
        return self.store.load(SourceEvent, source_key(collection, document_id))

    def list_source_events(self, status: SourceEventStatus | None = None) -> list[SourceEvent]:
        where = {"status": status.value} if status else None
        return self.store.query_models(SourceEvent, where=where)

    def verify_account(self, account_id: str) -> AccountVerification:
        """Check an account's balances against its transaction history"""
        account = self.get_account(account_id)
        transactions = self.list_transactions(account_id)
        problems = check_account_consistency(account, transactions)
        if problems:
            logger.error("Budget account inconsistent", budget_id=account_id, problems=problems)
        return AccountVerification(
            account_id=account_id,
            consistent=not problems,
            problems=problems,
            spent_amount=account.spent_amount,
            transaction_total=sum((t.amount for t in transactions), Decimal("0")),
            transaction_count=len(transactions),
        )

    def utilization_summary(self) -> dict[str, Any]:
        """Totals across all accounts, for dashboards and the CLI"""
        accounts = self.list_accounts()
        threshold = self.policy.high_utilization_threshold
        total_allocated = sum((a.allocated_amount for a in accounts), Decimal("0"))
        total_spent = sum((a.spent_amount for a in accounts), Decimal("0"))
        return {
            "accounts": len(accounts),
            "total_allocated": total_allocated,
            "total_spent": total_spent,
            "total_remaining": total_allocated - total_spent,
            "utilization": float(total_spent / total_allocated) if total_allocated else 0.0,
            "over_budget": sum(1 for a in accounts if not a.is_active()),
            "high_utilization": sum(1 for a in accounts if a.is_active() and a.reaches(threshold)),
        }

    # ------------------------------------------------------------------
    # Student fees
    # ------------------------------------------------------------------

    def set_student_fees(
        self,
        student_id: str,
        period: str,
        total_fees: Decimal | str | int,
        amount_paid: Decimal | str | int = 0,
    ) -> StudentFeeBalance:
        """Create or replace a student's fee balance, keeping credits already applied"""
        total = parse_non_negative(total_fees, "total_fees")
        paid = parse_non_negative(amount_paid, "amount_paid")

        def attempt(tx: StoreTransaction) -> StudentFeeBalance:
            key = StudentFeeBalance.key(student_id, period)
            existing = tx.load(StudentFeeBalance, key)
            credits = existing.scholarship_credits if existing else Decimal("0")
            balance = StudentFeeBalance(
                id=key,
                student_id=student_id,
                period=period,
                total_fees=total,
                amount_paid=paid,
                scholarship_credits=credits,
                outstanding_balance=max(Decimal("0"), total - paid - credits),
            )
            if existing is None:
                tx.write([balance.create_op()])
            else:
                tx.write([balance.model_copy(update={"version": existing.version}).update_op()])
            return balance

        return run_with_conflict_retry(
            lambda: self.store.transact(attempt),
            operation="set_student_fees",
            **self._retry_kwargs(),
        )

    def get_fee_balance(self, student_id: str, period: str) -> StudentFeeBalance | None:
        return self.store.load(StudentFeeBalance, StudentFeeBalance.key(student_id, period))

    def list_fee_credits(self, student_id: str) -> list[FeeCredit]:
        return self.store.query_models(FeeCredit, where={"student_id": student_id})

    def _retry_kwargs(self) -> dict[str, int]:
        return {
            "max_attempts": self.policy.max_write_attempts,
            "min_wait_ms": self.policy.backoff_min_ms,
            "max_wait_ms": self.policy.backoff_max_ms,
        }
