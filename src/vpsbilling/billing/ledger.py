"""
Ledger

Append-only transaction log plus a mutable prepaid balance per account. The
billing engine's only write path is debit(): a single conditional UPDATE
(balance >= amount) guarded by an idempotency key, so concurrent debits never
overdraw and a retried debit for the same key is a no-op.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional
import uuid

import structlog

from ..core.clock import Clock, utcnow
from ..core.errors import LedgerError
from ..core.rates import from_minor, quantize_money, to_minor
from ..persistence.database import Database, get_database
from ..persistence.models import AccountRecord, LedgerTransactionRecord
from ..persistence.repository import AccountRepository

logger = structlog.get_logger()


@dataclass
class DebitResult:
    """
    Outcome of a conditional debit.

    applied=False means insufficient funds (or no such account); it is a
    business outcome, not an error.
    """
    applied: bool
    new_balance: Decimal
    transaction_id: Optional[str] = None
    replayed: bool = False  # idempotency key had already been consumed


class Ledger:
    """Account balances and their transaction log."""

    def __init__(self, db: Optional[Database] = None, clock: Clock = utcnow):
        self.db = db or get_database()
        self.accounts = AccountRepository(self.db)
        self.clock = clock

    def open_account(self, account_id: str, currency: str = "USD") -> AccountRecord:
        return self.accounts.create(account_id, self.clock(), currency=currency)

    def get_balance(self, account_id: str) -> Decimal:
        account = self.accounts.get(account_id)
        if account is None:
            raise LedgerError(f"Unknown account: {account_id}")
        return account.balance

    def debit(
        self,
        account_id: str,
        amount: Decimal,
        idempotency_key: str,
        description: Optional[str] = None,
    ) -> DebitResult:
        """
        Debit `amount` from the account exactly once per idempotency key.

        The key lookup, the conditional balance update and the ledger insert
        commit together; if a transaction already exists for the key the call
        returns it without touching the balance.
        """
        amount = quantize_money(amount)
        if amount <= 0:
            raise LedgerError(f"Debit amount must be positive, got {amount}")
        amount_minor = to_minor(amount)
        now = self.clock()

        with self.db.transaction() as tx:
            existing = self.accounts.find_transaction(tx, idempotency_key)
            if existing is not None:
                balance = self.accounts.balance_minor(tx, account_id) or 0
                logger.info(
                    "ledger_debit_replayed",
                    account_id=account_id,
                    idempotency_key=idempotency_key,
                    transaction_id=existing.transaction_id,
                )
                return DebitResult(
                    applied=True,
                    new_balance=from_minor(balance),
                    transaction_id=existing.transaction_id,
                    replayed=True,
                )

            if not self.accounts.conditional_debit(tx, account_id, amount_minor, now):
                balance = self.accounts.balance_minor(tx, account_id)
                logger.warning(
                    "ledger_debit_declined",
                    account_id=account_id,
                    amount=str(amount),
                    balance=str(from_minor(balance)) if balance is not None else None,
                    reason="insufficient_funds" if balance is not None else "unknown_account",
                )
                return DebitResult(applied=False, new_balance=from_minor(balance or 0))

            balance_after = self.accounts.balance_minor(tx, account_id)
            record = LedgerTransactionRecord(
                transaction_id=str(uuid.uuid4()),
                account_id=account_id,
                kind="debit",
                amount=amount,
                balance_after=from_minor(balance_after),
                idempotency_key=idempotency_key,
                description=description,
                created_at=now,
            )
            self.accounts.insert_transaction(tx, record, amount_minor, balance_after)

        logger.info(
            "ledger_debit_applied",
            account_id=account_id,
            amount=str(amount),
            balance=str(record.balance_after),
            transaction_id=record.transaction_id,
        )
        return DebitResult(
            applied=True,
            new_balance=record.balance_after,
            transaction_id=record.transaction_id,
        )

    def credit(
        self,
        account_id: str,
        amount: Decimal,
        idempotency_key: Optional[str] = None,
        description: Optional[str] = None,
    ) -> LedgerTransactionRecord:
        """Add funds (top-ups and refunds land here)."""
        amount = quantize_money(amount)
        if amount <= 0:
            raise LedgerError(f"Credit amount must be positive, got {amount}")
        amount_minor = to_minor(amount)
        now = self.clock()
        key = idempotency_key or f"credit:{uuid.uuid4()}"

        with self.db.transaction() as tx:
            existing = self.accounts.find_transaction(tx, key)
            if existing is not None:
                return existing
            if not self.accounts.credit(tx, account_id, amount_minor, now):
                raise LedgerError(f"Unknown account: {account_id}")
            balance_after = self.accounts.balance_minor(tx, account_id)
            record = LedgerTransactionRecord(
                transaction_id=str(uuid.uuid4()),
                account_id=account_id,
                kind="credit",
                amount=amount,
                balance_after=from_minor(balance_after),
                idempotency_key=key,
                description=description,
                created_at=now,
            )
            self.accounts.insert_transaction(tx, record, amount_minor, balance_after)

        logger.info("ledger_credit_applied", account_id=account_id, amount=str(amount))
        return record

    def transactions(self, account_id: str, limit: int = 50) -> List[LedgerTransactionRecord]:
        return self.accounts.transactions(account_id, limit=limit)
