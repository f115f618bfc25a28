"""
Transaction ledger: one entry per mutating portfolio operation.

    pending --(success)--> completed
    pending --(failure)--> failed

Terminal entries are never modified. An entry that stays pending means the
operation broke between persisting holdings and finalizing; list_pending()
surfaces those for follow-up.
"""

import uuid
from typing import List, Optional

from db import Database, Transaction, utc_now_iso
from errors import InvalidInputError, TransactionStateError

TRANSACTION_TYPES = ("deposit", "withdraw", "rebalance", "disable")

STATUS_PENDING = "pending"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"
TERMINAL_STATUSES = (STATUS_COMPLETED, STATUS_FAILED)


class TransactionLedger:
    def __init__(self, db: Database):
        self.db = db

    def create(
        self,
        portfolio_id: str,
        user_address: str,
        kind: str,
        amount: float,
        tx_hash: Optional[str] = None,
    ) -> str:
        """Open a pending entry and return its id."""
        if kind not in TRANSACTION_TYPES:
            raise InvalidInputError(f"Unknown transaction type: {kind}", error_code="INVALID_TRANSACTION_TYPE")

        now = utc_now_iso()
        transaction = Transaction(
            id=str(uuid.uuid4()),
            portfolio_id=portfolio_id,
            user_address=(user_address or "").lower(),
            type=kind,
            amount=amount,
            status=STATUS_PENDING,
            tx_hash=tx_hash,
            created_at=now,
            updated_at=now,
        )
        self.db.insert_transaction(transaction)
        print(f"[Ledger] Opened {kind} transaction {transaction.id} for portfolio {portfolio_id}")
        return transaction.id

    def finalize(
        self,
        transaction_id: str,
        status: str,
        tx_hash: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> Transaction:
        """
        Move a pending entry to completed or failed. Allowed exactly once.

        Raises:
            TransactionStateError: If status is not terminal, the entry is
                unknown, or it was already finalized
        """
        if status not in TERMINAL_STATUSES:
            raise TransactionStateError(transaction_id, f"cannot finalize with status '{status}'")

        transaction = self.db.get_transaction(transaction_id)
        if transaction is None:
            raise TransactionStateError(transaction_id, "not found")
        if transaction.status != STATUS_PENDING:
            raise TransactionStateError(transaction_id, f"already {transaction.status}")

        transaction.status = status
        if tx_hash is not None:
            transaction.tx_hash = tx_hash
        transaction.error_message = error_message
        transaction.updated_at = utc_now_iso()
        self.db.update_transaction(transaction)
        print(f"[Ledger] Transaction {transaction_id} -> {status}")
        return transaction

    def get(self, transaction_id: str) -> Optional[Transaction]:
        return self.db.get_transaction(transaction_id)

    def list_for_portfolio(self, portfolio_id: str) -> List[Transaction]:
        return self.db.get_transactions(portfolio_id=portfolio_id)

    def list_pending(self) -> List[Transaction]:
        return self.db.get_transactions(status=STATUS_PENDING)


def transaction_to_dict(transaction: Transaction) -> dict:
    return {
        "id": transaction.id,
        "portfolioId": transaction.portfolio_id,
        "userAddress": transaction.user_address,
        "type": transaction.type,
        "amount": transaction.amount,
        "status": transaction.status,
        "txHash": transaction.tx_hash,
        "errorMessage": transaction.error_message,
        "timestamp": transaction.created_at,
        "updatedAt": transaction.updated_at,
    }
