"""
Double-entry ledger writer and platform account tracker.

Every money movement is one append-only ledger entry between two named
accounts. Platform accounts (escrow_pool, platform_fees, payout_pending)
also carry a running balance; ``post`` writes the entry and adjusts those
balances through the same store, so both commit or roll back together.
"""

import logging
from collections import defaultdict
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Mapping

from payloom_escrow.models import (
    LedgerAccount,
    LedgerEntry,
    PLATFORM_ACCOUNTS,
    TransactionType,
    generate_reference,
)

logger = logging.getLogger(__name__)


# Entry reference prefix per transaction type
REFERENCE_PREFIXES = {
    TransactionType.ESCROW_LOCK: "LOCK",
    TransactionType.ESCROW_RELEASE: "REL",
    TransactionType.FEE_COLLECTION: "FEE",
    TransactionType.ESCROW_REFUND: "REFUND",
    TransactionType.REFUND_COMPLETED: "RFC",
    TransactionType.WITHDRAWAL: "WDR",
    TransactionType.PAYOUT: "PAY",
}


def _account_name(account: Any) -> str:
    return account.value if isinstance(account, LedgerAccount) else str(account)


class LedgerWriter:
    """Writes ledger entries and keeps platform balances in step with them."""

    async def record(self, store, entry: LedgerEntry) -> Dict[str, Any]:
        """Append an entry. Entries are never updated or deleted."""
        if not entry.entry_ref:
            entry = LedgerEntry(
                transaction_type=entry.transaction_type,
                debit_account=entry.debit_account,
                credit_account=entry.credit_account,
                amount=entry.amount,
                order_id=entry.order_id,
                wallet_id=entry.wallet_id,
                description=entry.description,
                metadata=entry.metadata,
                entry_ref=generate_reference(REFERENCE_PREFIXES[entry.transaction_type]),
            )
        return await store.insert_ledger_entry(entry)

    async def adjust_account(self, store, account: LedgerAccount, delta: Decimal) -> Decimal:
        """Atomically add ``delta`` to a platform account balance."""
        balance = await store.adjust_account(account, delta)
        logger.debug(f"Platform account {account.value} adjusted by {delta} -> {balance}")
        return balance

    async def post(self, store, entry: LedgerEntry) -> Dict[str, Any]:
        """
        Record an entry and apply it to the platform balances.

        The credit side gains the amount and the debit side loses it. Accounts
        outside the platform (buyer, seller, external) have no tracked balance.
        """
        row = await self.record(store, entry)
        if entry.credit_account in PLATFORM_ACCOUNTS:
            await self.adjust_account(store, entry.credit_account, entry.amount)
        if entry.debit_account in PLATFORM_ACCOUNTS:
            await self.adjust_account(store, entry.debit_account, -entry.amount)

        logger.info(
            f"Ledger {row['entry_ref']}: {entry.transaction_type.value} "
            f"{entry.debit_account.value} -> {entry.credit_account.value} {entry.amount}"
        )
        return row

    @staticmethod
    def net_by_account(entries: Iterable[Mapping[str, Any]]) -> Dict[str, Decimal]:
        """
        Signed total per account (credits minus debits) for a set of entries.

        Every entry adds and removes the same amount, so the totals always
        sum to zero.
        """
        totals: Dict[str, Decimal] = defaultdict(lambda: Decimal("0"))
        for entry in entries:
            amount = Decimal(entry['amount'])
            totals[_account_name(entry['credit_account'])] += amount
            totals[_account_name(entry['debit_account'])] -= amount
        return dict(totals)

    async def reconcile(self, store) -> List[Dict[str, Any]]:
        """
        Compare each platform balance with what the ledger says it should be.

        Returns:
            One discrepancy dict per mismatched account (empty when balanced)
        """
        balances = await store.get_platform_accounts()
        ledger_totals = await store.get_ledger_account_totals()

        discrepancies = []
        for account in PLATFORM_ACCOUNTS:
            balance = Decimal(balances.get(account.value, 0))
            expected = Decimal(ledger_totals.get(account.value, 0))
            if balance != expected:
                discrepancies.append({
                    'account': account.value,
                    'balance': balance,
                    'ledger_total': expected,
                    'difference': balance - expected,
                })

        if discrepancies:
            logger.error(f"Platform account reconciliation failed: {discrepancies}")
        return discrepancies
