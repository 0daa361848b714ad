"""
Database module for the PayLoom escrow core.

EscrowDatabase owns the asyncpg pool and the schema. All reads and writes
go through an EscrowStore bound to one connection, so a wallet operation
and its ledger entries share a single transaction:

    async with db.transaction() as store:
        order = await store.get_order(order_id, for_update=True)
        ...

Unique violations that carry business meaning are translated into the
conflict errors from payloom_escrow.exceptions here, so callers never
handle asyncpg errors directly.
"""

import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from decimal import Decimal
from typing import Any, AsyncIterator, Dict, List, Optional

import asyncpg

from payloom_escrow.exceptions import (
    DisputeExistsError,
    DuplicateTransactionCodeError,
    PayoutExistsError,
    WalletAlreadyExistsError,
)
from payloom_escrow.models import LedgerAccount, LedgerEntry, PLATFORM_ACCOUNTS

logger = logging.getLogger(__name__)


SCHEMA_STATEMENTS = [
    "CREATE EXTENSION IF NOT EXISTS pgcrypto",

    """
    CREATE TABLE IF NOT EXISTS orders (
        id VARCHAR(64) PRIMARY KEY,
        seller_id VARCHAR(64) NOT NULL,
        seller_phone VARCHAR(20),
        buyer_id VARCHAR(64),
        buyer_phone VARCHAR(20),
        buyer_name VARCHAR(255),
        item_name VARCHAR(255) NOT NULL,
        amount NUMERIC(15, 2) NOT NULL CHECK (amount > 0),
        currency VARCHAR(3) NOT NULL DEFAULT 'KES',
        status VARCHAR(20) NOT NULL DEFAULT 'pending'
            CHECK (status IN ('pending', 'processing', 'paid', 'shipped', 'delivered',
                              'completed', 'refunded', 'cancelled', 'disputed')),
        verification_status VARCHAR(20) NOT NULL DEFAULT 'none'
            CHECK (verification_status IN ('none', 'pending_approval', 'flagged',
                                           'approved', 'rejected')),
        escrow_status VARCHAR(30) NOT NULL DEFAULT 'none'
            CHECK (escrow_status IN ('none', 'pending_confirmation', 'held',
                                     'released', 'refunded')),
        escrow_wallet_id UUID,
        transaction_code VARCHAR(50),
        payment_method VARCHAR(30),
        payment_reference VARCHAR(100),
        platform_fee NUMERIC(15, 2),
        seller_payout NUMERIC(15, 2),
        rejection_reason TEXT,
        payment_failure_reason TEXT,
        refund_reason TEXT,
        approved_by VARCHAR(64),
        approved_at TIMESTAMPTZ,
        paid_at TIMESTAMPTZ,
        shipped_at TIMESTAMPTZ,
        delivered_at TIMESTAMPTZ,
        completed_at TIMESTAMPTZ,
        refunded_at TIMESTAMPTZ,
        auto_release_at TIMESTAMPTZ,
        buyer_confirmed_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,

    # Malformed codes are stored and flagged, so the column matches transaction_validations
    "ALTER TABLE orders ALTER COLUMN transaction_code TYPE VARCHAR(50)",

    """
    CREATE UNIQUE INDEX IF NOT EXISTS uq_orders_approved_transaction_code
        ON orders(transaction_code) WHERE verification_status = 'approved'
    """,

    """
    CREATE TABLE IF NOT EXISTS escrow_wallets (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        wallet_ref VARCHAR(50) UNIQUE NOT NULL,
        order_id VARCHAR(64) NOT NULL REFERENCES orders(id) ON DELETE RESTRICT,
        gross_amount NUMERIC(15, 2) NOT NULL CHECK (gross_amount > 0),
        platform_fee NUMERIC(15, 2) NOT NULL CHECK (platform_fee >= 0),
        net_amount NUMERIC(15, 2) NOT NULL CHECK (net_amount > 0),
        currency VARCHAR(3) NOT NULL DEFAULT 'KES',
        status VARCHAR(20) NOT NULL DEFAULT 'locked'
            CHECK (status IN ('locked', 'released', 'refunded')),
        auto_release_date TIMESTAMPTZ NOT NULL,
        locked_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        released_at TIMESTAMPTZ,
        released_by VARCHAR(30)
            CHECK (released_by IN ('buyer_confirmation', 'admin', 'auto_release', 'dispute_refund')),
        refund_reason TEXT,
        lock_source VARCHAR(30),
        payment_reference VARCHAR(100),
        CONSTRAINT net_equals_gross_minus_fee CHECK (net_amount = gross_amount - platform_fee)
    )
    """,

    # At most one non-terminal wallet per order
    """
    CREATE UNIQUE INDEX IF NOT EXISTS uq_escrow_wallets_locked_order
        ON escrow_wallets(order_id) WHERE status = 'locked'
    """,

    """
    CREATE TABLE IF NOT EXISTS ledger_entries (
        id BIGSERIAL PRIMARY KEY,
        entry_ref VARCHAR(50) UNIQUE NOT NULL,
        order_id VARCHAR(64),
        wallet_id UUID,
        transaction_type VARCHAR(30) NOT NULL
            CHECK (transaction_type IN ('escrow_lock', 'escrow_release', 'fee_collection',
                                        'escrow_refund', 'refund_completed', 'withdrawal', 'payout')),
        debit_account VARCHAR(30) NOT NULL,
        credit_account VARCHAR(30) NOT NULL,
        amount NUMERIC(15, 2) NOT NULL CHECK (amount > 0),
        description TEXT,
        metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        CONSTRAINT distinct_accounts CHECK (debit_account <> credit_account)
    )
    """,

    """
    CREATE OR REPLACE FUNCTION reject_ledger_mutation() RETURNS trigger AS $$
    BEGIN
        RAISE EXCEPTION 'ledger_entries is append-only';
    END;
    $$ LANGUAGE plpgsql
    """,

    "DROP TRIGGER IF EXISTS ledger_entries_immutable ON ledger_entries",

    """
    CREATE TRIGGER ledger_entries_immutable
        BEFORE UPDATE OR DELETE ON ledger_entries
        FOR EACH ROW EXECUTE FUNCTION reject_ledger_mutation()
    """,

    """
    CREATE TABLE IF NOT EXISTS platform_accounts (
        account_type VARCHAR(30) PRIMARY KEY
            CHECK (account_type IN ('escrow_pool', 'platform_fees', 'payout_pending')),
        balance NUMERIC(15, 2) NOT NULL DEFAULT 0,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,

    """
    INSERT INTO platform_accounts (account_type, balance)
    VALUES ('escrow_pool', 0), ('platform_fees', 0), ('payout_pending', 0)
    ON CONFLICT (account_type) DO NOTHING
    """,

    """
    CREATE TABLE IF NOT EXISTS seller_wallets (
        seller_id VARCHAR(64) PRIMARY KEY,
        available_balance NUMERIC(15, 2) NOT NULL DEFAULT 0 CHECK (available_balance >= 0),
        pending_balance NUMERIC(15, 2) NOT NULL DEFAULT 0 CHECK (pending_balance >= 0),
        total_earned NUMERIC(15, 2) NOT NULL DEFAULT 0,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,

    """
    CREATE TABLE IF NOT EXISTS escrow_deposits (
        id BIGSERIAL PRIMARY KEY,
        order_id VARCHAR(64) UNIQUE NOT NULL REFERENCES orders(id) ON DELETE CASCADE,
        amount NUMERIC(15, 2) NOT NULL,
        currency VARCHAR(3) NOT NULL DEFAULT 'KES',
        payment_method VARCHAR(30),
        payment_reference VARCHAR(100) NOT NULL,
        payer_phone VARCHAR(20),
        payer_name VARCHAR(255),
        status VARCHAR(20) NOT NULL DEFAULT 'pending'
            CHECK (status IN ('pending', 'confirmed', 'rejected')),
        confirmed_by VARCHAR(64),
        confirmed_at TIMESTAMPTZ,
        admin_notes TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,

    """
    CREATE TABLE IF NOT EXISTS transaction_validations (
        id BIGSERIAL PRIMARY KEY,
        order_id VARCHAR(64) NOT NULL,
        transaction_code VARCHAR(50),
        validation_type VARCHAR(30) NOT NULL
            CHECK (validation_type IN ('format_check', 'duplicate_check', 'amount_check')),
        status VARCHAR(10) NOT NULL CHECK (status IN ('passed', 'failed')),
        details JSONB NOT NULL DEFAULT '{}'::jsonb,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,

    """
    CREATE TABLE IF NOT EXISTS fraud_alerts (
        id BIGSERIAL PRIMARY KEY,
        order_id VARCHAR(64) NOT NULL,
        alert_type VARCHAR(50) NOT NULL,
        severity VARCHAR(10) NOT NULL CHECK (severity IN ('low', 'medium', 'high')),
        details JSONB NOT NULL DEFAULT '{}'::jsonb,
        resolved BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,

    """
    CREATE TABLE IF NOT EXISTS mpesa_transactions (
        id BIGSERIAL PRIMARY KEY,
        order_id VARCHAR(64) NOT NULL,
        transaction_type VARCHAR(20) NOT NULL CHECK (transaction_type IN ('stk_push', 'b2c_payout')),
        merchant_request_id VARCHAR(100),
        checkout_request_id VARCHAR(100) UNIQUE,
        conversation_id VARCHAR(100) UNIQUE,
        mpesa_receipt_number VARCHAR(50),
        phone_number VARCHAR(20) NOT NULL,
        amount NUMERIC(15, 2) NOT NULL CHECK (amount > 0),
        status VARCHAR(20) NOT NULL DEFAULT 'pending'
            CHECK (status IN ('pending', 'completed', 'failed')),
        result_code INTEGER,
        result_desc TEXT,
        raw_response JSONB,
        callback_data JSONB,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,

    # One live payout per order
    """
    CREATE UNIQUE INDEX IF NOT EXISTS uq_mpesa_live_payout
        ON mpesa_transactions(order_id)
        WHERE transaction_type = 'b2c_payout' AND status IN ('pending', 'completed')
    """,

    """
    CREATE TABLE IF NOT EXISTS disputes (
        id BIGSERIAL PRIMARY KEY,
        order_id VARCHAR(64) UNIQUE NOT NULL REFERENCES orders(id) ON DELETE CASCADE,
        opened_by VARCHAR(64) NOT NULL,
        reason VARCHAR(100) NOT NULL,
        description TEXT NOT NULL,
        status VARCHAR(20) NOT NULL DEFAULT 'open' CHECK (status IN ('open', 'resolved')),
        resolution VARCHAR(20) CHECK (resolution IN ('refund_buyer', 'release_seller')),
        resolved_by VARCHAR(64),
        resolved_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,

    """
    CREATE TABLE IF NOT EXISTS notifications (
        id BIGSERIAL PRIMARY KEY,
        user_id VARCHAR(64) NOT NULL,
        order_id VARCHAR(64),
        event VARCHAR(50) NOT NULL,
        title VARCHAR(255) NOT NULL,
        message TEXT NOT NULL,
        data JSONB NOT NULL DEFAULT '{}'::jsonb,
        is_read BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,

    """
    CREATE TABLE IF NOT EXISTS sms_logs (
        id BIGSERIAL PRIMARY KEY,
        phone_number VARCHAR(20) NOT NULL,
        message TEXT NOT NULL,
        status VARCHAR(20) NOT NULL,
        provider_response JSONB,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,

    """
    CREATE TABLE IF NOT EXISTS admin_logs (
        id BIGSERIAL PRIMARY KEY,
        admin_id VARCHAR(64) NOT NULL,
        action VARCHAR(50) NOT NULL,
        target_type VARCHAR(30) NOT NULL,
        target_id VARCHAR(64) NOT NULL,
        details JSONB NOT NULL DEFAULT '{}'::jsonb,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,

    """
    CREATE INDEX IF NOT EXISTS idx_orders_status ON orders(status);
    CREATE INDEX IF NOT EXISTS idx_orders_transaction_code ON orders(transaction_code);
    CREATE INDEX IF NOT EXISTS idx_escrow_wallets_order ON escrow_wallets(order_id);
    CREATE INDEX IF NOT EXISTS idx_escrow_wallets_auto_release
        ON escrow_wallets(auto_release_date) WHERE status = 'locked';
    CREATE INDEX IF NOT EXISTS idx_ledger_entries_order ON ledger_entries(order_id);
    CREATE INDEX IF NOT EXISTS idx_validations_order ON transaction_validations(order_id);
    CREATE INDEX IF NOT EXISTS idx_notifications_user ON notifications(user_id);
    """,
]


def _record(row: Optional[asyncpg.Record]) -> Optional[Dict[str, Any]]:
    return dict(row) if row else None


async def _init_connection(conn: asyncpg.Connection) -> None:
    """Decode JSONB columns to Python objects on every pooled connection."""
    await conn.set_type_codec(
        'jsonb',
        encoder=lambda value: json.dumps(value, default=str),
        decoder=json.loads,
        schema='pg_catalog',
    )


class EscrowStore:
    """SQL operations bound to a single connection."""

    def __init__(self, conn: asyncpg.Connection):
        self.conn = conn

    # ==================== ORDERS ====================

    async def get_order(self, order_id: str, for_update: bool = False) -> Optional[Dict[str, Any]]:
        query = "SELECT * FROM orders WHERE id = $1"
        if for_update:
            query += " FOR UPDATE"
        return _record(await self.conn.fetchrow(query, order_id))

    async def mark_order_paid(
        self,
        order_id: str,
        wallet_id: Any,
        platform_fee: Decimal,
        seller_payout: Decimal,
        auto_release_at: datetime,
        payment_reference: Optional[str],
        paid_at: datetime,
    ) -> None:
        await self.conn.execute("""
            UPDATE orders
            SET status = 'paid',
                escrow_status = 'held',
                escrow_wallet_id = $2,
                platform_fee = $3,
                seller_payout = $4,
                auto_release_at = $5,
                payment_reference = COALESCE($6, payment_reference),
                paid_at = $7,
                payment_failure_reason = NULL,
                updated_at = NOW()
            WHERE id = $1
        """, order_id, wallet_id, platform_fee, seller_payout, auto_release_at,
            payment_reference, paid_at)

    async def mark_order_completed(self, order_id: str, completed_at: datetime) -> None:
        await self.conn.execute("""
            UPDATE orders
            SET status = 'completed',
                escrow_status = 'released',
                completed_at = $2,
                shipped_at = COALESCE(shipped_at, $2),
                delivered_at = COALESCE(delivered_at, $2),
                updated_at = NOW()
            WHERE id = $1
        """, order_id, completed_at)

    async def mark_order_refunded(self, order_id: str, reason: str, refunded_at: datetime) -> None:
        await self.conn.execute("""
            UPDATE orders
            SET status = 'refunded',
                escrow_status = 'refunded',
                refund_reason = $2,
                refunded_at = $3,
                updated_at = NOW()
            WHERE id = $1
        """, order_id, reason, refunded_at)

    async def mark_order_fulfilled(self, order_id: str, stage: str, at: datetime) -> None:
        if stage == 'shipped':
            await self.conn.execute("""
                UPDATE orders
                SET status = 'shipped', shipped_at = $2, updated_at = NOW()
                WHERE id = $1
            """, order_id, at)
        else:
            await self.conn.execute("""
                UPDATE orders
                SET status = 'delivered',
                    shipped_at = COALESCE(shipped_at, $2),
                    delivered_at = $2,
                    updated_at = NOW()
                WHERE id = $1
            """, order_id, at)

    async def set_buyer_confirmed(self, order_id: str, at: datetime) -> None:
        await self.conn.execute(
            "UPDATE orders SET buyer_confirmed_at = $2, updated_at = NOW() WHERE id = $1",
            order_id, at
        )

    async def record_manual_submission(
        self,
        order_id: str,
        transaction_code: str,
        payment_method: str,
        payer_phone: Optional[str],
        payer_name: Optional[str],
        verification_status: str,
    ) -> None:
        await self.conn.execute("""
            UPDATE orders
            SET status = 'processing',
                verification_status = $3,
                escrow_status = 'pending_confirmation',
                transaction_code = $2,
                payment_method = $4,
                buyer_phone = COALESCE($5, buyer_phone),
                buyer_name = COALESCE($6, buyer_name),
                rejection_reason = NULL,
                updated_at = NOW()
            WHERE id = $1
        """, order_id, transaction_code, verification_status, payment_method,
            payer_phone, payer_name)

    async def set_verification_approved(self, order_id: str, admin_id: str, approved_at: datetime) -> None:
        """
        Mark the order's payment code approved.

        Raises:
            DuplicateTransactionCodeError: If the code is already approved on another order
        """
        try:
            async with self.conn.transaction():
                await self.conn.execute("""
                    UPDATE orders
                    SET verification_status = 'approved',
                        approved_by = $2,
                        approved_at = $3,
                        updated_at = NOW()
                    WHERE id = $1
                """, order_id, admin_id, approved_at)
        except asyncpg.UniqueViolationError:
            raise DuplicateTransactionCodeError(
                f"Transaction code on order {order_id} is already approved on another order"
            )

    async def reject_verification(self, order_id: str, reason: str) -> None:
        await self.conn.execute("""
            UPDATE orders
            SET status = 'pending',
                verification_status = 'rejected',
                escrow_status = 'none',
                rejection_reason = $2,
                updated_at = NOW()
            WHERE id = $1
        """, order_id, reason)

    async def mark_order_disputed(self, order_id: str) -> None:
        await self.conn.execute(
            "UPDATE orders SET status = 'disputed', updated_at = NOW() WHERE id = $1",
            order_id
        )

    async def mark_order_payment_failed(self, order_id: str, reason: str) -> None:
        await self.conn.execute("""
            UPDATE orders
            SET payment_failure_reason = $2, updated_at = NOW()
            WHERE id = $1 AND status = 'pending'
        """, order_id, reason)

    async def find_orders_by_transaction_code(
        self,
        transaction_code: str,
        exclude_order_id: str,
    ) -> List[Dict[str, Any]]:
        rows = await self.conn.fetch("""
            SELECT id, status, verification_status
            FROM orders
            WHERE transaction_code = $1 AND id <> $2
        """, transaction_code, exclude_order_id)
        return [dict(row) for row in rows]

    # ==================== ESCROW WALLETS ====================

    async def insert_wallet(
        self,
        order_id: str,
        wallet_ref: str,
        gross_amount: Decimal,
        platform_fee: Decimal,
        net_amount: Decimal,
        currency: str,
        auto_release_date: datetime,
        locked_at: datetime,
        lock_source: str,
        payment_reference: Optional[str],
    ) -> Dict[str, Any]:
        """
        Insert a locked wallet.

        Raises:
            WalletAlreadyExistsError: If the order already has a locked wallet
        """
        try:
            row = await self.conn.fetchrow("""
                INSERT INTO escrow_wallets
                (wallet_ref, order_id, gross_amount, platform_fee, net_amount, currency,
                 status, auto_release_date, locked_at, lock_source, payment_reference)
                VALUES ($1, $2, $3, $4, $5, $6, 'locked', $7, $8, $9, $10)
                RETURNING *
            """, wallet_ref, order_id, gross_amount, platform_fee, net_amount, currency,
                auto_release_date, locked_at, lock_source, payment_reference)
        except asyncpg.UniqueViolationError:
            raise WalletAlreadyExistsError(f"Order {order_id} already has a locked escrow wallet")
        return dict(row)

    async def transition_wallet(
        self,
        new_status: str,
        released_by: str,
        at: datetime,
        wallet_id: Any = None,
        order_id: Optional[str] = None,
        refund_reason: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        """
        Move a locked wallet to a terminal status.

        Returns the updated row, or None when no locked wallet matched.
        """
        if wallet_id is not None:
            where, key = "id = $1", wallet_id
        else:
            where, key = "order_id = $1", order_id

        row = await self.conn.fetchrow(f"""
            UPDATE escrow_wallets
            SET status = $2,
                released_by = $3,
                released_at = $4,
                refund_reason = $5
            WHERE {where} AND status = 'locked'
            RETURNING *
        """, key, new_status, released_by, at, refund_reason)
        return _record(row)

    async def get_latest_wallet(
        self,
        order_id: Optional[str] = None,
        wallet_id: Any = None,
    ) -> Optional[Dict[str, Any]]:
        if wallet_id is not None:
            row = await self.conn.fetchrow("SELECT * FROM escrow_wallets WHERE id = $1", wallet_id)
        else:
            row = await self.conn.fetchrow("""
                SELECT * FROM escrow_wallets
                WHERE order_id = $1
                ORDER BY locked_at DESC
                LIMIT 1
            """, order_id)
        return _record(row)

    async def list_due_wallets(self, now: datetime) -> List[Dict[str, Any]]:
        rows = await self.conn.fetch("""
            SELECT w.*, o.status AS order_status
            FROM escrow_wallets w
            JOIN orders o ON o.id = w.order_id
            WHERE w.status = 'locked' AND w.auto_release_date <= $1
            ORDER BY w.auto_release_date
        """, now)
        return [dict(row) for row in rows]

    async def list_wallets(self, status: Optional[str] = None, limit: int = 50) -> List[Dict[str, Any]]:
        if status:
            rows = await self.conn.fetch("""
                SELECT * FROM escrow_wallets WHERE status = $1
                ORDER BY locked_at DESC LIMIT $2
            """, status, limit)
        else:
            rows = await self.conn.fetch(
                "SELECT * FROM escrow_wallets ORDER BY locked_at DESC LIMIT $1", limit
            )
        return [dict(row) for row in rows]

    # ==================== LEDGER & PLATFORM ACCOUNTS ====================

    async def insert_ledger_entry(self, entry: LedgerEntry) -> Dict[str, Any]:
        row = await self.conn.fetchrow("""
            INSERT INTO ledger_entries
            (entry_ref, order_id, wallet_id, transaction_type, debit_account,
             credit_account, amount, description, metadata)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
            RETURNING *
        """, entry.entry_ref, entry.order_id, entry.wallet_id, entry.transaction_type.value,
            entry.debit_account.value, entry.credit_account.value, entry.amount,
            entry.description, entry.metadata)
        return dict(row)

    async def adjust_account(self, account: LedgerAccount, delta: Decimal) -> Decimal:
        return await self.conn.fetchval("""
            UPDATE platform_accounts
            SET balance = balance + $2, updated_at = NOW()
            WHERE account_type = $1
            RETURNING balance
        """, account.value, delta)

    async def get_ledger_entries(self, order_id: str) -> List[Dict[str, Any]]:
        rows = await self.conn.fetch(
            "SELECT * FROM ledger_entries WHERE order_id = $1 ORDER BY id", order_id
        )
        return [dict(row) for row in rows]

    async def get_platform_accounts(self) -> Dict[str, Decimal]:
        rows = await self.conn.fetch("SELECT account_type, balance FROM platform_accounts")
        return {row['account_type']: row['balance'] for row in rows}

    async def get_ledger_account_totals(self) -> Dict[str, Decimal]:
        """Credits minus debits per platform account across the whole ledger."""
        rows = await self.conn.fetch("""
            SELECT account, SUM(delta) AS total FROM (
                SELECT credit_account AS account, amount AS delta FROM ledger_entries
                UNION ALL
                SELECT debit_account AS account, -amount AS delta FROM ledger_entries
            ) movements
            WHERE account = ANY($1::text[])
            GROUP BY account
        """, [account.value for account in PLATFORM_ACCOUNTS])
        return {row['account']: row['total'] for row in rows}

    # ==================== SELLER WALLETS ====================

    async def credit_seller_pending(self, seller_id: str, amount: Decimal) -> None:
        await self.conn.execute("""
            INSERT INTO seller_wallets (seller_id, pending_balance)
            VALUES ($1, $2)
            ON CONFLICT (seller_id) DO UPDATE
            SET pending_balance = seller_wallets.pending_balance + EXCLUDED.pending_balance,
                updated_at = NOW()
        """, seller_id, amount)

    async def settle_seller_release(self, seller_id: str, amount: Decimal) -> None:
        await self.conn.execute("""
            INSERT INTO seller_wallets (seller_id, available_balance, total_earned)
            VALUES ($1, $2, $2)
            ON CONFLICT (seller_id) DO UPDATE
            SET available_balance = seller_wallets.available_balance + $2,
                pending_balance = GREATEST(seller_wallets.pending_balance - $2, 0),
                total_earned = seller_wallets.total_earned + $2,
                updated_at = NOW()
        """, seller_id, amount)

    async def reverse_seller_pending(self, seller_id: str, amount: Decimal) -> None:
        await self.conn.execute("""
            UPDATE seller_wallets
            SET pending_balance = GREATEST(pending_balance - $2, 0), updated_at = NOW()
            WHERE seller_id = $1
        """, seller_id, amount)

    async def debit_seller_available(self, seller_id: str, amount: Decimal) -> None:
        await self.conn.execute("""
            UPDATE seller_wallets
            SET available_balance = GREATEST(available_balance - $2, 0), updated_at = NOW()
            WHERE seller_id = $1
        """, seller_id, amount)

    async def get_seller_wallet(self, seller_id: str) -> Optional[Dict[str, Any]]:
        return _record(await self.conn.fetchrow(
            "SELECT * FROM seller_wallets WHERE seller_id = $1", seller_id
        ))

    # ==================== MANUAL VERIFICATION ====================

    async def insert_validation(
        self,
        order_id: str,
        transaction_code: str,
        validation_type: str,
        passed: bool,
        details: Dict[str, Any],
    ) -> None:
        await self.conn.execute("""
            INSERT INTO transaction_validations
            (order_id, transaction_code, validation_type, status, details)
            VALUES ($1, $2, $3, $4, $5)
        """, order_id, transaction_code, validation_type, 'passed' if passed else 'failed', details)

    async def insert_fraud_alert(
        self,
        order_id: str,
        alert_type: str,
        severity: str,
        details: Dict[str, Any],
    ) -> Dict[str, Any]:
        row = await self.conn.fetchrow("""
            INSERT INTO fraud_alerts (order_id, alert_type, severity, details)
            VALUES ($1, $2, $3, $4)
            RETURNING *
        """, order_id, alert_type, severity, details)
        return dict(row)

    async def upsert_escrow_deposit(
        self,
        order_id: str,
        amount: Decimal,
        currency: str,
        payment_method: str,
        payment_reference: str,
        payer_phone: Optional[str],
        payer_name: Optional[str],
    ) -> None:
        await self.conn.execute("""
            INSERT INTO escrow_deposits
            (order_id, amount, currency, payment_method, payment_reference, payer_phone, payer_name)
            VALUES ($1, $2, $3, $4, $5, $6, $7)
            ON CONFLICT (order_id) DO UPDATE
            SET amount = EXCLUDED.amount,
                currency = EXCLUDED.currency,
                payment_method = EXCLUDED.payment_method,
                payment_reference = EXCLUDED.payment_reference,
                payer_phone = EXCLUDED.payer_phone,
                payer_name = EXCLUDED.payer_name,
                status = 'pending',
                confirmed_by = NULL,
                confirmed_at = NULL,
                admin_notes = NULL,
                updated_at = NOW()
        """, order_id, amount, currency, payment_method, payment_reference, payer_phone, payer_name)

    async def confirm_escrow_deposit(
        self,
        order_id: str,
        admin_id: str,
        notes: Optional[str],
        at: datetime,
    ) -> None:
        await self.conn.execute("""
            UPDATE escrow_deposits
            SET status = 'confirmed', confirmed_by = $2, confirmed_at = $3,
                admin_notes = $4, updated_at = NOW()
            WHERE order_id = $1
        """, order_id, admin_id, at, notes)

    async def reject_escrow_deposit(self, order_id: str, admin_id: str, notes: Optional[str]) -> None:
        await self.conn.execute("""
            UPDATE escrow_deposits
            SET status = 'rejected', confirmed_by = $2, admin_notes = $3, updated_at = NOW()
            WHERE order_id = $1
        """, order_id, admin_id, notes)

    async def get_escrow_deposit(self, order_id: str) -> Optional[Dict[str, Any]]:
        return _record(await self.conn.fetchrow(
            "SELECT * FROM escrow_deposits WHERE order_id = $1", order_id
        ))

    async def insert_admin_log(
        self,
        admin_id: str,
        action: str,
        target_type: str,
        target_id: str,
        details: Dict[str, Any],
    ) -> None:
        await self.conn.execute("""
            INSERT INTO admin_logs (admin_id, action, target_type, target_id, details)
            VALUES ($1, $2, $3, $4, $5)
        """, admin_id, action, target_type, target_id, details)

    # ==================== M-PESA TRANSACTIONS ====================

    async def insert_mpesa_transaction(
        self,
        order_id: str,
        transaction_type: str,
        phone_number: str,
        amount: Decimal,
        merchant_request_id: Optional[str] = None,
        checkout_request_id: Optional[str] = None,
        raw_response: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Record a pending provider call.

        Raises:
            PayoutExistsError: If a live payout already exists for the order
        """
        try:
            async with self.conn.transaction():
                row = await self.conn.fetchrow("""
                    INSERT INTO mpesa_transactions
                    (order_id, transaction_type, phone_number, amount,
                     merchant_request_id, checkout_request_id, raw_response)
                    VALUES ($1, $2, $3, $4, $5, $6, $7)
                    RETURNING *
                """, order_id, transaction_type, phone_number, amount,
                    merchant_request_id, checkout_request_id, raw_response)
        except asyncpg.UniqueViolationError:
            raise PayoutExistsError(f"A payout for order {order_id} is already in progress or completed")
        return dict(row)

    async def attach_conversation_id(
        self,
        transaction_id: int,
        conversation_id: str,
        raw_response: Dict[str, Any],
    ) -> None:
        await self.conn.execute("""
            UPDATE mpesa_transactions
            SET conversation_id = $2, raw_response = $3, updated_at = NOW()
            WHERE id = $1
        """, transaction_id, conversation_id, raw_response)

    async def fail_mpesa_transaction(self, transaction_id: int, result_desc: str) -> None:
        await self.conn.execute("""
            UPDATE mpesa_transactions
            SET status = 'failed', result_desc = $2, updated_at = NOW()
            WHERE id = $1 AND status = 'pending'
        """, transaction_id, result_desc)

    async def complete_mpesa_transaction(
        self,
        status: str,
        result_code: int,
        result_desc: str,
        callback_data: Dict[str, Any],
        receipt_number: Optional[str] = None,
        checkout_request_id: Optional[str] = None,
        conversation_id: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        """
        Claim a pending provider call with its final result.

        Returns the claimed row, or None for unknown ids and repeat deliveries.
        """
        if checkout_request_id is not None:
            where, key = "checkout_request_id = $1", checkout_request_id
        else:
            where, key = "conversation_id = $1", conversation_id

        row = await self.conn.fetchrow(f"""
            UPDATE mpesa_transactions
            SET status = $2,
                result_code = $3,
                result_desc = $4,
                callback_data = $5,
                mpesa_receipt_number = COALESCE($6, mpesa_receipt_number),
                updated_at = NOW()
            WHERE {where} AND status = 'pending'
            RETURNING *
        """, key, status, result_code, result_desc, callback_data, receipt_number)
        return _record(row)

    async def get_mpesa_transaction(
        self,
        checkout_request_id: Optional[str] = None,
        conversation_id: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        if checkout_request_id is not None:
            row = await self.conn.fetchrow(
                "SELECT * FROM mpesa_transactions WHERE checkout_request_id = $1",
                checkout_request_id
            )
        else:
            row = await self.conn.fetchrow(
                "SELECT * FROM mpesa_transactions WHERE conversation_id = $1", conversation_id
            )
        return _record(row)

    # ==================== DISPUTES ====================

    async def insert_dispute(
        self,
        order_id: str,
        opened_by: str,
        reason: str,
        description: str,
    ) -> Dict[str, Any]:
        """
        Open a dispute.

        Raises:
            DisputeExistsError: If the order already has a dispute
        """
        try:
            async with self.conn.transaction():
                row = await self.conn.fetchrow("""
                    INSERT INTO disputes (order_id, opened_by, reason, description)
                    VALUES ($1, $2, $3, $4)
                    RETURNING *
                """, order_id, opened_by, reason, description)
        except asyncpg.UniqueViolationError:
            existing_id = await self.conn.fetchval(
                "SELECT id FROM disputes WHERE order_id = $1", order_id
            )
            raise DisputeExistsError(
                f"A dispute already exists for order {order_id}", dispute_id=existing_id
            )
        return dict(row)

    async def get_dispute(self, dispute_id: int) -> Optional[Dict[str, Any]]:
        return _record(await self.conn.fetchrow("SELECT * FROM disputes WHERE id = $1", dispute_id))

    async def resolve_dispute(
        self,
        dispute_id: int,
        resolution: str,
        resolved_by: str,
        at: datetime,
    ) -> Optional[Dict[str, Any]]:
        row = await self.conn.fetchrow("""
            UPDATE disputes
            SET status = 'resolved', resolution = $2, resolved_by = $3, resolved_at = $4
            WHERE id = $1 AND status = 'open'
            RETURNING *
        """, dispute_id, resolution, resolved_by, at)
        return _record(row)

    # ==================== NOTIFICATIONS ====================

    async def insert_notification(
        self,
        user_id: str,
        event: str,
        title: str,
        message: str,
        order_id: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None,
    ) -> None:
        await self.conn.execute("""
            INSERT INTO notifications (user_id, order_id, event, title, message, data)
            VALUES ($1, $2, $3, $4, $5, $6)
        """, user_id, order_id, event, title, message, data or {})

    async def insert_sms_log(
        self,
        phone_number: str,
        message: str,
        status: str,
        provider_response: Optional[Dict[str, Any]] = None,
    ) -> None:
        await self.conn.execute("""
            INSERT INTO sms_logs (phone_number, message, status, provider_response)
            VALUES ($1, $2, $3, $4)
        """, phone_number, message, status, provider_response)


class EscrowDatabase:
    """Connection pool and schema owner for the escrow core."""

    def __init__(self, database_url: str, min_size: int = 2, max_size: int = 10):
        self.database_url = database_url
        self.min_size = min_size
        self.max_size = max_size
        self.pool: Optional[asyncpg.Pool] = None

    async def connect(self) -> None:
        """Establish database connection pool"""
        try:
            self.pool = await asyncpg.create_pool(
                self.database_url,
                min_size=self.min_size,
                max_size=self.max_size,
                command_timeout=60,
                init=_init_connection,
            )
            logger.info("Database connection pool established")
        except (OSError, asyncpg.PostgresError) as e:
            logger.error(f"Failed to connect to database: {e}")
            raise

    async def disconnect(self) -> None:
        """Close database connection pool"""
        if self.pool:
            await self.pool.close()
            self.pool = None
            logger.info("Database connection pool closed")

    def _require_pool(self) -> asyncpg.Pool:
        if not self.pool:
            raise RuntimeError("Database not connected. Call connect() first.")
        return self.pool

    async def initialize_tables(self) -> None:
        """Create all tables, indexes and triggers. Safe to run on every start."""
        pool = self._require_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                for statement in SCHEMA_STATEMENTS:
                    await conn.execute(statement)
        logger.info("All escrow tables and indexes created successfully")

    @asynccontextmanager
    async def transaction(
        self,
        isolation: Optional[str] = None,
        readonly: bool = False,
    ) -> AsyncIterator[EscrowStore]:
        """
        Yield a store whose statements commit or roll back together.

        ``isolation`` takes asyncpg's names ('read_committed',
        'repeatable_read', 'serializable'); None uses the server default.
        """
        pool = self._require_pool()
        async with pool.acquire() as conn:
            async with conn.transaction(isolation=isolation, readonly=readonly):
                yield EscrowStore(conn)

    @asynccontextmanager
    async def session(self) -> AsyncIterator[EscrowStore]:
        """Yield a store in autocommit mode for single-statement work."""
        pool = self._require_pool()
        async with pool.acquire() as conn:
            yield EscrowStore(conn)

    async def ping(self) -> bool:
        try:
            async with self.session() as store:
                return await store.conn.fetchval("SELECT 1") == 1
        except (OSError, RuntimeError, asyncpg.PostgresError) as e:
            logger.error(f"Database health check failed: {e}")
            return False


async def create_escrow_db(database_url: str, min_size: int = 2, max_size: int = 10) -> EscrowDatabase:
    """
    Create, connect and initialize the escrow database.

    Example:
        >>> db = await create_escrow_db(config.database_url)
        >>> async with db.transaction() as store:
        ...     order = await store.get_order("ord_123")
    """
    db = EscrowDatabase(database_url, min_size, max_size)
    await db.connect()
    await db.initialize_tables()
    return db
