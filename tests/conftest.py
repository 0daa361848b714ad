"""
Shared fixtures: an in-memory database, a recording dispatcher and the
escrow services wired the way main.py wires them.
"""

from datetime import timedelta
from decimal import Decimal

import pytest

from payloom_escrow.config import EscrowSettings
from payloom_escrow.escrow_automation import EscrowAutomation
from payloom_escrow.escrow_service import EscrowService
from payloom_escrow.fees import FeeCalculator
from payloom_escrow.ledger import LedgerWriter
from payloom_escrow.utils import utcnow
from payloom_escrow.verification import PaymentVerificationGateway

from tests.fakes import FakeEscrowDatabase, RecordingDispatcher


@pytest.fixture
def settings():
    return EscrowSettings(
        fee_percent=Decimal("5"),
        fee_minimum=Decimal("50"),
        min_order_amount=Decimal("100"),
        max_order_amount=Decimal("500000"),
        auto_release_days=7,
        currency="KES",
        frontend_url="https://payloom.test",
    )


@pytest.fixture
def db():
    return FakeEscrowDatabase()


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def escrow(db, settings, dispatcher):
    return EscrowService(db, FeeCalculator(settings), settings, LedgerWriter(), dispatcher)


@pytest.fixture
def gateway(db, escrow, settings):
    return PaymentVerificationGateway(db, escrow, settings)


@pytest.fixture
def automation(escrow):
    return EscrowAutomation(escrow, interval_hours=1)


@pytest.fixture
def locked_order(db, escrow):
    """Factory: seed an order and lock it into escrow, returning the wallet."""
    async def _make(order_id="ORD-1001", amount="1000", **order_fields):
        db.seed_order(order_id, amount, **order_fields)
        return await escrow.lock(order_id, payment_reference=f"RCPT{order_id[-4:]}")
    return _make


@pytest.fixture
def past_due(db):
    """Push every locked wallet's auto-release date into the past."""
    def _expire(days: int = 1):
        for wallet in db.state.wallets:
            wallet['auto_release_date'] = utcnow() - timedelta(days=days)
    return _expire
