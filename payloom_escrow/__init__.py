"""
PayLoom escrow core.

Holds buyer payments in escrow until fulfilment, with a double-entry ledger,
M-Pesa payment verification, automatic release and seller payouts.
"""

__version__ = "1.0.0"
