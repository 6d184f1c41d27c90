"""Models package."""

from .token_account import TokenAccount
from .token_pool import TokenPool
from .token_ledger_entry import TokenLedgerEntry
