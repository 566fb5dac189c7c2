"""Models package."""

from .user import User
from .account import Account
from .invoice import Invoice
from .balance_entry import BalanceEntry
