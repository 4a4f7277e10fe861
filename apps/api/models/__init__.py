"""Models package."""

from .user import User
from .credit_transaction import CreditTransaction
