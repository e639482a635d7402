from credit_engine.models.base import Base
from credit_engine.models.credit_balance import CreditBalance
from credit_engine.models.credit_config import CreditConfig
from credit_engine.models.credit_grant import CreditGrant
from credit_engine.models.credit_purchase import CreditPurchase
from credit_engine.models.credit_transaction import CreditTransaction, Direction, TransactionType
from credit_engine.models.credit_usage import CreditUsage

__all__ = [
    "Base",
    "CreditBalance",
    "CreditConfig",
    "CreditGrant",
    "CreditPurchase",
    "CreditTransaction", "Direction", "TransactionType",
    "CreditUsage",
]
