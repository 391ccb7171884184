"""
Chain handlers for on-chain settlement and payment lookups.
"""
from .base import ChainHandler, NativePayment, SettlementResult, SettlementStatus
from .evm_chain import EVMChainHandler
from .factory import ChainHandlerFactory

__all__ = [
    'ChainHandler',
    'EVMChainHandler',
    'ChainHandlerFactory',
    'NativePayment',
    'SettlementResult',
    'SettlementStatus',
]
