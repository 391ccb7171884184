"""
Base chain handler interface.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from x402gate.schemas import Authorization, PaymentRequirement


class SettlementStatus(str, Enum):
    SUCCESS = 'success'
    FAILED = 'failed'
    UNKNOWN = 'unknown'


@dataclass(frozen=True)
class SettlementResult:
    """Result of payment settlement."""
    status: SettlementStatus
    transaction_hash: Optional[str] = None
    block_confirmations: int = 0
    failure_reason: Optional[str] = None
    payer: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return self.status is SettlementStatus.SUCCESS

    @property
    def is_terminal(self) -> bool:
        return self.status is not SettlementStatus.UNKNOWN


@dataclass(frozen=True)
class NativePayment:
    """A native-asset transfer as observed on-chain."""
    transaction_hash: str
    from_address: str
    to_address: Optional[str]
    value_wei: int
    block_number: Optional[int] = None
    confirmations: int = 0
    status: Optional[int] = None
    block_timestamp: Optional[int] = None

    @property
    def is_mined(self) -> bool:
        return self.block_number is not None and self.status is not None


class ChainHandler(ABC):
    """
    Abstract base class for blockchain payment handlers.
    Each chain family implements this interface.
    """

    def __init__(self, network: str, config: Dict[str, Any]):
        """
        Initialize the chain handler.

        Args:
            network: Network id as used in payment requirements
            config: Chain-specific configuration (RPC URL, signer keys, etc.)
        """
        self.network = network
        self.config = config

    @property
    @abstractmethod
    def chain_name(self) -> str:
        """Return the chain family name (e.g., 'evm')."""
        pass

    @abstractmethod
    def settle_payment(
        self,
        authorization: Authorization,
        signature: str,
        requirement: PaymentRequirement,
    ) -> SettlementResult:
        """
        Submit a verified authorization on-chain and wait for a terminal receipt.

        Must never raise for on-chain or transport failures; those are reported
        through the returned status.
        """
        pass

    @abstractmethod
    def check_settlement(
        self,
        transaction_hash: str,
        authorization: Authorization,
        signature: str,
        requirement: PaymentRequirement,
    ) -> SettlementResult:
        """
        Resolve a settlement whose earlier outcome was unknown.

        Reads the receipt of ``transaction_hash`` instead of submitting again.
        A transaction that never reached the chain is resubmitted while the
        authorization is still usable, and reported FAILED once it is not.
        """
        pass

    @abstractmethod
    def get_native_payment(self, transaction_hash: str) -> Optional[NativePayment]:
        """
        Look up a native-asset transfer and its receipt.

        Returns:
            None when the node does not know the transaction yet.
        """
        pass

    @abstractmethod
    def validate_address(self, address: str) -> bool:
        pass

    def get_explorer_url(self, tx_hash: str) -> str:
        return f"{self.config.get('explorer_url', '')}/tx/{tx_hash}"
