"""
Factory for creating chain handlers.
"""
import threading
from typing import Any, Dict, Type

from django.conf import settings

from x402gate.exceptions import GatewayMisconfigured

from .base import ChainHandler
from .evm_chain import EVMChainHandler


def chain_config_from_settings(network: str) -> Dict[str, Any]:
    """
    Get chain-specific configuration from Django settings.

    Network entries in ``X402_NETWORKS`` may override any of the global
    signer and gas settings.
    """
    networks = {
        name.lower(): conf
        for name, conf in (getattr(settings, 'X402_NETWORKS', {}) or {}).items()
    }
    network_conf = networks.get(network.lower())
    if network_conf is None:
        raise GatewayMisconfigured(f'Unsupported network: {network}')

    config = {
        'family': 'evm',
        'signer_private_key': getattr(settings, 'X402_SIGNER_PRIVATE_KEY', ''),
        'signer_address': getattr(settings, 'X402_SIGNER_ADDRESS', ''),
        'gas_limit': getattr(settings, 'X402_GAS_LIMIT', 250000),
        'tx_timeout_seconds': getattr(settings, 'X402_TX_TIMEOUT_SECONDS', 30),
        'rpc_timeout_seconds': getattr(settings, 'X402_RPC_TIMEOUT_SECONDS', 10),
        'max_fee_per_gas_wei': getattr(settings, 'X402_MAX_FEE_PER_GAS_WEI', 0),
        'max_priority_fee_per_gas_wei': getattr(settings, 'X402_MAX_PRIORITY_FEE_PER_GAS_WEI', 0),
        'settlement_lookback_blocks': getattr(settings, 'X402_SETTLEMENT_LOOKBACK_BLOCKS', 5000),
        'settlement_cache_size': getattr(settings, 'X402_SETTLEMENT_CACHE_SIZE', 1024),
    }
    config.update(network_conf)
    return config


class ChainHandlerFactory:
    """Factory to create chain handlers based on chain family."""

    _handlers: Dict[str, Type[ChainHandler]] = {
        'evm': EVMChainHandler,
    }
    _instances: Dict[str, ChainHandler] = {}
    _lock = threading.Lock()

    @classmethod
    def create(cls, network: str, config: Dict[str, Any] = None) -> ChainHandler:
        """
        Create a chain handler for the specified network.

        Args:
            network: Network id ('avalanche-fuji', 'base', ...)
            config: Optional configuration dict (chain id, RPC URL, signer keys, etc.)

        Raises:
            GatewayMisconfigured: If the chain family is not supported
        """
        config = config or {}
        family = str(config.get('family', 'evm')).lower().strip()

        handler_class = cls._handlers.get(family)
        if handler_class is None:
            supported = ', '.join(cls._handlers.keys())
            raise GatewayMisconfigured(
                f"Unsupported chain family: {family}. "
                f"Supported families: {supported}"
            )

        return handler_class(network, config)

    @classmethod
    def get(cls, network: str) -> ChainHandler:
        """Return the process-wide handler for ``network``, creating it from settings."""
        key = network.lower().strip()
        with cls._lock:
            handler = cls._instances.get(key)
            if handler is None:
                handler = cls.create(network, chain_config_from_settings(network))
                cls._instances[key] = handler
            return handler

    @classmethod
    def reset(cls) -> None:
        with cls._lock:
            cls._instances.clear()

    @classmethod
    def register(cls, family: str, handler_class: Type[ChainHandler]) -> None:
        cls._handlers[family.lower().strip()] = handler_class

    @classmethod
    def get_supported_families(cls) -> list:
        return list(cls._handlers.keys())
