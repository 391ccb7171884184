"""
Chain handler for EVM networks (any chain id).
"""
import threading
import time
from collections import OrderedDict
from typing import Any, Dict, Optional, Tuple

from hexbytes import HexBytes
from loguru import logger
from web3 import HTTPProvider, Web3
from web3.exceptions import (
    BadFunctionCallOutput,
    ContractLogicError,
    TimeExhausted,
    TransactionNotFound,
    Web3RPCError,
)

from x402gate.schemas import Authorization, PaymentRequirement

from .base import ChainHandler, NativePayment, SettlementResult, SettlementStatus


# EIP-3009 surface of USDC-style tokens
ERC3009_ABI = [
    {
        'inputs': [
            {'name': 'from', 'type': 'address'},
            {'name': 'to', 'type': 'address'},
            {'name': 'value', 'type': 'uint256'},
            {'name': 'validAfter', 'type': 'uint256'},
            {'name': 'validBefore', 'type': 'uint256'},
            {'name': 'nonce', 'type': 'bytes32'},
            {'name': 'v', 'type': 'uint8'},
            {'name': 'r', 'type': 'bytes32'},
            {'name': 's', 'type': 'bytes32'},
        ],
        'name': 'transferWithAuthorization',
        'outputs': [],
        'stateMutability': 'nonpayable',
        'type': 'function',
    },
    {
        'inputs': [
            {'name': 'authorizer', 'type': 'address'},
            {'name': 'nonce', 'type': 'bytes32'},
        ],
        'name': 'authorizationState',
        'outputs': [{'name': '', 'type': 'bool'}],
        'stateMutability': 'view',
        'type': 'function',
    },
    {
        'anonymous': False,
        'inputs': [
            {'indexed': True, 'name': 'authorizer', 'type': 'address'},
            {'indexed': True, 'name': 'nonce', 'type': 'bytes32'},
        ],
        'name': 'AuthorizationUsed',
        'type': 'event',
    },
]

SettlementKey = Tuple[str, str, str]


class EVMChainHandler(ChainHandler):
    """Settles EIP-3009 authorizations and resolves native transfers over JSON-RPC."""

    def __init__(self, network: str, config: Dict[str, Any]):
        super().__init__(network, config)
        self.chain_id = int(config.get('chain_id', 0))
        self.rpc_url = config.get('rpc_url', '')
        self.signer_private_key = config.get('signer_private_key', '')
        self.signer_address = config.get('signer_address', '')
        self.gas_limit = config.get('gas_limit', 250000)
        self.tx_timeout_seconds = config.get('tx_timeout_seconds', 30)
        self.rpc_timeout_seconds = config.get('rpc_timeout_seconds', 10)
        self.max_fee_per_gas_wei = config.get('max_fee_per_gas_wei', 0)
        self.max_priority_fee_per_gas_wei = config.get(
            'max_priority_fee_per_gas_wei', 0)
        self.lookback_blocks = config.get('settlement_lookback_blocks', 5000)
        self.cache_size = max(int(config.get('settlement_cache_size', 1024)), 1)
        self.clock = time.time

        self._web3: Optional[Web3] = None
        # Least recently used first.
        self._results: 'OrderedDict[SettlementKey, SettlementResult]' = OrderedDict()
        self._results_lock = threading.Lock()
        # One signer account per network: serialize nonce assignment.
        self._submit_lock = threading.Lock()

    @property
    def chain_name(self) -> str:
        return 'evm'

    def get_web3(self) -> Web3:
        if self._web3 is None:
            self._web3 = Web3(HTTPProvider(
                self.rpc_url,
                request_kwargs={'timeout': self.rpc_timeout_seconds},
            ))
        return self._web3

    def validate_address(self, address: str) -> bool:
        """Validate Ethereum address format."""
        try:
            Web3.to_checksum_address(address)
            return True
        except (ValueError, TypeError):
            return False

    def _normalize_address(self, address: str) -> str:
        return Web3.to_checksum_address(address)

    def _signature_to_components(self, signature: str) -> tuple:
        """Split signature into v, r, s components."""
        sig_bytes = HexBytes(signature)
        if len(sig_bytes) != 65:
            raise ValueError('Signature must be 65 bytes')
        r = bytes(sig_bytes[:32])
        s = bytes(sig_bytes[32:64])
        v = sig_bytes[64]
        if v < 27:
            v += 27
        return int(v), r, s

    def _settlement_key(self, authorization: Authorization, requirement: PaymentRequirement) -> SettlementKey:
        return (requirement.asset_address.lower(),
                authorization.from_.lower(), authorization.nonce.lower())

    def _cached(self, key: SettlementKey) -> Optional[SettlementResult]:
        with self._results_lock:
            result = self._results.get(key)
            if result is not None:
                self._results.move_to_end(key)
            return result

    def _remember(self, key: SettlementKey, result: SettlementResult) -> SettlementResult:
        # Only mined outcomes are final; pre-flight failures may succeed later.
        if result.is_terminal and result.transaction_hash:
            with self._results_lock:
                result = self._results.setdefault(key, result)
                self._results.move_to_end(key)
                while len(self._results) > self.cache_size:
                    self._results.popitem(last=False)
        return result

    def settle_payment(
        self,
        authorization: Authorization,
        signature: str,
        requirement: PaymentRequirement,
    ) -> SettlementResult:
        """
        Execute ``transferWithAuthorization`` and wait for its receipt.
        """
        key = self._settlement_key(authorization, requirement)
        cached = self._cached(key)
        if cached is not None:
            logger.info('Returning cached settlement for nonce {}: {}',
                        authorization.nonce, cached.transaction_hash)
            return cached

        if not self.rpc_url:
            return SettlementResult(
                status=SettlementStatus.FAILED,
                failure_reason='RPC URL not configured',
            )
        if not self.signer_private_key:
            return SettlementResult(
                status=SettlementStatus.FAILED,
                failure_reason='Signer private key not configured',
            )

        try:
            web3 = self.get_web3()
            account = web3.eth.account.from_key(self.signer_private_key)
            signer_address = self._normalize_address(
                self.signer_address or account.address)

            contract = web3.eth.contract(
                address=self._normalize_address(requirement.asset_address),
                abi=ERC3009_ABI,
            )
            nonce_bytes = HexBytes(authorization.nonce)

            # Already spent on-chain: find the transaction instead of resubmitting
            if contract.functions.authorizationState(
                    authorization.from_, nonce_bytes).call():
                result = self._find_existing_settlement(
                    web3, contract, authorization)
                return self._remember(key, result)

            v, r, s = self._signature_to_components(signature)
            transfer_fn = contract.functions.transferWithAuthorization(
                authorization.from_,
                authorization.to,
                int(authorization.value),
                int(authorization.valid_after),
                int(authorization.valid_before),
                nonce_bytes,
                v,
                r,
                s,
            )

            # Pre-flight simulation
            try:
                transfer_fn.call({'from': signer_address})
            except ContractLogicError as exc:
                error_msg = self._map_contract_error(exc)
                logger.error('Settlement simulation failed: {}', error_msg)
                return SettlementResult(
                    status=SettlementStatus.FAILED,
                    failure_reason=error_msg,
                    payer=authorization.from_,
                )
            except BadFunctionCallOutput:
                # Some USDC implementations don't return bool, continue anyway
                logger.warning(
                    'Settlement simulation returned empty data, continuing')

            with self._submit_lock:
                submitted = self._submit(web3, transfer_fn, signer_address, account)
            if isinstance(submitted, SettlementResult):
                return submitted

            result = self._await_receipt(web3, submitted, authorization.from_)
            return self._remember(key, result)

        except Exception as e:
            logger.error('EVM settlement error on {}: {}', self.network, e)
            return SettlementResult(
                status=SettlementStatus.FAILED,
                failure_reason=f'Settlement error: {str(e)}',
                payer=authorization.from_,
            )

    def _submit(self, web3: Web3, transfer_fn, signer_address: str, account):
        """Sign and broadcast; returns the tx hash or a result when nothing can be known."""
        try:
            estimated_gas = transfer_fn.estimate_gas({'from': signer_address})
        except Exception as exc:
            logger.debug(
                'Gas estimation failed, falling back to configured gas limit: {}', exc)
            estimated_gas = self.gas_limit

        tx_params = {
            'chainId': self.chain_id,
            'from': signer_address,
            'nonce': web3.eth.get_transaction_count(signer_address, 'pending'),
            'gas': max(estimated_gas, self.gas_limit),
        }
        if self.max_fee_per_gas_wei and self.max_priority_fee_per_gas_wei:
            tx_params['maxFeePerGas'] = int(self.max_fee_per_gas_wei)
            tx_params['maxPriorityFeePerGas'] = int(
                self.max_priority_fee_per_gas_wei)
        else:
            tx_params['gasPrice'] = web3.eth.gas_price

        transaction = transfer_fn.build_transaction(tx_params)
        signed = account.sign_transaction(transaction)

        raw_tx = getattr(signed, 'raw_transaction', None)
        if raw_tx is None:
            raw_tx = getattr(signed, 'rawTransaction', None)
        local_hash = Web3.to_hex(signed.hash)

        try:
            tx_hash = Web3.to_hex(web3.eth.send_raw_transaction(raw_tx))
        except (Web3RPCError, ValueError) as exc:
            # The node answered and refused the transaction
            logger.error('Settlement transaction rejected by node: {}', exc)
            return SettlementResult(
                status=SettlementStatus.FAILED,
                failure_reason=f'Settlement transaction rejected: {exc}',
            )
        except Exception as exc:
            # Transport failure: the transaction may or may not have been broadcast
            logger.error('Settlement broadcast outcome unknown for {}: {}',
                         local_hash, exc)
            return SettlementResult(
                status=SettlementStatus.UNKNOWN,
                transaction_hash=local_hash,
                failure_reason='Settlement broadcast did not complete',
            )

        logger.info('Settlement transaction submitted on {}: {}',
                    self.network, tx_hash)
        return tx_hash

    def _await_receipt(self, web3: Web3, tx_hash: str, payer: str) -> SettlementResult:
        try:
            receipt = web3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=self.tx_timeout_seconds)
        except TimeExhausted:
            logger.warning('Timed out waiting for settlement receipt {}', tx_hash)
            return SettlementResult(
                status=SettlementStatus.UNKNOWN,
                transaction_hash=tx_hash,
                failure_reason='Timed out waiting for settlement transaction',
                payer=payer,
            )
        except Exception as exc:
            logger.error('Receipt lookup failed for {}: {}', tx_hash, exc)
            return SettlementResult(
                status=SettlementStatus.UNKNOWN,
                transaction_hash=tx_hash,
                failure_reason='Receipt lookup failed',
                payer=payer,
            )
        return self._result_from_receipt(web3, receipt, tx_hash, payer)

    def _result_from_receipt(self, web3: Web3, receipt, tx_hash: str, payer: Optional[str]) -> SettlementResult:
        if receipt.status != 1:
            reason = self._revert_reason(web3, tx_hash, receipt)
            logger.error('Settlement transaction {} reverted: {}', tx_hash, reason)
            return SettlementResult(
                status=SettlementStatus.FAILED,
                transaction_hash=tx_hash,
                failure_reason=reason,
                payer=payer,
                details={'block': receipt.blockNumber},
            )

        confirmations = max(web3.eth.block_number - receipt.blockNumber + 1, 1)
        return SettlementResult(
            status=SettlementStatus.SUCCESS,
            transaction_hash=tx_hash,
            block_confirmations=confirmations,
            payer=payer,
            details={
                'block': receipt.blockNumber,
                'gas_used': receipt.gasUsed,
            },
        )

    def _revert_reason(self, web3: Web3, tx_hash: str, receipt) -> str:
        """Replay the reverted call at its block to recover the revert message."""
        try:
            tx = web3.eth.get_transaction(tx_hash)
            web3.eth.call(
                {'from': tx['from'], 'to': tx['to'], 'data': tx['input']},
                receipt.blockNumber,
            )
        except ContractLogicError as exc:
            return self._map_contract_error(exc)
        except Exception as exc:
            logger.debug('Revert reason replay failed for {}: {}', tx_hash, exc)
        return 'Settlement transaction reverted on-chain'

    def _find_existing_settlement(self, web3: Web3, contract, authorization: Authorization) -> SettlementResult:
        latest = web3.eth.block_number
        logs = contract.events.AuthorizationUsed().get_logs(
            argument_filters={
                'authorizer': authorization.from_,
                'nonce': HexBytes(authorization.nonce),
            },
            from_block=max(latest - self.lookback_blocks, 0),
            to_block=latest,
        )
        if not logs:
            logger.info('Authorization {} used on-chain by an unknown transaction',
                        authorization.nonce)
            return SettlementResult(
                status=SettlementStatus.FAILED,
                failure_reason='Authorization already used on-chain',
                payer=authorization.from_,
            )

        tx_hash = Web3.to_hex(logs[-1]['transactionHash'])
        logger.info('Authorization {} already settled in {}',
                    authorization.nonce, tx_hash)
        receipt = web3.eth.get_transaction_receipt(tx_hash)
        return self._result_from_receipt(web3, receipt, tx_hash, authorization.from_)

    def check_settlement(
        self,
        transaction_hash: str,
        authorization: Authorization,
        signature: str,
        requirement: PaymentRequirement,
    ) -> SettlementResult:
        payer = authorization.from_
        try:
            web3 = self.get_web3()
            receipt = web3.eth.get_transaction_receipt(transaction_hash)
        except TransactionNotFound:
            return self._reconcile_unmined(transaction_hash, authorization, signature, requirement)
        except Exception as exc:
            logger.error('Receipt lookup failed for {}: {}', transaction_hash, exc)
            return SettlementResult(
                status=SettlementStatus.UNKNOWN,
                transaction_hash=transaction_hash,
                failure_reason='Receipt lookup failed',
                payer=payer,
            )
        result = self._result_from_receipt(web3, receipt, transaction_hash, payer)
        return self._remember(self._settlement_key(authorization, requirement), result)

    def _reconcile_unmined(
        self,
        transaction_hash: str,
        authorization: Authorization,
        signature: str,
        requirement: PaymentRequirement,
    ) -> SettlementResult:
        """
        Settle the fate of a submission that has no receipt.

        A transaction the node still holds is left to mine. One it never saw,
        or dropped, is submitted again while the authorization is unused and
        inside its window; once the window has closed it can never mine.
        """
        payer = authorization.from_
        try:
            web3 = self.get_web3()
            try:
                web3.eth.get_transaction(transaction_hash)
            except TransactionNotFound:
                in_mempool = False
            else:
                in_mempool = True
            if in_mempool:
                return SettlementResult(
                    status=SettlementStatus.UNKNOWN,
                    transaction_hash=transaction_hash,
                    failure_reason='Settlement transaction not yet mined',
                    payer=payer,
                )

            contract = web3.eth.contract(
                address=self._normalize_address(requirement.asset_address),
                abi=ERC3009_ABI,
            )
            used = contract.functions.authorizationState(
                authorization.from_, HexBytes(authorization.nonce)).call()
            if used:
                result = self._find_existing_settlement(web3, contract, authorization)
                return self._remember(self._settlement_key(authorization, requirement), result)
        except Exception as exc:
            logger.error('Settlement reconciliation failed for {}: {}', transaction_hash, exc)
            return SettlementResult(
                status=SettlementStatus.UNKNOWN,
                transaction_hash=transaction_hash,
                failure_reason='Receipt lookup failed',
                payer=payer,
            )

        if int(self.clock()) >= authorization.valid_before:
            logger.warning('Settlement {} never reached the chain and authorization {} has expired',
                           transaction_hash, authorization.nonce)
            return SettlementResult(
                status=SettlementStatus.FAILED,
                transaction_hash=transaction_hash,
                failure_reason='Settlement transaction was dropped and the authorization expired',
                payer=payer,
            )

        logger.info('Settlement {} never reached the chain; resubmitting authorization {}',
                    transaction_hash, authorization.nonce)
        return self.settle_payment(authorization, signature, requirement)

    def get_native_payment(self, transaction_hash: str) -> Optional[NativePayment]:
        web3 = self.get_web3()
        try:
            tx = web3.eth.get_transaction(transaction_hash)
        except TransactionNotFound:
            return None

        to_address = tx.get('to')
        payment = NativePayment(
            transaction_hash=transaction_hash,
            from_address=self._normalize_address(tx['from']),
            to_address=self._normalize_address(to_address) if to_address else None,
            value_wei=int(tx['value']),
            block_number=tx.get('blockNumber'),
        )
        if payment.block_number is None:
            return payment

        try:
            receipt = web3.eth.get_transaction_receipt(transaction_hash)
        except TransactionNotFound:
            return payment

        block = web3.eth.get_block(receipt.blockNumber)
        return NativePayment(
            transaction_hash=transaction_hash,
            from_address=payment.from_address,
            to_address=payment.to_address,
            value_wei=payment.value_wei,
            block_number=receipt.blockNumber,
            confirmations=max(web3.eth.block_number - receipt.blockNumber + 1, 0),
            status=receipt.status,
            block_timestamp=int(block['timestamp']),
        )

    def _map_contract_error(self, exc: ContractLogicError) -> str:
        """Map contract errors to user-friendly messages."""
        message = str(exc).lower()
        if 'amount exceeds balance' in message or 'insufficient balance' in message:
            return 'Payer has insufficient token balance'
        if 'insufficient funds' in message:
            return 'Gateway signer has insufficient native balance for gas'
        if 'authorization is used' in message:
            return 'Authorization already used on-chain'
        if 'authorization is expired' in message:
            return 'Authorization expired on-chain'
        if 'authorization is not yet valid' in message:
            return 'Authorization not yet valid on-chain'
        if 'invalid signature' in message:
            return 'Token contract rejected the authorization signature'
        return 'Settlement transaction reverted on-chain'
