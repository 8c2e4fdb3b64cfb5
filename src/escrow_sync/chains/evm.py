"""EVM chain adapter (web3.py, async).

Reads go through an AsyncHTTPProvider client bound to the network's RPC URL.
Live logs come from a WebSocketProvider subscription filtered on the escrow
contract address; each notification carries exactly one log, so batches are
keyed by log index as well as transaction hash.

The only signed write is `autoCancel(escrowId)`, sent from the arbitrator
key with a 20% gas margin over the node's estimate.
"""

from __future__ import annotations

import re
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from web3 import AsyncHTTPProvider, AsyncWeb3, Web3, WebSocketProvider

from escrow_sync.decoders.evm import EvmEventDecoder, load_abi, to_hex
from escrow_sync.domain.enums import NetworkFamily
from escrow_sync.domain.exceptions import (
    AutoCancelError,
    ChainAdapterError,
    InvalidNetworkError,
)
from escrow_sync.domain.models import (
    CancelSubmission,
    CancelTarget,
    LogBatch,
    NetworkConfig,
    usdc_from_raw,
)
from escrow_sync.logging_config import get_logger

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from escrow_sync.config import Settings

logger = get_logger(__name__)

_TX_HASH_PATTERN = re.compile(r"^0x[0-9a-fA-F]{64}$")
GAS_LIMIT_MULTIPLIER = 1.2
_TESTNET_EXPLORER = "https://alfajores.celoscan.io"
_MAINNET_EXPLORER = "https://celoscan.io"


class EvmAdapter:
    """ChainAdapter for EVM networks (Celo and friends)."""

    family = NetworkFamily.EVM

    def __init__(self, network: NetworkConfig, settings: Settings) -> None:
        self.network = network
        self._settings = settings
        self._abi = load_abi(settings.evm_abi_path)
        self._w3 = AsyncWeb3(AsyncHTTPProvider(network.rpc_url))
        self._contract = None
        if network.contract_address and Web3.is_address(network.contract_address):
            self._contract = self._w3.eth.contract(
                address=Web3.to_checksum_address(network.contract_address),
                abi=self._abi,
            )

    # --- Validation & formatting ---

    def validate_address(self, address: str) -> bool:
        return bool(address) and Web3.is_address(address)

    def validate_transaction_hash(self, tx_id: str) -> bool:
        return bool(tx_id) and _TX_HASH_PATTERN.match(tx_id) is not None

    def get_block_explorer_url(self, tx_id: str) -> str:
        base = self.network.block_explorer_url
        if not base:
            base = _TESTNET_EXPLORER if self.network.is_testnet else _MAINNET_EXPLORER
        return f"{base.rstrip('/')}/tx/{tx_id}"

    # --- Diagnostics ---

    async def get_network_info(self) -> dict[str, Any]:
        try:
            return {
                "network": self.network.name,
                "family": self.family.value,
                "chain_id": await self._w3.eth.chain_id,
                "client_version": await self._w3.client_version,
                "block_number": await self._w3.eth.block_number,
            }
        except Exception as exc:
            raise ChainAdapterError(f"{self.network.name}: network info failed: {exc}") from exc

    async def program_exists(self) -> bool:
        if self._contract is None:
            return False
        code = await self._w3.eth.get_code(self._contract.address)
        return len(code) > 0

    # --- Event ingestion ---

    def create_decoder(self) -> EvmEventDecoder:
        return EvmEventDecoder(self._require_contract_address(), self._abi)

    async def subscribe(self) -> AsyncIterator[LogBatch]:
        if not self.network.ws_url:
            raise InvalidNetworkError(self.network.name, "no websocket URL configured")
        address = Web3.to_checksum_address(self._require_contract_address())

        async with AsyncWeb3(WebSocketProvider(self.network.ws_url)) as w3:
            subscription_id = await w3.eth.subscribe("logs", {"address": address})
            logger.info(
                "evm.subscribed",
                network=self.network.name,
                subscription_id=str(subscription_id),
            )
            async for message in w3.socket.process_subscriptions():
                log = message.get("result")
                if not log:
                    continue
                if log.get("removed"):
                    logger.debug("evm.log_removed", tx_id=to_hex(log["transactionHash"]))
                    continue
                yield LogBatch(
                    tx_id=to_hex(log["transactionHash"]),
                    block_or_slot=log.get("blockNumber"),
                    logs=(dict(log),),
                    log_index=log.get("logIndex"),
                )

    # --- Read-only escrow calls ---

    async def get_stored_balance(self, target: CancelTarget) -> Decimal:
        raw = await self._call("getStoredEscrowBalance", target)
        return usdc_from_raw(raw)

    async def get_calculated_balance(self, target: CancelTarget) -> Decimal:
        raw = await self._call("getCalculatedEscrowBalance", target)
        return usdc_from_raw(raw)

    async def get_sequential_info(self, target: CancelTarget) -> dict[str, Any]:
        is_sequential, address, balance, was_released = await self._call(
            "getSequentialEscrowInfo", target
        )
        return {
            "is_sequential": bool(is_sequential),
            "sequential_address": address,
            "sequential_balance": str(usdc_from_raw(balance)),
            "was_released": bool(was_released),
        }

    async def is_eligible_for_auto_cancel(self, target: CancelTarget) -> bool:
        return bool(await self._call("isEligibleForAutoCancel", target))

    # --- Auto-cancellation ---

    async def submit_auto_cancel(self, target: CancelTarget) -> CancelSubmission:
        contract = self._require_contract()
        if not self._settings.evm_arbitrator_private_key:
            raise AutoCancelError(f"{self.network.name}: no arbitrator key configured")
        account = self._w3.eth.account.from_key(self._settings.evm_arbitrator_private_key)
        function = contract.functions.autoCancel(int(target.onchain_escrow_id))

        try:
            estimate = await function.estimate_gas({"from": account.address})
            transaction = await function.build_transaction(
                {
                    "from": account.address,
                    "nonce": await self._w3.eth.get_transaction_count(account.address),
                    "gas": int(estimate * GAS_LIMIT_MULTIPLIER),
                    "chainId": self.network.chain_id,
                }
            )
        except Exception as exc:
            raise AutoCancelError(
                f"autoCancel({target.onchain_escrow_id}) rejected before sending: {exc}"
            ) from exc

        signed = account.sign_transaction(transaction)
        tx_hash = to_hex(await self._w3.eth.send_raw_transaction(signed.raw_transaction))
        logger.info(
            "evm.auto_cancel_sent",
            network=self.network.name,
            escrow_id=target.onchain_escrow_id,
            tx_hash=tx_hash,
        )
        receipt = await self._w3.eth.wait_for_transaction_receipt(
            tx_hash, timeout=self._settings.evm_receipt_timeout_seconds
        )
        success = receipt.get("status") == 1
        return CancelSubmission(
            tx_id=tx_hash,
            success=success,
            block_or_slot=receipt.get("blockNumber"),
            gas_used=receipt.get("gasUsed"),
            gas_price=receipt.get("effectiveGasPrice"),
            error=None if success else "transaction reverted",
        )

    async def aclose(self) -> None:
        await self._w3.provider.disconnect()

    # --- Helpers ---

    def _require_contract_address(self) -> str:
        if not self.network.contract_address:
            raise InvalidNetworkError(self.network.name, "no contract address configured")
        return self.network.contract_address

    def _require_contract(self):  # noqa: ANN202
        if self._contract is None:
            raise InvalidNetworkError(self.network.name, "no valid contract address configured")
        return self._contract

    async def _call(self, function_name: str, target: CancelTarget) -> Any:
        contract = self._require_contract()
        try:
            function = getattr(contract.functions, function_name)
            return await function(int(target.onchain_escrow_id)).call()
        except Exception as exc:
            raise ChainAdapterError(
                f"{function_name}({target.onchain_escrow_id}) failed on {self.network.name}: {exc}"
            ) from exc
