"""Solana chain adapter (solana-py / solders).

Live logs come from `logsSubscribe` with a `mentions` filter on the escrow
program at confirmed commitment; one notification carries every log line of
a transaction. Decoding is delegated to SolanaEventDecoder, which prefers the
Anchor IDL when one is configured.

Auto-cancel is an Anchor instruction (`global:auto_cancel`) signed by the
arbitrator keypair, which is loaded from a JSON byte array or a keypair file.
"""

from __future__ import annotations

import hashlib
import json
import re
import struct
from decimal import Decimal
from pathlib import Path
from typing import TYPE_CHECKING, Any

from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Confirmed
from solana.rpc.websocket_api import connect
from solders.instruction import AccountMeta, Instruction
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.rpc.config import RpcTransactionLogsFilterMentions
from solders.transaction import Transaction
from spl.token.constants import TOKEN_PROGRAM_ID
from spl.token.instructions import get_associated_token_address

from escrow_sync.decoders.anchor_idl import load_idl_parser
from escrow_sync.decoders.solana import SolanaEventDecoder
from escrow_sync.domain.enums import NetworkFamily
from escrow_sync.domain.exceptions import (
    AutoCancelError,
    ChainAdapterError,
    InvalidNetworkError,
    UnsupportedChainOperationError,
)
from escrow_sync.domain.models import (
    CancelSubmission,
    CancelTarget,
    LogBatch,
    NetworkConfig,
)
from escrow_sync.logging_config import get_logger

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from escrow_sync.config import Settings

logger = get_logger(__name__)

_SIGNATURE_PATTERN = re.compile(r"^[1-9A-HJ-NP-Za-km-z]{87,88}$")
_EXPLORER = "https://explorer.solana.com/tx"
AUTO_CANCEL_DISCRIMINATOR = hashlib.sha256(b"global:auto_cancel").digest()[:8]


def load_keypair(value: str) -> Keypair:
    """Load a keypair from a JSON array of secret key bytes or a keypair file path."""
    raw = value.strip()
    if not raw.startswith("["):
        raw = Path(raw).expanduser().read_text(encoding="utf-8")
    return Keypair.from_bytes(bytes(json.loads(raw)))


def auto_cancel_data(escrow_id: int, trade_id: int) -> bytes:
    return AUTO_CANCEL_DISCRIMINATOR + struct.pack("<QQ", escrow_id, trade_id)


class SolanaAdapter:
    """ChainAdapter for Solana clusters."""

    family = NetworkFamily.SOLANA

    def __init__(self, network: NetworkConfig, settings: Settings) -> None:
        self.network = network
        self._settings = settings
        self._client = AsyncClient(network.rpc_url, commitment=Confirmed)
        self._keypair: Keypair | None = None

    # --- Validation & formatting ---

    def validate_address(self, address: str) -> bool:
        if not address:
            return False
        try:
            Pubkey.from_string(address)
        except ValueError:
            return False
        return True

    def validate_transaction_hash(self, tx_id: str) -> bool:
        return bool(tx_id) and _SIGNATURE_PATTERN.match(tx_id) is not None

    def get_block_explorer_url(self, tx_id: str) -> str:
        url = f"{_EXPLORER}/{tx_id}"
        if self.network.is_testnet:
            url += "?cluster=devnet"
        return url

    # --- Diagnostics ---

    async def get_network_info(self) -> dict[str, Any]:
        try:
            version = await self._client.get_version()
            slot = await self._client.get_slot()
        except Exception as exc:
            raise ChainAdapterError(f"{self.network.name}: network info failed: {exc}") from exc
        return {
            "network": self.network.name,
            "family": self.family.value,
            "solana_core": version.value.solana_core,
            "slot": slot.value,
        }

    async def program_exists(self) -> bool:
        if not self.network.program_id:
            return False
        response = await self._client.get_account_info(self._program_pubkey())
        return response.value is not None

    # --- Event ingestion ---

    def create_decoder(self) -> SolanaEventDecoder:
        program_id = self._require_program_id()
        return SolanaEventDecoder(
            program_id,
            idl_parser=load_idl_parser(program_id, self._settings.solana_idl_path),
        )

    async def subscribe(self) -> AsyncIterator[LogBatch]:
        if not self.network.ws_url:
            raise InvalidNetworkError(self.network.name, "no websocket URL configured")
        program = self._program_pubkey()

        async with connect(self.network.ws_url) as websocket:
            await websocket.logs_subscribe(
                RpcTransactionLogsFilterMentions(program), commitment=Confirmed
            )
            ack = await websocket.recv()
            logger.info(
                "solana.subscribed",
                network=self.network.name,
                subscription_id=ack[0].result,
            )
            async for messages in websocket:
                for message in messages:
                    result = getattr(message, "result", None)
                    value = getattr(result, "value", None)
                    if value is None:
                        continue
                    yield LogBatch(
                        tx_id=str(value.signature),
                        block_or_slot=result.context.slot,
                        logs=tuple(value.logs),
                        error=None if value.err is None else str(value.err),
                    )

    # --- Read-only escrow calls ---

    async def get_stored_balance(self, target: CancelTarget) -> Decimal:
        if not target.escrow_token_account:
            raise ChainAdapterError(
                f"Escrow {target.onchain_escrow_id} has no token account on {self.network.name}"
            )
        try:
            response = await self._client.get_token_account_balance(
                Pubkey.from_string(target.escrow_token_account)
            )
        except Exception as exc:
            raise ChainAdapterError(
                f"Token balance for {target.escrow_token_account} failed: {exc}"
            ) from exc
        return Decimal(response.value.amount).scaleb(-response.value.decimals)

    async def get_calculated_balance(self, target: CancelTarget) -> Decimal:
        raise UnsupportedChainOperationError(self.family.value, "get_calculated_balance")

    async def get_sequential_info(self, target: CancelTarget) -> dict[str, Any]:
        raise UnsupportedChainOperationError(self.family.value, "get_sequential_info")

    async def is_eligible_for_auto_cancel(self, target: CancelTarget) -> bool:
        raise UnsupportedChainOperationError(self.family.value, "is_eligible_for_auto_cancel")

    # --- Auto-cancellation ---

    async def submit_auto_cancel(self, target: CancelTarget) -> CancelSubmission:
        for name in ("escrow_address", "escrow_token_account", "seller_address"):
            if not getattr(target, name):
                raise AutoCancelError(
                    f"Escrow {target.onchain_escrow_id} is missing {name} for auto-cancel"
                )
        if not self.network.usdc_mint:
            raise InvalidNetworkError(self.network.name, "no USDC mint configured")

        arbitrator = self._arbitrator()
        seller_token_account = get_associated_token_address(
            Pubkey.from_string(target.seller_address),
            Pubkey.from_string(self.network.usdc_mint),
        )
        instruction = Instruction(
            program_id=self._program_pubkey(),
            data=auto_cancel_data(int(target.onchain_escrow_id), target.trade_id),
            accounts=[
                AccountMeta(arbitrator.pubkey(), is_signer=True, is_writable=True),
                AccountMeta(Pubkey.from_string(target.escrow_address), is_signer=False, is_writable=True),
                AccountMeta(
                    Pubkey.from_string(target.escrow_token_account), is_signer=False, is_writable=True
                ),
                AccountMeta(seller_token_account, is_signer=False, is_writable=True),
                AccountMeta(TOKEN_PROGRAM_ID, is_signer=False, is_writable=False),
            ],
        )

        try:
            blockhash = (await self._client.get_latest_blockhash()).value.blockhash
            transaction = Transaction.new_signed_with_payer(
                [instruction], arbitrator.pubkey(), [arbitrator], blockhash
            )
            signature = (await self._client.send_transaction(transaction)).value
        except Exception as exc:
            raise AutoCancelError(
                f"auto_cancel({target.onchain_escrow_id}) rejected before confirmation: {exc}"
            ) from exc

        logger.info(
            "solana.auto_cancel_sent",
            network=self.network.name,
            escrow_id=target.onchain_escrow_id,
            signature=str(signature),
        )
        confirmation = await self._client.confirm_transaction(signature, commitment=Confirmed)
        status = confirmation.value[0] if confirmation.value else None
        error = None if status is None or status.err is None else str(status.err)
        return CancelSubmission(
            tx_id=str(signature),
            success=status is not None and error is None,
            block_or_slot=status.slot if status is not None else None,
            error=error if status is not None else "transaction not confirmed",
        )

    async def aclose(self) -> None:
        await self._client.close()

    # --- Helpers ---

    def _require_program_id(self) -> str:
        if not self.network.program_id:
            raise InvalidNetworkError(self.network.name, "no program id configured")
        return self.network.program_id

    def _program_pubkey(self) -> Pubkey:
        return Pubkey.from_string(self._require_program_id())

    def _arbitrator(self) -> Keypair:
        if self._keypair is None:
            if not self._settings.solana_arbitrator_keypair:
                raise AutoCancelError(f"{self.network.name}: no arbitrator keypair configured")
            self._keypair = load_keypair(self._settings.solana_arbitrator_keypair)
        return self._keypair
