"""
Identity resolution against the chain RPC.

Two lookups attribute an event to a person:

1. Fee payer: the first account key of the transaction. Log notifications
   often arrive before the RPC has indexed the transaction, so the lookup is
   retried with exponential backoff. After the retry budget it gives up and
   the caller treats the event as unattributed.
2. Master wallet: trades are signed by a browser session wallet; points are
   credited to the master wallet recorded in the session's position
   account. The mapping never changes once created, so successful lookups
   are cached for the life of the process.

Position account layout::

    discriminator(8) + owner(32) + yes_shares(8) + no_shares(8) + master(32)
"""

import logging
from typing import Optional

from solana.exceptions import SolanaRpcException
from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Confirmed
from solders.pubkey import Pubkey
from solders.signature import Signature
from tenacity import (
    RetryError,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..config import (
    AMM_SEED,
    POSITION_SEED,
    TX_LOOKUP_MAX_ATTEMPTS,
    TX_LOOKUP_MAX_WAIT,
    TX_LOOKUP_MIN_WAIT,
)

logger = logging.getLogger(__name__)

MASTER_WALLET_OFFSET = 8 + 32 + 8 + 8
MASTER_WALLET_END = MASTER_WALLET_OFFSET + 32


class TransactionNotFoundError(Exception):
    """Raised when the RPC has not indexed a transaction yet."""

    pass


class IdentityResolutionError(Exception):
    """Raised when a session wallet cannot be mapped to its master wallet."""

    pass


def _fee_payer(transaction) -> Optional[str]:
    """First account key of a fetched transaction, if present."""
    message = getattr(transaction, "message", None)
    keys = getattr(message, "account_keys", None)
    if not keys:
        return None
    key = keys[0]
    # jsonParsed responses wrap keys as ParsedAccount(pubkey=...)
    return str(getattr(key, "pubkey", key))


class TransactionLookup:
    """
    Resolves a transaction's fee payer with bounded retries.

    Example:
        >>> lookup = TransactionLookup(client)
        >>> payer = await lookup.resolve_fee_payer("5h3k...")
    """

    def __init__(
        self,
        client: AsyncClient,
        max_attempts: int = TX_LOOKUP_MAX_ATTEMPTS,
        min_wait: float = TX_LOOKUP_MIN_WAIT,
        max_wait: float = TX_LOOKUP_MAX_WAIT,
    ):
        self.client = client
        self.max_attempts = max_attempts
        self.min_wait = min_wait
        self.max_wait = max_wait

    async def fetch_fee_payer(self, signature: str) -> str:
        """
        Single lookup attempt.

        Raises:
            TransactionNotFoundError: If the transaction is not available yet.
        """
        resp = await self.client.get_transaction(
            Signature.from_string(signature),
            commitment=Confirmed,
            max_supported_transaction_version=0,
        )
        value = resp.value
        if value is None:
            raise TransactionNotFoundError(f"Transaction {signature[:8]} not indexed yet")

        payer = _fee_payer(value.transaction.transaction)
        if payer is None:
            raise TransactionNotFoundError(f"Transaction {signature[:8]} has no account keys")
        return payer

    async def resolve_fee_payer(self, signature: str) -> Optional[str]:
        """
        Fee payer for a signature, or None once the retry budget is spent.
        """

        @retry(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.min_wait, min=self.min_wait, max=self.max_wait),
            retry=retry_if_exception_type((TransactionNotFoundError, SolanaRpcException)),
            reraise=True,
        )
        async def _fetch_with_retry() -> str:
            return await self.fetch_fee_payer(signature)

        try:
            return await _fetch_with_retry()
        except (TransactionNotFoundError, SolanaRpcException, RetryError) as e:
            logger.warning(
                f"Failed to fetch transaction {signature[:8]} after {self.max_attempts} attempts: {e}"
            )
            return None
        except ValueError as e:
            # Signature.from_string rejects malformed input
            logger.warning(f"Invalid signature {signature[:8]}: {e}")
            return None


class IdentityResolver:
    """
    Maps session wallets to master wallets via the position account.

    Attributes:
        program_id: Program owning the AMM and position accounts.
        cache: session wallet -> master wallet (unbounded, never evicted).
    """

    def __init__(
        self,
        client: AsyncClient,
        program_id: str,
        amm_seed: bytes = AMM_SEED,
        position_seed: bytes = POSITION_SEED,
    ):
        self.client = client
        self.program_id = Pubkey.from_string(program_id)
        self.amm_seed = amm_seed
        self.position_seed = position_seed
        self.cache: dict[str, str] = {}

        self._amm_pda, _ = Pubkey.find_program_address([self.amm_seed], self.program_id)

    def position_address(self, session_wallet: str) -> Pubkey:
        """PDA of the session wallet's position account."""
        session = Pubkey.from_string(session_wallet)
        pda, _ = Pubkey.find_program_address(
            [self.position_seed, bytes(self._amm_pda), bytes(session)],
            self.program_id,
        )
        return pda

    async def fetch_master_wallet(self, session_wallet: str) -> str:
        """
        Read the master wallet from the session's position account.

        Raises:
            IdentityResolutionError: If the account is missing, too short,
                or the RPC call failed.
        """
        try:
            resp = await self.client.get_account_info(self.position_address(session_wallet))
        except (SolanaRpcException, ValueError) as e:
            raise IdentityResolutionError(f"Failed to get master wallet for {session_wallet}: {e}") from e

        account = resp.value
        if account is None:
            raise IdentityResolutionError(f"No position account for {session_wallet[:8]}")

        data = bytes(account.data)
        if len(data) < MASTER_WALLET_END:
            raise IdentityResolutionError(
                f"Position account for {session_wallet[:8]} too short ({len(data)} bytes)"
            )

        return str(Pubkey.from_bytes(data[MASTER_WALLET_OFFSET:MASTER_WALLET_END]))

    async def get_master_wallet(self, session_wallet: str) -> Optional[str]:
        """
        Master wallet for a session wallet.

        Returns:
            The master wallet address, or None when the position account is
            missing, too short, or the lookup failed. Failures are not cached.
        """
        cached = self.cache.get(session_wallet)
        if cached is not None:
            return cached

        try:
            master = await self.fetch_master_wallet(session_wallet)
        except IdentityResolutionError as e:
            logger.warning(str(e))
            return None

        self.cache[session_wallet] = master
        return master
