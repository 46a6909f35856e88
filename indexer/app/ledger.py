import base64
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx
from solders.pubkey import Pubkey

logger = logging.getLogger("ledger")

# discriminator | count (u64 LE) | authority
ACCOUNT_LAYOUT_SIZE = 8 + 8 + 32


class LedgerError(Exception):
    """The account query failed at the transport or RPC level."""


class AccountDecodeError(Exception):
    """The account exists but does not hold a counter."""


@dataclass(frozen=True)
class AccountData:
    data: bytes
    owner: Optional[str] = None


@dataclass(frozen=True)
class CounterSnapshot:
    count: int
    authority: str


class LedgerClient:
    def __init__(self, rpc_url: str, commitment: str = "confirmed", timeout: float = 10.0,
                 client: Optional[httpx.AsyncClient] = None):
        self._rpc_url = rpc_url
        self._commitment = commitment
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._next_id = 0

    async def close(self) -> None:
        await self._client.aclose()

    async def _call(self, method: str, params: list) -> Any:
        self._next_id += 1
        body = {"jsonrpc": "2.0", "id": self._next_id, "method": method, "params": params}
        try:
            r = await self._client.post(self._rpc_url, json=body)
            r.raise_for_status()
            reply: Dict[str, Any] = r.json()
        except (httpx.HTTPError, ValueError) as e:
            raise LedgerError(f"{method} failed: {e}") from e
        if reply.get("error"):
            raise LedgerError(f"{method} returned error: {reply['error']}")
        return reply.get("result")

    async def get_account(self, address: str) -> Optional[AccountData]:
        result = await self._call(
            "getAccountInfo",
            [address, {"encoding": "base64", "commitment": self._commitment}],
        )
        if not isinstance(result, dict):
            raise LedgerError(f"malformed getAccountInfo reply for {address}")
        value = result.get("value")
        if value is None:
            return None
        try:
            raw, encoding = value["data"]
            if encoding != "base64":
                raise LedgerError(f"unexpected account encoding {encoding!r}")
            data = base64.b64decode(raw, validate=True)
        except (KeyError, TypeError, ValueError) as e:
            raise LedgerError(f"malformed getAccountInfo reply for {address}: {e}") from e
        return AccountData(data=data, owner=value.get("owner"))


def decode_counter(data: bytes) -> CounterSnapshot:
    if len(data) < ACCOUNT_LAYOUT_SIZE:
        raise AccountDecodeError(
            f"account holds {len(data)} bytes, counter layout needs {ACCOUNT_LAYOUT_SIZE}"
        )
    count = int.from_bytes(data[8:16], "little", signed=False)
    authority = Pubkey.from_bytes(data[16:48])
    return CounterSnapshot(count=count, authority=str(authority))


class StateReconciler:
    def __init__(self, ledger: LedgerClient, program_id: str, seed: str = "counter"):
        self._ledger = ledger
        self._program_id = Pubkey.from_string(program_id)
        self._seed = seed.encode("utf-8")

    def counter_address(self, authority: str) -> str:
        """Raises ValueError when authority is not a base58 public key."""
        pda, _bump = Pubkey.find_program_address(
            [self._seed, bytes(Pubkey.from_string(authority))], self._program_id
        )
        return str(pda)

    async def current_state(self, authority: str) -> Optional[CounterSnapshot]:
        """
        Read the counter owned by `authority` straight from the ledger.

        Returns None when the account does not exist (never initialized,
        or not yet visible at the configured commitment). Raises
        AccountDecodeError for accounts that cannot be a counter and
        LedgerError when the query itself fails.
        """
        address = self.counter_address(authority)
        account = await self._ledger.get_account(address)
        if account is None:
            return None
        if account.owner is not None and account.owner != str(self._program_id):
            raise AccountDecodeError(f"account {address} is owned by {account.owner}")
        snapshot = decode_counter(account.data)
        if snapshot.authority != authority:
            logger.warning("authority mismatch address=%s expected=%s stored=%s",
                           address, authority, snapshot.authority)
        return snapshot
