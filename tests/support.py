"""Test doubles and payload builders shared by the test modules."""
import asyncio
import base64
from typing import Any, Dict, List, Optional

from solders.pubkey import Pubkey

from indexer.app.ledger import AccountData, LedgerError, StateReconciler
from indexer.app.settings import DEFAULT_PROGRAM_ID

PROGRAM_ID = DEFAULT_PROGRAM_ID
AUTH_X = "So11111111111111111111111111111111111111112"
AUTH_Y = "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA"
AUTH_Z = "ATokenGPvbdGVxr1b2hvZbsiqW5xWH25efTNsLJA8knL"
PAYER = "11111111111111111111111111111111"

INITIALIZE = "af6fd31375989975"
INCREMENT = "dab42b70d1cbdd58"
DECREMENT = "6ae3a83bf81b9665"


def ix_data(disc_hex: str) -> str:
    return base64.b64encode(bytes.fromhex(disc_hex)).decode("ascii")


def counter_account(count: int, authority: str, owner: str = PROGRAM_ID) -> AccountData:
    data = bytes(8) + count.to_bytes(8, "little") + bytes(Pubkey.from_string(authority))
    return AccountData(data=data, owner=owner)


def tx_record(signature: str, disc_hex: str, authority: str, slot: int = 100, timestamp: int = 1700000000,
              error: Any = None, program_id: str = PROGRAM_ID) -> Dict[str, Any]:
    return {
        "signature": signature,
        "slot": slot,
        "timestamp": timestamp,
        "fee": 5000,
        "feePayer": authority,
        "type": "UNKNOWN",
        "instructions": [
            {
                "accounts": ["CounterPda", authority],
                "data": ix_data(disc_hex),
                "programId": program_id,
                "innerInstructions": [],
            }
        ],
        "transactionError": error,
    }


class FakeLedger:
    """Serves counter accounts by authority; addresses are derived like production."""

    def __init__(self):
        self.accounts: Dict[str, AccountData] = {}
        self.failing: set = set()
        self.calls: List[str] = []
        self._addresses = StateReconciler(self, PROGRAM_ID)

    def set_counter(self, authority: str, count: int, **kw) -> None:
        self.accounts[self._addresses.counter_address(authority)] = counter_account(count, authority, **kw)

    def set_raw(self, authority: str, account: AccountData) -> None:
        self.accounts[self._addresses.counter_address(authority)] = account

    def fail_for(self, authority: str) -> None:
        self.failing.add(self._addresses.counter_address(authority))

    async def get_account(self, address: str) -> Optional[AccountData]:
        self.calls.append(address)
        if address in self.failing:
            raise LedgerError("getAccountInfo failed: connection reset")
        return self.accounts.get(address)

    async def close(self) -> None:
        pass


class MemoryStore:
    """In-memory stand-in for EventStore: unique signature, newest block_time first."""

    def __init__(self):
        self.rows: List[Dict[str, Any]] = []
        self.skips: List[tuple] = []
        self.failing: set = set()
        self.broken = False
        self.received = 0
        self.unique_processed = 0
        self.duplicate_dropped = 0

    async def append(self, event) -> str:
        if event.signature in self.failing:
            raise RuntimeError("connection lost")
        self.received += 1
        if any(r["signature"] == event.signature for r in self.rows):
            self.duplicate_dropped += 1
            return "duplicate"
        row = event.model_dump()
        row["event_type"] = event.event_type.value
        row["processed_at"] = "2025-01-01T00:00:00+00:00"
        self.rows.append(row)
        self.unique_processed += 1
        return "processed"

    async def record_skip(self, signature: str, status: str, note: Optional[str] = None) -> bool:
        if any((s, st) == (signature, status) for s, st, _ in self.skips):
            return False
        self.skips.append((signature, status, note))
        return True

    def _ordered(self, rows):
        self._check()
        return sorted(rows, key=lambda r: (r["block_time"], r["slot"]), reverse=True)

    def _check(self):
        if self.broken:
            raise RuntimeError("database unavailable")

    async def query_recent(self, limit: int):
        return self._ordered(self.rows)[:limit]

    async def query_by_authority(self, authority: str, limit: int):
        return self._ordered([r for r in self.rows if r["authority"] == authority])[:limit]

    async def latest_state_for(self, authority: str) -> Optional[int]:
        rows = self._ordered([r for r in self.rows if r["authority"] == authority])
        return rows[0]["new_count"] if rows else None

    async def stats(self) -> Dict[str, Any]:
        self._check()
        by_type = lambda t: sum(1 for r in self.rows if r["event_type"] == t)  # noqa: E731
        return {
            "total_events": len(self.rows),
            "event_types": {
                "initialized": by_type("Initialized"),
                "incremented": by_type("Incremented"),
                "decremented": by_type("Decremented"),
            },
            "unique_authorities": len({r["authority"] for r in self.rows}),
            "last_event_time": max((r["block_time"] for r in self.rows), default=None),
            "received": self.received,
            "unique_processed": self.unique_processed,
            "duplicate_dropped": self.duplicate_dropped,
            "skipped": len(self.skips),
        }

    async def close(self) -> None:
        pass


class FakeRedis:
    def __init__(self):
        self.lists: Dict[str, List[bytes]] = {}

    async def rpush(self, key: str, value: bytes) -> int:
        self.lists.setdefault(key, []).append(value)
        return len(self.lists[key])

    async def blpop(self, key: str, timeout: int = 0):
        items = self.lists.get(key)
        if not items:
            await asyncio.sleep(0.01)
            return None
        return key.encode("utf-8"), items.pop(0)
