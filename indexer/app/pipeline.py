import asyncio
import base64
import binascii
import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, List, Optional, Tuple

from pydantic import ValidationError

from .classifier import InstructionClassifier
from .db import EventStore
from .ledger import AccountDecodeError, StateReconciler
from .models import CounterEvent, Instruction, OperationKind, Transaction, WebhookBody

logger = logging.getLogger("pipeline")

AUTHORITY_ACCOUNT_INDEX = 1


def _records(batch: WebhookBody) -> Iterable[Any]:
    if isinstance(batch, dict):
        return batch.values()
    return batch


def filter_transactions(batch: WebhookBody, program_id: str) -> List[Transaction]:
    """
    Keep the transactions that have a signature, did not fail, and call
    the counter program at least once. Batch order carries no meaning.
    """
    kept: List[Transaction] = []
    for record in _records(batch):
        if not isinstance(record, dict):
            continue
        try:
            tx = Transaction.model_validate(record)
        except ValidationError as e:
            logger.warning("dropping malformed transaction record errors=%d", e.error_count())
            continue
        if not tx.signature:
            logger.warning("dropping transaction record without signature")
            continue
        if tx.transactionError is not None:
            logger.debug("signature=%s skipped: failed transaction", tx.signature)
            continue
        if not any(ix.programId == program_id for ix in tx.instructions):
            logger.debug("signature=%s skipped: not a counter transaction", tx.signature)
            continue
        kept.append(tx)
    return kept


def previous_count(kind: OperationKind, new_count: int) -> Optional[int]:
    """Derive old_count assuming exactly one mutation since the previous state."""
    if kind is OperationKind.INCREMENTED:
        return new_count - 1
    if kind is OperationKind.DECREMENTED:
        return new_count + 1
    return None


@dataclass
class BuildResult:
    events: List[CounterEvent] = field(default_factory=list)
    skipped: List[Tuple[str, str]] = field(default_factory=list)  # (status, note)


class EventBuilder:
    def __init__(self, classifier: InstructionClassifier, reconciler: StateReconciler, program_id: str):
        self._classifier = classifier
        self._reconciler = reconciler
        self._program_id = program_id

    async def build(self, tx: Transaction) -> BuildResult:
        result = BuildResult()
        for index, ix in enumerate(tx.instructions):
            if ix.programId != self._program_id:
                continue
            try:
                event = await self._build_one(tx, ix, result)
            except Exception as e:
                logger.exception("signature=%s instruction=%d failed", tx.signature, index)
                result.skipped.append(("failed", f"instruction {index}: {e!r}"))
                continue
            if event is not None:
                result.events.append(event)
        return result

    async def _build_one(self, tx: Transaction, ix: Instruction, result: BuildResult) -> Optional[CounterEvent]:
        try:
            payload = base64.b64decode(ix.data, validate=True)
        except (binascii.Error, ValueError):
            payload = b""
        kind = self._classifier.classify(payload)
        if kind is OperationKind.UNKNOWN:
            disc = self._classifier.discriminator(payload).hex()
            logger.warning("signature=%s unknown instruction discriminator=%s", tx.signature, disc)
            result.skipped.append(("unknown_instruction", f"discriminator {disc or '<empty>'}"))
            return None

        if len(ix.accounts) <= AUTHORITY_ACCOUNT_INDEX:
            logger.warning("signature=%s %s instruction has no authority account", tx.signature, kind.value)
            result.skipped.append(("state_missing", "no authority account"))
            return None
        authority = ix.accounts[AUTHORITY_ACCOUNT_INDEX]

        try:
            self._reconciler.counter_address(authority)
        except ValueError:
            logger.warning("signature=%s invalid authority=%s", tx.signature, authority)
            result.skipped.append(("state_missing", f"invalid authority {authority}"))
            return None

        try:
            snapshot = await self._reconciler.current_state(authority)
        except AccountDecodeError as e:
            logger.error("signature=%s authority=%s undecodable counter: %s", tx.signature, authority, e)
            result.skipped.append(("decode_failed", str(e)))
            return None
        if snapshot is None:
            logger.warning("signature=%s authority=%s counter account not found", tx.signature, authority)
            result.skipped.append(("state_missing", f"no counter for {authority}"))
            return None

        new_count = snapshot.count
        old_count = previous_count(kind, new_count)
        if old_count is not None and old_count < 0:
            # the read lagged behind this increment
            logger.warning("signature=%s authority=%s soft inconsistency: %s but count=%d",
                           tx.signature, authority, kind.value, new_count)
            old_count = None

        return CounterEvent(
            signature=tx.signature,
            block_time=tx.timestamp,
            slot=tx.slot,
            event_type=kind,
            authority=authority,
            old_count=old_count,
            new_count=new_count,
        )


class BatchProcessor:
    def __init__(self, builder: EventBuilder, store: EventStore, program_id: str, store_timeout: float = 5.0):
        self._builder = builder
        self._store = store
        self._program_id = program_id
        self._store_timeout = store_timeout

    async def process_batch(self, batch: WebhookBody) -> None:
        txs = filter_transactions(batch, self._program_id)
        if not txs:
            logger.info("batch carried no counter transactions")
            return
        logger.info("processing batch transactions=%d", len(txs))
        await asyncio.gather(*(self.process_transaction(tx) for tx in txs))

    async def process_transaction(self, tx: Transaction) -> None:
        try:
            result = await self._builder.build(tx)
        except Exception:
            logger.exception("signature=%s failed to build events", tx.signature)
            return

        for status, note in result.skipped:
            try:
                await asyncio.wait_for(self._store.record_skip(tx.signature, status, note), self._store_timeout)
            except Exception:
                logger.exception("signature=%s failed to record skip status=%s", tx.signature, status)

        for event in result.events:
            try:
                status = await asyncio.wait_for(self._store.append(event), self._store_timeout)
            except Exception:
                logger.exception("signature=%s failed to store %s event", event.signature, event.event_type.value)
                continue
            logger.info("signature=%s authority=%s %s %s -> %d status=%s", event.signature, event.authority,
                        event.event_type.value, event.old_count, event.new_count, status)
