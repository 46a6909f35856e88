from typing import Dict, Mapping, Optional, Union

from .models import OperationKind

DISCRIMINATOR_LEN = 8

DEFAULT_TABLE: Dict[str, OperationKind] = {
    "af6fd31375989975": OperationKind.INITIALIZED,
    "dab42b70d1cbdd58": OperationKind.INCREMENTED,
    "6ae3a83bf81b9665": OperationKind.DECREMENTED,
}


def _parse_table(table: Mapping[str, Union[str, OperationKind]]) -> Dict[bytes, OperationKind]:
    parsed: Dict[bytes, OperationKind] = {}
    for hex_key, kind in table.items():
        try:
            key = bytes.fromhex(hex_key)
        except ValueError:
            raise ValueError(f"discriminator {hex_key!r} is not valid hex") from None
        if len(key) != DISCRIMINATOR_LEN:
            raise ValueError(f"discriminator {hex_key!r} must be {DISCRIMINATOR_LEN} bytes")
        kind = OperationKind(kind)
        if kind is OperationKind.UNKNOWN:
            raise ValueError("UNKNOWN cannot be mapped to a discriminator")
        parsed[key] = kind
    return parsed


class InstructionClassifier:
    def __init__(self, table: Optional[Mapping[str, Union[str, OperationKind]]] = None):
        self._table = _parse_table(DEFAULT_TABLE if table is None else table)

    def discriminator(self, payload: bytes) -> bytes:
        return payload[:DISCRIMINATOR_LEN]

    def classify(self, payload: bytes) -> OperationKind:
        if len(payload) < DISCRIMINATOR_LEN:
            return OperationKind.UNKNOWN
        return self._table.get(self.discriminator(payload), OperationKind.UNKNOWN)

