# SPDX-License-Identifier: MPL-2.0
"""Capability handles for privileged ledger writes.

A capability is a ledger object whose possession authorizes a write. The
publisher is the only component that presents them; the ledger checks that
the presented object is the capability it issued for that kind of write.
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional

OBJECT_ID_RE = re.compile(r"^0x[0-9a-fA-F]{64}$")


def is_valid_object_id(value: Optional[str]) -> bool:
    """Whether ``value`` looks like a real ledger object id, not a placeholder."""
    return bool(value) and OBJECT_ID_RE.match(value) is not None


class CapabilityKind(str, Enum):
    ACCESS_RECORDER = "AccessRecorderCap"
    ORACLE = "OracleCap"


@dataclass(frozen=True)
class Capability:
    kind: CapabilityKind
    object_id: str

    @property
    def usable(self) -> bool:
        return is_valid_object_id(self.object_id)

    def __repr__(self) -> str:
        return f"Capability({self.kind.value}, {self.object_id[:10]}...)"
