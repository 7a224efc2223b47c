"""Label classification enumerations."""
from __future__ import annotations

from enum import Enum


class LabelType(str, Enum):
    """Who owns a label's definition.

    Built-in labels ship with the server (e.g. "All Hosts") and are never
    populated by membership reconciliation or spec import.
    """

    REGULAR = "regular"
    BUILTIN = "builtin"


class LabelMembershipType(str, Enum):
    """How a label's members are decided."""

    DYNAMIC = "dynamic"  # agent-evaluated query
    MANUAL = "manual"  # explicit host list


ALL_HOSTS_LABEL_NAME = "All Hosts"
