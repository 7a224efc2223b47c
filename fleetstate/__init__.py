"""Fleet state storage: label membership reconciliation and capped query result ingestion."""
from __future__ import annotations

__version__ = "0.1.0"
