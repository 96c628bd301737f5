"""Opaque identifiers: ``<PREFIX>-<hex>``"""
import uuid
from datetime import datetime, timezone
from typing import Optional

INSTANCE, DECISION, HISTORY, FLOW_CHAIN = "WFI", "DEC", "HIS", "FC"


def generate_id(prefix: Optional[str] = None, length: int = 12) -> str:
    token = uuid.uuid4().hex[:length]
    return f"{prefix}-{token}" if prefix else token


def generate_instance_id() -> str:
    return generate_id(INSTANCE)


def generate_decision_id() -> str:
    return generate_id(DECISION)


def generate_history_id() -> str:
    return generate_id(HISTORY)


def generate_flow_chain_id() -> str:
    return generate_id(FLOW_CHAIN)


def generate_correlation_id() -> str:
    """``COR-<utc yyyymmddhhmmss>-<hex>``, sortable by creation time"""
    stamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")
    return generate_id(f"COR-{stamp}", length=8)
