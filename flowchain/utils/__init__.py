"""Helpers shared by the engine, repositories and API"""
from .idgen import (
    generate_correlation_id, generate_decision_id, generate_flow_chain_id,
    generate_history_id, generate_instance_id
)
from .logger import get_correlation_id, get_logger, set_correlation_id, setup_logging
from .time import ensure_utc, format_iso, minutes_since, parse_iso, utc_now

__all__ = [
    "generate_correlation_id",
    "generate_decision_id",
    "generate_flow_chain_id",
    "generate_history_id",
    "generate_instance_id",
    "get_correlation_id",
    "get_logger",
    "set_correlation_id",
    "setup_logging",
    "ensure_utc",
    "format_iso",
    "minutes_since",
    "parse_iso",
    "utc_now",
]
