"""
Operational scripts

Available scripts:
    - validate_flowchain.py: Validates a FlowChain definition file or a published version

Usage:
    python scripts/validate_flowchain.py path/to/definition.json
"""
