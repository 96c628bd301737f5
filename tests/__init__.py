"""
Test Suite

Structure:
    tests/
    ├── __init__.py         # This file
    ├── conftest.py         # Pytest fixtures (mongomock database, runtime, API client)
    ├── helpers.py          # Definition, asset and decision builders
    ├── unit/               # Engine, repository and service tests
    └── integration/        # HTTP API tests

To run tests:
    pytest tests/
    pytest tests/unit/
    pytest tests/integration/
"""
