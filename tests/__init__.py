"""
Test Suite

This module contains all tests for the Helpdesk Sync engine and API.

Structure:
    tests/
    ├── __init__.py         # This file
    ├── conftest.py         # Pytest fixtures
    ├── fakes.py            # Factories and the fake REST backend
    ├── unit/               # Unit tests
    │   ├── test_sync/      # Event bus, ordering, stores, coordinator
    │   └── test_services/  # REST client, inline content, workspace
    └── integration/        # Integration tests
        └── test_api/       # API endpoint tests

To run tests:
    pytest tests/
    pytest tests/unit/
    pytest tests/integration/
"""
