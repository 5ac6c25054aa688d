"""
Test Suite

Structure:
    tests/
    ├── __init__.py         # This file
    ├── conftest.py         # Pytest fixtures (mongomock database, actors, builders)
    ├── unit/
    │   ├── test_engine.py      # Advancer, resolvers, evaluator, guard
    │   ├── test_services.py    # Definition, instance, step and dashboard services
    │   └── test_utils.py       # Time, ids, JWT
    └── integration/
        └── test_api.py         # HTTP endpoints through TestClient

To run tests:
    pytest backend/tests/
    pytest backend/tests/unit/
    pytest backend/tests/integration/
"""
