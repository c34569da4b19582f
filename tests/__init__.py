"""
Square Booking Gateway Tests

Unit tests run without network, database or Redis: Square calls go
through mocked clients or httpx.MockTransport, and database sessions
are mocked.

Running Tests:
    # Run all tests
    pytest tests/ -v

    # Run one module
    pytest tests/unit/test_orchestrator.py -v

Test Coverage:
    - Value normalizers and error taxonomy
    - Circuit breaker, coalescer and client factory
    - Square client, read caches and availability
    - Customer resolution and booking orchestration
    - Booking manager routing and the agent ledger
    - Configuration, tenant resolution and rate limiting
"""
