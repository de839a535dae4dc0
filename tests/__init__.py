# =============================================================================
# TASK TRACKER OBSERVABILITY - TEST PACKAGE
# =============================================================================
"""
Test Package

This package contains tests for the monitoring package.

Test Structure:
    tests/
    ├── __init__.py          # This file
    ├── conftest.py          # Shared fixtures (temporary directories, configs)
    ├── test_events.py       # Event bus tests
    ├── test_logger.py       # Structured logger tests
    ├── test_metrics.py      # Metrics store and Prometheus export tests
    ├── test_audit.py        # Audit trail tests
    ├── test_system.py       # Monitoring system tests
    └── test_config.py       # Configuration loading and CLI tests

Running Tests:
    # Run all tests
    pytest

    # Run specific test file
    pytest tests/test_logger.py -v

    # Run with coverage
    pytest tests/ --cov=monitoring
"""
