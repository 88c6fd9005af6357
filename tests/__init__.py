"""
Test Suite for toolgate

Test Structure:
- unit/: isolated tests for each pipeline component
- integration/: end-to-end tests driving a real orchestrator

Running Tests:
    pytest                      # Run all tests
    pytest -m unit              # Unit tests only
    pytest tests/integration    # Integration tests only
"""
