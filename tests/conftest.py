"""
Root conftest.py - Global configuration for all test layers.

Test Layers:
    - contracts/  : Test data factories and response contracts
    - component/  : Component tests (mocked dependencies)
    - unit/       : Unit tests (pure functions, no I/O)
"""
import os
import sys

# Add project root to path
PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, PROJECT_ROOT)


def pytest_configure(config):
    """Register custom markers"""
    config.addinivalue_line("markers", "unit: pure function tests")
    config.addinivalue_line("markers", "component: tests with mocked dependencies")
