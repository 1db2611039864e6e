#!/usr/bin/env python3
"""
Test runner script for the connector runner.

Usage: run_tests.py [all|unit|integration|coverage|quick]
"""

import subprocess
import sys
from pathlib import Path

SUITES = {
    "unit": ("tests/unit/", "Unit Tests"),
    "integration": ("tests/integration/", "Integration Tests"),
}


def run_command(cmd, description, cwd):
    """Run a command and print results."""
    print(f"\n{'='*60}")
    print(f"Running: {description}")
    print(f"Command: {' '.join(cmd)}")
    print('='*60)

    try:
        result = subprocess.run(cmd, check=False, capture_output=False, cwd=cwd)
        return result.returncode == 0
    except OSError as e:
        print(f"Error running command: {e}")
        return False


def main():
    """Main test runner."""
    test_type = sys.argv[1] if len(sys.argv) > 1 else "all"
    project_root = Path(__file__).parent
    pytest_cmd = [sys.executable, "-m", "pytest"]

    success = True

    for name, (path, description) in SUITES.items():
        if test_type in ("all", name):
            if not run_command(pytest_cmd + [path, "-v", "--tb=short"], description, project_root):
                success = False

    if test_type == "coverage":
        # Requires pytest-cov
        cmd = pytest_cmd + [
            "--cov=connector_runner",
            "--cov-report=html",
            "--cov-report=term-missing",
            "tests/"
        ]
        if not run_command(cmd, "Coverage Tests", project_root):
            success = False

    if test_type == "quick":
        cmd = pytest_cmd + ["-m", "not slow", "tests/", "-q"]
        if not run_command(cmd, "Quick Tests", project_root):
            success = False

    print(f"\n{'='*60}")
    print("All tests passed!" if success else "Some tests failed!")
    print('='*60)

    return 0 if success else 1


if __name__ == "__main__":
    sys.exit(main())
