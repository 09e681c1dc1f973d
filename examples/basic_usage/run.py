"""
Example: Basic Usage
====================

Loads a suite from YAML, runs every pair once and prints the summary.
Needs provider API keys (e.g. OPENAI_API_KEY) in the environment.

Run: python -m examples.basic_usage.run
"""

from pathlib import Path

from promptloop import run_suite
from promptloop.monitoring import enable_monitoring

SUITE = Path(__file__).parent / "suite.yml"


def main():
    enable_monitoring()
    summary = run_suite(SUITE)
    summary.print()

    if not summary.all_passed:
        print(f"\n{len(summary.failed_results)} pair(s) below the bar")


if __name__ == "__main__":
    main()
