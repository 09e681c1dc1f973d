"""
Example: Fluent API (RunPrompt)
===============================

Demonstrates the RunPrompt fluent API:
- Loading from a dict
- Improving the instructions over two passes
- Accepting pairs that score at least 80

Run: python -m examples.fluent_api.run
"""

import json

from promptloop import RunPrompt

SUITE = {
    "instructions": "Reply with the input",
    "model": "openai:gpt-4o-mini",
    "pairs": [
        {"in": "hello", "out": "HELLO"},
        {"in": "good morning", "out": "GOOD MORNING"},
    ],
}


def main():
    summary = RunPrompt.from_dict(SUITE).improve(iterations=2).min_score(80).run()
    summary.print()

    print("\n── Best instructions " + "─" * 40)
    print(summary.best_instructions)

    print("\n── JSON export " + "─" * 46)
    print(json.dumps(summary.json()["summary"], indent=2))


if __name__ == "__main__":
    main()
