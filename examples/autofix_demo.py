"""Minimal demonstration of an autofix run.

Usage:
    AUTOFIX_PROVIDER=ollama AUTOFIX_VERIFICATION_COMMAND="pytest -x" \
        python examples/autofix_demo.py path/to/project path/to/failure.txt
"""

import sys
from pathlib import Path

from autofix_core import TaskConfig, run_autofix

if __name__ == "__main__":
    project_root, report_path = sys.argv[1], sys.argv[2]
    report = Path(report_path).read_text(encoding="utf-8")
    config = TaskConfig(policy="fix_application_code", max_iterations=10, project_root=project_root)
    outcome = run_autofix(report, config)
    print("Status:", outcome.status.value)
    print("Iterations:", outcome.iterations)
    print("Usage:", outcome.usage_totals.as_dict())
    if outcome.give_up:
        print("Gave up:", outcome.give_up.reason, outcome.give_up.file, outcome.give_up.line)
    if outcome.error:
        print("Error:", outcome.error)
