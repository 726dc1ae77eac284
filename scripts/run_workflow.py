#!/usr/bin/env python3
"""
Run Workflow — render or execute an instruction document from a checkout.

Usage:
    # List available documents
    python scripts/run_workflow.py --list

    # Dry run: phases, edges and resolved instructions
    python scripts/run_workflow.py --doc feature-development --args "user login --skip-tests" --dry-run

    # Full run (requires ANTHROPIC_API_KEY)
    python scripts/run_workflow.py --doc review --args "src/auth.py --security-focus"
"""

from __future__ import annotations

import sys
from pathlib import Path

# Ensure src/ is on path for development
PROJECT_ROOT = Path(__file__).parent.parent.resolve()
sys.path.insert(0, str(PROJECT_ROOT / "src"))

from agentrunbook.cli import main


if __name__ == "__main__":
    sys.exit(main())
