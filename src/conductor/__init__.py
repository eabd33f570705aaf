"""Issue-driven agent orchestration for GitHub repositories.

This package coordinates autonomous work assignment from issue-tracker events:
- GitHub webhook ingestion (issues, issue comments, pull requests)
- Readiness analysis of clarifying questions against comment answers
- Label-based issue state machine with self-healing label repair
- At-most-once agent spawn triggers backed by a durable ledger
- Priority scheduling of the next ready issue when work completes
"""

__version__ = "1.0.0"
