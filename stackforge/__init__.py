"""stackforge: config-driven, resumable project bootstrap orchestrator.

Core design goals:
- Declarative YAML configuration, validated before any step runs
- Idempotent steps with a durable ledger for resume
- Optional step groups switched by stack profiles
- Breakpoints with handoff notes between phases
- Centralized logging
"""

__version__ = "0.1.0"
