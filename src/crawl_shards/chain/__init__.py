"""Crawl archive shard chain.

This subpackage drives the external index -> sort -> split -> convert tools
for one archive and owns the lifecycle of the files passed between them.
"""

from .chain_orchestrator import ChainOrchestrator, RunOutcome, RunStatus
from .config import ChainConfig, InvalidArguments

__all__ = ["ChainConfig", "ChainOrchestrator", "InvalidArguments", "RunOutcome", "RunStatus"]
