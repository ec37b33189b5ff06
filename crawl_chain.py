#!/usr/bin/env python3
"""Backwards-compatible wrapper for the crawl archive shard chain.

Moved to:
  crawl_shards.chain.chain_orchestrator
"""

from crawl_shards.chain.chain_orchestrator import main


if __name__ == "__main__":
    raise SystemExit(main())
