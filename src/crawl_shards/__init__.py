"""Crawl archive shard tooling."""
