"""Unified crawl-shards CLI (application layer).

Examples:
    python -m crawl_shards.cli --help
    crawl-shards run dump.tar.gz 4G 8 100MB
    crawl-shards plan dump.tar.gz
"""

from __future__ import annotations

import argparse
import importlib
import json
import sys
from pathlib import Path

from crawl_shards.chain.artifacts import derive_run_paths, find_stale_artifacts
from crawl_shards.chain.config import ChainConfig, InvalidArguments


def _delegate(module_path: str, argv: list[str], prog: str) -> int:
    """Delegate to an existing module's main() using the provided argv."""

    mod = importlib.import_module(module_path)
    if not hasattr(mod, "main"):
        raise RuntimeError(f"Module {module_path} has no main()")
    return int(mod.main(list(argv), prog=prog))


def _cmd_plan(args: argparse.Namespace) -> int:
    try:
        config = ChainConfig.from_args(args)
    except InvalidArguments as e:
        sys.stderr.write(f"crawl-shards plan: {e}\n")
        return 64

    archive = Path(args.archive)
    paths = derive_run_paths(archive, config)
    out = paths.as_dict()
    out["input_type"] = config.input_type_for(archive)
    out["stale_artifacts"] = [str(p) for p in find_stale_artifacts(paths)]
    sys.stdout.write(json.dumps(out, ensure_ascii=False, indent=2) + "\n")
    return 0


def main(argv: list[str] | None = None) -> int:
    ap = argparse.ArgumentParser(prog="crawl-shards", description="Crawl archive shard chain CLI (unified entrypoint)")
    sub = ap.add_subparsers(dest="cmd", required=True)

    ap_run = sub.add_parser("run", help="Run the index/sort/split/convert chain for one archive")
    ap_run.add_argument("argv", nargs=argparse.REMAINDER, help="ARCHIVE MEMORY_LIMIT CPUS SPLIT_SIZE [options]")
    ap_run.set_defaults(
        func=lambda a: _delegate("crawl_shards.chain.chain_orchestrator", a.argv, prog="crawl-shards run")
    )

    ap_plan = sub.add_parser("plan", help="Print the files a run would create and consume, without running it")
    ap_plan.add_argument("archive", help="Input archive")
    ap_plan.add_argument("--config", type=Path, default=None, help="Path to JSON configuration file")
    ap_plan.set_defaults(func=_cmd_plan)

    args = ap.parse_args(argv)
    return int(args.func(args))


if __name__ == "__main__":
    raise SystemExit(main())
