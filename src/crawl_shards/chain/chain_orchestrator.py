#!/usr/bin/env python3
"""
Crawl Archive Shard Chain

Turns one compressed crawl archive into size-bounded JSON-lines shards:
1. Index the archive into a CSV row stream (indexer)
2. Sort the rows by their first field (sort)
3. Split the sorted rows into bounded shards on line boundaries (split)
4. Convert each shard to JSON lines (ctj)

Each intermediate file is deleted as soon as the stage consuming it has
succeeded. The first failing stage aborts the run, and its exit code becomes
the exit code of this command.

Usage:
    crawl-shards-chain ARCHIVE MEMORY_LIMIT CPUS SPLIT_SIZE
    crawl-shards-chain dump.tar.gz 4G 8 100MB --convert-workers 4
"""

from __future__ import annotations

import argparse
import logging
import shutil
import sys
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import psutil

from .artifacts import (
    RunPaths,
    ShardDescriptor,
    derive_run_paths,
    file_size,
    find_stale_artifacts,
    list_shards,
    remove_artifact,
)
from .config import ChainArguments, ChainConfig, InvalidArguments
from .stages import (
    EXIT_NO_OUTPUT,
    Stage,
    StageResult,
    convert_command,
    extract_command,
    order_command,
    order_env,
    partition_command,
    run_stage_process,
)

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger(__name__)


EXIT_OK = 0
EXIT_INVALID_ARGUMENTS = 64  # EX_USAGE
EXIT_INSUFFICIENT_RESOURCES = 75  # EX_TEMPFAIL


class RunStatus(str, Enum):
    COMPLETED = "completed"
    EMPTY = "empty"
    FAILED = "failed"


@dataclass
class RunOutcome:
    """Terminal status of one chain run."""

    status: RunStatus
    exit_code: int
    name: str
    failure: Optional[StageResult] = None
    outputs: List[Path] = field(default_factory=list)
    stage_seconds: Dict[str, float] = field(default_factory=dict)
    elapsed_s: float = 0.0

    @property
    def ok(self) -> bool:
        return self.exit_code == EXIT_OK


class ChainOrchestrator:
    """Runs the index -> sort -> split -> convert chain for one archive."""

    def __init__(self, config: ChainConfig):
        self.config = config

    def _ensure_dirs(self) -> None:
        missing = {k: p for k, p in self.config.working_dirs.items() if not p.is_dir()}
        if not missing:
            return
        if not self.config.create_dirs:
            listing = ", ".join(f"{k}={p}" for k, p in missing.items())
            raise InvalidArguments(f"Working directories do not exist: {listing} (use --create-dirs)")
        for key, path in missing.items():
            logger.info(f"Creating {key}: {path}")
            path.mkdir(parents=True, exist_ok=True)

    def _clear_stale_artifacts(self, paths: RunPaths) -> None:
        stale = find_stale_artifacts(paths)
        if not stale:
            return
        if not self.config.clean_stale_artifacts:
            raise InvalidArguments(
                f"{len(stale)} stale artifact(s) from an earlier run would be mixed into this run "
                f"(e.g. {stale[0]}); remove them or enable clean_stale_artifacts"
            )
        for p in stale:
            logger.warning(f"Removing stale artifact from an earlier run: {p}")
            remove_artifact(p, "stale")

    def get_free_space_gb(self, path: Path) -> float:
        """Get free disk space in GB"""
        usage = shutil.disk_usage(str(path))
        return usage.free / (1024 ** 3)

    def check_resources(self, args: ChainArguments, paths: RunPaths) -> bool:
        """Check if we have enough resources to proceed"""
        mem = psutil.virtual_memory()
        requested = args.memory_limit.resolve_bytes(int(mem.total))
        available = int(mem.available)
        if requested > available:
            # sort falls back to spilling into the scratch dir; warn only.
            logger.warning(
                f"Sort memory limit {args.memory_limit.text} ({requested/1024**3:.1f} GB) exceeds "
                f"available memory ({available/1024**3:.1f} GB)"
            )

        cpu_count = psutil.cpu_count(logical=True) or 1
        if args.cpus > cpu_count:
            logger.warning(f"Requested {args.cpus} sort threads but only {cpu_count} CPUs are available")

        min_free = self.config.min_free_space_gb
        if min_free <= 0:
            return True
        for path in [paths.sorted_dir, paths.scratch_dir, paths.converted_dir]:
            free_gb = self.get_free_space_gb(path)
            if free_gb < min_free:
                logger.warning(f"Low disk space at {path}: {free_gb:.1f} GB free, need {min_free:.1f} GB")
                return False
        return True

    def _run_stage(
        self,
        cmd: List[str],
        stage: Stage,
        *,
        shard_index: Optional[int] = None,
        env: Optional[Dict[str, str]] = None,
    ) -> StageResult:
        return run_stage_process(
            cmd,
            stage=stage,
            heartbeat_seconds=self.config.heartbeat_seconds,
            shard_index=shard_index,
            env=env,
        )

    def _convert_one(self, shard: ShardDescriptor) -> StageResult:
        result = self._run_stage(
            convert_command(self.config, shard),
            Stage.CONVERT,
            shard_index=shard.index,
        )
        if result.ok:
            # Only this shard's own success may release it.
            remove_artifact(shard.path, f"converted to {shard.output.name}")
        return result

    def _convert_sequential(self, shards: List[ShardDescriptor]) -> Tuple[Optional[StageResult], List[Path]]:
        outputs: List[Path] = []
        for shard in shards:
            result = self._convert_one(shard)
            if not result.ok:
                return result, outputs
            outputs.append(shard.output)
        return None, outputs

    def _convert_concurrent(self, shards: List[ShardDescriptor]) -> Tuple[Optional[StageResult], List[Path]]:
        """Convert shards on a worker pool.

        The first failure to be *detected* is reported, which is not
        necessarily the lowest shard index. Shards that have not started yet
        are cancelled; conversions already running are allowed to finish.
        """

        failure: Optional[StageResult] = None
        converted: List[ShardDescriptor] = []
        with ThreadPoolExecutor(max_workers=self.config.convert_workers) as ex:
            futs = {ex.submit(self._convert_one, shard): shard for shard in shards}
            try:
                for fut in as_completed(futs):
                    if fut.cancelled():
                        continue
                    result = fut.result()
                    if result.ok:
                        converted.append(futs[fut])
                    elif failure is None:
                        failure = result
                        cancelled = sum(1 for f in futs if f.cancel())
                        if cancelled:
                            logger.warning(f"Cancelled {cancelled} pending shard conversion(s)")
            except BaseException:
                # The executor waits on exit; nothing queued may start after this.
                for f in futs:
                    f.cancel()
                raise
        converted.sort(key=lambda s: s.index)
        return failure, [s.output for s in converted]

    def _fail(self, outcome: RunOutcome, result: StageResult) -> RunOutcome:
        logger.error(f"Failed to process {outcome.name}: stage {result.label} exited with code {result.code}")
        outcome.status = RunStatus.FAILED
        outcome.exit_code = result.code
        outcome.failure = result
        return outcome

    def _run_stages(self, args: ChainArguments, paths: RunPaths, outcome: RunOutcome) -> RunOutcome:
        logger.info(f"Indexing {paths.name}...")
        result = self._run_stage(extract_command(self.config, paths), Stage.EXTRACT)
        outcome.stage_seconds[Stage.EXTRACT.value] = result.elapsed_s
        if not result.ok:
            # Keep the (possibly partial) row stream for diagnosis.
            return self._fail(outcome, result)

        size = file_size(paths.row_stream)
        if size is None:
            logger.error(f"Indexer reported success but {paths.row_stream} does not exist")
            return self._fail(outcome, StageResult(stage=Stage.EXTRACT, code=EXIT_NO_OUTPUT))
        if size == 0:
            logger.info("0 elements were obtained from indexing. Exiting...")
            remove_artifact(paths.row_stream, "empty row stream")
            outcome.status = RunStatus.EMPTY
            return outcome

        logger.info("Sorting...")
        result = self._run_stage(order_command(self.config, paths, args), Stage.ORDER, env=order_env())
        outcome.stage_seconds[Stage.ORDER.value] = result.elapsed_s
        if not result.ok:
            return self._fail(outcome, result)
        remove_artifact(paths.row_stream, "consumed by sort")

        logger.info(f"Splitting by {args.split_size}...")
        result = self._run_stage(partition_command(self.config, paths, args), Stage.PARTITION)
        outcome.stage_seconds[Stage.PARTITION.value] = result.elapsed_s
        if not result.ok:
            return self._fail(outcome, result)
        shards = list_shards(paths)
        if not shards:
            logger.error(f"split reported success but produced no shards under {paths.shard_prefix_path}")
            return self._fail(outcome, StageResult(stage=Stage.PARTITION, code=EXIT_NO_OUTPUT))
        remove_artifact(paths.ordered, "consumed by split")

        logger.info(f"Converting {len(shards)} shard(s)...")
        start = time.monotonic()
        if self.config.convert_workers > 1 and len(shards) > 1:
            failure, outputs = self._convert_concurrent(shards)
        else:
            failure, outputs = self._convert_sequential(shards)
        outcome.stage_seconds[Stage.CONVERT.value] = time.monotonic() - start
        outcome.outputs = outputs
        if failure is not None:
            return self._fail(outcome, failure)

        logger.info("Done")
        return outcome

    def run(self, archive, memory_limit, cpus, split_size) -> RunOutcome:
        """Run the full chain for one archive.

        Raises InvalidArguments before any stage runs when the inputs or the
        working directories are unusable.
        """

        args = ChainArguments.parse(archive, memory_limit, cpus, split_size)
        paths = derive_run_paths(args.archive, self.config)
        self._ensure_dirs()

        outcome = RunOutcome(status=RunStatus.COMPLETED, exit_code=EXIT_OK, name=paths.name)
        start = time.monotonic()
        if not self.check_resources(args, paths):
            logger.error(f"Insufficient resources to process {paths.name}")
            outcome.status = RunStatus.FAILED
            outcome.exit_code = EXIT_INSUFFICIENT_RESOURCES
        else:
            self._clear_stale_artifacts(paths)
            outcome = self._run_stages(args, paths, outcome)
        outcome.elapsed_s = time.monotonic() - start

        logger.info(
            f"Run summary for {outcome.name}: status={outcome.status.value} exit={outcome.exit_code} "
            f"outputs={len(outcome.outputs)} elapsed={outcome.elapsed_s:.1f}s"
        )
        return outcome


class ChainArgumentParser(argparse.ArgumentParser):
    """ArgumentParser that reports usage errors with the chain's usage exit code."""

    def error(self, message):
        self.print_usage(sys.stderr)
        self.exit(EXIT_INVALID_ARGUMENTS, f"{self.prog}: error: {message}\n")


def build_parser(prog: Optional[str] = None) -> argparse.ArgumentParser:
    parser = ChainArgumentParser(
        prog=prog,
        description="Crawl archive shard chain orchestrator",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )
    parser.add_argument("archive", help="Input archive (e.g. dump.tar.gz)")
    parser.add_argument("memory_limit", help="Sort memory budget, passed to sort -S (e.g. 4G, 50%%)")
    parser.add_argument("cpus", help="Sort parallelism, passed to sort --parallel")
    parser.add_argument("split_size", help="Maximum shard size, passed to split -C (e.g. 100MB)")
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to JSON configuration file (default: $CRAWL_SHARDS_CONFIG or chain_config.json)"
    )
    parser.add_argument(
        "--convert-workers",
        type=int,
        default=None,
        help="Parallel shard conversions (overrides config file; default: 1 = sequential)"
    )
    parser.add_argument(
        "--heartbeat-seconds",
        type=int,
        default=None,
        help="Print a periodic heartbeat every N seconds while a stage is silent (default: 30)",
    )
    parser.add_argument(
        "--create-dirs",
        action="store_true",
        help="Create missing working directories instead of failing",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable verbose debug logging"
    )
    return parser


def main(argv: Optional[List[str]] = None, prog: Optional[str] = None) -> int:
    parser = build_parser(prog)
    args = parser.parse_args(argv)

    # Set logging level based on verbose flag
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    try:
        config = ChainConfig.from_args(args)
    except InvalidArguments as e:
        logger.error(f"Invalid configuration: {e}")
        return EXIT_INVALID_ARGUMENTS

    # Log the active configuration
    logger.info("Active Configuration:")
    logger.info(f"  indexed_dir:       {config.indexed_dir}")
    logger.info(f"  sorted_dir:        {config.sorted_dir}")
    logger.info(f"  converted_dir:     {config.converted_dir}")
    logger.info(f"  scratch_dir:       {config.scratch_dir}")
    logger.info(f"  suffix_table:      {config.suffix_table}")
    logger.info(f"  convert_workers:   {config.convert_workers}")
    logger.info(f"  heartbeat_seconds: {config.heartbeat_seconds}")

    orchestrator = ChainOrchestrator(config)
    try:
        outcome = orchestrator.run(args.archive, args.memory_limit, args.cpus, args.split_size)
    except InvalidArguments as e:
        logger.error(f"Invalid arguments: {e}")
        return EXIT_INVALID_ARGUMENTS
    return outcome.exit_code


if __name__ == "__main__":
    raise SystemExit(main())
