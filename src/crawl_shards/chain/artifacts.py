"""Per-run artifact paths and their lifecycle.

Every file a run touches is derived once from the archive name and the chain
configuration:

    indexed/<name>.csv              row stream (extractor output)
    indexed/<name>.csv.error.log    extractor error log (never deleted)
    sorted/<name>.s.csv             ordered row stream (sort output)
    sorted/parts.<suffix>           shards (split output)
    converted/<name>.<i>.jsonl      converted shards

The partitioner assigns shard suffixes; the chain assigns the ordinal `i`.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from .config import ChainConfig

logger = logging.getLogger(__name__)

# split suffixes are all lowercase letters (default) or all digits (-d).
_SHARD_SUFFIX_RE = re.compile(r"^(?:[a-z]+|[0-9]+)$")


@dataclass(frozen=True)
class RunPaths:
    name: str
    archive: Path
    row_stream: Path
    error_log: Path
    ordered: Path
    sorted_dir: Path
    shard_prefix: str
    converted_dir: Path
    scratch_dir: Path
    suffix_table: Path

    @property
    def shard_prefix_path(self) -> str:
        # split takes the prefix as a plain string; "sorted/parts." is not a directory.
        return str(self.sorted_dir / self.shard_prefix)

    def converted_path(self, index: int) -> Path:
        return self.converted_dir / f"{self.name}.{index}.jsonl"

    def as_dict(self) -> dict:
        return {
            "name": self.name,
            "archive": str(self.archive),
            "row_stream": str(self.row_stream),
            "error_log": str(self.error_log),
            "ordered": str(self.ordered),
            "shard_prefix": self.shard_prefix_path,
            "converted_pattern": str(self.converted_dir / f"{self.name}.{{i}}.jsonl"),
            "scratch_dir": str(self.scratch_dir),
            "suffix_table": str(self.suffix_table),
        }


def derive_run_paths(archive: Path, config: ChainConfig) -> RunPaths:
    name = Path(archive).name
    row_stream = config.indexed_dir / f"{name}.csv"
    return RunPaths(
        name=name,
        archive=Path(archive),
        row_stream=row_stream,
        error_log=Path(str(row_stream) + ".error.log"),
        ordered=config.sorted_dir / f"{name}.s.csv",
        sorted_dir=config.sorted_dir,
        shard_prefix=config.shard_prefix,
        converted_dir=config.converted_dir,
        scratch_dir=config.scratch_dir,
        suffix_table=config.suffix_table,
    )


@dataclass(frozen=True)
class ShardDescriptor:
    index: int
    path: Path
    output: Path


def list_shards(paths: RunPaths) -> List[ShardDescriptor]:
    """Enumerate shards under the shard prefix as an ordered, gapless list.

    split widens its suffixes instead of running out (`yz` -> `zaaa`,
    `89` -> `9000`). The widened names keep the leading `z`/`9` run, so
    string order of the suffixes matches creation order; directory listing
    order is never used.
    """

    prefix = paths.shard_prefix
    found: List[Path] = []
    if paths.sorted_dir.exists():
        for p in paths.sorted_dir.iterdir():
            if p == paths.ordered or not p.is_file() or not p.name.startswith(prefix):
                continue
            if _SHARD_SUFFIX_RE.match(p.name[len(prefix):]):
                found.append(p)
    found.sort(key=lambda p: p.name[len(prefix):])
    return [ShardDescriptor(index=i, path=p, output=paths.converted_path(i)) for i, p in enumerate(found)]


def find_stale_artifacts(paths: RunPaths) -> List[Path]:
    """Leftovers of an earlier aborted run that would corrupt this run's output.

    Old shards would be picked up as part of the new shard list, and old
    converted files for the same archive would double-count its records.
    """

    stale: List[Path] = [s.path for s in list_shards(paths)]
    if paths.converted_dir.exists():
        rx = re.compile(rf"^{re.escape(paths.name)}\.\d+\.jsonl$")
        stale.extend(sorted(p for p in paths.converted_dir.iterdir() if p.is_file() and rx.match(p.name)))
    return stale


def file_size(path: Path) -> Optional[int]:
    try:
        return path.stat().st_size
    except FileNotFoundError:
        return None


def remove_artifact(path: Path, reason: str) -> None:
    """Delete one intermediate artifact; a missing file is not an error."""

    path.unlink(missing_ok=True)
    logger.debug(f"Removed {path} ({reason})")
