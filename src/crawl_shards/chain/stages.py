"""External stage commands and the subprocess runner that drives them.

Each stage is an external tool. This module knows their command-line
contracts and turns one invocation into a `StageResult`; it never decides
what happens next (that is the orchestrator's job).
"""

from __future__ import annotations

import logging
import os
import selectors
import signal
import subprocess
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional

from .artifacts import RunPaths, ShardDescriptor
from .config import ChainArguments, ChainConfig

logger = logging.getLogger(__name__)


EXIT_NO_OUTPUT = 66  # EX_NOINPUT: stage reported success but left nothing to consume
EXIT_LAUNCH_FAILED = 127


class Stage(str, Enum):
    EXTRACT = "extract"
    ORDER = "order"
    PARTITION = "partition"
    CONVERT = "convert"


@dataclass(frozen=True)
class StageResult:
    stage: Stage
    code: int
    shard_index: Optional[int] = None
    elapsed_s: float = 0.0
    tail: List[str] = field(default_factory=list, compare=False)

    @property
    def ok(self) -> bool:
        return self.code == 0

    @property
    def label(self) -> str:
        if self.shard_index is not None:
            return f"{self.stage.value}[{self.shard_index}]"
        return self.stage.value


def extract_command(config: ChainConfig, paths: RunPaths) -> List[str]:
    return [
        *config.indexer_command,
        "--input-type", config.input_type_for(paths.archive),
        "-t", str(paths.suffix_table),
        "-i", str(paths.archive),
        "-o", str(paths.row_stream),
        "-e", str(paths.error_log),
    ]


def order_command(config: ChainConfig, paths: RunPaths, args: ChainArguments) -> List[str]:
    return [
        *config.sort_command,
        "-S", args.memory_limit.text,
        f"--parallel={args.cpus}",
        "-t", ",",
        "-k", "1,1",
        "-T", str(paths.scratch_dir),
        "-o", str(paths.ordered),
        str(paths.row_stream),
    ]


def partition_command(config: ChainConfig, paths: RunPaths, args: ChainArguments) -> List[str]:
    return [
        *config.split_command,
        f"-C{args.split_size}",
        str(paths.ordered),
        paths.shard_prefix_path,
    ]


def convert_command(config: ChainConfig, shard: ShardDescriptor) -> List[str]:
    return [*config.converter_command, "-i", str(shard.path), "-o", str(shard.output)]


def order_env() -> Dict[str, str]:
    """Byte-wise collation for the sort key."""

    env = dict(os.environ)
    env["LC_ALL"] = "C"
    return env


def _normalize_returncode(rc: Optional[int]) -> int:
    rc = int(rc or 0)
    if rc < 0:
        # Killed by a signal: report it the way a shell would.
        return 128 + abs(rc)
    return rc


def run_stage_process(
    cmd: List[str],
    *,
    stage: Stage,
    heartbeat_seconds: int = 30,
    shard_index: Optional[int] = None,
    env: Optional[Dict[str, str]] = None,
    cwd: Optional[Path] = None,
    capture_tail_lines: int = 20,
) -> StageResult:
    """Run a stage subprocess while streaming output and printing periodic heartbeats.

    This avoids long silent stretches that look like a stall when the child
    process is doing work without producing output.
    """

    hb_seconds = max(1, int(heartbeat_seconds or 30))
    label = stage.value if shard_index is None else f"{stage.value}:{shard_index}"
    logger.debug(f"[{label}] Running: {' '.join(cmd)}")

    start = time.monotonic()
    tail: deque[str] = deque(maxlen=max(1, int(capture_tail_lines)))

    try:
        proc = subprocess.Popen(
            cmd,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            stdin=subprocess.DEVNULL,
            text=True,
            errors="replace",
            bufsize=1,
            env=env,
            cwd=str(cwd) if cwd else None,
        )
    except OSError as e:
        logger.error(f"[{label}] Failed to launch {cmd[0]}: {e}")
        return StageResult(stage=stage, code=EXIT_LAUNCH_FAILED, shard_index=shard_index, tail=[str(e)])

    sel = selectors.DefaultSelector()
    assert proc.stdout is not None
    sel.register(proc.stdout, selectors.EVENT_READ)

    try:
        while True:
            events = sel.select(timeout=hb_seconds)
            if events:
                line = proc.stdout.readline()
                if not line:
                    # EOF: the child closed its output, wait for the exit status.
                    break
                s = line.rstrip()
                logger.info(f"[{label}] {s}")
                tail.append(s)
            elif proc.poll() is None:
                elapsed = time.monotonic() - start
                logger.info(f"[{label}] Heartbeat: still running (elapsed {elapsed/60:.1f} min)")
        proc.wait()
    except BaseException:
        # Interrupted (e.g. KeyboardInterrupt): do not leave the child running.
        if proc.poll() is None:
            proc.send_signal(signal.SIGTERM)
            proc.wait()
        raise
    finally:
        sel.unregister(proc.stdout)
        sel.close()
        proc.stdout.close()

    elapsed = time.monotonic() - start
    code = _normalize_returncode(proc.returncode)
    result = StageResult(stage=stage, code=code, shard_index=shard_index, elapsed_s=elapsed, tail=list(tail))
    if code == 0:
        logger.debug(f"[{label}] finished in {elapsed:.1f}s")
    else:
        logger.error(f"[{label}] exited with code {code} after {elapsed:.1f}s")
    return result
