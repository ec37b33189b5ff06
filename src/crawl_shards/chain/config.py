"""Configuration and argument validation for the shard chain.

The chain is driven by four positional arguments (archive, memory limit, cpus,
split size) plus a `ChainConfig` describing where the working directories and
the external tools live. Configuration follows the same layering as the other
pipeline tools in this repo:

    chain_config.json (or $CRAWL_SHARDS_CONFIG)  <  command-line flags
"""

from __future__ import annotations

import json
import logging
import os
import re
import shlex
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


DEFAULT_CONFIG_FILE = "chain_config.json"
CONFIG_ENV_VAR = "CRAWL_SHARDS_CONFIG"

INPUT_TYPES = ("auto", "tar.gz", "plain")


class InvalidArguments(ValueError):
    """Malformed invocation or configuration; fatal before any stage runs."""


# GNU sort -S: default unit is KiB, "b" is bytes, "%" is a share of physical memory.
_SORT_UNITS = {
    "b": 1,
    "k": 1024,
    "m": 1024**2,
    "g": 1024**3,
    "t": 1024**4,
    "p": 1024**5,
    "e": 1024**6,
    "z": 1024**7,
    "y": 1024**8,
}
_SORT_SIZE_RE = re.compile(r"^(\d+(?:\.\d+)?)([bkmgtpezyBKMGTPEZY%]?)$")

# GNU split -C: K = k = KiB, KB = 1000, KiB = 1024, b = 512 bytes.
_SPLIT_POWERS = "KMGTPEZYRQ"
_SPLIT_SIZE_RE = re.compile(r"^(\d+)(?:([bkmKMGTPEZYRQ])(B|D|iB)?)?$")


@dataclass(frozen=True)
class MemoryLimit:
    """A validated sort memory budget.

    Exactly one of `nbytes` / `percent` is set.
    """

    text: str
    nbytes: Optional[int] = None
    percent: Optional[float] = None

    def resolve_bytes(self, total_memory: int) -> int:
        if self.nbytes is not None:
            return self.nbytes
        return int(total_memory * (self.percent or 0.0) / 100.0)


def parse_memory_limit(value: str) -> MemoryLimit:
    text = str(value).strip()
    m = _SORT_SIZE_RE.match(text)
    if not m:
        raise InvalidArguments(f"Invalid memory limit: {value!r} (expected e.g. 512M, 4G or 50%)")
    number, unit = float(m.group(1)), m.group(2)
    if unit == "%":
        if not 0 < number <= 100:
            raise InvalidArguments(f"Invalid memory limit: {value!r} (percentage must be in (0, 100])")
        return MemoryLimit(text=text, percent=number)
    nbytes = int(number * _SORT_UNITS[unit.lower() if unit else "k"])
    if nbytes <= 0:
        raise InvalidArguments(f"Invalid memory limit: {value!r} (must be positive)")
    return MemoryLimit(text=text, nbytes=nbytes)


def parse_split_size(value: str) -> int:
    """Return the byte bound described by a split -C SIZE argument."""

    text = str(value).strip()
    m = _SPLIT_SIZE_RE.match(text)
    if not m:
        raise InvalidArguments(f"Invalid split size: {value!r} (expected e.g. 1000000, 64K, 100MB or 1GiB)")
    number, prefix, suffix = int(m.group(1)), m.group(2), m.group(3)
    size = number
    if prefix == "b":
        size = number * 512
    elif prefix:
        base = 1000 if suffix in ("B", "D") else 1024
        size = number * base ** (_SPLIT_POWERS.index(prefix.upper()) + 1)
    if size <= 0:
        raise InvalidArguments(f"Invalid split size: {value!r} (must be positive)")
    return size


def parse_cpus(value: Any) -> int:
    try:
        cpus = int(str(value).strip())
    except ValueError:
        raise InvalidArguments(f"Invalid cpus: {value!r} (expected a positive integer)") from None
    if cpus < 1:
        raise InvalidArguments(f"Invalid cpus: {value!r} (expected a positive integer)")
    return cpus


def _as_command(value: Any, key: str) -> List[str]:
    if isinstance(value, str):
        cmd = shlex.split(value)
    elif isinstance(value, (list, tuple)):
        cmd = [str(v) for v in value]
    else:
        raise InvalidArguments(f"{key} must be a string or a list of strings")
    if not cmd:
        raise InvalidArguments(f"{key} must not be empty")
    return cmd


@dataclass(frozen=True)
class ChainArguments:
    """The four positional inputs of one run, validated."""

    archive: Path
    memory_limit: MemoryLimit
    cpus: int
    split_size: str
    split_bytes: int

    @classmethod
    def parse(cls, archive: Any, memory_limit: Any, cpus: Any, split_size: Any) -> "ChainArguments":
        path = Path(str(archive)).expanduser()
        if not path.is_file():
            raise InvalidArguments(f"Archive not found: {path}")
        split_text = str(split_size).strip()
        return cls(
            archive=path,
            memory_limit=parse_memory_limit(memory_limit),
            cpus=parse_cpus(cpus),
            split_size=split_text,
            split_bytes=parse_split_size(split_text),
        )


@dataclass
class ChainConfig:
    """Chain configuration: working directories, tools and runtime knobs."""

    indexed_dir: Path = Path("indexed")
    sorted_dir: Path = Path("sorted")
    converted_dir: Path = Path("converted")
    scratch_dir: Path = Path("tempo")
    suffix_table: Path = Path("public_suffix_list.dat")
    indexer_command: List[str] = field(default_factory=lambda: ["./indexer"])
    converter_command: List[str] = field(default_factory=lambda: ["./ctj"])
    sort_command: List[str] = field(default_factory=lambda: ["sort"])
    split_command: List[str] = field(default_factory=lambda: ["split"])
    input_type: str = "auto"
    shard_prefix: str = "parts."
    convert_workers: int = 1
    heartbeat_seconds: int = 30
    min_free_space_gb: float = 0.0
    clean_stale_artifacts: bool = True
    create_dirs: bool = False

    def __post_init__(self):
        self.indexed_dir = Path(self.indexed_dir)
        self.sorted_dir = Path(self.sorted_dir)
        self.converted_dir = Path(self.converted_dir)
        self.scratch_dir = Path(self.scratch_dir)
        self.suffix_table = Path(self.suffix_table)
        self.indexer_command = _as_command(self.indexer_command, "indexer_command")
        self.converter_command = _as_command(self.converter_command, "converter_command")
        self.sort_command = _as_command(self.sort_command, "sort_command")
        self.split_command = _as_command(self.split_command, "split_command")
        if self.input_type not in INPUT_TYPES:
            raise InvalidArguments(f"input_type must be one of {INPUT_TYPES}, got {self.input_type!r}")
        if not self.shard_prefix or "/" in self.shard_prefix:
            raise InvalidArguments(f"shard_prefix must be a plain file name prefix, got {self.shard_prefix!r}")
        self.convert_workers = int(self.convert_workers)
        if self.convert_workers < 1:
            raise InvalidArguments("convert_workers must be >= 1")
        self.heartbeat_seconds = max(1, int(self.heartbeat_seconds or 30))
        self.min_free_space_gb = float(self.min_free_space_gb or 0.0)

    @property
    def working_dirs(self) -> Dict[str, Path]:
        return {
            "indexed_dir": self.indexed_dir,
            "sorted_dir": self.sorted_dir,
            "converted_dir": self.converted_dir,
            "scratch_dir": self.scratch_dir,
        }

    def input_type_for(self, archive: Path) -> str:
        if self.input_type != "auto":
            return self.input_type
        name = archive.name.lower()
        if name.endswith(".tar.gz") or name.endswith(".tgz"):
            return "tar.gz"
        return "plain"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChainConfig":
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise InvalidArguments(f"Unknown configuration keys: {unknown}")
        return cls(**data)

    @classmethod
    def from_json(cls, path: Path) -> "ChainConfig":
        """Load configuration from JSON file"""
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise InvalidArguments(f"Failed to read configuration {path}: {e}") from e
        if not isinstance(data, dict):
            raise InvalidArguments(f"Configuration {path} must contain a JSON object")
        return cls.from_dict(data)

    @classmethod
    def from_args(cls, args) -> "ChainConfig":
        """Create config from command-line args, with JSON config as fallback"""
        config_file = getattr(args, "config", None) or os.getenv(CONFIG_ENV_VAR) or DEFAULT_CONFIG_FILE
        config_file = Path(config_file)

        if config_file.exists():
            logger.info(f"Loading configuration from {config_file}")
            config = cls.from_json(config_file)
        elif getattr(args, "config", None):
            raise InvalidArguments(f"Config file not found: {config_file}")
        else:
            logger.debug(f"Config file {config_file} not found, using defaults")
            config = cls()

        if getattr(args, "convert_workers", None) is not None:
            logger.info(f"Overriding convert_workers: {args.convert_workers}")
            config.convert_workers = int(args.convert_workers)
            if config.convert_workers < 1:
                raise InvalidArguments("--convert-workers must be >= 1")
        if getattr(args, "heartbeat_seconds", None) is not None:
            config.heartbeat_seconds = max(1, int(args.heartbeat_seconds))
        if getattr(args, "create_dirs", False):
            config.create_dirs = True
        return config
