from __future__ import annotations

from pathlib import Path

import pytest

from crawl_shards.chain.artifacts import (
    derive_run_paths,
    file_size,
    find_stale_artifacts,
    list_shards,
    remove_artifact,
)
from crawl_shards.chain.config import ChainConfig


@pytest.fixture
def config(tmp_path: Path) -> ChainConfig:
    for sub in ("indexed", "sorted", "converted", "tempo"):
        (tmp_path / sub).mkdir()
    return ChainConfig(
        indexed_dir=tmp_path / "indexed",
        sorted_dir=tmp_path / "sorted",
        converted_dir=tmp_path / "converted",
        scratch_dir=tmp_path / "tempo",
    )


def test_derive_run_paths_naming(config: ChainConfig, tmp_path: Path) -> None:
    paths = derive_run_paths(Path("/data/in/crawl.tar.gz"), config)
    assert paths.name == "crawl.tar.gz"
    assert paths.row_stream == tmp_path / "indexed" / "crawl.tar.gz.csv"
    assert paths.error_log == tmp_path / "indexed" / "crawl.tar.gz.csv.error.log"
    assert paths.ordered == tmp_path / "sorted" / "crawl.tar.gz.s.csv"
    assert paths.shard_prefix_path == str(tmp_path / "sorted" / "parts.")
    assert paths.converted_path(0) == tmp_path / "converted" / "crawl.tar.gz.0.jsonl"
    assert paths.converted_path(12) == tmp_path / "converted" / "crawl.tar.gz.12.jsonl"


def test_run_paths_are_immutable(config: ChainConfig) -> None:
    paths = derive_run_paths(Path("a.tar.gz"), config)
    with pytest.raises(AttributeError):
        paths.name = "b.tar.gz"  # type: ignore[misc]


def test_as_dict_lists_every_artifact(config: ChainConfig) -> None:
    d = derive_run_paths(Path("a.tar.gz"), config).as_dict()
    assert d["converted_pattern"].endswith("a.tar.gz.{i}.jsonl")
    assert set(d) >= {"row_stream", "error_log", "ordered", "shard_prefix", "scratch_dir"}


def test_list_shards_orders_and_numbers_gaplessly(config: ChainConfig, tmp_path: Path) -> None:
    sorted_dir = tmp_path / "sorted"
    for suffix in ["ab", "aa", "ac"]:
        (sorted_dir / f"parts.{suffix}").write_text("x\n")
    # Not shards: the ordered stream and a bare prefix.
    (sorted_dir / "crawl.tar.gz.s.csv").write_text("x\n")
    (sorted_dir / "parts.").write_text("x\n")

    paths = derive_run_paths(Path("crawl.tar.gz"), config)
    shards = list_shards(paths)
    assert [s.path.name for s in shards] == ["parts.aa", "parts.ab", "parts.ac"]
    assert [s.index for s in shards] == [0, 1, 2]
    assert [s.output.name for s in shards] == [
        "crawl.tar.gz.0.jsonl",
        "crawl.tar.gz.1.jsonl",
        "crawl.tar.gz.2.jsonl",
    ]


def test_list_shards_across_suffix_widening(config: ChainConfig, tmp_path: Path) -> None:
    # split creates aa..yz, then widens to zaaa..zyzz, then zzaaaa...
    created = ["aa", "ab", "yy", "yz", "zaaa", "zaab", "zyzz", "zzaaaa"]
    for suffix in reversed(created):
        (tmp_path / "sorted" / f"parts.{suffix}").write_text("x\n")

    shards = list_shards(derive_run_paths(Path("a.tar.gz"), config))
    assert [s.path.name[len("parts."):] for s in shards] == created
    assert [s.index for s in shards] == list(range(len(created)))


def test_list_shards_numeric_suffix_widening(config: ChainConfig, tmp_path: Path) -> None:
    created = ["00", "01", "88", "89", "9000", "9001", "9899", "990000"]
    for suffix in reversed(created):
        (tmp_path / "sorted" / f"parts.{suffix}").write_text("x\n")

    shards = list_shards(derive_run_paths(Path("a.tar.gz"), config))
    assert [s.path.name[len("parts."):] for s in shards] == created


def test_list_shards_full_two_letter_alphabet(config: ChainConfig, tmp_path: Path) -> None:
    letters = "abcdefghijklmnopqrstuvwxyz"
    created = [a + b for a in letters[:-1] for b in letters] + ["zaaa"]
    for suffix in created:
        (tmp_path / "sorted" / f"parts.{suffix}").write_text("x\n")

    shards = list_shards(derive_run_paths(Path("a.tar.gz"), config))
    assert len(shards) == 26 * 25 + 1
    assert shards[-1].path.name == "parts.zaaa"
    assert shards[-2].path.name == "parts.yz"


def test_list_shards_missing_dir(tmp_path: Path) -> None:
    config = ChainConfig(sorted_dir=tmp_path / "nope")
    assert list_shards(derive_run_paths(Path("a.tar.gz"), config)) == []


def test_find_stale_artifacts_only_matches_this_archive(config: ChainConfig, tmp_path: Path) -> None:
    (tmp_path / "sorted" / "parts.aa").write_text("x\n")
    converted = tmp_path / "converted"
    (converted / "crawl.tar.gz.0.jsonl").write_text("{}\n")
    (converted / "crawl.tar.gz.17.jsonl").write_text("{}\n")
    (converted / "other.tar.gz.0.jsonl").write_text("{}\n")
    (converted / "crawl.tar.gz.notes.jsonl").write_text("{}\n")

    stale = find_stale_artifacts(derive_run_paths(Path("crawl.tar.gz"), config))
    assert sorted(p.name for p in stale) == ["crawl.tar.gz.0.jsonl", "crawl.tar.gz.17.jsonl", "parts.aa"]


def test_file_size_and_remove_artifact(tmp_path: Path) -> None:
    p = tmp_path / "rows.csv"
    assert file_size(p) is None
    p.write_text("a,b\n")
    assert file_size(p) == 4
    remove_artifact(p, "test")
    assert not p.exists()
    # Removing twice is fine.
    remove_artifact(p, "test")


def test_list_shards_ignores_names_split_never_creates(config: ChainConfig, tmp_path: Path) -> None:
    sorted_dir = tmp_path / "sorted"
    (sorted_dir / "parts.aa").write_text("x\n")
    (sorted_dir / "parts.2023.tar.gz.s.csv").write_text("x\n")
    (sorted_dir / "parts.ab.tmp").write_text("x\n")
    (sorted_dir / "parts.AB").write_text("x\n")

    paths = derive_run_paths(Path("parts.2023.tar.gz"), config)
    assert paths.ordered.name == "parts.2023.tar.gz.s.csv"
    assert [s.path.name for s in list_shards(paths)] == ["parts.aa"]
    assert [p.name for p in find_stale_artifacts(paths)] == ["parts.aa"]
