"""Pytest configuration and shared fixtures."""

import shutil
import sys
import textwrap
from pathlib import Path

import pytest

from crawl_shards.chain.config import ChainConfig


HAVE_COREUTILS = bool(shutil.which("sort") and shutil.which("split"))

requires_coreutils = pytest.mark.skipif(not HAVE_COREUTILS, reason="GNU sort/split not available")


# Stand-ins for the external indexer/converter. Each one appends a line to
# calls.log so tests can tell which stages actually ran.

INDEXER_SCRIPT = """
import argparse
import sys

p = argparse.ArgumentParser()
p.add_argument("--input-type")
p.add_argument("-t")
p.add_argument("-i")
p.add_argument("-o")
p.add_argument("-e")
a = p.parse_args()

with open({calls!r}, "a", encoding="utf-8") as log:
    log.write("indexer " + a.input_type + "\\n")

with open(a.i, encoding="utf-8") as src, open(a.o, "w", encoding="utf-8") as out, open(a.e, "w", encoding="utf-8") as err:
    for line in src:
        if "," in line:
            out.write(line)
        else:
            err.write(line)
print("indexed " + a.i)
sys.exit({rc})
"""

CONVERTER_SCRIPT = """
import argparse
import json
import os
import sys

p = argparse.ArgumentParser()
p.add_argument("-i")
p.add_argument("-o")
a = p.parse_args()

with open({calls!r}, "a", encoding="utf-8") as log:
    log.write("ctj " + os.path.basename(a.i) + "\\n")

if os.path.exists(a.o):
    print("output already exists: " + a.o)
    sys.exit(4)

rows = []
with open(a.i, encoding="utf-8") as src:
    for line in src:
        domain, subdomain, username, password = line.rstrip("\\n").split(",", 3)
        if domain == {fail_key!r}:
            print("cannot convert " + domain)
            sys.exit({fail_rc})
        rows.append({{"domain": domain, "subdomain": subdomain, "username": username, "password": password}})

with open(a.o, "w", encoding="utf-8") as out:
    for row in rows:
        out.write(json.dumps(row) + "\\n")
"""

RECORDING_SCRIPT = """
import sys

with open({calls!r}, "a", encoding="utf-8") as log:
    log.write({name!r} + "\\n")
print({name!r} + ": simulated failure", file=sys.stderr)
sys.exit({rc})
"""


@pytest.fixture
def repo_root():
    """Return the repository root directory."""
    return Path(__file__).parent.parent


@pytest.fixture
def src_path(repo_root):
    """Return the src directory path."""
    return repo_root / "src"


@pytest.fixture
def calls_log(tmp_path: Path) -> Path:
    return tmp_path / "calls.log"


@pytest.fixture
def make_tool(tmp_path: Path, calls_log: Path):
    """Write a stand-in tool script and return its command line."""

    tools = tmp_path / "tools"
    tools.mkdir()

    def _make(name: str, template: str, **params) -> list:
        script = tools / f"{name}.py"
        script.write_text(textwrap.dedent(template).format(calls=str(calls_log), name=name, **params), encoding="utf-8")
        return [sys.executable, str(script)]

    return _make


@pytest.fixture
def chain_config(tmp_path: Path, make_tool) -> ChainConfig:
    """A config with working dirs under tmp_path, fake indexer/converter, real sort/split."""

    work = tmp_path / "work"
    for sub in ("indexed", "sorted", "converted", "tempo"):
        (work / sub).mkdir(parents=True)
    table = work / "public_suffix_list.dat"
    table.write_text("com\nnet\nco.uk\n", encoding="utf-8")
    return ChainConfig(
        indexed_dir=work / "indexed",
        sorted_dir=work / "sorted",
        converted_dir=work / "converted",
        scratch_dir=work / "tempo",
        suffix_table=table,
        indexer_command=make_tool("indexer", INDEXER_SCRIPT, rc=0),
        converter_command=make_tool("ctj", CONVERTER_SCRIPT, fail_key="", fail_rc=0),
        heartbeat_seconds=30,
    )


@pytest.fixture
def make_archive(tmp_path: Path):
    """Write a plain-text "archive" whose lines the fake indexer copies through."""

    def _make(lines, name: str = "crawl.tar.gz") -> Path:
        p = tmp_path / name
        p.write_text("".join(line + "\n" for line in lines), encoding="utf-8")
        return p

    return _make


def read_calls(calls_log: Path) -> list:
    if not calls_log.exists():
        return []
    return calls_log.read_text(encoding="utf-8").splitlines()
