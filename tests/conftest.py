# tests/conftest.py
import os
import sys
import json
import stat
import textwrap
import threading

import pytest

FAKE_ATLAS = textwrap.dedent(
    """
    import json
    import os
    import sqlite3
    import sys
    import time
    from urllib.parse import unquote

    args = sys.argv[1:]
    opts = dict(zip(args[2::2], args[3::2]))
    schema_path = opts["--to"][len("file://"):]
    with open(schema_path, encoding="utf-8") as fh:
        schema = fh.read()

    with open(os.environ["FAKE_ATLAS_LOG"], "w", encoding="utf-8") as fh:
        json.dump({"argv": args, "schema": schema, "cwd": os.getcwd()}, fh)

    code = int(os.environ.get("FAKE_ATLAS_EXIT", "0"))
    if code:
        print("fake atlas failing on purpose", file=sys.stderr)
        sys.exit(code)

    time.sleep(float(os.environ.get("FAKE_ATLAS_SLEEP", "0")))

    conn = sqlite3.connect(unquote(opts["--url"][len("sqlite://"):]))
    conn.executescript(schema)
    conn.commit()
    conn.close()

    with open(os.environ["FAKE_ATLAS_LOG"] + ".done", "w") as fh:
        fh.write("done")
    """
).lstrip()


class FakeAtlas:
    """Handle on the fake atlas executable installed by the ``fake_atlas`` fixture."""

    def __init__(self, log_path):
        self.log_path = log_path

    @property
    def called(self) -> bool:
        return self.log_path.exists()

    @property
    def finished(self) -> bool:
        return self.log_path.with_name(self.log_path.name + ".done").exists()

    def call(self) -> dict:
        return json.loads(self.log_path.read_text(encoding="utf-8"))


@pytest.fixture
def workdir(tmp_path, monkeypatch):
    """Run the test inside an empty working directory (the temp schema file lands here)."""
    work = tmp_path / "work"
    work.mkdir()
    monkeypatch.chdir(work)
    return work


@pytest.fixture
def fake_atlas(tmp_path, monkeypatch):
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    script = bin_dir / "fake_atlas.py"
    script.write_text(FAKE_ATLAS, encoding="utf-8")

    launcher = bin_dir / "atlas"
    launcher.write_text(f'#!/bin/sh\nexec "{sys.executable}" "{script}" "$@"\n')
    launcher.chmod(launcher.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)

    log_path = tmp_path / "atlas_call.json"
    monkeypatch.setenv("FAKE_ATLAS_LOG", str(log_path))
    monkeypatch.delenv("FAKE_ATLAS_EXIT", raising=False)
    monkeypatch.delenv("FAKE_ATLAS_SLEEP", raising=False)
    monkeypatch.setenv("PATH", f"{bin_dir}{os.pathsep}{os.environ.get('PATH', '')}")
    return FakeAtlas(log_path)


@pytest.fixture
def no_atlas(tmp_path, monkeypatch):
    empty = tmp_path / "empty_bin"
    empty.mkdir()
    monkeypatch.setenv("PATH", str(empty))
    return empty


def _is_aiosqlite_worker(t: threading.Thread) -> bool:
    if type(t).__module__.startswith("aiosqlite"):
        return True
    target = getattr(t, "_target", None)
    return "aiosqlite" in (getattr(target, "__module__", None) or "")


def pytest_sessionfinish(session, exitstatus):
    """
    Report aiosqlite worker threads still alive at the end of the run; they
    mean some AsyncSqliteDB was never closed.
    """
    tr = session.config.pluginmanager.getplugin("terminalreporter")
    if not tr:
        return

    lingering = [t for t in threading.enumerate() if _is_aiosqlite_worker(t)]
    if lingering:
        tr.write_sep("=", f"LINGERING AIOSQLITE THREADS ({len(lingering)})")
        for t in lingering:
            tr.write_line(f"name={t.name!r} ident={t.ident} alive={t.is_alive()}")
        tr.write_line("Make sure every AsyncSqliteDB is closed (or used with `async with`).")
