"""End-to-end tests driving the ``pipeworks`` command line.

The agent CLI is replaced by the running Python interpreter executing a
small script, so a full ``run`` exercises real subprocesses, locks and file
moves.
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path

import pytest
import yaml
from click.testing import CliRunner

from pipeworks import __version__
from pipeworks.cli import main
from pipeworks.services import work_store
from pipeworks.utils.config import clear_pipeline_cache

# Plans on the first visit, splits ideas into two parts, passes everything else
AGENT_SCRIPT = """
import sys
text = sys.stdin.read()
if 'stage: ideas' in text and 'parent:' not in text:
    print('# Part one')
    print('first half')
    print('<!-- SPLIT -->')
    print('# Part two')
    print('second half')
    print('DIRECTIVE: SPLIT')
else:
    print('looks fine')
    print('DIRECTIVE: PASS')
"""


@pytest.fixture(autouse=True)
def _isolated():
    clear_pipeline_cache()
    yield
    clear_pipeline_cache()
    logger = logging.getLogger("pipeworks")
    for handler in [h for h in logger.handlers if getattr(h, "_pipeworks", False)]:
        logger.removeHandler(handler)


@pytest.fixture
def cli() -> CliRunner:
    return CliRunner()


def _invoke(cli: CliRunner, root: Path, *args: str):
    return cli.invoke(main, ["--root", str(root), "--log-level", "WARNING", *args], catch_exceptions=False)


def _write_python_agent_config(root: Path, script: str = AGENT_SCRIPT) -> None:
    config = {
        "poll_interval": 0.05,
        "max_attempts": 2,
        "cli": {"command": sys.executable, "args": ["-c", script], "prompt_flag": None, "timeout_seconds": 30},
        "agents": {"agent-0": {"dir": "."}, "agent-1": {"dir": "."}},
        "pools": {"default": {"agents": ["agent-0", "agent-1"]}},
        "stages": {
            "ideas": {"pool": "default", "transitions": {"PASS": "build", "SPLIT": "build", "FAIL": "failed"}},
            "build": {"pool": "default", "transitions": {"PASS": "done", "REJECT": "ideas", "FAIL": "failed"}},
        },
    }
    (root / "pipeline.yml").write_text(yaml.safe_dump(config, sort_keys=False))


class TestInit:
    def test_scaffolds_pipeline(self, cli: CliRunner, tmp_path: Path) -> None:
        result = _invoke(cli, tmp_path, "init", "--stages", "drafts,review", "--agents", "3")

        assert result.exit_code == 0, result.output
        config = yaml.safe_load((tmp_path / "pipeline.yml").read_text())
        assert list(config["stages"]) == ["drafts", "review"]
        assert config["stages"]["drafts"]["transitions"]["PASS"] == "review"
        assert config["stages"]["review"]["transitions"]["REJECT"] == "drafts"
        assert config["pools"]["default"]["agents"] == ["agent-0", "agent-1", "agent-2"]
        for name in ("drafts", "review", "done", "failed"):
            assert (tmp_path / "pipeline" / name).is_dir()
        assert (tmp_path / "locks").is_dir()

    def test_existing_config_left_alone(self, cli: CliRunner, tmp_path: Path) -> None:
        _write_python_agent_config(tmp_path)
        before = (tmp_path / "pipeline.yml").read_text()

        result = _invoke(cli, tmp_path, "init")

        assert result.exit_code == 0
        assert "already exists" in result.output
        assert (tmp_path / "pipeline.yml").read_text() == before
        assert (tmp_path / "pipeline" / "ideas").is_dir()


class TestValidate:
    def test_ok(self, cli: CliRunner, tmp_path: Path) -> None:
        _write_python_agent_config(tmp_path)
        result = _invoke(cli, tmp_path, "validate")
        assert result.exit_code == 0
        assert "OK: 2 stages, 1 pools, 2 agents" in result.output

    def test_invalid(self, cli: CliRunner, tmp_path: Path) -> None:
        (tmp_path / "pipeline.yml").write_text(
            yaml.safe_dump({"agents": {}, "pools": {}, "stages": {"x": {"pool": "missing"}}})
        )
        result = _invoke(cli, tmp_path, "validate")
        assert result.exit_code == 1
        assert "unknown pool 'missing'" in result.output

    def test_malformed_env_setting(self, cli: CliRunner, tmp_path: Path) -> None:
        _write_python_agent_config(tmp_path)
        result = cli.invoke(
            main,
            ["--root", str(tmp_path), "validate"],
            env={"PIPEWORKS_MAX_ATTEMPTS": "three"},
            catch_exceptions=False,
        )
        assert result.exit_code == 1
        assert "PIPEWORKS_MAX_ATTEMPTS must be an integer, got 'three'" in result.output

    def test_missing_config(self, cli: CliRunner, tmp_path: Path) -> None:
        result = _invoke(cli, tmp_path, "validate")
        assert result.exit_code == 1
        assert "not found" in result.output


class TestInjectStatusUnlock:
    def test_inject_then_status(self, cli: CliRunner, tmp_path: Path) -> None:
        _write_python_agent_config(tmp_path)
        source = tmp_path / "search.md"
        source.write_text("# Add search\n\nPlease.\n")

        result = _invoke(cli, tmp_path, "inject", str(source))
        assert result.exit_code == 0
        assert "Injected search.md -> ideas/" in result.output

        result = _invoke(cli, tmp_path, "status")
        assert result.exit_code == 0
        assert "Add search" in result.output
        assert "Total: 1 items" in result.output

        result = _invoke(cli, tmp_path, "inject", str(source))
        assert result.exit_code == 1
        assert "already exists" in result.output

    def test_unlock(self, cli: CliRunner, tmp_path: Path) -> None:
        locks = tmp_path / "locks"
        locks.mkdir()
        (locks / "stuck.md.lock").write_text('{"file": "stuck.md", "agent_id": "agent-0", "locked_at": "2020-01-01T00:00:00+00:00"}')
        (locks / "other.md.lock").write_text("garbage")

        result = _invoke(cli, tmp_path, "unlock", "stuck.md")
        assert "Released lock on stuck.md" in result.output
        result = _invoke(cli, tmp_path, "unlock", "stuck.md")
        assert "stuck.md is not locked" in result.output

        result = _invoke(cli, tmp_path, "unlock", "--stale")
        assert "Cleared 1 stale lock(s)" in result.output
        assert list(locks.iterdir()) == []

    def test_unlock_requires_argument(self, cli: CliRunner, tmp_path: Path) -> None:
        result = _invoke(cli, tmp_path, "unlock")
        assert result.exit_code == 2


class TestRun:
    def test_run_drives_item_to_done(self, cli: CliRunner, tmp_path: Path) -> None:
        _write_python_agent_config(tmp_path)
        source = tmp_path / "epic.md"
        source.write_text("# Big feature\n\nToo big for one go.\n")

        result = _invoke(cli, tmp_path, "run", str(source), "--timeout", "60")

        assert result.exit_code == 0, result.output
        done = tmp_path / "pipeline" / "done"
        assert sorted(p.name for p in done.iterdir()) == ["epic-1.md", "epic-2.md", "epic.md"]

        parent, body = work_store.load_item(done / "epic.md")
        assert "**Split into 2 work items**" in body

        child, child_body = work_store.load_item(done / "epic-1.md")
        assert child.title == "Part one"
        assert child.parent == "epic"
        assert "looks fine" in child_body

        assert (tmp_path / "logs" / "stages" / "ideas.log").exists()
        assert (tmp_path / "logs" / "items" / "epic-1.log").exists()
        assert list((tmp_path / "locks").iterdir()) == []
        assert "Total: 3 items" in result.output
        assert "[ideas] epic split into 2 items" in result.output
        assert "[build] epic-1 PASS -> done/" in result.output

    def test_run_with_failing_agent(self, cli: CliRunner, tmp_path: Path) -> None:
        _write_python_agent_config(tmp_path, "import sys\nsys.stderr.write('kaput')\nsys.exit(4)\n")
        source = tmp_path / "task.md"
        source.write_text("# Task\n")

        result = _invoke(cli, tmp_path, "run", str(source), "--timeout", "60", "--quiet")

        assert result.exit_code == 0, result.output
        item, body = work_store.load_item(tmp_path / "pipeline" / "failed" / "task.md")
        assert item.status.value == "failed"
        assert "exited 4: kaput" in body
        assert "claimed by" not in result.output


class TestVersion:
    def test_version_command(self, cli: CliRunner, tmp_path: Path) -> None:
        result = _invoke(cli, tmp_path, "version")
        assert result.output.strip() == f"pipeworks {__version__}"

    def test_version_option(self, cli: CliRunner) -> None:
        result = cli.invoke(main, ["--version"])
        assert __version__ in result.output
