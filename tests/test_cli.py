"""
Tests for the command-line interface.
"""

import json

import pytest
import requests

from system_updater.cli.main import SystemUpdaterCLI, create_parser, main
from system_updater.constants import APP_SLUG, APT_CHECK_PATH, ExitCode
from system_updater.models import CommandResult
from system_updater.utils.instance_lock import InstanceLock

from conftest import FakeCommandRunner, FakeResponse, FakeSession

MYTOOL = {
    "id": "mytool",
    "displayName": "My Tool",
    "detection": {"kind": "command", "command": ["mytool", "--version"]},
    "source": {"kind": "npm", "params": {"package": "mytool"}},
    "updateAction": {"kind": "command", "params": {"command": ["mytool-update"]}},
}

ROOTTOOL = {
    "id": "roottool",
    "detection": {"kind": "command", "command": ["roottool", "--version"]},
    "source": {"kind": "npm", "params": {"package": "roottool"}},
    "updateAction": {"kind": "command", "params": {"command": ["sh", "-c", "install.sh"], "privileged": True}},
}

REGISTRY_URL = "https://registry.npmjs.org/mytool"


@pytest.fixture
def targets_dir(tmp_path):
    directory = tmp_path / "targets"
    directory.mkdir()
    (directory / "mytool.json").write_text(json.dumps(MYTOOL))
    return directory


@pytest.fixture
def runner():
    runner = FakeCommandRunner()
    runner.add(["mytool", "--version"], [
        CommandResult(0, "mytool 1.0.0\n"),
        CommandResult(0, "mytool 2.0.0\n"),
    ])
    runner.add(["mytool-update"])
    return runner


@pytest.fixture
def session():
    return FakeSession({REGISTRY_URL: FakeResponse({"dist-tags": {"latest": "2.0.0"}})})


class CLIHarness:
    """Runs the CLI against fakes and remembers what it was given."""

    def __init__(self, tmp_path, runner, session, answers=()):
        self.tmp_path = tmp_path
        self.answers = list(answers)
        self.prompts = []
        self.cli = SystemUpdaterCLI(
            config_path=str(tmp_path / "config.json"),
            runner=runner,
            session=session,
            input_func=self._input,
            lock_dir=tmp_path / "lock",
            history_path=str(tmp_path / "history.json"),
        )

    def _input(self, prompt):
        self.prompts.append(prompt)
        return self.answers.pop(0) if self.answers else ""

    def __call__(self, *argv):
        return self.cli.run(create_parser().parse_args(list(argv)))


@pytest.fixture
def cli(tmp_path, runner, session):
    return CLIHarness(tmp_path, runner, session)


def json_output(capsys):
    return json.loads(capsys.readouterr().out)


class TestRunCommand:
    """Test the default run command."""

    def test_update_applied_and_verified(self, cli, runner, targets_dir, capsys):
        code = cli("--targets-dir", str(targets_dir), "--only", "mytool", "--yes", "--json")

        assert code == ExitCode.SUCCESS
        data = json_output(capsys)
        assert data["exit_code"] == 0
        assert data["policy"] == "yes"
        entry = data["entries"][0]
        assert entry["target_id"] == "mytool"
        assert entry["status"] == "update_available"
        assert entry["decision"]["installed"] == "1.0.0"
        assert entry["decision"]["latest"] == "2.0.0"
        assert entry["action"]["success"] is True
        assert entry["verified"] is True
        assert runner.ran("mytool-update")

    def test_no_verify(self, cli, runner, targets_dir, capsys):
        cli("--targets-dir", str(targets_dir), "--only", "mytool", "--yes", "--json", "--no-verify")

        assert json_output(capsys)["entries"][0]["verified"] is None
        assert runner.calls.count(["mytool", "--version"]) == 1

    def test_prompt_declined(self, tmp_path, runner, session, targets_dir, capsys):
        cli = CLIHarness(tmp_path, runner, session, answers=["n"])
        code = cli("--targets-dir", str(targets_dir), "--only", "mytool", "--json")

        assert code == ExitCode.SUCCESS
        assert json_output(capsys)["entries"][0]["skipped"] == "declined"
        assert not runner.ran("mytool-update")
        assert len(cli.prompts) == 1

    def test_prompt_accepted(self, tmp_path, runner, session, targets_dir, capsys):
        cli = CLIHarness(tmp_path, runner, session, answers=["y"])
        cli("--targets-dir", str(targets_dir), "--only", "mytool", "--json")

        assert json_output(capsys)["entries"][0]["action"]["success"] is True
        assert runner.ran("mytool-update")

    def test_action_failure(self, cli, runner, targets_dir, capsys):
        runner.add(["mytool-update"], exit_code=1)
        code = cli("--targets-dir", str(targets_dir), "--only", "mytool", "--yes", "--json")

        assert code == ExitCode.PACKAGE_MANAGER_ERROR
        assert json_output(capsys)["summary"]["action_failures"] == 1

    def test_still_outdated_after_update(self, cli, runner, targets_dir, capsys):
        runner.add(["mytool", "--version"], exit_code=0, stdout="mytool 1.0.0\n")
        code = cli("--targets-dir", str(targets_dir), "--only", "mytool", "--yes", "--json")

        assert code == ExitCode.INTEGRITY_ISSUE
        assert json_output(capsys)["entries"][0]["verified"] is False

    def test_network_failure(self, cli, session, targets_dir, capsys):
        session.routes[REGISTRY_URL] = requests.ConnectionError("connection refused")
        code = cli("--targets-dir", str(targets_dir), "--only", "mytool", "--yes", "--json")

        assert code == ExitCode.NETWORK_FAILURE
        entry = json_output(capsys)["entries"][0]
        assert entry["status"] == "probe_failed"
        assert entry["decision"]["failure"]["kind"] == "network_error"

    def test_unknown_only_id(self, cli, targets_dir, capsys):
        code = cli("--targets-dir", str(targets_dir), "--only", "nope")

        assert code == ExitCode.GENERAL
        assert "nope" in capsys.readouterr().err

    def test_privileged_action_without_sudo(self, cli, tmp_path, capsys):
        directory = tmp_path / "root-targets"
        directory.mkdir()
        (directory / "roottool.json").write_text(json.dumps(ROOTTOOL))
        code = cli("--targets-dir", str(directory), "--only", "roottool", "--yes")

        assert code == ExitCode.INSUFFICIENT_PRIVILEGE
        assert "sudo is not available" in capsys.readouterr().err

    def test_another_instance_running(self, cli, tmp_path, targets_dir):
        with InstanceLock(APP_SLUG, lock_dir=tmp_path / "lock"):
            code = cli("--targets-dir", str(targets_dir), "--only", "mytool", "--yes")
        assert code == ExitCode.GENERAL

    def test_history_recorded_when_enabled(self, cli, targets_dir, capsys):
        cli.cli.config.set("history_enabled", True)
        cli("--targets-dir", str(targets_dir), "--only", "mytool", "--yes", "--json")
        capsys.readouterr()

        cli("--json", "history")
        history = json_output(capsys)
        assert [e["target_id"] for e in history] == ["mytool"]
        assert history[0]["latest"] == "2.0.0"
        assert history[0]["verified"] is True

    def test_history_not_recorded_by_default(self, cli, targets_dir):
        cli("--targets-dir", str(targets_dir), "--only", "mytool", "--yes", "--json")
        assert cli.cli.update_history.all() == []

    def test_malformed_descriptor_is_reported(self, cli, targets_dir, capsys):
        (targets_dir / "broken.json").write_text("{ not json")
        code = cli("--targets-dir", str(targets_dir), "--only", "mytool", "--yes", "--json")

        assert code == ExitCode.SUCCESS
        warnings = json_output(capsys)["warnings"]
        assert len(warnings) == 1
        assert "broken.json" in warnings[0]

    def test_human_readable_summary(self, cli, targets_dir, capsys):
        cli("--targets-dir", str(targets_dir), "--only", "mytool", "--yes", "--no-color")
        out = capsys.readouterr().out
        assert "My Tool" in out
        assert "1 checked, 1 updated" in out


class TestCheckCommand:
    """Test the dry-run check command."""

    def test_reports_without_updating(self, cli, runner, targets_dir, tmp_path, capsys):
        code = cli("--targets-dir", str(targets_dir), "--only", "mytool", "--json", "check")

        assert code == ExitCode.SUCCESS
        data = json_output(capsys)
        assert data["policy"] == "dry-run"
        assert data["entries"][0]["skipped"] == "dry-run"
        assert data["summary"]["pending"] == 1
        assert not runner.ran("mytool-update")

    def test_dry_run_flag(self, cli, runner, targets_dir, capsys):
        cli("--targets-dir", str(targets_dir), "--only", "mytool", "--yes", "--dry-run", "--json")
        assert json_output(capsys)["entries"][0]["skipped"] == "dry-run"
        assert not runner.ran("mytool-update")

    def test_dry_run_ignores_instance_lock(self, cli, tmp_path, targets_dir):
        with InstanceLock(APP_SLUG, lock_dir=tmp_path / "lock"):
            code = cli("--targets-dir", str(targets_dir), "--only", "mytool", "--json", "check")
        assert code == ExitCode.SUCCESS

    def test_broken_packages_fail_the_check(self, cli, runner, capsys):
        runner.add(["apt-get", "--version"], stdout="apt 2.4.11 (amd64)\n")
        runner.add([APT_CHECK_PATH], stderr="0;0")
        runner.add(["dpkg", "--audit"], exit_code=1, stdout=(
            "The following packages are only half configured, probably due to problems\n"
            "configuring them the first time.\n"
            " libc-bin             GNU C Library: Binaries\n"
        ))

        code = cli("--only", "apt-packages", "--no-color", "check")

        assert code == ExitCode.INTEGRITY_ISSUE
        out = capsys.readouterr().out
        assert "apt-packages: 1 broken or half-configured package(s): libc-bin" in out


class TestListCommand:
    """Test listing registered targets."""

    def test_list_json(self, cli, targets_dir, capsys):
        code = cli("--targets-dir", str(targets_dir), "--json", "list")

        assert code == ExitCode.SUCCESS
        data = json_output(capsys)
        ids = [t["id"] for t in data["targets"]]
        assert len(ids) == 18
        assert ids[0] == "apt-packages"
        assert "mytool" in ids
        assert data["warnings"] == []

    def test_disabled_targets_from_config(self, cli, capsys):
        cli.cli.config.set("disabled_targets", ["kitty"])
        cli("--json", "list")

        by_id = {t["id"]: t for t in json_output(capsys)["targets"]}
        assert by_id["kitty"]["enabled"] is False

    def test_list_table(self, cli, capsys):
        cli("--no-color", "list")
        out = capsys.readouterr().out
        assert "google-chrome" in out
        assert "Targets (17)" in out


class TestHistoryCommand:
    """Test the history command."""

    def test_empty(self, cli, capsys):
        assert cli("--json", "history") == ExitCode.SUCCESS
        assert json_output(capsys) == []

    def test_hint_when_disabled(self, cli, capsys):
        cli("--no-color", "history")
        assert "config set history_enabled true" in capsys.readouterr().out

    def test_export_csv(self, cli, targets_dir, tmp_path):
        cli.cli.config.set("history_enabled", True)
        cli("--targets-dir", str(targets_dir), "--only", "mytool", "--yes", "--json")

        out = tmp_path / "history.csv"
        assert cli("history", "--export", str(out)) == ExitCode.SUCCESS
        lines = out.read_text().splitlines()
        assert lines[0].startswith("timestamp,target")
        assert len(lines) == 2

    def test_clear_needs_confirmation(self, tmp_path, runner, session, targets_dir):
        cli = CLIHarness(tmp_path, runner, session, answers=["n"])
        cli.cli.config.set("history_enabled", True)
        cli("--targets-dir", str(targets_dir), "--only", "mytool", "--yes", "--json")

        assert cli("history", "--clear") == ExitCode.SUCCESS
        assert len(cli.cli.update_history.all()) == 1

        assert cli("history", "--clear", "--yes") == ExitCode.SUCCESS
        assert cli.cli.update_history.all() == []


class TestConfigCommand:
    """Test the config command."""

    def test_set_and_get(self, cli, capsys):
        assert cli("config", "set", "probe_timeout", "20") == ExitCode.SUCCESS
        capsys.readouterr()

        assert cli("config", "get", "probe_timeout") == ExitCode.SUCCESS
        assert capsys.readouterr().out.strip() == "20"

    def test_set_list(self, cli):
        cli("config", "set", "disabled_targets", "kitty,tmux")
        assert cli.cli.config.get_disabled_targets() == ["kitty", "tmux"]

    def test_token_is_masked(self, cli, capsys):
        cli("config", "set", "github_token", "ghp_secretsecretsecretsecret")
        capsys.readouterr()

        cli("--json", "config", "show")
        settings = json_output(capsys)
        assert settings["github_token"] == "********"

        cli("config", "get", "github_token")
        assert "ghp_" not in capsys.readouterr().out

    def test_unknown_key(self, cli):
        assert cli("config", "get", "feeds") == ExitCode.GENERAL
        assert cli("config", "set", "feeds", "x") == ExitCode.GENERAL

    def test_invalid_value(self, cli):
        assert cli("config", "set", "probe_timeout", "fast") == ExitCode.GENERAL

    def test_set_without_value(self, cli):
        assert cli("config", "set", "probe_timeout") == ExitCode.GENERAL

    def test_path(self, cli, tmp_path, capsys):
        assert cli("config", "path") == ExitCode.SUCCESS
        assert capsys.readouterr().out.strip() == str(tmp_path / "config.json")

    def test_init(self, cli, tmp_path):
        assert cli("config", "init") == ExitCode.SUCCESS
        assert (tmp_path / "config.json").exists()


class TestParser:
    """Test argument parsing and the entry point."""

    def test_defaults(self):
        args = create_parser().parse_args([])
        assert args.command is None
        assert args.only is None
        assert not args.yes
        assert not args.dry_run
        assert not args.no_verify

    def test_only_is_repeatable(self):
        args = create_parser().parse_args(["--only", "kitty,npm", "--only", "tmux"])
        assert args.only == ["kitty,npm", "tmux"]

    def test_history_options(self):
        args = create_parser().parse_args(["history", "--limit", "5", "--clear", "-y"])
        assert args.limit == 5
        assert args.clear
        assert args.history_yes

    def test_version(self, capsys):
        with pytest.raises(SystemExit) as exc_info:
            create_parser().parse_args(["--version"])
        assert exc_info.value.code == 0
        assert APP_SLUG in capsys.readouterr().out

    def test_main_exits_with_command_status(self, tmp_path, capsys):
        with pytest.raises(SystemExit) as exc_info:
            main(["--config", str(tmp_path / "config.json"), "config", "path"])
        assert exc_info.value.code == 0
        assert capsys.readouterr().out.strip() == str(tmp_path / "config.json")
