"""
Tests for loading target descriptors.
"""

import json

import pytest

from system_updater.constants import MAX_DESCRIPTOR_SIZE, get_builtin_targets_dir
from system_updater.exceptions import ConfigurationError
from system_updater.registry import TargetRegistry, parse_descriptor

KITTY = {
    "id": "kitty",
    "displayName": "Kitty terminal",
    "detection": {"kind": "command", "command": ["kitty", "--version"]},
    "source": {"kind": "github", "params": {"owner": "kovidgoyal", "repo": "kitty"}},
    "updateAction": {"kind": "command", "command": ["sh", "-c", "curl -L https://sw.kovidgoyal.net/kitty/installer.sh | sh /dev/stdin"]},
}

NPM = {
    "id": "npm",
    "detection": {"kind": "command", "params": {"command": "npm --version"}},
    "source": {"kind": "npm", "package": "npm"},
}


def write(directory, name, data):
    path = directory / name
    path.write_text(data if isinstance(data, str) else json.dumps(data))
    return path


class TestParseDescriptor:
    """Test parsing a single descriptor record."""

    def test_full_descriptor(self):
        target = parse_descriptor(KITTY, "kitty.json")

        assert target.id == "kitty"
        assert target.display_name == "Kitty terminal"
        assert target.detection.kind == "command"
        assert target.detection.params["command"] == ["kitty", "--version"]
        assert target.source.params == {"owner": "kovidgoyal", "repo": "kitty"}
        assert target.update_action.kind == "command"
        assert target.enabled
        assert not target.security_sensitive
        assert target.origin == "kitty.json"

    def test_defaults(self):
        target = parse_descriptor(NPM)
        assert target.display_name == "npm"
        assert target.update_action is None
        assert target.detection.params == {"command": "npm --version"}
        assert target.source.params == {"package": "npm"}

    def test_snake_case_keys(self):
        data = dict(NPM, display_name="npm CLI", security_sensitive=True, enabled=False)
        target = parse_descriptor(data)
        assert target.display_name == "npm CLI"
        assert target.security_sensitive
        assert not target.enabled

    def test_bulk_source(self):
        data = {
            "id": "apt-packages",
            "detection": {"kind": "command", "command": ["apt-get", "--version"]},
            "source": {"kind": "system_packages", "manager": "apt"},
            "updateAction": {"kind": "system_upgrade", "manager": "apt"},
        }
        assert parse_descriptor(data).is_bulk

    @pytest.mark.parametrize("change,message", [
        ({"id": "Bad Id"}, "invalid or missing id"),
        ({"detection": None}, "'detection' must be an object"),
        ({"detection": {"command": "kitty"}}, "needs a 'kind'"),
        ({"detection": {"kind": "registry", "key": "x"}}, "unknown detection kind"),
        ({"source": {"kind": "ftp"}}, "unknown source kind"),
        ({"source": {"kind": "github", "owner": "kovidgoyal"}}, "'repo'"),
        ({"source": {"kind": "system_packages", "manager": "zypper"}}, "system_packages"),
        ({"updateAction": {"kind": "reboot"}}, "unknown action kind"),
        ({"updateAction": {"kind": "command", "command": ["curl", "x"], "privileged": True}}, "may not run"),
        ({"enabled": "yes"}, "'enabled' must be true or false"),
        ({"displayName": ""}, "'displayName'"),
    ])
    def test_invalid(self, change, message):
        data = dict(KITTY, **change)
        with pytest.raises(ConfigurationError) as exc_info:
            parse_descriptor(data, "kitty.json")
        assert message in str(exc_info.value)
        assert "kitty.json" in str(exc_info.value)

    def test_missing_required_sections(self):
        with pytest.raises(ConfigurationError, match="'source' is required"):
            parse_descriptor({"id": "x", "detection": {"kind": "command", "command": "x"}})
        with pytest.raises(ConfigurationError, match="'detection' is required"):
            parse_descriptor({"id": "x"})

    def test_not_an_object(self):
        with pytest.raises(ConfigurationError):
            parse_descriptor(["kitty"])


class TestTargetRegistry:
    """Test loading descriptor directories."""

    def test_malformed_file_is_skipped(self, tmp_path):
        write(tmp_path, "a-kitty.json", KITTY)
        write(tmp_path, "b-broken.json", "{not json")
        write(tmp_path, "c-npm.json", NPM)

        registry = TargetRegistry()
        registry.load_all(tmp_path)

        assert [t.id for t in registry] == ["kitty", "npm"]
        assert len(registry.warnings) == 1
        assert "b-broken.json" in registry.warnings[0]

    def test_invalid_descriptor_is_skipped(self, tmp_path):
        write(tmp_path, "kitty.json", KITTY)
        write(tmp_path, "bad.json", dict(NPM, source={"kind": "ftp"}))

        registry = TargetRegistry()
        registry.load_all(tmp_path)

        assert len(registry) == 1
        assert "unknown source kind" in registry.warnings[0]

    def test_sorted_filename_order(self, tmp_path):
        write(tmp_path, "20-npm.json", NPM)
        write(tmp_path, "10-kitty.json", KITTY)
        registry = TargetRegistry()
        registry.load_all(tmp_path)
        assert [t.id for t in registry] == ["kitty", "npm"]

    def test_list_file(self, tmp_path):
        write(tmp_path, "all.json", [KITTY, {"id": "broken"}, NPM])

        registry = TargetRegistry()
        added = registry.load_file(tmp_path / "all.json")

        assert [t.id for t in added] == ["kitty", "npm"]
        assert registry.get("npm").origin == "all.json[2]"
        assert "all.json[1]" in registry.warnings[0]

    def test_duplicate_id_keeps_first(self, tmp_path):
        write(tmp_path, "a.json", KITTY)
        write(tmp_path, "b.json", dict(KITTY, displayName="Other kitty"))

        registry = TargetRegistry()
        registry.load_all(tmp_path)

        assert len(registry) == 1
        assert registry.get("kitty").display_name == "Kitty terminal"
        assert "duplicate target id 'kitty'" in registry.warnings[0]

    def test_disabled_ids(self, tmp_path):
        write(tmp_path, "kitty.json", KITTY)
        registry = TargetRegistry(disabled=["kitty"])
        registry.load_all(tmp_path)
        assert not registry.get("kitty").enabled

    def test_non_json_files_ignored(self, tmp_path):
        write(tmp_path, "kitty.json", KITTY)
        write(tmp_path, "README.md", "# notes")
        registry = TargetRegistry()
        registry.load_all(tmp_path)
        assert len(registry) == 1
        assert registry.warnings == []

    def test_missing_directory_warns(self, tmp_path):
        registry = TargetRegistry()
        assert registry.load_all(tmp_path / "missing") == []
        assert registry.warnings

    def test_optional_directory_skipped_silently(self, tmp_path):
        write(tmp_path, "kitty.json", KITTY)
        missing = tmp_path / "user"
        registry = TargetRegistry()
        registry.load_directories([tmp_path, missing], optional=[missing])
        assert len(registry) == 1
        assert registry.warnings == []

    def test_oversized_file(self, tmp_path):
        write(tmp_path, "big.json", " " * (MAX_DESCRIPTOR_SIZE + 1))
        registry = TargetRegistry()
        registry.load_all(tmp_path)
        assert len(registry) == 0
        assert "too large" in registry.warnings[0]

    def test_select(self, tmp_path):
        write(tmp_path, "kitty.json", KITTY)
        write(tmp_path, "npm.json", NPM)
        registry = TargetRegistry()
        registry.load_all(tmp_path)

        assert [t.id for t in registry.select(["npm", "kitty"])] == ["kitty", "npm"]
        assert len(registry.select(None)) == 2

    def test_select_unknown(self, tmp_path):
        write(tmp_path, "kitty.json", KITTY)
        registry = TargetRegistry()
        registry.load_all(tmp_path)
        with pytest.raises(ConfigurationError, match="ghost"):
            registry.select(["ghost"])


class TestBuiltinTargets:
    """The descriptors shipped with the package must all load."""

    def test_builtins_load_cleanly(self):
        registry = TargetRegistry()
        registry.load_all(get_builtin_targets_dir())

        assert registry.warnings == []
        assert len(registry) == 17
        assert [t.id for t in registry.targets[:6]] == [
            "apt-packages", "pacman-packages", "snap-packages", "npm-global", "pip-packages", "cargo-packages"
        ]
        assert all(registry.get(t).is_bulk for t in ("snap-packages", "npm-global", "cargo-packages"))
        assert not registry.get("pip-packages").enabled
        assert registry.get("awscli").update_action.params["privileged"]
        assert registry.get("apt-packages").is_bulk
        assert registry.get("google-chrome").security_sensitive
        assert not registry.get("tmux").enabled
        assert registry.get("tmux").update_action is None
