"""Tests for the local capability bindings."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from melody.capabilities import (
    CapabilitySet,
    JsonApplicationCapability,
    JsonRegistryCapability,
    LocalFileCapability,
    local_capabilities,
    write_atomic,
)


class TestWriteAtomic:
    def test_creates_parents(self, tmp_path: Path) -> None:
        target = tmp_path / "a" / "b" / "c.txt"
        write_atomic(target, b"hi")
        assert target.read_bytes() == b"hi"
        assert [p.name for p in target.parent.iterdir()] == ["c.txt"]

    def test_replaces(self, tmp_path: Path) -> None:
        target = tmp_path / "c.txt"
        target.write_bytes(b"old")
        write_atomic(target, b"new")
        assert target.read_bytes() == b"new"


class TestLocalFiles:
    """Files, directories, and globs."""

    @pytest.fixture
    def files(self) -> LocalFileCapability:
        return LocalFileCapability()

    def test_read_text_file(self, files, tmp_path: Path) -> None:
        (tmp_path / "a.ini").write_text("[x]\ny=1\n")
        assert files.read(str(tmp_path / "a.ini")) == {
            "kind": "file", "encoding": "utf-8", "content": "[x]\ny=1\n",
        }

    def test_read_binary_file(self, files, tmp_path: Path) -> None:
        (tmp_path / "a.bin").write_bytes(b"\xff\x00\xfe")
        value = files.read(str(tmp_path / "a.bin"))
        assert value["encoding"] == "base64"

    def test_read_directory(self, files, tmp_path: Path) -> None:
        d = tmp_path / "conf"
        (d / "sub").mkdir(parents=True)
        (d / "a.txt").write_text("a")
        (d / "sub" / "b.txt").write_text("b")
        value = files.read(str(d))
        assert value["kind"] == "tree"
        assert set(value["files"]) == {"a.txt", "sub/b.txt"}

    def test_read_glob(self, files, tmp_path: Path) -> None:
        (tmp_path / "id_rsa.pub").write_text("pub1")
        (tmp_path / "id_ed25519.pub").write_text("pub2")
        (tmp_path / "id_rsa").write_text("private")
        value = files.read(str(tmp_path / "*.pub"))
        assert set(value["files"]) == {"id_rsa.pub", "id_ed25519.pub"}

    def test_glob_without_matches(self, files, tmp_path: Path) -> None:
        with pytest.raises(FileNotFoundError):
            files.read(str(tmp_path / "*.nothing"))

    def test_missing(self, files, tmp_path: Path) -> None:
        with pytest.raises(FileNotFoundError):
            files.read(str(tmp_path / "absent.txt"))

    def test_file_round_trip(self, files, tmp_path: Path) -> None:
        src = tmp_path / "src.bin"
        src.write_bytes(b"\x00\x01binary")
        value = files.read(str(src))
        dst = tmp_path / "out" / "dst.bin"
        files.write(str(dst), value)
        assert dst.read_bytes() == b"\x00\x01binary"

    def test_tree_round_trip(self, files, tmp_path: Path) -> None:
        src = tmp_path / "src"
        (src / "deep").mkdir(parents=True)
        (src / "deep" / "x.txt").write_text("x")
        value = files.read(str(src))
        files.write(str(tmp_path / "dst"), value)
        assert (tmp_path / "dst" / "deep" / "x.txt").read_text() == "x"

    def test_glob_tree_written_to_prefix(self, files, tmp_path: Path) -> None:
        value = {"kind": "tree", "files": {"k.pub": {"encoding": "utf-8", "content": "key"}}}
        files.write(str(tmp_path / "ssh" / "*.pub"), value)
        assert (tmp_path / "ssh" / "k.pub").read_text() == "key"

    def test_refuses_escape(self, files, tmp_path: Path) -> None:
        value = {"kind": "tree", "files": {"../evil.txt": {"encoding": "utf-8", "content": "x"}}}
        with pytest.raises(ValueError, match="outside"):
            files.write(str(tmp_path / "dst"), value)
        assert not (tmp_path / "evil.txt").exists()

    def test_rejects_unknown_shape(self, files, tmp_path: Path) -> None:
        with pytest.raises(ValueError):
            files.write(str(tmp_path / "x"), "plain string")

    def test_unknown_encoding(self, files, tmp_path: Path) -> None:
        with pytest.raises(ValueError, match="encoding"):
            files.write(str(tmp_path / "x"), {"kind": "file", "encoding": "rot13", "content": "x"})


class TestJsonRegistry:
    """Registry mirrored as JSON on disk."""

    @pytest.fixture
    def registry(self, tmp_path: Path) -> JsonRegistryCapability:
        return JsonRegistryCapability(tmp_path / "reg")

    def test_round_trip(self, registry) -> None:
        value = {
            "values": {"Mode": "dark", "Size": 12},
            "subkeys": {"Colors": {"values": {"Bg": "#000"}, "subkeys": {}}},
        }
        registry.write("HKCU:\\Software\\Demo", value)
        assert registry.read("HKEY_CURRENT_USER\\Software\\Demo") == value

    def test_layout(self, registry, tmp_path: Path) -> None:
        registry.write("HKLM:\\SYSTEM\\X", {"values": {"Start": 2}, "subkeys": {}})
        data = json.loads((tmp_path / "reg" / "HKLM" / "SYSTEM" / "X" / "values.json").read_text())
        assert data == {"Start": 2}

    def test_missing_key(self, registry) -> None:
        with pytest.raises(LookupError):
            registry.read("HKCU:\\Software\\Nothing")

    def test_bad_subkey_name(self, registry) -> None:
        with pytest.raises(ValueError):
            registry.write("HKCU:\\A", {"values": {}, "subkeys": {"..": {}}})

    def test_bad_values(self, registry) -> None:
        with pytest.raises(ValueError):
            registry.write("HKCU:\\A", {"values": ["x"]})


class TestJsonApplications:
    """Per-application JSON settings."""

    @pytest.fixture
    def apps(self, tmp_path: Path) -> JsonApplicationCapability:
        return JsonApplicationCapability(tmp_path / "apps")

    def test_write_then_read(self, apps, tmp_path: Path) -> None:
        apps.write("terminal/profiles.defaults.font", {"face": "Cascadia", "size": 11})
        assert apps.read("terminal/profiles.defaults.font.face") == "Cascadia"
        data = json.loads((tmp_path / "apps" / "terminal.json").read_text())
        assert data == {"profiles": {"defaults": {"font": {"face": "Cascadia", "size": 11}}}}

    def test_write_preserves_siblings(self, apps) -> None:
        apps.write("app/a", 1)
        apps.write("app/b", 2)
        assert apps.read("app/a") == 1
        assert apps.read("app/b") == 2

    def test_missing_file(self, apps) -> None:
        with pytest.raises(LookupError):
            apps.read("nope/x")

    def test_missing_setting(self, apps) -> None:
        apps.write("app/a", 1)
        with pytest.raises(LookupError):
            apps.read("app/a.b")

    def test_bad_locator(self, apps) -> None:
        with pytest.raises(ValueError):
            apps.read("no-setting")


class TestCapabilitySet:
    def test_for_rule_type(self, tmp_path: Path) -> None:
        caps = local_capabilities(tmp_path / "reg", tmp_path / "apps")
        assert caps.for_rule_type("registry-key").name == "registry"
        assert caps.for_rule_type("file-path").name == "files"
        assert caps.for_rule_type("application-setting").name == "applications"

    def test_unbound(self) -> None:
        caps = local_capabilities()
        assert caps.registry is None
        with pytest.raises(LookupError):
            caps.for_rule_type("registry-key")

    def test_unknown_type(self) -> None:
        with pytest.raises(LookupError):
            CapabilitySet().for_rule_type("service-state")
