"""Tests for archivist_sync.config_loader -- hierarchical config loading."""

import textwrap

import pytest
import yaml

from archivist_sync.config_loader import (
    _interpolate_tree,
    _load_yaml_with_includes,
    discover_config_files,
    ensure_config,
    interpolate_env_vars,
    load_hierarchical_config,
    resolve_config_path,
)


@pytest.fixture
def isolated(tmp_path, monkeypatch):
    """Run with an empty CWD and HOME and no explicit config path."""
    home = tmp_path / "home"
    work = tmp_path / "work"
    home.mkdir()
    work.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.delenv("ARCHIVIST_SYNC_CONFIG", raising=False)
    monkeypatch.chdir(work)
    return work, home


def _write(path, text):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(textwrap.dedent(text), encoding="utf-8")
    return path


# -------------------------------------------------------------------------
# Env var interpolation
# -------------------------------------------------------------------------


class TestInterpolateEnvVars:
    """Tests for ${VAR} and ${VAR:-default} substitution."""

    def test_replaces_set_var(self, monkeypatch):
        monkeypatch.setenv("ARCH_KEY", "abc")
        assert interpolate_env_vars("${ARCH_KEY}") == "abc"

    def test_unset_var_replaced_with_empty(self, monkeypatch):
        monkeypatch.delenv("UNSET_VAR_XYZ", raising=False)
        assert interpolate_env_vars("${UNSET_VAR_XYZ}") == ""

    def test_default_used_when_unset(self, monkeypatch):
        monkeypatch.delenv("UNSET_VAR_XYZ", raising=False)
        assert interpolate_env_vars("${UNSET_VAR_XYZ:-fallback}") == "fallback"

    def test_empty_var_uses_default(self, monkeypatch):
        monkeypatch.setenv("EMPTY_VAR", "")
        assert interpolate_env_vars("${EMPTY_VAR:-x}") == "x"

    def test_default_ignored_when_set(self, monkeypatch):
        monkeypatch.setenv("ARCH_WORLD", "w1")
        assert interpolate_env_vars("${ARCH_WORLD:-w0}") == "w1"

    def test_multiple_vars_in_one_string(self, monkeypatch):
        monkeypatch.setenv("HOST_A", "api.local")
        monkeypatch.setenv("PORT_A", "8000")
        assert interpolate_env_vars("${HOST_A}:${PORT_A}") == "api.local:8000"

    def test_unterminated_reference_left_alone(self):
        assert interpolate_env_vars("cost: ${5") == "cost: ${5"

    def test_tree_interpolation(self, monkeypatch):
        monkeypatch.setenv("ARCH_KEY", "abc")
        data = {
            "archivist": {"api_key": "${ARCH_KEY}", "max_parallel_requests": 4},
            "folders": ["${ARCH_KEY}", True],
        }
        assert _interpolate_tree(data) == {
            "archivist": {"api_key": "abc", "max_parallel_requests": 4},
            "folders": ["abc", True],
        }


# -------------------------------------------------------------------------
# !include
# -------------------------------------------------------------------------


class TestIncludeDirective:
    def test_include_relative_file(self, tmp_path):
        _write(tmp_path / "sync.yml", "sample_size: 5\n")
        main = _write(tmp_path / "config.yml", "sync: !include sync.yml\n")

        assert _load_yaml_with_includes(main) == {"sync": {"sample_size": 5}}

    def test_include_absolute_path(self, tmp_path):
        other = _write(tmp_path / "sub" / "log.yml", "level: DEBUG\n")
        main = _write(tmp_path / "config.yml", f"logging: !include {other}\n")

        assert _load_yaml_with_includes(main) == {"logging": {"level": "DEBUG"}}

    def test_include_nonexistent_raises(self, tmp_path):
        main = _write(tmp_path / "config.yml", "sync: !include missing.yml\n")
        with pytest.raises(FileNotFoundError, match="Include file not found"):
            _load_yaml_with_includes(main)

    def test_circular_include_raises(self, tmp_path):
        _write(tmp_path / "a.yml", "b: !include b.yml\n")
        _write(tmp_path / "b.yml", "a: !include a.yml\n")
        with pytest.raises(ValueError, match="Circular include"):
            _load_yaml_with_includes(tmp_path / "a.yml")

    def test_self_include_raises(self, tmp_path):
        _write(tmp_path / "self.yml", "me: !include self.yml\n")
        with pytest.raises(ValueError, match="Circular include"):
            _load_yaml_with_includes(tmp_path / "self.yml")

    def test_nested_includes(self, tmp_path):
        _write(tmp_path / "inner" / "leaf.yml", "level: WARNING\n")
        _write(tmp_path / "inner" / "mid.yml", "logging: !include leaf.yml\n")
        main = _write(tmp_path / "config.yml", "root: !include inner/mid.yml\n")

        assert _load_yaml_with_includes(main) == {
            "root": {"logging": {"level": "WARNING"}}
        }

    def test_global_safe_loader_not_polluted(self, tmp_path):
        """The tag is registered on a subclass only."""
        with pytest.raises(yaml.constructor.ConstructorError):
            yaml.safe_load("x: !include other.yml\n")


# -------------------------------------------------------------------------
# Discovery
# -------------------------------------------------------------------------


class TestDiscoverConfigFiles:
    def test_empty_filesystem_returns_empty(self, isolated):
        assert discover_config_files() == []

    def test_env_var_takes_highest_precedence(self, isolated, monkeypatch):
        work, home = isolated
        explicit = _write(work / "custom.yml", "{}\n")
        project = _write(work / ".archivist_sync" / "config.yml", "{}\n")
        monkeypatch.setenv("ARCHIVIST_SYNC_CONFIG", str(explicit))

        assert discover_config_files() == [explicit.resolve(), project]

    def test_project_before_global(self, isolated):
        work, home = isolated
        global_cfg = _write(
            home / ".config" / "archivist_sync" / "config.yml", "{}\n"
        )
        project = _write(work / ".archivist_sync" / "config.yml", "{}\n")

        assert discover_config_files() == [project, global_cfg]

    def test_yaml_extension_discovered(self, isolated):
        work, _ = isolated
        project = _write(work / ".archivist_sync" / "config.yaml", "{}\n")
        assert discover_config_files() == [project]

    def test_missing_explicit_path_excluded(self, isolated, monkeypatch):
        monkeypatch.setenv("ARCHIVIST_SYNC_CONFIG", "/nonexistent/config.yml")
        assert discover_config_files() == []


# -------------------------------------------------------------------------
# Merge
# -------------------------------------------------------------------------


class TestLoadHierarchicalConfig:
    def test_zero_config_returns_empty_dict(self, isolated):
        assert load_hierarchical_config() == {}

    def test_project_overrides_global_at_section_level(self, isolated):
        work, home = isolated
        _write(
            home / ".config" / "archivist_sync" / "config.yml",
            """\
            archivist:
              api_key: global-key
              world_id: w-global
            logging:
              level: DEBUG
            """,
        )
        _write(
            work / ".archivist_sync" / "config.yml",
            """\
            archivist:
              world_id: w-project
            """,
        )

        merged = load_hierarchical_config()

        # Sections are replaced wholesale, not deep-merged.
        assert merged["archivist"] == {"world_id": "w-project"}
        assert merged["logging"] == {"level": "DEBUG"}

    def test_env_var_interpolation_after_merge(self, isolated, monkeypatch):
        work, _ = isolated
        monkeypatch.setenv("ARCH_TEST_KEY", "from-env")
        _write(
            work / ".archivist_sync" / "config.yml",
            "archivist:\n  api_key: ${ARCH_TEST_KEY}\n",
        )
        assert load_hierarchical_config()["archivist"]["api_key"] == "from-env"

    def test_include_within_merged_config(self, isolated):
        work, _ = isolated
        _write(work / ".archivist_sync" / "sync.yml", "sample_size: 7\n")
        _write(
            work / ".archivist_sync" / "config.yml", "sync: !include sync.yml\n"
        )
        assert load_hierarchical_config() == {"sync": {"sample_size": 7}}

    def test_non_dict_root_skipped(self, isolated, caplog):
        work, _ = isolated
        _write(work / ".archivist_sync" / "config.yml", "- just\n- a list\n")
        assert load_hierarchical_config() == {}
        assert "non-dict root" in caplog.text

    def test_invalid_yaml_raises(self, isolated):
        work, _ = isolated
        _write(work / ".archivist_sync" / "config.yml", "archivist: [unclosed\n")
        with pytest.raises(yaml.YAMLError):
            load_hierarchical_config()


# -------------------------------------------------------------------------
# Bootstrapping
# -------------------------------------------------------------------------


class TestResolveConfigPath:
    def test_returns_default_when_no_files(self, isolated):
        work, _ = isolated
        assert resolve_config_path() == work / ".archivist_sync" / "config.yml"

    def test_returns_existing_file(self, isolated):
        work, _ = isolated
        existing = _write(work / ".archivist_sync" / "config.yaml", "{}\n")
        assert resolve_config_path() == existing


class TestEnsureConfig:
    def test_noop_when_exists(self, isolated):
        work, _ = isolated
        existing = _write(work / ".archivist_sync" / "config.yml", "x: 1\n")

        assert ensure_config() == existing
        assert existing.read_text() == "x: 1\n"

    def test_creates_directory_and_file(self, isolated):
        work, _ = isolated

        created = ensure_config()

        assert created == work / ".archivist_sync" / "config.yml"
        text = created.read_text()
        assert "# archivist:" in text
        assert "auto_import_threshold: 0.75" in text

    def test_starter_config_is_valid_yaml(self, isolated):
        created = ensure_config()
        # Everything is commented out.
        assert yaml.safe_load(created.read_text()) is None

    def test_uses_explicit_target(self, isolated, tmp_path):
        target = tmp_path / "deep" / "nested" / "archivist.yml"
        assert ensure_config(target) == target
        assert target.exists()
