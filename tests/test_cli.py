"""Tests for config loading, the RetroCounter hook and the CLI."""

import io

import pytest

import retrocounter
from retrocounter import RetroCounter, load_config, main


@pytest.fixture(autouse=True)
def _in_tmp(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)


def _render(value):
    return f"<div class='retro'>{value:06d}</div>"


class TestLoadConfig:
    def test_missing_file(self, tmp_path):
        assert load_config(tmp_path / "nope.yml") == {}

    def test_reads_yaml(self, tmp_path):
        cfg = tmp_path / "config.yml"
        cfg.write_text("cache_file: stats.json\ncache_enabled: false\n", encoding="utf-8")
        assert load_config(cfg) == {"cache_file": "stats.json", "cache_enabled": False}

    def test_bad_yaml_falls_back(self, tmp_path, capsys):
        cfg = tmp_path / "config.yml"
        cfg.write_text("cache_file: [unclosed\n", encoding="utf-8")
        assert load_config(cfg) == {}
        assert "[配置错误]" in capsys.readouterr().out

    def test_non_utf8_falls_back(self, tmp_path, capsys):
        cfg = tmp_path / "config.yml"
        cfg.write_bytes(b"cache_file: \xff\xfe\n")
        assert load_config(cfg) == {}
        assert "[配置错误]" in capsys.readouterr().out


class TestRetroCounter:
    def test_intercept_with_undecodable_config(self, tmp_path):
        (tmp_path / "config.yml").write_bytes(b"cache_file: \xff\xfe\n")
        rc = RetroCounter(tmp_path / "config.yml")
        assert rc.intercept("<p>12 hits</p>", str) == "12"

    def test_init_runs_once(self, monkeypatch):
        calls = []
        real = retrocounter.load_config
        monkeypatch.setattr(retrocounter, "load_config", lambda p: calls.append(p) or real(p))
        rc = RetroCounter()
        rc.init()
        rc.init()
        rc.extract("<p>1 hit</p>")
        assert rc.initialized
        assert len(calls) == 1

    def test_intercept_renders_counter(self):
        assert RetroCounter().intercept("<p>1,142 hits</p>", _render) == "<div class='retro'>001142</div>"

    def test_intercept_passes_through_on_failure(self):
        rc = RetroCounter()
        assert rc.intercept("<p>no stats</p>", _render) == "<p>no stats</p>"
        assert rc.intercept("", _render) == ""

    def test_intercept_skips_editor_context(self):
        html = "<p>12 hits</p>"
        assert RetroCounter().intercept(html, _render, editor_context=True) == html

    def test_intercept_renderer_error(self, capsys):
        def broken(value):
            raise ValueError("bad style")

        html = "<p>12 hits</p>"
        assert RetroCounter().intercept(html, broken) == html
        assert "[渲染错误]" in capsys.readouterr().out

    def test_cache_disabled_writes_nothing(self, tmp_path):
        (tmp_path / "config.yml").write_text("cache_enabled: false\n", encoding="utf-8")
        rc = RetroCounter(tmp_path / "config.yml")
        assert rc.extract("<p>12 hits</p>") == 12
        assert not (tmp_path / ".retrocounter_cache.json").exists()

    def test_clear_cache(self, tmp_path):
        rc = RetroCounter()
        rc.extract("<p>12 hits</p>")
        assert rc.clear_cache() == 1
        assert rc.cache.get(rc.cache.key_for("<p>12 hits</p>")) is None


class TestMain:
    def test_extract_file(self, tmp_path, capsys):
        (tmp_path / "block.html").write_text("<p>1.142 hits</p>", encoding="utf-8")
        assert main(["extract", "block.html"]) == 0
        assert capsys.readouterr().out.strip() == "1142"
        assert (tmp_path / ".retrocounter_cache.json").exists()

    def test_extract_stdin_no_value(self, monkeypatch, capsys):
        monkeypatch.setattr("sys.stdin", io.StringIO("<p>nothing</p>"))
        assert main(["extract"]) == 1
        assert "无法提取" in capsys.readouterr().out

    def test_extract_no_cache(self, tmp_path, monkeypatch, capsys):
        monkeypatch.setattr("sys.stdin", io.StringIO("<p>8 hits</p>"))
        assert main(["extract", "--no-cache"]) == 0
        assert capsys.readouterr().out.strip() == "8"
        assert not (tmp_path / ".retrocounter_cache.json").exists()

    def test_missing_file(self, capsys):
        assert main(["extract", "missing.html"]) == 1
        assert "[读取错误]" in capsys.readouterr().out

    def test_clear(self, tmp_path, capsys):
        (tmp_path / "block.html").write_text("<p>5 hits</p>", encoding="utf-8")
        main(["extract", "block.html"])
        capsys.readouterr()
        assert main(["clear"]) == 0
        assert "已清除 1 条" in capsys.readouterr().out

    def test_clear_missing_key(self, capsys):
        assert main(["clear", "--key", "retrocounter_stats_nope"]) == 0
        assert "已清除 0 条" in capsys.readouterr().out

    def test_clear_existing_key(self, capsys):
        rc = RetroCounter()
        rc.extract("<p>5 hits</p>")
        key = rc.cache.key_for("<p>5 hits</p>")
        assert main(["clear", "--key", key]) == 0
        assert "已清除 1 条" in capsys.readouterr().out
