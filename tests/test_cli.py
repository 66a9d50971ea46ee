"""
Tests for the beacon command line
"""

import json

import pytest

from beacon.cli import main


class TestConfigCommands:

    def test_publish_then_fetch(self, running, config_root, tmp_path, capsys):
        base, _ = running
        doc = tmp_path / "orders.yml"
        doc.write_text("db:\n  pool: 5\n")
        main(["config", "publish", "orders", "default", str(doc),
              "--store-root", str(config_root)])
        version = capsys.readouterr().out.strip()
        assert len(version) == 40

        main(["config", "fetch", "orders", "--config-url", base])
        data = json.loads(capsys.readouterr().out)
        assert data["properties"]["db.pool"] == 5
        assert data["version"] == version

    def test_fetch_properties_format(self, running, capsys):
        base, _ = running
        main(["config", "fetch", "user-service", "dev", "--config-url", base,
              "--format", "properties"])
        out = capsys.readouterr().out
        assert "c=4" in out.splitlines()

    def test_labels(self, running, capsys):
        base, _ = running
        main(["config", "labels", "--config-url", base])
        assert capsys.readouterr().out.split() == ["main", "release-1"]

    def test_fetch_not_found_exits(self, running, capsys):
        base, _ = running
        with pytest.raises(SystemExit) as info:
            main(["config", "fetch", "inventory", "--config-url", base])
        assert info.value.code == 1
        assert "Error:" in capsys.readouterr().err


class TestRegistryCommands:

    def test_register_resolve_deregister(self, running, capsys):
        base, components = running
        main(["registry", "register", "user-service", "i-1", "--host", "10.0.0.5",
              "--port", "8080", "--metadata", "zone=a", "--registry-url", base])
        assert "Registered user-service/i-1" in capsys.readouterr().out
        assert components.registry.get_instance("user-service", "i-1").metadata == {"zone": "a"}

        main(["registry", "resolve", "user-service", "--format", "json", "--registry-url", base])
        data = json.loads(capsys.readouterr().out)
        assert [d["instance_id"] for d in data] == ["i-1"]

        main(["registry", "heartbeat", "user-service", "i-1", "--registry-url", base])
        assert "Renewed" in capsys.readouterr().out

        main(["registry", "list", "--registry-url", base])
        assert "10.0.0.5:8080" in capsys.readouterr().out

        main(["registry", "deregister", "user-service", "i-1", "--registry-url", base])
        assert "Deregistered" in capsys.readouterr().out
        main(["registry", "resolve", "user-service", "--registry-url", base])
        assert capsys.readouterr().out.strip() == "(no instances)"

    def test_list_up_only(self, running, capsys):
        base, _ = running
        main(["registry", "register", "orders", "o-1", "--host", "h", "--port", "80",
              "--registry-url", base])
        main(["registry", "register", "user-service", "u-1", "--host", "h", "--port", "81",
              "--status", "STARTING", "--registry-url", base])
        capsys.readouterr()
        main(["registry", "list", "--up-only", "--format", "json", "--registry-url", base])
        data = json.loads(capsys.readouterr().out)
        assert [d["instance_id"] for d in data] == ["o-1"]

    def test_invalid_registration_exits(self, running, capsys):
        base, _ = running
        with pytest.raises(SystemExit):
            main(["registry", "register", "user-service", "i-1", "--host", "h",
                  "--port", "0", "--registry-url", base])
        assert "Error:" in capsys.readouterr().err

    def test_unreachable_registry_exits(self, capsys):
        with pytest.raises(SystemExit):
            main(["registry", "resolve", "user-service",
                  "--registry-url", "http://127.0.0.1:9", "--timeout", "0.5"])
        assert "Error:" in capsys.readouterr().err


class TestShowConfig:

    def test_cli_flags_override(self, capsys, monkeypatch):
        monkeypatch.setenv("BEACON_SWEEP_INTERVAL", "3")
        main(["show-config", "--lease-duration", "12", "--serve-stale"])
        out = capsys.readouterr().out
        assert "lease_duration: 12.0" in out
        assert "sweep_interval: 3" in out
        assert "serve_stale: true" in out

    def test_invalid_settings_exit(self, capsys):
        with pytest.raises(SystemExit):
            main(["show-config", "--lease-duration", "0"])
        assert "invalid configuration" in capsys.readouterr().err

    def test_no_command_prints_help(self, capsys):
        with pytest.raises(SystemExit):
            main([])
