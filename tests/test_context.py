# tests/test_context.py
import os
import socket
import subprocess
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import psutil
import pytest

import exposure_guard
from exposure_guard import (
    PLUGIN_DIR, CommandResult, FirewallStatus, Heuristics, Interface, InterfaceCollector, PluginBase, PluginResult,
    ServiceCollector, TunnelStatus, VpnStatus, build_network_context, context_from_signals,
    load_plugins, load_rules, parse_ip_addr, run_command, run_plugins, run_scan,
)
from conftest import IP_ADDR_SAMPLE, SS_SAMPLE

# --- context assembly ---
def test_build_network_context_copies_signals():
    ifaces = [Interface("eth0", ("203.0.113.5",), True)]
    ctx = build_network_context(
        ifaces,
        FirewallStatus(enabled=True, default_inbound="deny", status_known=True),
        VpnStatus(installed=True, connected=True, interface="tailscale0"),
        TunnelStatus(detected=True, confidence="high", evidence=("process",)),
    )
    assert ctx.firewall_enabled and ctx.firewall_default_inbound == "deny" and ctx.firewall_status_known
    assert ctx.vpn_installed and ctx.vpn_connected and ctx.vpn_interface == "tailscale0"
    assert ctx.tunnel_detected
    assert ctx.interfaces == tuple(ifaces)
    assert ctx.public_interface_names() == ["eth0"]

def test_network_context_is_immutable():
    ctx = build_network_context([], FirewallStatus(), VpnStatus(), TunnelStatus())
    with pytest.raises(Exception):
        ctx.tunnel_detected = True

def test_context_from_missing_signals_is_conservative():
    ctx = context_from_signals([], {})
    assert ctx.firewall_status_known is False
    assert ctx.firewall_default_inbound == "unknown"
    assert ctx.vpn_installed is False and ctx.vpn_connected is False and ctx.vpn_interface is None
    assert ctx.tunnel_detected is False

def test_context_from_failed_plugin_signal():
    ctx = context_from_signals([], {"firewall_posture": {"error": "boom"}})
    assert ctx.firewall_status_known is False

def test_context_from_signals_normalizes_values():
    signals = {
        "firewall_posture": {"enabled": True, "default_inbound": "reject", "status_known": True},
        "tailscale_status": {"installed": False, "connected": True, "interface": ""},
        "cloudflare_tunnel": {"detected": True, "confidence": "high", "evidence": ["process"]},
    }
    ctx = context_from_signals([], signals)
    assert ctx.firewall_default_inbound == "unknown"
    assert ctx.vpn_connected is False
    assert ctx.vpn_interface is None
    assert ctx.tunnel_detected is True

# --- rules ---
def test_load_rules_defaults_when_missing(tmp_path):
    rules = load_rules(str(tmp_path / "missing.yaml"))
    assert "ollama" in rules["high_risk_processes"]
    assert rules["plugins"]["firewall_posture"]["enabled"] is True

def test_load_rules_merges_overrides(tmp_path):
    path = tmp_path / "rules.yaml"
    path.write_text("high_risk_processes: [jupyter]\nplugins:\n  cloudflare_tunnel:\n    enabled: false\n")
    rules = load_rules(str(path))
    assert rules["high_risk_processes"] == ["jupyter"]
    assert rules["plugins"]["cloudflare_tunnel"] == {"enabled": False, "config_dir": "/etc/cloudflared"}
    assert rules["plugins"]["firewall_posture"]["enabled"] is True

@pytest.mark.parametrize("content", ["key: [unclosed\n", "- just\n- a list\n"])
def test_load_rules_invalid_file_falls_back(tmp_path, content):
    path = tmp_path / "rules.yaml"
    path.write_text(content)
    rules = load_rules(str(path))
    assert rules["default_vpn_interface"] == "tailscale0"

def test_load_rules_ignores_empty_keys(tmp_path):
    path = tmp_path / "rules.yaml"
    path.write_text("high_risk_processes:\nport_profiles:\nplugins:\n  firewall_posture:\n")
    rules = load_rules(str(path))
    assert "ollama" in rules["high_risk_processes"]
    assert rules["plugins"]["firewall_posture"] == {"enabled": True}
    h = Heuristics(rules)
    assert "ollama" in h.high_risk_processes
    assert [p["port"] for p in h.port_profiles] == [22, 5353, 41641]

# --- command runner ---
@patch("exposure_guard.subprocess.run")
def test_run_command_success(mock_run: MagicMock):
    mock_run.return_value = MagicMock(stdout="out", stderr="", returncode=0)
    res = run_command(["ip", "addr"], timeout=3)
    mock_run.assert_called_once_with(["ip", "addr"], capture_output=True, text=True, timeout=3, check=False)
    assert res.success and res.stdout == "out"

@patch("exposure_guard.subprocess.run", side_effect=FileNotFoundError("no such file"))
def test_run_command_missing_binary(mock_run: MagicMock):
    res = run_command(["nope"])
    assert not res.success and res.exit_code == 127

@patch("exposure_guard.subprocess.run", side_effect=subprocess.TimeoutExpired(cmd="ss", timeout=1))
def test_run_command_timeout(mock_run: MagicMock):
    res = run_command(["ss", "-tulnp"], timeout=1)
    assert not res.success and res.exit_code == 124

# --- collectors ---
def test_interface_collector_uses_ip_addr(mocker):
    mocker.patch("exposure_guard.which", return_value="/usr/sbin/ip")
    run = mocker.patch("exposure_guard.run_command", return_value=CommandResult(IP_ADDR_SAMPLE, "", 0))
    ip_map = InterfaceCollector(timeout=2).collect()
    run.assert_called_once_with(["ip", "addr"], 2)
    assert ip_map["192.168.1.100"] == ["eth0"]

def test_interface_collector_falls_back_to_psutil(mocker):
    mocker.patch("exposure_guard.which", return_value=None)
    mocker.patch("exposure_guard.psutil.net_if_addrs", return_value={
        "lo": [SimpleNamespace(family=socket.AF_INET, address="127.0.0.1")],
        "eth0": [
            SimpleNamespace(family=socket.AF_INET, address="203.0.113.5"),
            SimpleNamespace(family=socket.AF_INET6, address="fe80::1%eth0"),
            SimpleNamespace(family=psutil.AF_LINK, address="52:54:00:12:34:56"),
        ],
    })
    assert InterfaceCollector().collect() == {
        "127.0.0.1": ["lo"], "203.0.113.5": ["eth0"], "fe80::1": ["eth0"],
    }

def test_service_collector_fetch_failure_returns_none(mocker):
    mocker.patch("exposure_guard.which", return_value="/usr/bin/ss")
    mocker.patch("exposure_guard.run_command", return_value=CommandResult("", "permission denied", 1))
    assert ServiceCollector().fetch() is None

def test_service_collector_parses_raw_output():
    services = ServiceCollector().collect(parse_ip_addr(IP_ADDR_SAMPLE), SS_SAMPLE)
    assert len(services) == 6

def test_service_collector_psutil_fallback(mocker):
    addr = lambda ip, port: SimpleNamespace(ip=ip, port=port)
    mocker.patch("exposure_guard.psutil.net_connections", return_value=[
        SimpleNamespace(type=socket.SOCK_STREAM, status=psutil.CONN_LISTEN, laddr=addr("0.0.0.0", 22), raddr=(), pid=1234),
        SimpleNamespace(type=socket.SOCK_STREAM, status=psutil.CONN_ESTABLISHED, laddr=addr("10.0.0.2", 22),
                        raddr=addr("198.51.100.1", 51515), pid=1234),
        SimpleNamespace(type=socket.SOCK_DGRAM, status=psutil.CONN_NONE, laddr=addr("127.0.0.1", 323), raddr=(), pid=None),
    ])
    mocker.patch("exposure_guard.psutil.Process", return_value=MagicMock(**{"name.return_value": "sshd"}))
    services = ServiceCollector().collect({"10.0.0.2": ["eth0"]}, raw=None)
    assert [(s.port, s.protocol, s.process, s.pid, s.interfaces) for s in services] == [
        (22, "tcp", "sshd", 1234, ("eth0",)),
        (323, "udp", "unknown", 0, ("lo",)),
    ]

def test_service_collector_psutil_access_denied(mocker):
    mocker.patch("exposure_guard.psutil.net_connections", side_effect=psutil.AccessDenied())
    assert ServiceCollector().collect({}, raw=None) == []

# --- plugins ---
class FakeSignal(PluginBase):
    def __init__(self, rules, name, result=None, error=None):
        super().__init__(rules)
        self.name = name
        self.result = result
        self.error = error

    def run(self, context):
        if self.error:
            raise self.error
        return PluginResult(self.result or {})

def test_load_plugins_finds_signal_plugins(rules):
    names = sorted(p.name for p in load_plugins(rules))
    assert names == ["cloudflare_tunnel", "firewall_posture", "tailscale_status"]

def test_plugins_and_rules_ship_inside_the_package(tmp_path, monkeypatch, mocker):
    package_dir = os.path.dirname(os.path.abspath(exposure_guard.__file__))
    assert PLUGIN_DIR == os.path.join(package_dir, "plugins")
    monkeypatch.chdir(tmp_path)
    read = mocker.spy(exposure_guard, "read_rules")
    plugins = load_plugins(load_rules())
    read.assert_called_once_with(os.path.join(package_dir, "rules.yaml"))
    assert sorted(p.name for p in plugins) == ["cloudflare_tunnel", "firewall_posture", "tailscale_status"]

def test_load_plugins_honours_enabled_flag(rules):
    rules["plugins"]["firewall_posture"]["enabled"] = False
    assert "firewall_posture" not in [p.name for p in load_plugins(rules)]

def test_load_plugins_skips_broken_modules(tmp_path, rules):
    (tmp_path / "eg_broken_plugin.py").write_text("raise RuntimeError('bad plugin')\n")
    (tmp_path / "eg_no_plugin_class.py").write_text("VALUE = 1\n")
    (tmp_path / "eg_good_plugin.py").write_text(
        "from exposure_guard import PluginBase, PluginResult\n"
        "class Plugin(PluginBase):\n"
        "    name = 'eg_good_plugin'\n"
        "    def run(self, context):\n"
        "        return PluginResult(ok=True)\n"
    )
    plugins = load_plugins(rules, plug_dir=str(tmp_path))
    assert [p.name for p in plugins] == ["eg_good_plugin"]

def test_load_plugins_missing_directory(tmp_path, rules):
    assert load_plugins(rules, plug_dir=str(tmp_path / "nowhere")) == []

def test_run_plugins_records_failures(rules):
    plugins = [
        FakeSignal(rules, "firewall_posture", {"enabled": True}),
        FakeSignal(rules, "cloudflare_tunnel", error=RuntimeError("psutil exploded")),
    ]
    out = run_plugins(plugins, {"rules": rules})
    assert out["firewall_posture"] == {"enabled": True}
    assert out["cloudflare_tunnel"] == {"error": "psutil exploded"}
    assert run_plugins([], {}) == {}

# --- full pipeline ---
def test_run_scan_end_to_end(mocker, rules):
    mocker.patch.object(InterfaceCollector, "collect", return_value=parse_ip_addr(IP_ADDR_SAMPLE))
    mocker.patch.object(ServiceCollector, "fetch", return_value=SS_SAMPLE)
    mocker.patch("exposure_guard.load_plugins", return_value=[
        FakeSignal(rules, "firewall_posture", {"enabled": True, "default_inbound": "deny", "status_known": True}),
        FakeSignal(rules, "tailscale_status", {"installed": True, "connected": True, "interface": "tailscale0"}),
        FakeSignal(rules, "cloudflare_tunnel", {"detected": False}),
    ])
    report = run_scan(rules, timeout=1)

    assert len(report.services) == 6
    assert report.context.firewall_enabled and report.context.vpn_connected
    paths = {(e.service.port, e.service.bound_ip): e.paths for e in report.exposures}
    assert paths[(22, "0.0.0.0")] == ["vpn-overlay", "public-internet"]
    assert paths[(631, "127.0.0.1")] == ["localhost-only"]
    assert paths[(8080, "100.64.0.1")] == ["vpn-overlay"]
    assert paths[(53, "127.0.0.53")] == ["localhost-only"]

    assert not [f for f in report.findings if f.severity == "critical"]
    exposed = [f.service.port for f in report.findings if f.title == "Service exposed to public internet"]
    assert exposed == [22, 11434]
    assert "Tailscale available but not used" not in [f.title for f in report.findings]
    assert report.signals["firewall_posture"]["default_inbound"] == "deny"
