#!/usr/bin/env python3
"""
Exposure Guard - One-shot listening service exposure auditor for Linux hosts
License: MIT
Purpose: Tell a VPS operator which listening services are reachable from outside the machine, how, and why it matters.

Key features
- Parses `ip addr` and `ss -tulnp` output; falls back to psutil when the tools are missing.
- Resolves exposure paths per service: public internet, VPN overlay (Tailscale), tunnel (Cloudflare), localhost-only.
- Ordered heuristics turn exposures into deduplicated findings sorted by severity.
- Firewall, VPN and tunnel signals come from plugins/; rules.yaml drives process lists, interface prefixes and port profiles.
- Output: human readable report + JSON (machine-parsable) + exit codes. Nothing on the host is modified.
"""
from __future__ import annotations

import argparse
import concurrent.futures
import dataclasses
import importlib
import ipaddress
import json
import logging
import os
import re
import shutil
import socket
import subprocess
import sys
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

import psutil
import yaml
from dotenv import load_dotenv

__VERSION__ = "0.1.0"

logger = logging.getLogger(__name__)

PATH_PUBLIC = "public-internet"
PATH_VPN = "vpn-overlay"
PATH_TUNNEL = "tunnel"
PATH_LOCALHOST = "localhost-only"

SEVERITY_CRITICAL = "critical"
SEVERITY_WARNING = "warning"
SEVERITY_INFO = "info"
SEVERITY_RANK = {SEVERITY_CRITICAL: 0, SEVERITY_WARNING: 1, SEVERITY_INFO: 2}

PROTOCOLS = ("tcp", "udp")
FIREWALL_POLICIES = ("allow", "deny", "unknown")
LOOPBACK_LITERALS = ("127.0.0.1", "::1", "localhost")
WILDCARD_LITERALS = ("0.0.0.0", "::", "*")
LOOPBACK_INTERFACE = "lo"
UNKNOWN_PROCESS = "unknown"
MAX_PID = 2 ** 32 - 1

DEFAULT_VPN_INTERFACE = "tailscale0"
DEFAULT_TIMEOUT = 5.0

FIREWALL_PLUGIN = "firewall_posture"
VPN_PLUGIN = "tailscale_status"
TUNNEL_PLUGIN = "cloudflare_tunnel"

PLUGIN_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), "plugins")

def which(cmd: str) -> Optional[str]:
    return shutil.which(cmd)

def now_iso() -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%S%z")

def safe_int(x: Any, default: int = 0) -> int:
    try:
        return int(x)
    except (TypeError, ValueError):
        return default

def normalize_ip(ip: str) -> str:
    """Lowercase, trim and drop any IPv6 zone identifier ("fe80::1%eth0" -> "fe80::1")."""
    return ip.strip().lower().split("%", 1)[0]

def is_loopback_ip(ip: str) -> bool:
    try:
        return ipaddress.ip_address(ip).is_loopback
    except ValueError:
        return False

def as_list(value: Any) -> List[Any]:
    """Rules values given as a scalar (`match_process: tailscaled`) count as one item."""
    if value is None:
        return []
    if isinstance(value, (list, tuple, set)):
        return list(value)
    return [value]

def unique(items) -> List[str]:
    seen: List[str] = []
    for item in items:
        if item not in seen:
            seen.append(item)
    return seen


# ---------------------------------------------------------------------------
# rules
# ---------------------------------------------------------------------------

def builtin_rules() -> Dict[str, Any]:
    return {
        "high_risk_processes": ["ollama", "llama", "python", "node", "uvicorn", "fastapi"],
        "virtual_interface_prefixes": [
            "docker", "tailscale", "cloudflare", "veth", "br-", "virbr", "lxc",
            "lxdbr", "cni", "flannel", "cali", "wg", "tun", "tap", "zt",
        ],
        "default_vpn_interface": DEFAULT_VPN_INTERFACE,
        "port_profiles": [
            {
                "port": 22,
                "intent": "SSH remote access",
                "recommendation": "Use key-based authentication only (disable password auth). Disable root login. "
                                  "Consider allowlisting source IPs or using Tailscale for private access instead of public exposure.",
            },
            {
                "port": 5353,
                "intent": "local network discovery (mDNS/Bonjour)",
                "recommendation": "This port is meant for LAN-local discovery and should not be exposed to the internet. "
                                  "Bind to localhost or the LAN interface only and block WAN access at the firewall.",
            },
            {
                "port": 41641,
                "intent": "Tailscale WireGuard transport",
                "recommendation": "This is expected when Tailscale is in use. Public exposure is normal for Tailscale's "
                                  "encrypted transport, no action is needed if Tailscale is intentional.",
                "match_process": ["tailscaled"],
            },
        ],
        "plugins": {
            FIREWALL_PLUGIN: {"enabled": True},
            VPN_PLUGIN: {"enabled": True, "interface": DEFAULT_VPN_INTERFACE},
            TUNNEL_PLUGIN: {"enabled": True, "config_dir": "/etc/cloudflared"},
        },
    }

def read_rules(path: str) -> Dict[str, Any]:
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: expected a mapping at top level, got {type(data).__name__}")
    return data

def merge_rules(base: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    """Layer overrides on base; empty keys (`high_risk_processes:`) keep the base value."""
    merged = dict(base)
    for key, value in overrides.items():
        if value is None:
            logger.debug(f"Rules key '{key}' is empty; keeping the default.")
            continue
        if key == "plugins" and isinstance(value, dict):
            plugins = {name: dict(opts) for name, opts in base.get("plugins", {}).items()}
            for name, opts in value.items():
                if isinstance(opts, dict):
                    plugins.setdefault(name, {}).update(opts)
            merged["plugins"] = plugins
        else:
            merged[key] = value
    return merged

def load_default_rules() -> Dict[str, Any]:
    here = os.path.dirname(os.path.abspath(__file__))
    default = os.path.join(here, "rules.yaml")
    if os.path.exists(default):
        try:
            return merge_rules(builtin_rules(), read_rules(default))
        except (OSError, ValueError, yaml.YAMLError) as e:
            logger.warning(f"Could not read bundled rules file {default}: {e}. Using built-in defaults.")
    return builtin_rules()

def load_rules(path: Optional[str] = None) -> Dict[str, Any]:
    rules = load_default_rules()
    if not path:
        return rules
    if not os.path.exists(path):
        logger.warning(f"Rules file '{path}' not found, using defaults.")
        return rules
    try:
        return merge_rules(rules, read_rules(path))
    except (OSError, ValueError, yaml.YAMLError) as e:
        logger.error(f"Failed to load rules from {path}: {e}. Using defaults.")
        return rules


# ---------------------------------------------------------------------------
# data model
# ---------------------------------------------------------------------------

@dataclasses.dataclass(frozen=True)
class Interface:
    name: str
    ips: Tuple[str, ...]
    is_public: bool

@dataclasses.dataclass(frozen=True)
class ListeningService:
    port: int
    protocol: str
    process: str
    pid: int
    bound_ip: str
    interfaces: Tuple[str, ...] = ()

@dataclasses.dataclass(frozen=True)
class FirewallStatus:
    enabled: bool = False
    default_inbound: str = "unknown"
    status_known: bool = False

@dataclasses.dataclass(frozen=True)
class VpnStatus:
    installed: bool = False
    connected: bool = False
    interface: Optional[str] = None

@dataclasses.dataclass(frozen=True)
class TunnelStatus:
    detected: bool = False
    confidence: str = "low"
    evidence: Tuple[str, ...] = ()

@dataclasses.dataclass(frozen=True)
class NetworkContext:
    """Point-in-time view of the host's network posture. Built once per scan."""
    firewall_enabled: bool = False
    firewall_default_inbound: str = "unknown"
    firewall_status_known: bool = False
    vpn_installed: bool = False
    vpn_connected: bool = False
    vpn_interface: Optional[str] = None
    tunnel_detected: bool = False
    interfaces: Tuple[Interface, ...] = ()

    def public_interface_names(self) -> List[str]:
        return [i.name for i in self.interfaces if i.is_public]

@dataclasses.dataclass
class ServiceExposure:
    service: ListeningService
    paths: List[str]

@dataclasses.dataclass
class Finding:
    severity: str
    title: str
    description: str
    recommendation: Optional[str] = None
    service: Optional[ListeningService] = None
    icon: Optional[str] = None  # "tick" | "warning"

    @property
    def dedup_key(self) -> Tuple[str, str, int]:
        return (self.severity, self.title, self.service.port if self.service else 0)

def make_service(port: Any, protocol: str, process: Optional[str], pid: Any,
                 bound_ip: str, interfaces) -> Optional[ListeningService]:
    """Build a ListeningService, or None when the record breaks an invariant."""
    if not isinstance(port, int) or isinstance(port, bool) or not 1 <= port <= 65535:
        return None
    if protocol not in PROTOCOLS:
        return None
    if not isinstance(pid, int) or isinstance(pid, bool) or not 0 <= pid <= MAX_PID:
        return None
    if not bound_ip:
        return None
    return ListeningService(
        port=port,
        protocol=protocol,
        process=process or UNKNOWN_PROCESS,
        pid=pid,
        bound_ip=bound_ip,
        interfaces=tuple(unique(interfaces)),
    )


# ---------------------------------------------------------------------------
# ip addr parsing
# ---------------------------------------------------------------------------

IFACE_HEADER_RE = re.compile(r"^\d+:\s+([^:]+):")
INET_RE = re.compile(r"^inet\s+([0-9.]+)")
INET6_RE = re.compile(r"^inet6\s+([0-9a-fA-F:.]+(?:%[^\s/]+)?)")

def parse_ip_addr(output: str) -> Dict[str, List[str]]:
    """Map each address in `ip addr` output to the interface name(s) carrying it.

    Example input:
        1: lo: <LOOPBACK,UP,LOWER_UP> mtu 65536 qdisc noqueue state UNKNOWN
            inet 127.0.0.1/8 scope host lo
        2: eth0: <BROADCAST,MULTICAST,UP,LOWER_UP> mtu 1500 qdisc fq_codel state UP
            inet 192.168.1.100/24 brd 192.168.1.255 scope global eth0
            inet6 fe80::1/64 scope link

    Lines that cannot be attributed to an interface are skipped; truncated
    output yields whatever was parsed before the cut.
    """
    ip_to_ifaces: Dict[str, List[str]] = {}
    current: Optional[str] = None
    for line in (output or "").splitlines():
        stripped = line.strip()
        m = IFACE_HEADER_RE.match(stripped)
        if m:
            # veth pairs and container links print as "eth0@if7"
            current = m.group(1).strip().split("@", 1)[0] or None
            continue
        if current is None:
            continue
        m = INET_RE.match(stripped) or INET6_RE.match(stripped)
        if not m:
            continue
        ip = normalize_ip(m.group(1))
        if not ip:
            continue
        owners = ip_to_ifaces.setdefault(ip, [])
        if current not in owners:
            owners.append(current)
    return ip_to_ifaces

def is_public_interface(name: str, ips, virtual_prefixes=()) -> bool:
    if name == LOOPBACK_INTERFACE or name.startswith(LOOPBACK_INTERFACE + ":"):
        return False
    if any(name.startswith(prefix) for prefix in virtual_prefixes):
        return False
    if all(is_loopback_ip(ip) for ip in ips):
        return False
    return True

def interfaces_from_ip_map(ip_map: Dict[str, List[str]], rules: Optional[Dict[str, Any]] = None) -> List[Interface]:
    rules = rules if rules is not None else builtin_rules()
    prefixes = tuple(str(p) for p in as_list(rules.get("virtual_interface_prefixes")))
    by_name: Dict[str, List[str]] = {}
    for ip, names in ip_map.items():
        for name in names:
            by_name.setdefault(name, []).append(ip)
    return [Interface(name, tuple(ips), is_public_interface(name, ips, prefixes))
            for name, ips in by_name.items()]

def get_interfaces(output: str, rules: Optional[Dict[str, Any]] = None) -> List[Interface]:
    return interfaces_from_ip_map(parse_ip_addr(output), rules)


# ---------------------------------------------------------------------------
# ss parsing
# ---------------------------------------------------------------------------

SS_HEADER_PREFIXES = ("Netid", "State")
USERS_RE = re.compile(r'users:\(\("([^"]+)",pid=(\d+)')
BRACKETED_ADDR_RE = re.compile(r"^\[([^\]]+)\](?:%[^:]+)?:([^:]+)$")
HOSTPORT_RE = re.compile(r"^([^:]+):([^:]+)$")
PORT_RE = re.compile(r"^[0-9]+$")

def parse_port(s: str) -> Optional[int]:
    return int(s) if PORT_RE.match(s) else None

def split_hostport(s: str) -> Tuple[str, Optional[int]]:
    """Split "[::1]:631", "0.0.0.0:22" or "*:68" into (ip, port); port is None when unparseable."""
    s = s.strip()
    m = BRACKETED_ADDR_RE.match(s)
    if m:
        return normalize_ip(m.group(1)), parse_port(m.group(2))
    if s.startswith("*:"):
        return "*", parse_port(s[2:])
    m = HOSTPORT_RE.match(s)
    if m:
        return normalize_ip(m.group(1)), parse_port(m.group(2))
    return "", None

def extract_pid_name(s: str) -> Tuple[int, str]:
    m = USERS_RE.search(s)
    if m:
        return int(m.group(2)), m.group(1)
    return 0, UNKNOWN_PROCESS

def map_ip_to_interfaces(ip: str, ip_map: Dict[str, List[str]]) -> List[str]:
    if ip in LOOPBACK_LITERALS:
        return [LOOPBACK_INTERFACE]
    if ip in WILDCARD_LITERALS:
        return unique(name for names in ip_map.values() for name in names)
    # unknown addresses map to nothing; the resolver must not read that as loopback
    return list(ip_map.get(ip, []))

def parse_ss_line(line: str, ip_map: Dict[str, List[str]]) -> Optional[ListeningService]:
    parts = line.split()
    if len(parts) < 5:
        return None
    protocol = parts[0].lower()
    if protocol not in PROTOCOLS:
        return None

    local = parts[4]
    if ":" not in local:
        local = next((p for p in parts[3:] if ":" in p), "")
    if not local:
        return None

    ip, port = split_hostport(local)
    if port is None or not ip:
        return None

    pid, name = extract_pid_name(line)
    return make_service(port, protocol, name, pid, ip, map_ip_to_interfaces(ip, ip_map))

def parse_ss_output(output: str, ip_map: Dict[str, List[str]]) -> List[ListeningService]:
    """Parse `ss -tulnp` output.

    Netid  State   Recv-Q  Send-Q  Local Address:Port  Peer Address:Port  Process
    tcp    LISTEN  0       128     0.0.0.0:22          0.0.0.0:*          users:(("sshd",pid=1234,fd=3))
    """
    services: List[ListeningService] = []
    dropped = 0
    for line in (output or "").splitlines():
        if not line.strip() or line.startswith(SS_HEADER_PREFIXES):
            continue
        svc = parse_ss_line(line, ip_map)
        if svc is None:
            dropped += 1
            continue
        services.append(svc)
    if dropped:
        logger.debug(f"ss parser dropped {dropped} unparseable row(s).")
    return services


# ---------------------------------------------------------------------------
# network context
# ---------------------------------------------------------------------------

def build_network_context(interfaces, firewall: FirewallStatus, vpn: VpnStatus,
                          tunnel: TunnelStatus) -> NetworkContext:
    return NetworkContext(
        firewall_enabled=firewall.enabled,
        firewall_default_inbound=firewall.default_inbound if firewall.default_inbound in FIREWALL_POLICIES else "unknown",
        firewall_status_known=firewall.status_known,
        vpn_installed=vpn.installed,
        vpn_connected=vpn.connected,
        vpn_interface=vpn.interface or None,
        tunnel_detected=tunnel.detected,
        interfaces=tuple(interfaces),
    )

def _usable(signal: Optional[Dict[str, Any]]) -> bool:
    return isinstance(signal, dict) and bool(signal) and "error" not in signal

def firewall_from_signal(signal: Optional[Dict[str, Any]]) -> FirewallStatus:
    if not _usable(signal):
        return FirewallStatus(enabled=False, default_inbound="unknown", status_known=False)
    policy = signal.get("default_inbound", "unknown")
    return FirewallStatus(
        enabled=bool(signal.get("enabled", False)),
        default_inbound=policy if policy in FIREWALL_POLICIES else "unknown",
        status_known=bool(signal.get("status_known", False)),
    )

def vpn_from_signal(signal: Optional[Dict[str, Any]]) -> VpnStatus:
    if not _usable(signal):
        return VpnStatus()
    installed = bool(signal.get("installed", False))
    return VpnStatus(
        installed=installed,
        connected=installed and bool(signal.get("connected", False)),
        interface=signal.get("interface") or None,
    )

def tunnel_from_signal(signal: Optional[Dict[str, Any]]) -> TunnelStatus:
    if not _usable(signal):
        return TunnelStatus()
    return TunnelStatus(
        detected=bool(signal.get("detected", False)),
        confidence=signal.get("confidence", "low"),
        evidence=tuple(signal.get("evidence", ())),
    )

def context_from_signals(interfaces, signals: Dict[str, Any]) -> NetworkContext:
    """Assemble a NetworkContext from plugin results; missing or failed signals get conservative defaults."""
    return build_network_context(
        interfaces,
        firewall_from_signal(signals.get(FIREWALL_PLUGIN)),
        vpn_from_signal(signals.get(VPN_PLUGIN)),
        tunnel_from_signal(signals.get(TUNNEL_PLUGIN)),
    )


# ---------------------------------------------------------------------------
# exposure resolution
# ---------------------------------------------------------------------------

def is_localhost_only(service: ListeningService) -> bool:
    if service.bound_ip in LOOPBACK_LITERALS:
        return True
    return tuple(service.interfaces) == (LOOPBACK_INTERFACE,)

def is_vpn_exposed(service: ListeningService, context: NetworkContext,
                   default_vpn_interface: str = DEFAULT_VPN_INTERFACE) -> bool:
    if not context.vpn_connected:
        return False
    return (context.vpn_interface or default_vpn_interface) in service.interfaces

def is_public_exposed(service: ListeningService, context: NetworkContext) -> bool:
    public = context.public_interface_names()
    # A deny-by-default firewall still counts as exposed: allow rules cannot be inspected from here.
    return any(name in public for name in service.interfaces)

def resolve_exposure(service: ListeningService, context: NetworkContext,
                     default_vpn_interface: str = DEFAULT_VPN_INTERFACE) -> List[str]:
    if is_localhost_only(service):
        return [PATH_LOCALHOST]

    paths: List[str] = []
    if is_vpn_exposed(service, context, default_vpn_interface):
        paths.append(PATH_VPN)
    if context.tunnel_detected:
        paths.append(PATH_TUNNEL)
    if is_public_exposed(service, context):
        paths.append(PATH_PUBLIC)

    if not paths:
        return [PATH_LOCALHOST]
    return paths

def resolve_all_exposures(services: List[ListeningService], context: NetworkContext,
                          default_vpn_interface: str = DEFAULT_VPN_INTERFACE) -> List[ServiceExposure]:
    return [ServiceExposure(svc, resolve_exposure(svc, context, default_vpn_interface)) for svc in services]


# ---------------------------------------------------------------------------
# heuristics
# ---------------------------------------------------------------------------

ExposureCheck = Callable[[ServiceExposure, NetworkContext], Optional[Finding]]

class Heuristics:
    """Ordered exposure checks plus one pass of context checks.

    Every check that matches emits a finding; the only mutual exclusion is
    between the high-risk and generic public exposure checks. Evaluation order
    doubles as the tie-break order within a severity tier.
    """

    def __init__(self, rules: Optional[Dict[str, Any]] = None):
        self.rules = rules if rules is not None else builtin_rules()
        self.high_risk_processes = tuple(str(p).lower() for p in as_list(self.rules.get("high_risk_processes")))
        self.port_profiles: List[Dict[str, Any]] = [p for p in as_list(self.rules.get("port_profiles")) if isinstance(p, dict)]
        self.exposure_checks: List[ExposureCheck] = [
            self.check_tunnel_bypass,
            self.check_high_risk_service,
            self.check_public_exposure,
            self.check_vpn_unused,
        ]

    def is_high_risk(self, service: ListeningService) -> bool:
        name = service.process.lower()
        return any(risk in name for risk in self.high_risk_processes)

    def port_profile(self, service: ListeningService) -> Optional[Dict[str, Any]]:
        for profile in self.port_profiles:
            if safe_int(profile.get("port"), -1) != service.port:
                continue
            wanted = [str(w).lower() for w in as_list(profile.get("match_process"))]
            if wanted and not any(w in service.process.lower() for w in wanted):
                return None
            return profile
        return None

    def _describe(self, service: ListeningService, text: str) -> str:
        profile = self.port_profile(service)
        label = f"Port {service.port} ({service.process})"
        if profile and profile.get("intent"):
            label = f"Port {service.port} ({service.process}, likely {profile['intent']})"
        return f"{label} {text}"

    def _recommend(self, service: ListeningService, default: str) -> str:
        profile = self.port_profile(service)
        if profile and profile.get("recommendation"):
            return profile["recommendation"]
        return default

    def check_tunnel_bypass(self, exposure: ServiceExposure, context: NetworkContext) -> Optional[Finding]:
        svc = exposure.service
        if PATH_TUNNEL not in exposure.paths or PATH_PUBLIC not in exposure.paths:
            return None
        return Finding(
            severity=SEVERITY_CRITICAL,
            title="Tunnel bypass detected",
            description=f"Port {svc.port} ({svc.process}) is accessible via both Cloudflare Tunnel and directly "
                        f"from the public internet. The tunnel does not protect this service.",
            recommendation="Bind the service to localhost (127.0.0.1) or restrict access via firewall to ensure "
                           "traffic only flows through the tunnel.",
            service=svc,
        )

    def check_high_risk_service(self, exposure: ServiceExposure, context: NetworkContext) -> Optional[Finding]:
        svc = exposure.service
        if PATH_PUBLIC not in exposure.paths or not self.is_high_risk(svc):
            return None
        return Finding(
            severity=SEVERITY_CRITICAL,
            title="High-risk service publicly exposed",
            description=self._describe(svc, "is reachable from the public internet. This process may be running "
                                            "AI models, APIs, or development servers that should not be publicly accessible."),
            recommendation=self._recommend(svc, "Bind to localhost, use a VPN (like Tailscale), or configure "
                                                "firewall rules to restrict access."),
            service=svc,
        )

    def check_public_exposure(self, exposure: ServiceExposure, context: NetworkContext) -> Optional[Finding]:
        svc = exposure.service
        if PATH_PUBLIC not in exposure.paths:
            return None
        if self.is_high_risk(svc):
            return None  # reported by check_high_risk_service
        return Finding(
            severity=SEVERITY_WARNING,
            title="Service exposed to public internet",
            description=self._describe(svc, "is accessible from the public internet."),
            recommendation=self._recommend(svc, "Verify this service should be publicly accessible. If not, bind "
                                                "to localhost or use firewall rules."),
            service=svc,
        )

    def check_vpn_unused(self, exposure: ServiceExposure, context: NetworkContext) -> Optional[Finding]:
        svc = exposure.service
        if not context.vpn_connected:
            return None
        if PATH_PUBLIC not in exposure.paths or PATH_VPN in exposure.paths:
            return None
        return Finding(
            severity=SEVERITY_WARNING,
            title="Tailscale available but not used",
            description=f"Port {svc.port} ({svc.process}) is publicly accessible, but Tailscale is connected. "
                        f"Consider using Tailscale for secure access instead.",
            recommendation="Bind the service to the Tailscale interface or use Tailscale's subnet routing.",
            service=svc,
        )

    def context_findings(self, context: NetworkContext) -> List[Finding]:
        findings: List[Finding] = []

        if not context.firewall_status_known:
            findings.append(Finding(
                severity=SEVERITY_WARNING,
                title="Firewall status could not be determined",
                description="Unable to read the firewall status. This usually happens when running without root, "
                            "so exposure results below assume no filtering.",
                recommendation="Run with sudo to see accurate firewall status.",
                icon="warning",
            ))
        elif context.firewall_enabled:
            findings.append(Finding(
                severity=SEVERITY_INFO,
                title="Firewall is enabled",
                description=f"Host firewall is active with default inbound policy: {context.firewall_default_inbound}.",
            ))
        else:
            findings.append(Finding(
                severity=SEVERITY_WARNING,
                title="No firewall detected",
                description="No active host firewall was found. All listening ports may be accessible from the internet.",
                recommendation="Consider enabling UFW to control inbound traffic: sudo ufw enable",
                icon="warning",
            ))

        if context.vpn_connected:
            findings.append(Finding(
                severity=SEVERITY_INFO,
                title="Tailscale is connected",
                description="Tailscale VPN is active and available for secure access.",
            ))
        elif context.vpn_installed:
            findings.append(Finding(
                severity=SEVERITY_WARNING,
                title="Tailscale is installed but not connected",
                description="Tailscale is installed but this host is not connected to the tailnet, so private "
                            "access over the VPN is unavailable.",
                recommendation="Reconnect this host to your tailnet: sudo tailscale up",
            ))
        else:
            findings.append(Finding(
                severity=SEVERITY_INFO,
                title="Tailscale is not installed",
                description="No VPN overlay was found. A private overlay lets you reach admin services without "
                            "exposing them publicly.",
                recommendation="Set up Tailscale for private access: https://tailscale.com/download/linux",
            ))

        if context.tunnel_detected:
            findings.append(Finding(
                severity=SEVERITY_INFO,
                title="Cloudflare Tunnel detected",
                description="A Cloudflare Tunnel is present. Ensure services are only accessible through the tunnel.",
            ))

        return findings

    def analyze(self, exposures: List[ServiceExposure], context: NetworkContext) -> List[Finding]:
        findings: List[Finding] = []
        for exposure in exposures:
            for check in self.exposure_checks:
                finding = check(exposure, context)
                if finding is not None:
                    findings.append(finding)
        findings.extend(self.context_findings(context))
        return sort_by_severity(deduplicate_findings(findings))

def deduplicate_findings(findings: List[Finding]) -> List[Finding]:
    seen = set()
    out: List[Finding] = []
    for f in findings:
        if f.dedup_key in seen:
            continue
        seen.add(f.dedup_key)
        out.append(f)
    return out

def sort_by_severity(findings: List[Finding]) -> List[Finding]:
    # sorted() is stable, so check order survives within a tier
    return sorted(findings, key=lambda f: SEVERITY_RANK.get(f.severity, len(SEVERITY_RANK)))

def analyze_exposures(exposures: List[ServiceExposure], context: NetworkContext,
                      rules: Optional[Dict[str, Any]] = None) -> List[Finding]:
    return Heuristics(rules).analyze(exposures, context)


# ---------------------------------------------------------------------------
# collectors
# ---------------------------------------------------------------------------

@dataclasses.dataclass
class CommandResult:
    stdout: str
    stderr: str
    exit_code: int

    @property
    def success(self) -> bool:
        return self.exit_code == 0

def run_command(args: List[str], timeout: float = DEFAULT_TIMEOUT) -> CommandResult:
    """Run a command without a shell. Missing binaries and timeouts come back as failed results."""
    logger.debug(f"Executing: {' '.join(args)}")
    try:
        proc = subprocess.run(args, capture_output=True, text=True, timeout=timeout, check=False)
    except FileNotFoundError as e:
        return CommandResult("", str(e), 127)
    except subprocess.TimeoutExpired:
        logger.warning(f"Command timed out after {timeout}s: {' '.join(args)}")
        return CommandResult("", f"timed out after {timeout}s", 124)
    except OSError as e:
        logger.warning(f"Could not execute {args[0]}: {e}")
        return CommandResult("", str(e), 126)
    return CommandResult(proc.stdout or "", proc.stderr or "", proc.returncode)

def is_root() -> bool:
    return hasattr(os, "geteuid") and os.geteuid() == 0

class InterfaceCollector:
    def __init__(self, timeout: float = DEFAULT_TIMEOUT):
        self.timeout = timeout

    def collect(self) -> Dict[str, List[str]]:
        if which("ip"):
            res = run_command(["ip", "addr"], self.timeout)
            if res.success:
                return parse_ip_addr(res.stdout)
            logger.warning(f"'ip addr' failed (exit {res.exit_code}); falling back to psutil.")
        return self._collect_with_psutil()

    def _collect_with_psutil(self) -> Dict[str, List[str]]:
        ip_map: Dict[str, List[str]] = {}
        try:
            addrs = psutil.net_if_addrs()
        except (psutil.Error, OSError) as e:
            logger.warning(f"psutil could not list interfaces: {e}")
            return ip_map
        for name, entries in addrs.items():
            for a in entries:
                if a.family not in (socket.AF_INET, socket.AF_INET6) or not a.address:
                    continue
                owners = ip_map.setdefault(normalize_ip(a.address), [])
                if name not in owners:
                    owners.append(name)
        return ip_map

class ServiceCollector:
    def __init__(self, timeout: float = DEFAULT_TIMEOUT):
        self.timeout = timeout

    def fetch(self) -> Optional[str]:
        """Raw `ss -tulnp` text, or None when ss is unavailable or failed."""
        if not which("ss"):
            return None
        res = run_command(["ss", "-tulnp"], self.timeout)
        if not res.success:
            logger.warning(f"'ss -tulnp' failed (exit {res.exit_code}): {res.stderr.strip()[:200]}")
            return None
        return res.stdout

    def collect(self, ip_map: Dict[str, List[str]], raw: Optional[str] = None) -> List[ListeningService]:
        if raw is not None:
            return parse_ss_output(raw, ip_map)
        logger.info("ss output unavailable; collecting listening sockets with psutil.")
        return self._collect_with_psutil(ip_map)

    def _collect_with_psutil(self, ip_map: Dict[str, List[str]]) -> List[ListeningService]:
        results: List[ListeningService] = []
        try:
            conns = psutil.net_connections(kind="inet")
        except (psutil.Error, OSError) as e:
            logger.warning(f"psutil could not list sockets: {e}")
            return results
        names: Dict[int, str] = {}
        for c in conns:
            if not c.laddr:
                continue
            if c.type == socket.SOCK_STREAM:
                if c.status != psutil.CONN_LISTEN:
                    continue
                proto = "tcp"
            elif c.type == socket.SOCK_DGRAM:
                if c.raddr:
                    continue
                proto = "udp"
            else:
                continue
            pid = c.pid or 0
            ip = normalize_ip(c.laddr.ip)
            svc = make_service(c.laddr.port, proto, self._process_name(pid, names), pid, ip,
                               map_ip_to_interfaces(ip, ip_map))
            if svc is not None:
                results.append(svc)
        return results

    @staticmethod
    def _process_name(pid: int, cache: Dict[int, str]) -> str:
        if not pid:
            return UNKNOWN_PROCESS
        if pid not in cache:
            try:
                cache[pid] = psutil.Process(pid).name() or UNKNOWN_PROCESS
            except psutil.Error:
                cache[pid] = UNKNOWN_PROCESS
        return cache[pid]


# ---------------------------------------------------------------------------
# plugins
# ---------------------------------------------------------------------------

class PluginResult(dict):
    """Simple container for plugin outputs."""
    pass

class PluginBase:
    name = "base"
    def __init__(self, rules: Dict[str, Any]): self.rules = rules
    def options(self) -> Dict[str, Any]: return self.rules.get("plugins", {}).get(self.name, {}) or {}
    def enabled(self) -> bool: return self.options().get("enabled", True)
    def run(self, context: Dict[str, Any]) -> PluginResult: return PluginResult()

def load_plugins(rules: Dict[str, Any], plug_dir: str = PLUGIN_DIR) -> List[PluginBase]:
    plugins: List[PluginBase] = []
    if not os.path.isdir(plug_dir):
        logger.warning(f"Plugin directory {plug_dir} not found; firewall, VPN and tunnel signals will be unknown.")
        return plugins
    if plug_dir not in sys.path:
        sys.path.insert(0, plug_dir)
    for fname in sorted(os.listdir(plug_dir)):
        if not fname.endswith(".py") or fname.startswith("_"):
            continue
        modname = fname[:-3]
        try:
            mod = importlib.import_module(modname)
        except Exception as e:
            logger.warning(f"Failed to import plugin {modname}: {e}")
            continue
        # duck-typed: any module-level Plugin class with a run() method
        plugin_cls = getattr(mod, "Plugin", None)
        if not isinstance(plugin_cls, type) or not callable(getattr(plugin_cls, "run", None)):
            continue
        p = plugin_cls(rules)
        if p.enabled():
            plugins.append(p)
        else:
            logger.debug(f"Plugin {p.name} disabled by rules.")
    return plugins

def run_plugins(plugins: List[PluginBase], context: Dict[str, Any]) -> Dict[str, Any]:
    """Run plugins concurrently; a plugin that raises is recorded as {"error": ...}."""
    out: Dict[str, Any] = {}
    if not plugins:
        return out
    with concurrent.futures.ThreadPoolExecutor(max_workers=len(plugins)) as pool:
        futures = [(p, pool.submit(p.run, context)) for p in plugins]
        for p, fut in futures:
            try:
                out[p.name] = fut.result() or {}
            except Exception as e:
                logger.warning(f"Plugin {p.name} failed: {e}", exc_info=True)
                out[p.name] = {"error": str(e)}
    return out


# ---------------------------------------------------------------------------
# scan pipeline
# ---------------------------------------------------------------------------

@dataclasses.dataclass
class ScanReport:
    services: List[ListeningService]
    exposures: List[ServiceExposure]
    context: NetworkContext
    findings: List[Finding]
    signals: Dict[str, Any] = dataclasses.field(default_factory=dict)

def run_scan(rules: Dict[str, Any], timeout: float = DEFAULT_TIMEOUT) -> ScanReport:
    plugins = load_plugins(rules)
    interface_collector = InterfaceCollector(timeout)
    service_collector = ServiceCollector(timeout)

    with concurrent.futures.ThreadPoolExecutor(max_workers=3) as pool:
        ip_future = pool.submit(interface_collector.collect)
        ss_future = pool.submit(service_collector.fetch)
        signals_future = pool.submit(run_plugins, plugins, {"rules": rules, "timeout": timeout})
        ip_map = ip_future.result()
        raw_ss = ss_future.result()
        signals = signals_future.result()

    services = service_collector.collect(ip_map, raw_ss)
    logger.info(f"Found {len(services)} listening service(s) on {len(ip_map)} address(es).")

    context = context_from_signals(interfaces_from_ip_map(ip_map, rules), signals)
    exposures = resolve_all_exposures(services, context, rules.get("default_vpn_interface") or DEFAULT_VPN_INTERFACE)
    findings = Heuristics(rules).analyze(exposures, context)
    logger.info(f"Analysis produced {len(findings)} finding(s).")
    return ScanReport(services, exposures, context, findings, signals)


# ---------------------------------------------------------------------------
# reporting
# ---------------------------------------------------------------------------

TERMINAL_ESCAPE_RE = re.compile(r"\x1b(?:\[[^\x40-\x7e]*[\x40-\x7e]?|\].*?(?:\x07|\x1b\\|\Z))", re.S)
CONTROL_CHARS_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
FIRST_SENTENCE_RE = re.compile(r"^.+?[.!?](?:\s|$)")

ICONS = {"critical": "[x]", "warning": "[!]", "info": "[+]", "tick": "[+]"}

def sanitize_terminal_text(text: str) -> str:
    """Strip ANSI CSI/OSC sequences and control characters (tab, newline and CR are kept)."""
    return CONTROL_CHARS_RE.sub("", TERMINAL_ESCAPE_RE.sub("", text or ""))

def first_sentence(text: Optional[str]) -> Optional[str]:
    if not text:
        return None
    normalized = " ".join(text.split())
    if not normalized:
        return None
    m = FIRST_SENTENCE_RE.match(normalized)
    return m.group(0).strip() if m else normalized

def get_exit_code(findings: List[Finding]) -> int:
    return 2 if any(f.severity == SEVERITY_CRITICAL for f in findings) else 0

def calculate_stats(report: ScanReport, root: bool) -> Dict[str, Any]:
    public_ports = {e.service.port for e in report.exposures if PATH_PUBLIC in e.paths}
    return {
        "total_services": len(report.services),
        "publicly_reachable": len(public_ports),
        "critical_findings": sum(1 for f in report.findings if f.severity == SEVERITY_CRITICAL),
        "warning_findings": sum(1 for f in report.findings if f.severity == SEVERITY_WARNING),
        "is_root": root,
    }

def collect_top_actions(findings: List[Finding], limit: int = 3) -> List[str]:
    actions: List[str] = []
    for f in findings:
        if f.severity == SEVERITY_INFO:
            continue
        action = first_sentence(f.recommendation)
        if action and action not in actions:
            actions.append(action)
        if len(actions) == limit:
            break
    return actions

def environment_notes(root: bool) -> List[str]:
    if root:
        return []
    return [
        "Running without root may hide some services and can show incomplete firewall or process info.",
        "For full visibility, re-run with sudo.",
    ]

def build_json_report(report: ScanReport, verbose: bool = False, quiet: bool = False) -> Dict[str, Any]:
    root = is_root()
    data: Dict[str, Any] = {
        "meta": {"time": now_iso(), "version": __VERSION__},
        "mode": "quiet" if quiet else "verbose" if verbose else "default",
        "exit_code": get_exit_code(report.findings),
        "stats": calculate_stats(report, root),
        "services": [dataclasses.asdict(s) for s in report.services],
        "exposures": [dataclasses.asdict(e) for e in report.exposures],
        "context": dataclasses.asdict(report.context),
        "findings": [dataclasses.asdict(f) for f in report.findings],
        "top_actions": collect_top_actions(report.findings),
        "environment_notes": environment_notes(root),
    }
    if verbose:
        data["signals"] = report.signals
    return data

def _render_finding(f: Finding, verbose: bool) -> List[str]:
    icon = ICONS.get(f.icon or f.severity, "[-]")
    lines = [f"{icon} {sanitize_terminal_text(f.title)}"]
    for ln in sanitize_terminal_text(f.description).splitlines():
        lines.append(f"    {ln}")
    action = first_sentence(f.recommendation)
    if action:
        lines.append(f"    Action: {sanitize_terminal_text(action)}")
        detail = " ".join(f.recommendation.split())[len(action):].strip()
        if verbose and detail:
            lines.append(f"    Details: {sanitize_terminal_text(detail)}")
    return lines

def render_services_table(exposures: List[ServiceExposure]) -> List[str]:
    headers = ["proto", "port", "bound", "pid", "process", "paths"]
    lines = ["-" * 100, "{:<5} {:>5} {:<28} {:>7} {:<20} {}".format(*headers), "-" * 100]
    for e in exposures:
        s = e.service
        lines.append("{:<5} {:>5} {:<28} {:>7} {:<20} {}".format(
            s.protocol, s.port, sanitize_terminal_text(s.bound_ip)[:28], s.pid,
            sanitize_terminal_text(s.process)[:20], ",".join(e.paths),
        ))
    lines.append("-" * 100)
    return lines

def render_report(report: ScanReport, verbose: bool = False, quiet: bool = False) -> str:
    root = is_root()
    stats = calculate_stats(report, root)
    lines: List[str] = []

    if not quiet:
        lines.append("=== Exposure Guard Report ===")
        lines.append(f"time: {now_iso()}  version: {__VERSION__}")
        lines.append("")
        lines.append("Summary:")
        lines.append(f"  > {stats['total_services']} services detected")
        lines.append(f"  > {stats['publicly_reachable']} publicly reachable")
        lines.append(f"  > {stats['critical_findings']} critical issues")
        if stats["warning_findings"]:
            lines.append(f"  > {stats['warning_findings']} warnings")
        lines.append("")
        lines.append("Top actions:")
        actions = collect_top_actions(report.findings)
        for action in actions or ["No immediate action required."]:
            lines.append(f"  > {sanitize_terminal_text(action)}")
        if verbose and report.exposures:
            lines.append("")
            lines.append("Services:")
            lines.extend(render_services_table(report.exposures))

    groups = [
        (SEVERITY_CRITICAL, "CRITICAL"),
        (SEVERITY_WARNING, "WARNINGS"),
        (SEVERITY_INFO, "INFO"),
    ]
    actionable = [f for f in report.findings if f.severity != SEVERITY_INFO]
    if not report.findings or (quiet and not actionable):
        lines.append("")
        lines.append("[+] No actionable findings." if quiet else "[+] No security issues detected.")
    for severity, heading in groups:
        group = [f for f in report.findings if f.severity == severity]
        if not group or (quiet and severity == SEVERITY_INFO):
            continue
        lines.append("")
        lines.append(heading)
        if severity == SEVERITY_INFO and not verbose:
            lines.append(f"  {len(group)} informational notes collapsed; re-run with --verbose for details.")
            for f in group:
                lines.append(f"  > {sanitize_terminal_text(f.title)}")
            continue
        for f in group:
            lines.extend(_render_finding(f, verbose))

    if not quiet:
        notes = environment_notes(root)
        if notes:
            lines.append("")
            lines.append("Environment notes")
            lines.extend(f"  {n}" for n in notes)
        lines.append("")
        lines.append("No changes were made to your system.")
    return "\n".join(lines)

def save_json(path: str, data: Any) -> None:
    with open(path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2)


def main(argv: Optional[List[str]] = None) -> None:
    load_dotenv(dotenv_path=os.getenv("DOTENV_PATH") or ".env")
    p = argparse.ArgumentParser(description="Exposure Guard - audit which listening services on this host are reachable, and how")
    p.add_argument("--rules", default=os.getenv("EXPOSURE_GUARD_RULES"), help="rules.yaml path (process lists, interface prefixes, port profiles)")
    p.add_argument("--timeout", type=float, default=float(os.getenv("EXPOSURE_GUARD_TIMEOUT") or DEFAULT_TIMEOUT), help="per-command timeout in seconds")
    p.add_argument("--json", action="store_true", help="print the report as JSON")
    p.add_argument("--json-out", default=None, help="also write the full JSON report to this path")
    p.add_argument("-v", "--verbose", action="store_true", help="show services table, info details and raw signals")
    p.add_argument("-q", "--quiet", action="store_true", help="only print actionable findings")
    p.add_argument("--log-level", default="WARNING", choices=["DEBUG", "INFO", "WARNING", "ERROR"], help="stderr log level")
    args = p.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
        stream=sys.stderr,
    )

    rules = load_rules(args.rules)
    try:
        report = run_scan(rules, timeout=args.timeout)
    except Exception as e:
        logger.error(f"Scan failed: {e}", exc_info=True)
        if args.json:
            print(json.dumps({"error": str(e)}, indent=2), file=sys.stderr)
        else:
            print(f"\nError: {e}", file=sys.stderr)
        sys.exit(1)

    data = build_json_report(report, verbose=args.verbose, quiet=args.quiet)
    if args.json_out:
        save_json(args.json_out, data)
    if args.json:
        print(json.dumps(data, indent=2))
    else:
        print(render_report(report, verbose=args.verbose, quiet=args.quiet))
    sys.exit(get_exit_code(report.findings))
