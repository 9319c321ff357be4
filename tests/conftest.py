# tests/conftest.py
from typing import Any, Dict

import pytest

from exposure_guard import (
    Interface, ListeningService, NetworkContext, builtin_rules,
)

IP_ADDR_SAMPLE = """\
1: lo: <LOOPBACK,UP,LOWER_UP> mtu 65536 qdisc noqueue state UNKNOWN group default qlen 1000
    link/loopback 00:00:00:00:00:00 brd 00:00:00:00:00:00
    inet 127.0.0.1/8 scope host lo
       valid_lft forever preferred_lft forever
    inet6 ::1/128 scope host
       valid_lft forever preferred_lft forever
2: eth0: <BROADCAST,MULTICAST,UP,LOWER_UP> mtu 1500 qdisc fq_codel state UP group default qlen 1000
    link/ether 52:54:00:12:34:56 brd ff:ff:ff:ff:ff:ff
    inet 192.168.1.100/24 brd 192.168.1.255 scope global eth0
       valid_lft forever preferred_lft forever
    inet6 fe80::5054:ff:fe12:3456/64 scope link
       valid_lft forever preferred_lft forever
3: tailscale0: <POINTOPOINT,MULTICAST,NOARP,UP,LOWER_UP> mtu 1280 qdisc fq_codel state UNKNOWN group default qlen 500
    link/none
    inet 100.64.0.1/32 scope global tailscale0
       valid_lft forever preferred_lft forever
4: docker0: <NO-CARRIER,BROADCAST,MULTICAST,UP> mtu 1500 qdisc noqueue state DOWN group default
    link/ether 02:42:ac:11:00:01 brd ff:ff:ff:ff:ff:ff
    inet 172.17.0.1/16 brd 172.17.255.255 scope global docker0
       valid_lft forever preferred_lft forever
"""

SS_SAMPLE = """\
Netid State  Recv-Q Send-Q Local Address:Port  Peer Address:Port Process
tcp   LISTEN 0      128          0.0.0.0:22         0.0.0.0:*     users:(("sshd",pid=1234,fd=3))
tcp   LISTEN 0      128             [::]:22            [::]:*     users:(("sshd",pid=1234,fd=4))
tcp   LISTEN 0      4096       127.0.0.1:631        0.0.0.0:*     users:(("cupsd",pid=800,fd=7))
tcp   LISTEN 0      511       100.64.0.1:8080       0.0.0.0:*     users:(("node",pid=2222,fd=20))
udp   UNCONN 0      0      127.0.0.53%lo:53         0.0.0.0:*     users:(("systemd-resolve",pid=567,fd=12))
tcp   LISTEN 0      4096               *:11434            *:*
"""

@pytest.fixture
def rules() -> Dict[str, Any]:
    return builtin_rules()

@pytest.fixture
def base_interfaces():
    return (
        Interface("lo", ("127.0.0.1",), False),
        Interface("eth0", ("192.168.1.100",), True),
    )

@pytest.fixture
def make_context(base_interfaces):
    """Factory for a default context: no firewall (allow), no VPN, no tunnel."""
    def _make(**overrides: Any) -> NetworkContext:
        values: Dict[str, Any] = dict(
            firewall_enabled=False,
            firewall_default_inbound="allow",
            firewall_status_known=True,
            vpn_installed=False,
            vpn_connected=False,
            vpn_interface=None,
            tunnel_detected=False,
            interfaces=base_interfaces,
        )
        values.update(overrides)
        return NetworkContext(**values)
    return _make

@pytest.fixture
def make_service():
    def _make(port: int = 80, process: str = "nginx", bound_ip: str = "0.0.0.0",
              interfaces=("eth0", "lo"), protocol: str = "tcp", pid: int = 999) -> ListeningService:
        return ListeningService(port=port, protocol=protocol, process=process, pid=pid,
                                bound_ip=bound_ip, interfaces=tuple(interfaces))
    return _make
