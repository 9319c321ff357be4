from typing import Dict, Any
import logging
from exposure_guard import PluginBase, PluginResult, DEFAULT_TIMEOUT, DEFAULT_VPN_INTERFACE, run_command, which

logger = logging.getLogger(__name__)

class Plugin(PluginBase):
    name = "tailscale_status"

    def run(self, context: Dict[str, Any]) -> PluginResult:
        res: PluginResult = PluginResult(installed=False, connected=False, interface=None)
        if not which("tailscale"):
            return res
        timeout = context.get("timeout", DEFAULT_TIMEOUT)
        res["installed"] = True

        status = run_command(["tailscale", "status"], timeout)
        res["connected"] = status.success and bool(status.stdout.strip())

        iface = self.options().get("interface") or DEFAULT_VPN_INTERFACE
        probe = run_command(["ip", "addr", "show", iface], timeout)
        res["interface"] = iface if probe.success else None
        if res["connected"] and res["interface"] is None:
            logger.debug(f"Tailscale is connected but interface {iface} was not found.")
        return res
