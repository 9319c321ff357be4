from typing import Dict, Any
import logging
import platform
from exposure_guard import PluginBase, PluginResult, DEFAULT_TIMEOUT, run_command, which

logger = logging.getLogger(__name__)

def parse_ufw_status(output: str) -> Dict[str, Any]:
    """Read `ufw status verbose` into enabled/default_inbound."""
    out = output.lower()
    active = "status: active" in out or "status:active" in out
    if "default: deny (incoming)" in out or "default:deny(incoming)" in out:
        policy = "deny"
    elif "default: allow (incoming)" in out or "default:allow(incoming)" in out:
        policy = "allow"
    elif active:
        # active but policy line missing or unfamiliar (e.g. reject): assume filtering
        policy = "deny"
    else:
        policy = "allow"
    return {"enabled": active, "default_inbound": policy, "status_known": True}

class Plugin(PluginBase):
    name = "firewall_posture"

    def run(self, context: Dict[str, Any]) -> PluginResult:
        res: PluginResult = PluginResult()
        timeout = context.get("timeout", DEFAULT_TIMEOUT)
        if platform.system().lower() != "linux":
            res.update(enabled=False, default_inbound="unknown", status_known=False, source="unsupported")
            return res

        if which("ufw"):
            out = run_command(["ufw", "status", "verbose"], timeout)
            if out.success:
                res.update(parse_ufw_status(out.stdout))
                res["detail"] = out.stdout.strip()[:600]
            else:
                # usually permission denied without sudo
                logger.debug(f"ufw status failed (exit {out.exit_code}); firewall state unknown.")
                res.update(enabled=False, default_inbound="unknown", status_known=False)
                res["detail"] = out.stderr.strip()[:600]
            res["source"] = "ufw"
        elif which("firewall-cmd"):
            out = run_command(["firewall-cmd", "--state"], timeout)
            text = (out.stdout + out.stderr).strip().lower()
            running = out.success and text.startswith("running")
            stopped = "not running" in text
            res.update(
                enabled=running,
                default_inbound="unknown" if running else ("allow" if stopped else "unknown"),
                status_known=running or stopped,
                source="firewalld",
                detail=text[:600],
            )
        else:
            res.update(enabled=False, default_inbound="allow", status_known=True, source="none")

        res["why"] = "Host-based firewall decides whether listeners on public interfaces are reachable at all."
        return res
