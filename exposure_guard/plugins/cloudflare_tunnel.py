from typing import Dict, Any, List
import logging
import os
import psutil

from exposure_guard import PluginBase, PluginResult

logger = logging.getLogger(__name__)

CONFIG_FILES = ("config.yml", "config.yaml")

def cloudflared_running() -> bool:
    try:
        for proc in psutil.process_iter(attrs=["name", "cmdline"]):
            name = proc.info.get("name") or ""
            cmdline = proc.info.get("cmdline") or []
            if name == "cloudflared":
                return True
            if cmdline and os.path.basename(cmdline[0]) == "cloudflared":
                return True
    except psutil.Error as e:
        logger.debug(f"Could not list processes: {e}")
        return False
    return False

class Plugin(PluginBase):
    name = "cloudflare_tunnel"

    def run(self, context: Dict[str, Any]) -> PluginResult:
        res: PluginResult = PluginResult()
        evidence: List[str] = []
        config_dir = self.options().get("config_dir") or "/etc/cloudflared"

        has_process = cloudflared_running()
        if has_process:
            evidence.append("process")
        has_dir = os.path.isdir(config_dir)
        if has_dir:
            evidence.append("config-dir")
        has_file = any(os.path.isfile(os.path.join(config_dir, n)) for n in CONFIG_FILES)
        if has_file:
            evidence.append("config-file")

        # a running process is strong evidence; a full config footprint alone is weak
        res["detected"] = has_process or (has_dir and has_file)
        res["confidence"] = "high" if has_process else "low"
        res["evidence"] = evidence
        return res
