"""
Remote agent control over SSH
"""

import asyncio
import io
import shlex
import time
from typing import List, Optional

import paramiko

from ..core.config import Settings, config
from ..core.exceptions import RemoteExecutionError, ValidationError
from ..core.logging import get_logger
from ..models.orm import NodeRecord


logger = get_logger(__name__)


def _load_key(ssh_key: str) -> paramiko.PKey:
    for key_cls in (paramiko.Ed25519Key, paramiko.ECDSAKey, paramiko.RSAKey):
        try:
            return key_cls.from_private_key(io.StringIO(ssh_key))
        except paramiko.SSHException:
            continue
    raise ValidationError("Invalid ssh_key: unsupported or malformed private key")


def restart_agent(
    host: str,
    port: int,
    ssh_user: str,
    ssh_password: Optional[str],
    ssh_key: Optional[str],
    service: str,
    timeout: int,
) -> dict:
    """Restart the node agent through systemd on a remote host"""
    log_lines: List[str] = []

    def _log(s: str):
        ts = time.strftime("%Y-%m-%d %H:%M:%S")
        log_lines.append(f"[{ts}] {s}")

    pkey = _load_key(ssh_key) if ssh_key else None
    client = paramiko.SSHClient()
    client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
    try:
        _log(f"connecting to {host}:{port} as {ssh_user}")
        try:
            client.connect(
                hostname=host,
                port=port,
                username=ssh_user,
                password=ssh_password,
                pkey=pkey,
                allow_agent=False,
                look_for_keys=False,
                timeout=timeout,
                banner_timeout=timeout,
                auth_timeout=timeout,
            )
        except (paramiko.SSHException, OSError) as e:
            raise RemoteExecutionError(f"SSH connection to {host} failed: {e}")

        unit = shlex.quote(service)
        command = f"sudo systemctl restart {unit} && sudo systemctl is-active {unit}"
        _log(f"executing: {command}")
        stdin, stdout, stderr = client.exec_command(command, timeout=timeout)
        out = stdout.read().decode(errors="replace")
        err = stderr.read().decode(errors="replace")
        rc = stdout.channel.recv_exit_status()
        for line in out.splitlines():
            _log("REMOTE: " + line)
        for line in err.splitlines():
            _log("REMOTE-ERR: " + line)
        if rc != 0:
            tail = "\n".join(log_lines[-20:])
            raise RemoteExecutionError(f"Remote restart failed with code {rc}", details={"log": tail})
    finally:
        client.close()

    return {"ok": True, "service": service, "log": "\n".join(log_lines)}


class SSHService:
    """Runs blocking SSH work off the event loop with a hard timeout"""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or config.settings

    async def restart_node_agent(self, node: NodeRecord) -> dict:
        if not node.ssh_password and not node.ssh_key:
            raise ValidationError(f"Node {node.id} has no SSH credentials")
        timeout = self.settings.ssh_timeout
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(
                    restart_agent,
                    node.ssh_host or node.ip,
                    node.ssh_port or 22,
                    node.ssh_user or "root",
                    node.ssh_password,
                    node.ssh_key,
                    self.settings.agent_service_name,
                    timeout,
                ),
                timeout=timeout * 3,
            )
        except asyncio.TimeoutError:
            raise RemoteExecutionError(f"Restart of node {node.id} timed out")
