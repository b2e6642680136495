"""
Assembles the effective configuration a node pulls
"""

import hashlib
import json
from typing import Any, Dict, List, Optional

from pydantic import BaseModel
from sqlalchemy import select

from ..core.database import Database, database
from ..core.exceptions import NotFoundError
from ..core.logging import get_logger
from ..models.orm import InboundRecord, NodeRecord
from ..models.relay import RelayUser
from .relay_service import RELAY_INBOUND_PROTOCOL, RELAY_OUTBOUND_TAG, RelayService


logger = get_logger(__name__)


class NodeConfigDocument(BaseModel):
    node_id: int
    config_version: int
    hash: str
    config: Dict[str, Any]


def _tls_block(stream: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    security = stream.get("security", "none")
    if security == "reality":
        reality = stream.get("realitySettings") or {}
        dest = reality.get("dest") or ""
        host, _, port = dest.rpartition(":") if ":" in dest else (dest, "", "443")
        server_names = reality.get("serverNames") or []
        return {
            "enabled": True,
            "server_name": server_names[0] if server_names else host,
            "reality": {
                "enabled": True,
                "handshake": {"server": host, "server_port": int(port or 443)},
                "private_key": reality.get("privateKey"),
                "short_id": [s for s in reality.get("shortIds") or [] if s],
            },
        }
    if security == "tls":
        tls = stream.get("tlsSettings") or {}
        block = {"enabled": True, "server_name": tls.get("serverName")}
        for key, target in (("certificateFile", "certificate_path"), ("keyFile", "key_path"), ("alpn", "alpn")):
            if tls.get(key):
                block[target] = tls[key]
        return block
    return None


def _transport_block(stream: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    network = stream.get("network", "tcp")
    if network == "ws":
        ws = stream.get("wsSettings") or {}
        block = {"type": "ws", "path": ws.get("path", "/")}
        host = ws.get("host") or (ws.get("headers") or {}).get("Host")
        if host:
            block["headers"] = {"Host": host}
        return block
    if network == "grpc":
        return {"type": "grpc", "service_name": (stream.get("grpcSettings") or {}).get("serviceName", "grpc")}
    if network == "httpupgrade":
        hu = stream.get("httpupgradeSettings") or {}
        block = {"type": "httpupgrade", "path": hu.get("path", "/")}
        if hu.get("host"):
            block["host"] = hu["host"]
        return block
    return None


def _users(protocol: str, settings: Dict[str, Any]) -> List[Dict[str, Any]]:
    users = []
    for client in settings.get("clients") or []:
        name = client.get("email") or "user"
        if protocol == "vless":
            user = {"name": name, "uuid": client.get("id")}
            if client.get("flow"):
                user["flow"] = client["flow"]
        elif protocol == "vmess":
            user = {"name": name, "uuid": client.get("id"), "alterId": client.get("alterId", 0)}
        elif protocol == "trojan":
            user = {"name": name, "password": client.get("password")}
        elif protocol == "tuic":
            user = {"name": name, "uuid": client.get("uuid"), "password": client.get("password")}
        else:
            continue
        users.append(user)
    return users


def inbound_entry(inbound: InboundRecord, relay_users: List[RelayUser]) -> Optional[Dict[str, Any]]:
    """Translate a stored inbound into a node-side listener definition"""
    settings = json.loads(inbound.settings or "{}")
    stream = json.loads(inbound.stream_settings or "{}")
    entry: Dict[str, Any] = {
        "type": inbound.protocol,
        "tag": inbound.tag,
        "listen": inbound.listen_ip or "0.0.0.0",
        "listen_port": inbound.listen_port,
    }

    if inbound.protocol == RELAY_INBOUND_PROTOCOL:
        entry["method"] = settings.get("method")
        users = [{"name": inbound.tag, "password": settings.get("password")}]
        users += [{"name": u.name, "password": u.password} for u in relay_users]
        entry["users"] = [u for u in users if u["password"]]
    elif inbound.protocol == "hysteria2":
        entry["users"] = [{"name": inbound.tag, "password": settings.get("password")}]
    else:
        entry["users"] = _users(inbound.protocol, settings)
        if inbound.protocol == "tuic":
            entry["congestion_control"] = settings.get("congestion_control", "bbr")

    if not entry["users"]:
        logger.warning(f"Inbound {inbound.tag} has no users, leaving it out of the config")
        return None

    tls = _tls_block(stream)
    if tls:
        entry["tls"] = tls
    transport = _transport_block(stream)
    if transport:
        entry["transport"] = transport
    return entry


def document_hash(document: Dict[str, Any]) -> str:
    canonical = json.dumps(document, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode()).hexdigest()


class NodeConfigService:
    """Builds node configuration documents"""

    def __init__(self, db: Optional[Database] = None, relay_service: Optional[RelayService] = None):
        self.db = db or database
        self.relay_service = relay_service or RelayService(self.db)

    async def build(self, node_id: int) -> NodeConfigDocument:
        async with self.db.session() as session:
            node = await session.get(NodeRecord, node_id)
            if node is None:
                raise NotFoundError(f"Node {node_id} not found")
            result = await session.execute(
                select(InboundRecord)
                .where(InboundRecord.node_id == node_id, InboundRecord.enable.is_(True))
                .order_by(InboundRecord.listen_port)
            )
            inbounds = result.scalars().all()

        relay_users = await self.relay_service.relay_users_for(node_id)
        relay_inbound_id = None
        if relay_users:
            ss = [i for i in inbounds if i.protocol == RELAY_INBOUND_PROTOCOL]
            relay_inbound_id = ss[0].id if ss else None

        entries = []
        for inbound in inbounds:
            try:
                entry = inbound_entry(inbound, relay_users if inbound.id == relay_inbound_id else [])
            except (json.JSONDecodeError, TypeError, ValueError) as e:
                logger.error(f"Skipping malformed inbound {inbound.id} on node {node_id}: {e}")
                continue
            if entry:
                entries.append(entry)

        outbounds = [{"type": "direct", "tag": "direct"}]
        final = "direct"
        resolution = await self.relay_service.resolve_relay(node)
        if resolution is not None:
            outbounds.append(RelayService.relay_outbound(resolution))
            final = RELAY_OUTBOUND_TAG

        document = {
            "inbounds": entries,
            "outbounds": outbounds,
            "route": {
                "rules": [{"protocol": ["dns"], "outbound": "direct"}],
                "final": final,
            },
        }
        return NodeConfigDocument(
            node_id=node_id,
            config_version=node.config_version,
            hash=document_hash(document),
            config=document,
        )
