"""
Protocol-specific shaping of rendered inbound settings
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..core.exceptions import ConfigurationError


FLOW_VISION = "xtls-rprx-vision"

TRANSPORT_DEFAULTS: Dict[str, Dict[str, Any]] = {
    "ws": {"path": "/"},
    "grpc": {"serviceName": "grpc"},
    "httpupgrade": {"path": "/"},
}


@dataclass
class RenderContext:
    client_id: str
    secret: str
    email: str
    port: int
    masking_domain: Optional[str]
    reality_private_key: Optional[str]
    reality_public_key: Optional[str]
    short_id: Optional[str]
    transport_overrides: Dict[str, Any] = field(default_factory=dict)


def _primary_client(settings: Dict[str, Any]) -> Dict[str, Any]:
    clients = settings.get("clients")
    if isinstance(clients, list) and clients and isinstance(clients[0], dict):
        return dict(clients[0])
    return {}


class ProtocolRenderer:
    """Base shape rules shared by every protocol"""

    protocol: str = ""
    single_secret: bool = False
    requires_tls: bool = False
    default_network: str = "tcp"

    def client_entry(self, base: Dict[str, Any], stream: Dict[str, Any], ctx: RenderContext) -> Dict[str, Any]:
        raise NotImplementedError

    def shape_settings(self, settings: Dict[str, Any], stream: Dict[str, Any], ctx: RenderContext) -> Dict[str, Any]:
        shaped = dict(settings)
        if self.single_secret:
            shaped.pop("clients", None)
            shaped["password"] = ctx.secret
            return shaped
        shaped["clients"] = [self.client_entry(_primary_client(settings), stream, ctx)]
        return shaped

    def check(self, settings: Dict[str, Any], stream: Dict[str, Any]) -> List[str]:
        problems = []
        security = stream.get("security", "none")
        if self.requires_tls and security not in ("tls", "reality"):
            problems.append(f"{self.protocol} requires tls security")
        if self.single_secret and not settings.get("password"):
            problems.append("password is empty")
        if not self.single_secret and not settings.get("clients"):
            problems.append("clients list is empty")
        return problems


class VlessRenderer(ProtocolRenderer):
    protocol = "vless"

    def client_entry(self, base, stream, ctx):
        entry = {**base, "id": ctx.client_id, "email": ctx.email}
        if stream.get("security") == "reality" and stream.get("network", "tcp") == "tcp":
            entry["flow"] = FLOW_VISION
        else:
            entry.pop("flow", None)
        return entry

    def shape_settings(self, settings, stream, ctx):
        shaped = super().shape_settings(settings, stream, ctx)
        shaped.setdefault("decryption", "none")
        return shaped


class VmessRenderer(ProtocolRenderer):
    protocol = "vmess"

    def client_entry(self, base, stream, ctx):
        entry = {**base, "id": ctx.client_id, "email": ctx.email}
        entry.setdefault("alterId", 0)
        entry.pop("flow", None)
        return entry


class TrojanRenderer(ProtocolRenderer):
    protocol = "trojan"

    def client_entry(self, base, stream, ctx):
        entry = {**base, "password": ctx.secret, "email": ctx.email}
        entry.pop("flow", None)
        return entry


class TuicRenderer(ProtocolRenderer):
    protocol = "tuic"
    requires_tls = True
    default_network = "udp"

    def client_entry(self, base, stream, ctx):
        entry = {**base, "uuid": ctx.client_id, "password": ctx.secret, "email": ctx.email}
        entry.pop("flow", None)
        return entry

    def shape_settings(self, settings, stream, ctx):
        shaped = super().shape_settings(settings, stream, ctx)
        shaped.setdefault("congestion_control", "bbr")
        return shaped


class ShadowsocksRenderer(ProtocolRenderer):
    protocol = "shadowsocks"
    single_secret = True

    def shape_settings(self, settings, stream, ctx):
        shaped = super().shape_settings(settings, stream, ctx)
        shaped.setdefault("method", "chacha20-ietf-poly1305")
        return shaped


class Hysteria2Renderer(ProtocolRenderer):
    protocol = "hysteria2"
    single_secret = True
    requires_tls = True
    default_network = "udp"


RENDERERS: Dict[str, ProtocolRenderer] = {
    r.protocol: r
    for r in (
        VlessRenderer(),
        VmessRenderer(),
        TrojanRenderer(),
        TuicRenderer(),
        ShadowsocksRenderer(),
        Hysteria2Renderer(),
    )
}


def get_renderer(protocol: str) -> ProtocolRenderer:
    renderer = RENDERERS.get((protocol or "").lower())
    if renderer is None:
        raise ConfigurationError(f"Unsupported protocol: {protocol}")
    return renderer


def shape_stream(stream: Dict[str, Any], renderer: ProtocolRenderer, ctx: RenderContext) -> Dict[str, Any]:
    """Fill security and transport blocks from node context"""
    shaped = dict(stream)
    network = shaped.setdefault("network", renderer.default_network)
    security = shaped.setdefault("security", "none")

    if security == "reality":
        reality = dict(shaped.get("realitySettings") or {})
        if ctx.masking_domain:
            reality.setdefault("dest", f"{ctx.masking_domain}:443")
            reality.setdefault("serverNames", [ctx.masking_domain])
        reality.setdefault("privateKey", ctx.reality_private_key or "")
        reality.setdefault("publicKey", ctx.reality_public_key or "")
        reality.setdefault("shortIds", [ctx.short_id] if ctx.short_id else [])
        shaped["realitySettings"] = reality
    elif security == "tls":
        tls = dict(shaped.get("tlsSettings") or {})
        if ctx.masking_domain:
            tls.setdefault("serverName", ctx.masking_domain)
        shaped["tlsSettings"] = tls

    if network in TRANSPORT_DEFAULTS:
        key = f"{network}Settings"
        merged = dict(TRANSPORT_DEFAULTS[network])
        merged.update(shaped.get(key) or {})
        merged.update((ctx.transport_overrides or {}).get(network) or {})
        shaped[key] = merged
    return shaped


def check_security(stream: Dict[str, Any]) -> List[str]:
    """Required fields per security mode"""
    problems = []
    security = stream.get("security", "none")
    if security == "reality":
        reality = stream.get("realitySettings") or {}
        if not reality.get("privateKey"):
            problems.append("realitySettings.privateKey is empty")
        if not [s for s in reality.get("shortIds") or [] if s]:
            problems.append("realitySettings.shortIds is empty")
        if not [s for s in reality.get("serverNames") or [] if s]:
            problems.append("realitySettings.serverNames is empty")
        if not reality.get("dest"):
            problems.append("realitySettings.dest is empty")
    elif security == "tls":
        if not (stream.get("tlsSettings") or {}).get("serverName"):
            problems.append("tlsSettings.serverName is empty")
    elif security != "none":
        problems.append(f"unknown security mode {security}")
    return problems
