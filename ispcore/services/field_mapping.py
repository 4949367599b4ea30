"""
ISPCore - Mapeo de campos locales a argumentos RouterOS
Reglas:
  - rate-limit "<up>k/<down>k" solo si ambos valores existen
  - booleanos → "yes" / "no"
  - duraciones en segundos como string decimal
  - campos ausentes (None) se omiten del mapa
  - `name` siempre en add; en set solo si cambió
Los objetos que crea la plataforma llevan comentario "ISP-AUTO: <entidad>#<id>";
solo esos se consideran administrados por el reconciliador.
"""
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from ispcore.errors import InvalidInputError
from ispcore.models.customer import ServiceStatus
from ispcore.models.profile import ProfileType

MANAGED_PREFIX = "ISP-AUTO:"
_MANAGED_RE = re.compile(r"^ISP-AUTO:\s*(\w+)#(\d+)")


# ================================================================
# NAMESPACES
# ================================================================

@dataclass(frozen=True)
class Namespace:
    path: str
    supports_comment: bool = True

    def command(self, verb: str) -> str:
        return f"{self.path}/{verb}"


PPP_PROFILE = Namespace("/ppp/profile")
HOTSPOT_PROFILE = Namespace("/ip/hotspot/user/profile", supports_comment=False)
PPP_SECRET = Namespace("/ppp/secret")
HOTSPOT_USER = Namespace("/ip/hotspot/user")
SIMPLE_QUEUE = Namespace("/queue/simple")

# static_ip no tiene objeto de perfil en el equipo
PROFILE_NAMESPACES = {
    ProfileType.PPPOE: PPP_PROFILE,
    ProfileType.HOTSPOT: HOTSPOT_PROFILE,
}

SERVICE_NAMESPACES = {
    ProfileType.PPPOE: PPP_SECRET,
    ProfileType.HOTSPOT: HOTSPOT_USER,
    ProfileType.STATIC_IP: SIMPLE_QUEUE,
}


def profile_namespace(profile_type: ProfileType) -> Optional[Namespace]:
    return PROFILE_NAMESPACES.get(profile_type)


def service_namespace(profile_type: ProfileType) -> Namespace:
    return SERVICE_NAMESPACES[profile_type]


# ================================================================
# CONVERSIONES
# ================================================================

def yes_no(value: bool) -> str:
    return "yes" if value else "no"


def seconds(value) -> str:
    return str(int(value))


def text(value) -> str:
    return str(value)


def rate_limit(up_kbps: Optional[int], down_kbps: Optional[int]) -> Optional[str]:
    if up_kbps is None or down_kbps is None:
        return None
    return f"{int(up_kbps)}k/{int(down_kbps)}k"


def managed_comment(entity: str, local_id: int, label: Optional[str] = None) -> str:
    comment = f"{MANAGED_PREFIX} {entity}#{local_id}"
    return f"{comment} {label}" if label else comment


def is_managed(attrs: Dict[str, str]) -> bool:
    return attrs.get("comment", "").startswith(MANAGED_PREFIX)


def parse_managed_comment(comment: str) -> Optional[Tuple[str, int]]:
    """'ISP-AUTO: profile#12' → ("profile", 12)."""
    match = _MANAGED_RE.match(comment or "")
    if not match:
        return None
    return match.group(1), int(match.group(2))


# ================================================================
# TABLAS DE CAMPOS DE PERFIL
# ================================================================

Renderer = Callable[[Any, Any], Optional[str]]


@dataclass(frozen=True)
class ArgField:
    arg: str
    attrs: Tuple[str, ...]      # atributos locales de los que depende
    render: Renderer            # (perfil, tabla lateral) → valor o None


def _field(arg: str, attr: str, conv: Callable[[Any], str], side: bool = False) -> ArgField:
    def render(row, side_row):
        source = side_row if side else row
        value = getattr(source, attr, None) if source is not None else None
        return None if value is None else conv(value)
    return ArgField(arg, (attr,), render)


def _rate_limit_field() -> ArgField:
    return ArgField(
        "rate-limit",
        ("rate_limit_up_kbps", "rate_limit_down_kbps"),
        lambda row, _side: rate_limit(row.rate_limit_up_kbps, row.rate_limit_down_kbps),
    )


def _pppoe_remote_address(row, side_row) -> Optional[str]:
    if side_row is None:
        return None
    return side_row.remote_address or side_row.address_pool or None


PROFILE_FIELDS: Dict[ProfileType, List[ArgField]] = {
    ProfileType.PPPOE: [
        _rate_limit_field(),
        _field("session-timeout", "session_timeout", seconds),
        _field("idle-timeout", "idle_timeout", seconds),
        _field("only-one", "only_one", yes_no),
        _field("dns-server", "dns_server", text),
        _field("on-up", "on_login", text),
        _field("local-address", "local_address", text, side=True),
        ArgField("remote-address", ("remote_address", "address_pool"), _pppoe_remote_address),
        _field("use-mpls", "use_mpls", yes_no, side=True),
        _field("use-compression", "use_compression", yes_no, side=True),
        _field("use-encryption", "use_encryption", yes_no, side=True),
    ],
    ProfileType.HOTSPOT: [
        _rate_limit_field(),
        _field("session-timeout", "session_timeout", seconds),
        _field("idle-timeout", "idle_timeout", seconds),
        _field("keepalive-timeout", "keepalive_timeout", seconds),
        _field("on-login", "on_login", text),
        _field("shared-users", "shared_users", text, side=True),
        _field("address-pool", "address_pool", text, side=True),
        _field("transparent-proxy", "transparent_proxy", yes_no, side=True),
        _field("mac-cookie-timeout", "mac_cookie_timeout", seconds, side=True),
        _field("add-mac-cookie", "add_mac_cookie", yes_no, side=True),
    ],
}


def _side_row(profile):
    if profile.profile_type == ProfileType.PPPOE:
        return profile.pppoe
    if profile.profile_type == ProfileType.HOTSPOT:
        return profile.hotspot
    return profile.static_ip


def _render(fields: Iterable[ArgField], row, side_row, touched: Optional[set]) -> Dict[str, str]:
    args: Dict[str, str] = {}
    for f in fields:
        if touched is not None and not touched.intersection(f.attrs):
            continue
        value = f.render(row, side_row)
        if value is not None:
            args[f.arg] = value
    return args


def profile_add_args(profile) -> Dict[str, str]:
    """Argumentos completos para /<namespace>/add."""
    ns = profile_namespace(profile.profile_type)
    args = {"name": profile.name}
    args.update(_render(PROFILE_FIELDS.get(profile.profile_type, []), profile, _side_row(profile), None))
    if ns is not None and ns.supports_comment:
        args["comment"] = managed_comment("profile", profile.id)
    return args


def profile_set_args(profile, touched: set, previous_name: str) -> Dict[str, str]:
    """Solo los campos que tocó la actualización; sin `.id`."""
    args: Dict[str, str] = {}
    if profile.name != previous_name:
        args["name"] = profile.name
    args.update(_render(PROFILE_FIELDS.get(profile.profile_type, []), profile, _side_row(profile), touched))
    return args


# ================================================================
# SERVICIOS (PPPoE secret / hotspot user / simple queue)
# ================================================================

def _disabled(status: ServiceStatus) -> str:
    return yes_no(status != ServiceStatus.ACTIVE)


def _queue_target(ip_address: str) -> str:
    return ip_address if "/" in ip_address else f"{ip_address}/32"


def service_add_args(service, customer, profile) -> Dict[str, str]:
    """Argumentos completos para /<namespace>/add del servicio."""
    comment = managed_comment("service", service.id, customer.name)
    disabled = _disabled(service.status)

    if profile.profile_type == ProfileType.PPPOE:
        args = {
            "name": customer.username,
            "password": customer.password,
            "service": "pppoe",
            "profile": profile.name,
        }
        if service.ip_address:
            args["remote-address"] = service.ip_address
    elif profile.profile_type == ProfileType.HOTSPOT:
        args = {
            "name": customer.username,
            "password": customer.password,
            "profile": profile.name,
        }
        if service.ip_address:
            args["address"] = service.ip_address
        if service.mac_address:
            args["mac-address"] = service.mac_address
    else:
        if not service.ip_address:
            raise InvalidInputError("Un servicio de IP fija requiere ip_address")
        args = {
            "name": customer.username,
            "target": _queue_target(service.ip_address),
        }
        max_limit = rate_limit(profile.rate_limit_up_kbps, profile.rate_limit_down_kbps)
        if max_limit:
            args["max-limit"] = max_limit

    args["comment"] = comment
    args["disabled"] = disabled
    return args


def service_set_args(service, profile, touched: set) -> Dict[str, str]:
    """Solo lo que cambió en el servicio; el nombre (username) no cambia aquí."""
    args: Dict[str, str] = {}
    ptype = profile.profile_type

    if "profile_id" in touched:
        if ptype == ProfileType.STATIC_IP:
            max_limit = rate_limit(profile.rate_limit_up_kbps, profile.rate_limit_down_kbps)
            if max_limit:
                args["max-limit"] = max_limit
        else:
            args["profile"] = profile.name

    if "ip_address" in touched and service.ip_address:
        if ptype == ProfileType.PPPOE:
            args["remote-address"] = service.ip_address
        elif ptype == ProfileType.HOTSPOT:
            args["address"] = service.ip_address
        else:
            args["target"] = _queue_target(service.ip_address)

    if "mac_address" in touched and service.mac_address and ptype == ProfileType.HOTSPOT:
        args["mac-address"] = service.mac_address

    if "status" in touched:
        args["disabled"] = _disabled(service.status)

    return args
