"""
Configuration Dataclasses

Type-safe configuration structures for the proxy process.

- LocalConfig is read from the operator-editable YAML file.
- CloudConfig is decoded from the centrally published cloud document.
- MergedConfig is the frozen snapshot every other subsystem reads.

YAML keys are matched case-insensitively, so `frontedServers` and
`frontedservers` name the same field.
"""

import hashlib
import json
import uuid
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any


DEFAULT_ADDR = "localhost:8787"
DEFAULT_UI_ADDR = "127.0.0.1:16823"
DEFAULT_CLOUD_CONFIG_URL = "https://config.getiantem.org/cloud.yaml.gz"
DEFAULT_STATSHUB_ADDR = "pure-journey-3547.herokuapp.com"
DEFAULT_REPORTING_PERIOD_S = 300


class Role(str, Enum):
    """Network role of this process"""
    CLIENT = "client"  # downstream
    SERVER = "server"  # upstream


@dataclass
class StatsConfig:
    """Stats reporting configuration"""
    statshub_addr: str = DEFAULT_STATSHUB_ADDR
    reporting_period_s: int = DEFAULT_REPORTING_PERIOD_S


@dataclass
class ServerConfig:
    """Upstream-only settings"""
    advertised_host: str = ""
    waddell_addr: str = ""
    unencrypted: bool = False


@dataclass
class ClientConfig:
    """Downstream-only settings kept in the local file"""
    proxy_all: bool = False
    min_qos: int = 0
    dump_headers: bool = False


@dataclass
class LocalConfig:
    """Operator-controlled configuration (local YAML file)"""
    role: Role = Role.CLIENT
    addr: str = DEFAULT_ADDR
    cloud_config: str = DEFAULT_CLOUD_CONFIG_URL
    cloud_config_ca: str = ""
    instance_id: str = ""
    cpu_profile: str = ""
    mem_profile: str = ""
    ui_addr: str = DEFAULT_UI_ADDR
    version: int = 0

    # Client role only; None when running upstream
    auto_report: bool | None = None
    auto_launch: bool | None = None

    stats: StatsConfig = field(default_factory=StatsConfig)
    server: ServerConfig | None = None
    client: ClientConfig | None = None

    def is_downstream(self) -> bool:
        return self.role == Role.CLIENT

    def is_upstream(self) -> bool:
        return self.role == Role.SERVER

    def to_dict(self) -> dict[str, Any]:
        """Serialize using the on-disk YAML keys"""
        data: dict[str, Any] = {
            "version": self.version,
            "role": self.role.value,
            "addr": self.addr,
            "cloudconfig": self.cloud_config,
            "cloudconfigca": self.cloud_config_ca,
            "instanceid": self.instance_id,
            "cpuprofile": self.cpu_profile,
            "memprofile": self.mem_profile,
            "uiaddr": self.ui_addr,
            "stats": {
                "statshubaddr": self.stats.statshub_addr,
                "reportingperiod": self.stats.reporting_period_s,
            },
        }
        if self.auto_report is not None:
            data["autoreport"] = self.auto_report
        if self.auto_launch is not None:
            data["autolaunch"] = self.auto_launch
        if self.server is not None:
            data["server"] = {
                "advertisedhost": self.server.advertised_host,
                "waddelladdr": self.server.waddell_addr,
                "unencrypted": self.server.unencrypted,
            }
        if self.client is not None:
            data["client"] = {
                "proxyall": self.client.proxy_all,
                "minqos": self.client.min_qos,
                "dumpheaders": self.client.dump_headers,
            }
        return data

    def fingerprint(self) -> str:
        return _fingerprint(self.to_dict())


@dataclass
class Masquerade:
    """A domain/IP pair used to front requests"""
    domain: str
    ip_address: str = ""


@dataclass
class FrontedServerInfo:
    """Relay server reached through domain fronting"""
    host: str
    port: int = 443
    pool_size: int = 0
    masquerade_set: str = ""
    max_masquerades: int = 0
    insecure_skip_verify: bool = False
    dial_timeout_millis: int = 0
    redial_attempts: int = 0
    qos: int = 0
    weight: int = 0


@dataclass
class ChainedServerInfo:
    """Directly dialed upstream server"""
    addr: str
    auth_token: str = ""
    cert: str = ""
    pipelined: bool = False
    weight: int = 0
    qos: int = 0


@dataclass
class ProxiedSitesDelta:
    """Additions/deletions applied on top of the cloud base list"""
    additions: list[str] = field(default_factory=list)
    deletions: list[str] = field(default_factory=list)


@dataclass
class ProxiedSitesConfig:
    """Sites routed through the proxy rather than accessed directly"""
    delta: ProxiedSitesDelta = field(default_factory=ProxiedSitesDelta)
    cloud: list[str] = field(default_factory=list)

    def effective(self) -> list[str]:
        """(cloud + additions) - deletions, sorted"""
        sites = set(self.cloud) | set(self.delta.additions)
        sites -= set(self.delta.deletions)
        return sorted(sites)


@dataclass
class CA:
    """Trusted certificate authority"""
    common_name: str
    cert: str  # PEM-encoded


@dataclass
class CloudConfig:
    """Centrally published configuration (cloud.yaml.gz)"""
    fronted_servers: list[FrontedServerInfo] = field(default_factory=list)
    chained_servers: dict[str, ChainedServerInfo] = field(default_factory=dict)
    masquerade_sets: dict[str, list[Masquerade]] = field(default_factory=dict)
    proxied_sites: ProxiedSitesConfig = field(default_factory=ProxiedSitesConfig)
    trusted_cas: list[CA] = field(default_factory=list)

    def is_empty(self) -> bool:
        """True when no field carries any data"""
        return not (
            self.fronted_servers
            or self.chained_servers
            or self.masquerade_sets
            or self.proxied_sites.cloud
            or self.proxied_sites.delta.additions
            or self.proxied_sites.delta.deletions
            or self.trusted_cas
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def fingerprint(self) -> str:
        return _fingerprint(self.to_dict())


@dataclass(frozen=True)
class MergedConfig:
    """
    The configuration snapshot consumed by the rest of the process.

    Built only by merge(); treated as immutable once published.
    """
    # From LocalConfig
    role: Role
    addr: str
    instance_id: str
    cloud_config: str
    cloud_config_ca: str
    cpu_profile: str
    mem_profile: str
    ui_addr: str
    auto_report: bool | None
    auto_launch: bool | None
    stats: StatsConfig
    server: ServerConfig | None
    client: ClientConfig | None

    # From CloudConfig
    fronted_servers: list[FrontedServerInfo]
    chained_servers: dict[str, ChainedServerInfo]
    masquerade_sets: dict[str, list[Masquerade]]
    proxied_sites: ProxiedSitesConfig
    trusted_cas: list[CA]

    def is_downstream(self) -> bool:
        return self.role == Role.CLIENT

    def is_upstream(self) -> bool:
        return self.role == Role.SERVER

    def trusted_ca_certs(self) -> list[str]:
        """PEM-encoded certs for the trusted CAs"""
        return [ca.cert for ca in self.trusted_cas]

    def proxied_site_list(self) -> list[str]:
        return self.proxied_sites.effective()

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["role"] = self.role.value
        return data

    def fingerprint(self) -> str:
        return _fingerprint(self.to_dict())


def _fingerprint(data: dict[str, Any]) -> str:
    content = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(content.encode()).hexdigest()


def default_instance_id() -> str:
    """Stable per-host identifier (hex of the node id)"""
    return format(uuid.getnode(), "012x")


# Dict helpers. Every one raises ValueError on a wrong shape; callers
# translate that into the error type of their source.

def _lower_keys(data: Any, where: str) -> dict[str, Any]:
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"{where}: expected a mapping, got {type(data).__name__}")
    return {str(k).lower(): v for k, v in data.items()}


def _as_str(value: Any, where: str) -> str:
    if value is None:
        return ""
    if isinstance(value, (dict, list)):
        raise ValueError(f"{where}: expected a string")
    return str(value)


def _as_int(value: Any, where: str) -> int:
    if value is None:
        return 0
    if isinstance(value, bool):
        raise ValueError(f"{where}: expected an integer")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValueError(f"{where}: expected an integer, got {value!r}") from None


def _as_bool(value: Any, where: str, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.lower() in ("true", "1", "yes", "on"):
        return True
    if isinstance(value, str) and value.lower() in ("false", "0", "no", "off"):
        return False
    raise ValueError(f"{where}: expected a boolean, got {value!r}")


def _as_str_list(value: Any, where: str) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValueError(f"{where}: expected a list")
    return [_as_str(v, where) for v in value]


def _apply_overrides(data: dict[str, Any], overrides: dict[str, Any]) -> dict[str, Any]:
    """Set dotted keys (e.g. client.proxyall) on a lower-cased dict"""
    result = dict(data)
    for dotted, value in overrides.items():
        parts = dotted.lower().split(".")
        target = result
        for part in parts[:-1]:
            section = _lower_keys(target.get(part), part)
            target[part] = section
            target = section
        target[parts[-1]] = value
    return result


def load_local_config(
    data: dict[str, Any] | None,
    overrides: dict[str, Any] | None = None,
) -> LocalConfig:
    """
    Build a LocalConfig from a parsed YAML dict.

    Defaults fill every unset field; overrides (dotted keys) win over
    both the file and the defaults. Client-only defaults are applied only
    when the resulting role is "client".

    Raises:
        ValueError: if a field has the wrong shape or the role is unknown
    """
    raw = _lower_keys(data, "config")
    if overrides:
        raw = _apply_overrides(raw, overrides)

    try:
        role = Role(_as_str(raw.get("role") or Role.CLIENT.value, "role").lower())
    except ValueError:
        raise ValueError(f"role: unknown role {raw.get('role')!r}") from None

    stats_raw = _lower_keys(raw.get("stats"), "stats")
    stats = StatsConfig(
        statshub_addr=_as_str(stats_raw.get("statshubaddr") or DEFAULT_STATSHUB_ADDR, "stats.statshubaddr"),
        reporting_period_s=_as_int(
            stats_raw.get("reportingperiod") or DEFAULT_REPORTING_PERIOD_S, "stats.reportingperiod"
        ),
    )

    cfg = LocalConfig(
        role=role,
        addr=_as_str(raw.get("addr") or DEFAULT_ADDR, "addr"),
        cloud_config=_as_str(raw.get("cloudconfig") or DEFAULT_CLOUD_CONFIG_URL, "cloudconfig"),
        cloud_config_ca=_as_str(raw.get("cloudconfigca"), "cloudconfigca"),
        instance_id=_as_str(raw.get("instanceid") or default_instance_id(), "instanceid"),
        cpu_profile=_as_str(raw.get("cpuprofile"), "cpuprofile"),
        mem_profile=_as_str(raw.get("memprofile"), "memprofile"),
        ui_addr=_as_str(raw.get("uiaddr") or DEFAULT_UI_ADDR, "uiaddr"),
        version=_as_int(raw.get("version"), "version"),
        stats=stats,
    )

    if role == Role.CLIENT:
        cfg.auto_report = _as_bool(raw.get("autoreport"), "autoreport", default=True)
        cfg.auto_launch = _as_bool(raw.get("autolaunch"), "autolaunch")
        client_raw = _lower_keys(raw.get("client"), "client")
        cfg.client = ClientConfig(
            proxy_all=_as_bool(client_raw.get("proxyall"), "client.proxyall"),
            min_qos=_as_int(client_raw.get("minqos"), "client.minqos"),
            dump_headers=_as_bool(client_raw.get("dumpheaders"), "client.dumpheaders"),
        )
    else:
        server_raw = _lower_keys(raw.get("server"), "server")
        cfg.server = ServerConfig(
            advertised_host=_as_str(server_raw.get("advertisedhost"), "server.advertisedhost"),
            waddell_addr=_as_str(server_raw.get("waddelladdr"), "server.waddelladdr"),
            unencrypted=_as_bool(server_raw.get("unencrypted"), "server.unencrypted"),
        )

    return cfg


def _load_fronted_server(item: Any, where: str) -> FrontedServerInfo:
    if isinstance(item, str):
        return FrontedServerInfo(host=item)
    d = _lower_keys(item, where)
    if not d.get("host"):
        raise ValueError(f"{where}: missing host")
    return FrontedServerInfo(
        host=_as_str(d["host"], f"{where}.host"),
        port=_as_int(d.get("port", 443), f"{where}.port"),
        pool_size=_as_int(d.get("poolsize"), f"{where}.poolsize"),
        masquerade_set=_as_str(d.get("masqueradeset"), f"{where}.masqueradeset"),
        max_masquerades=_as_int(d.get("maxmasquerades"), f"{where}.maxmasquerades"),
        insecure_skip_verify=_as_bool(d.get("insecureskipverify"), f"{where}.insecureskipverify"),
        dial_timeout_millis=_as_int(d.get("dialtimeoutmillis"), f"{where}.dialtimeoutmillis"),
        redial_attempts=_as_int(d.get("redialattempts"), f"{where}.redialattempts"),
        qos=_as_int(d.get("qos"), f"{where}.qos"),
        weight=_as_int(d.get("weight"), f"{where}.weight"),
    )


def _load_chained_server(item: Any, where: str) -> ChainedServerInfo:
    d = _lower_keys(item, where)
    if not d.get("addr"):
        raise ValueError(f"{where}: missing addr")
    return ChainedServerInfo(
        addr=_as_str(d["addr"], f"{where}.addr"),
        auth_token=_as_str(d.get("authtoken"), f"{where}.authtoken"),
        cert=_as_str(d.get("cert"), f"{where}.cert"),
        pipelined=_as_bool(d.get("pipelined"), f"{where}.pipelined"),
        weight=_as_int(d.get("weight"), f"{where}.weight"),
        qos=_as_int(d.get("qos"), f"{where}.qos"),
    )


def _load_masquerade(item: Any, where: str) -> Masquerade:
    d = _lower_keys(item, where)
    if not d.get("domain"):
        raise ValueError(f"{where}: missing domain")
    return Masquerade(
        domain=_as_str(d["domain"], f"{where}.domain"),
        ip_address=_as_str(d.get("ipaddress"), f"{where}.ipaddress"),
    )


def sort_fronted_servers(servers: list[FrontedServerInfo]) -> list[FrontedServerInfo]:
    """Highest QOS first, then heaviest weight, then host for stability"""
    return sorted(servers, key=lambda s: (-s.qos, -s.weight, s.host))


def load_cloud_config(data: dict[str, Any] | None) -> CloudConfig:
    """
    Build a CloudConfig from a parsed cloud document.

    Fields missing from the document are empty; nothing is carried over
    from a previous snapshot.

    Raises:
        ValueError: if any field has the wrong shape
    """
    raw = _lower_keys(data, "cloud")
    client_raw = _lower_keys(raw.get("client"), "client")

    fronted_raw = client_raw.get("frontedservers") or []
    if not isinstance(fronted_raw, list):
        raise ValueError("client.frontedservers: expected a list")
    fronted = [
        _load_fronted_server(item, f"client.frontedservers[{i}]")
        for i, item in enumerate(fronted_raw)
    ]

    chained = {
        str(name): _load_chained_server(item, f"client.chainedservers.{name}")
        for name, item in _as_mapping(client_raw.get("chainedservers"), "client.chainedservers").items()
    }

    masquerade_sets: dict[str, list[Masquerade]] = {}
    for name, items in _as_mapping(client_raw.get("masqueradesets"), "client.masqueradesets").items():
        if not isinstance(items, list):
            raise ValueError(f"client.masqueradesets.{name}: expected a list")
        masquerade_sets[str(name)] = [
            _load_masquerade(item, f"client.masqueradesets.{name}[{i}]")
            for i, item in enumerate(items)
        ]

    sites_raw = _lower_keys(raw.get("proxiedsites"), "proxiedsites")
    delta_raw = _lower_keys(sites_raw.get("delta"), "proxiedsites.delta")
    proxied_sites = ProxiedSitesConfig(
        delta=ProxiedSitesDelta(
            additions=_as_str_list(delta_raw.get("additions"), "proxiedsites.delta.additions"),
            deletions=_as_str_list(delta_raw.get("deletions"), "proxiedsites.delta.deletions"),
        ),
        # Deduplicate and sort the global list
        cloud=sorted(set(_as_str_list(sites_raw.get("cloud"), "proxiedsites.cloud"))),
    )

    cas_raw = raw.get("trustedcas") or []
    if not isinstance(cas_raw, list):
        raise ValueError("trustedcas: expected a list")
    trusted_cas = []
    for i, item in enumerate(cas_raw):
        d = _lower_keys(item, f"trustedcas[{i}]")
        trusted_cas.append(CA(
            common_name=_as_str(d.get("commonname"), f"trustedcas[{i}].commonname"),
            cert=_as_str(d.get("cert"), f"trustedcas[{i}].cert"),
        ))

    return CloudConfig(
        fronted_servers=sort_fronted_servers(fronted),
        chained_servers=chained,
        masquerade_sets=masquerade_sets,
        proxied_sites=proxied_sites,
        trusted_cas=trusted_cas,
    )


def _as_mapping(data: Any, where: str) -> dict[str, Any]:
    """Mapping whose keys are names (server or set names), kept as-is"""
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"{where}: expected a mapping, got {type(data).__name__}")
    return dict(data)
