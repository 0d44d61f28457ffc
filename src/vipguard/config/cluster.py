"""Static cluster configuration loader.

Parses a YAML file with the following structure:

auth_secret: change-me
floating_address: 203.0.113.10
advert_interval: 1.0
master_down_interval: 3.0
health:
  command: "curl -fsS http://127.0.0.1:8080/healthz"
  interval: 3.0
  weight: 50
nodes:
  - id: lb1
    address: 10.0.0.11:5405
    priority: 101
  - id: lb2
    address: 10.0.0.12:5405
    priority: 100

Shared keys apply to every node; a node entry may override `health`,
`listen_address` and `status_port`. `ClusterConfig.node_config(node_id)`
produces the validated per-node record used to build a Node: the node's own
entry plus every other entry as a peer.
"""

from __future__ import annotations

from pathlib import Path
from typing import List, Optional

import yaml
from pydantic import BaseModel, Field, SecretStr, ValidationError, field_validator, model_validator

from vipguard.utils.errors import ConfigurationError


def parse_address(address: str) -> tuple[str, int]:
    """Split 'host:port' into (host, port)."""
    host, sep, port_str = address.rpartition(":")
    if not sep or not host:
        raise ValueError(f"address must be host:port, got {address!r}")
    try:
        port = int(port_str)
    except ValueError:
        raise ValueError(f"invalid port in address {address!r}") from None
    if not 0 < port <= 65535:
        raise ValueError(f"port out of range in address {address!r}")
    return host.strip("[]"), port


class PeerConfig(BaseModel):
    id: str = Field(min_length=1)
    address: str

    @field_validator("address")
    @classmethod
    def _check_address(cls, value: str) -> str:
        parse_address(value)
        return value

    @property
    def host(self) -> str:
        return parse_address(self.address)[0]

    @property
    def port(self) -> int:
        return parse_address(self.address)[1]


class HealthConfig(BaseModel):
    """Health check settings (keepalived `vrrp_script` equivalent).

    `command` runs through the shell; exit status 0 means healthy. When it is
    unset and `tcp_port` is set, the check connects to 127.0.0.1:tcp_port.
    With neither, the node is always healthy.
    """

    command: Optional[str] = None
    tcp_port: Optional[int] = Field(default=None, gt=0, le=65535)
    interval: float = Field(default=3.0, gt=0)
    timeout: Optional[float] = Field(default=None, gt=0)
    weight: int = Field(default=50, ge=0)
    fall: int = Field(default=1, ge=1)
    rise: int = Field(default=1, ge=1)


class NotifyConfig(BaseModel):
    """Address reassignment commands, operator hook and retry budget.

    Command templates may use {node_id} and {address}.
    """

    associate_command: Optional[str] = None
    disassociate_command: Optional[str] = None
    notify_command: Optional[str] = None
    command_timeout: float = Field(default=30.0, gt=0)
    max_attempts: int = Field(default=5, ge=1)
    base_delay_ms: int = Field(default=500, ge=0)
    max_delay_ms: int = Field(default=8000, ge=0)
    backoff_multiplier: float = Field(default=2.0, ge=1.0)
    release_on_demote: bool = False
    shutdown_grace: float = Field(default=5.0, ge=0)


class NodeConfig(BaseModel):
    """Declarative configuration record for one node."""

    node_id: str = Field(min_length=1)
    base_priority: int = Field(ge=0)
    advert_interval: float = Field(default=1.0, gt=0)
    master_down_interval: float = Field(default=3.0, gt=0)
    auth_secret: SecretStr
    peers: List[PeerConfig]
    floating_address: str = Field(min_length=1)
    listen_address: str
    health_check_command: Optional[str] = None
    health_check_tcp_port: Optional[int] = None
    health_check_interval: float = Field(default=3.0, gt=0)
    health_check_timeout: Optional[float] = None
    health_penalty_weight: int = Field(default=50, ge=0)
    health_fall: int = 1
    health_rise: int = 1
    min_priority: int = 0
    notify: NotifyConfig = Field(default_factory=NotifyConfig)
    status_port: Optional[int] = None

    @field_validator("listen_address")
    @classmethod
    def _check_listen(cls, value: str) -> str:
        parse_address(value)
        return value

    @model_validator(mode="after")
    def _check_consistency(self) -> "NodeConfig":
        if not self.auth_secret.get_secret_value():
            raise ValueError("auth_secret must not be empty")
        if self.master_down_interval < 3 * self.advert_interval:
            raise ValueError(
                f"master_down_interval ({self.master_down_interval}) must be >= "
                f"3 * advert_interval ({self.advert_interval})"
            )
        seen = set()
        for peer in self.peers:
            if peer.id == self.node_id:
                raise ValueError(f"node {self.node_id} lists itself as a peer")
            if peer.id in seen:
                raise ValueError(f"Duplicate peer id: {peer.id}")
            seen.add(peer.id)
        return self

    @property
    def effective_health_timeout(self) -> float:
        """Probe timeout, never longer than the probe interval."""
        timeout = self.health_check_timeout or self.health_check_interval
        return min(timeout, self.health_check_interval)


class ClusterNode(BaseModel):
    id: str = Field(min_length=1)
    address: str
    priority: int = Field(ge=0)
    listen_address: Optional[str] = None
    status_port: Optional[int] = None
    health: Optional[HealthConfig] = None

    @field_validator("address")
    @classmethod
    def _check_address(cls, value: str) -> str:
        parse_address(value)
        return value


class ClusterConfig(BaseModel):
    auth_secret: Optional[SecretStr] = None
    auth_secret_file: Optional[str] = None
    floating_address: str = Field(min_length=1)
    advert_interval: float = Field(default=1.0, gt=0)
    master_down_interval: Optional[float] = None
    min_priority: int = 0
    health: HealthConfig = Field(default_factory=HealthConfig)
    notify: NotifyConfig = Field(default_factory=NotifyConfig)
    nodes: List[ClusterNode] = Field(min_length=1)

    @model_validator(mode="after")
    def _check_nodes(self) -> "ClusterConfig":
        seen = set()
        for node in self.nodes:
            if node.id in seen:
                raise ValueError(f"Duplicate node id: {node.id}")
            seen.add(node.id)
        return self

    def node_ids(self) -> List[str]:
        return [n.id for n in self.nodes]

    def resolve_secret(self, override: Optional[str] = None) -> str:
        if override:
            return override
        if self.auth_secret is not None:
            return self.auth_secret.get_secret_value()
        if self.auth_secret_file:
            try:
                return Path(self.auth_secret_file).read_text(encoding="utf-8").strip()
            except OSError as e:
                raise ConfigurationError(f"Cannot read auth_secret_file: {e}") from e
        raise ConfigurationError("auth_secret is required (cluster file, auth_secret_file or VIPGUARD_AUTH_SECRET)")

    def node_config(self, node_id: str, auth_secret: Optional[str] = None) -> NodeConfig:
        """Build the per-node record for `node_id`; raises ConfigurationError."""
        me = next((n for n in self.nodes if n.id == node_id), None)
        if me is None:
            raise ConfigurationError(f"Node id '{node_id}' not found in cluster config")
        health = me.health or self.health
        master_down = self.master_down_interval
        if master_down is None:
            master_down = 3 * self.advert_interval
        try:
            return NodeConfig(
                node_id=me.id,
                base_priority=me.priority,
                advert_interval=self.advert_interval,
                master_down_interval=master_down,
                auth_secret=self.resolve_secret(auth_secret),
                peers=[PeerConfig(id=n.id, address=n.address) for n in self.nodes if n.id != me.id],
                floating_address=self.floating_address,
                listen_address=me.listen_address or me.address,
                health_check_command=health.command,
                health_check_tcp_port=health.tcp_port,
                health_check_interval=health.interval,
                health_check_timeout=health.timeout,
                health_penalty_weight=health.weight,
                health_fall=health.fall,
                health_rise=health.rise,
                min_priority=self.min_priority,
                notify=self.notify,
                status_port=me.status_port,
            )
        except ValidationError as e:
            raise ConfigurationError(_describe(e)) from e


def _describe(error: ValidationError) -> str:
    parts = []
    for err in error.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        if err.get("type") == "missing":
            parts.append(f"missing required field: {loc}")
        else:
            parts.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return "; ".join(parts)


def load_cluster_config(path: str | Path) -> ClusterConfig:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise ConfigurationError(f"Cannot read cluster config {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Malformed YAML in {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigurationError(f"Cluster config {path} must be a mapping")
    try:
        return ClusterConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigurationError(_describe(e)) from e


def load_node_config(path: str | Path, node_id: str, auth_secret: Optional[str] = None) -> NodeConfig:
    return load_cluster_config(path).node_config(node_id, auth_secret=auth_secret)
