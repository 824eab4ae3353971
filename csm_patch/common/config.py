"""
Run configuration. Values come from an optional YAML file and are overridden by command line flags; the merged
result is validated once, before anything is fetched from the services.

Example file:

    api_url: https://api-gw-service-nmn.local
    subnets: [network_hardware, bootstrap_dhcp]
    networks:
      CMN:
        cidr6: 2001:db8:1::/64
      CHN:
        cidr6: 2001:db8:2::/64
        gateway6: 2001:db8:2::1
    timeout: 30
    verify_tls: true
"""
import ipaddress
import logging
import os
import pathlib
from typing import Any, Dict, List, Literal, Optional

import pydantic
import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from csm_patch.common.constants import (
    DEFAULT_API_URL,
    DEFAULT_HTTP_TIMEOUT,
    DEFAULT_SUBNETS_TO_PATCH,
    DEFAULT_SUPERNET_SUBNETS,
    NETWORKS_TO_PATCH,
)
from csm_patch.common.errors import ConfigurationError
from csm_patch.tools.ip6_allocator import parse_supernet, require_gateway

logger = logging.getLogger(__name__)

OutputFormat = Literal["table", "json", "yaml"]


def _split_list(v):
    if isinstance(v, str):
        return [s.strip() for s in v.split(",") if s.strip()]
    return v


class NetworkParam(BaseModel):
    model_config = ConfigDict(extra="forbid")

    cidr6: Optional[str] = None
    gateway6: Optional[str] = None

    @field_validator("gateway6")
    @classmethod
    def gateway_is_ipv6(cls, v):
        if v is None:
            return v
        addr = ipaddress.ip_address(v.strip())
        if addr.version != 6:
            raise ValueError(f"gateway6 '{v}' is not an IPv6 address")
        return str(addr)

    @model_validator(mode="after")
    def gateway_requires_cidr(self):
        if self.gateway6 and not self.cidr6:
            raise ValueError("gateway6 was given without cidr6")
        return self

    def supernet(self, network_name: str) -> ipaddress.IPv6Network:
        return parse_supernet(self.cidr6, entity=network_name)


class ClientSettings(BaseModel):
    api_url: str = DEFAULT_API_URL
    token: Optional[str] = None
    verify_tls: bool = True
    timeout: int = Field(default=DEFAULT_HTTP_TIMEOUT, gt=0)


class RetrofitConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    api_url: str = DEFAULT_API_URL
    token: Optional[str] = None
    verify_tls: bool = True
    timeout: int = Field(default=DEFAULT_HTTP_TIMEOUT, gt=0)

    commit: bool = False
    force: bool = False
    remove: bool = False
    backup_dir: Optional[pathlib.Path] = None
    subnets: List[str] = Field(default_factory=lambda: list(DEFAULT_SUBNETS_TO_PATCH))
    supernet_subnets: List[str] = Field(default_factory=lambda: list(DEFAULT_SUPERNET_SUBNETS))
    networks: Dict[str, NetworkParam] = Field(default_factory=dict)
    bss_workers: int = Field(default=1, ge=1)
    output: OutputFormat = "table"

    split_lists = field_validator("subnets", "supernet_subnets", mode="before")(_split_list)

    @field_validator("networks", mode="before")
    @classmethod
    def upper_network_names(cls, v):
        if not v:
            return {}
        return {str(name).upper(): param for name, param in v.items()}

    @field_validator("subnets")
    @classmethod
    def subnets_not_empty(cls, v):
        if not v:
            raise ValueError("at least one subnet is required")
        return v

    @model_validator(mode="after")
    def exclusive_modes(self):
        if self.force and self.remove:
            raise ValueError("--force and --remove are mutually exclusive")
        return self

    @property
    def target_networks(self) -> List[str]:
        """
        Networks this run patches: in remove mode every known network, otherwise those given a cidr6.
        """
        names = list(NETWORKS_TO_PATCH) + [n for n in self.networks if n not in NETWORKS_TO_PATCH]
        if self.remove:
            return names
        return [n for n in names if n in self.networks and self.networks[n].cidr6]

    def client_settings(self) -> ClientSettings:
        return ClientSettings(api_url=self.api_url, token=self.token, verify_tls=self.verify_tls,
                              timeout=self.timeout)

    def resolve_backup_dir(self, timestamp: str) -> pathlib.Path:
        if self.backup_dir is not None:
            return self.backup_dir
        return pathlib.Path(os.getcwd()) / timestamp

    def validate_networks(self):
        """
        Raises:
            InvalidCIDR: if a given cidr6 is not a usable IPv6 CIDR, or no gateway6 was given and none can be
                derived from it
            ConfigurationError: if nothing is targeted in add mode
        """
        if self.remove:
            return
        for name in self.target_networks:
            param = self.networks[name]
            require_gateway(param.supernet(name), param.gateway6, entity=name)
        if not self.target_networks:
            raise ConfigurationError(
                f"no network was given a cidr6, use one of "
                f"{', '.join(f'--{n.lower()}-cidr6' for n in NETWORKS_TO_PATCH)}"
            )


def _merge(base: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, value in overrides.items():
        if value is None:
            continue
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def read_config_file(path: Optional[str]) -> Dict[str, Any]:
    if not path:
        return {}
    try:
        with open(path, "r") as f:
            doc = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise ConfigurationError(f"failed to read config file {path}: {e}")
    if doc is None:
        return {}
    if not isinstance(doc, dict):
        raise ConfigurationError(f"config file {path} must contain a mapping, got {type(doc).__name__}")
    return doc


def load_config(path: Optional[str] = None, **overrides) -> RetrofitConfig:
    """
    Merge the YAML config at path with overrides (None values are ignored) and validate the result.

    Raises:
        ConfigurationError: on any invalid value
    """
    doc = read_config_file(path)
    if isinstance(doc.get("networks"), dict):
        doc["networks"] = {str(k).upper(): v for k, v in doc["networks"].items()}
    try:
        config = RetrofitConfig.model_validate(_merge(doc, overrides))
    except pydantic.ValidationError as e:
        raise ConfigurationError(f"invalid configuration: {e}")
    config.validate_networks()
    return config
