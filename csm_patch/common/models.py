"""
Wire models for the System Layout Service (SLS) and the Boot Script Service (BSS).

Field names follow the services' JSON schemas exactly (via aliases) so that any model dumped with
`wire_dump` can be written to a backup file and resubmitted to the service unchanged. Unknown fields are
kept as extras so nothing the services return is lost on a round trip.
"""
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _empty_to_none(v):
    # the services omit empty values, treat "" the same as a missing value
    if v == "":
        return None
    return v


class _WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")


def wire_dump(model: BaseModel) -> Dict[str, Any]:
    """ Dump a model to the dict the owning service accepts """
    return model.model_dump(mode="json", by_alias=True, exclude_none=True)


## SLS


class IPReservation(_WireModel):
    name: str = Field(alias="Name")
    ip_address: Optional[str] = Field(default=None, alias="IPAddress")
    ip_address6: Optional[str] = Field(default=None, alias="IPAddress6")
    aliases: Optional[List[str]] = Field(default=None, alias="Aliases")
    comment: Optional[str] = Field(default=None, alias="Comment")

    normalize_empty = field_validator("ip_address", "ip_address6", "comment", mode="before")(_empty_to_none)


class IPSubnet(_WireModel):
    name: str = Field(alias="Name")
    full_name: Optional[str] = Field(default=None, alias="FullName")
    cidr: Optional[str] = Field(default=None, alias="CIDR")
    cidr6: Optional[str] = Field(default=None, alias="CIDR6")
    vlan_id: Optional[int] = Field(default=None, alias="VlanID")
    gateway: Optional[str] = Field(default=None, alias="Gateway")
    gateway6: Optional[str] = Field(default=None, alias="Gateway6")
    dhcp_start: Optional[str] = Field(default=None, alias="DHCPStart")
    dhcp_end: Optional[str] = Field(default=None, alias="DHCPEnd")
    reservation_start: Optional[str] = Field(default=None, alias="ReservationStart")
    reservation_end: Optional[str] = Field(default=None, alias="ReservationEnd")
    metallb_pool_name: Optional[str] = Field(default=None, alias="MetalLBPoolName")
    comment: Optional[str] = Field(default=None, alias="Comment")
    ip_reservations: List[IPReservation] = Field(default_factory=list, alias="IPReservations")

    normalize_empty = field_validator("cidr6", "gateway6", mode="before")(_empty_to_none)

    @field_validator("ip_reservations", mode="before")
    @classmethod
    def empty_reservations(cls, v):
        return v or []


class NetworkExtraProperties(_WireModel):
    cidr: Optional[str] = Field(default=None, alias="CIDR")
    cidr6: Optional[str] = Field(default=None, alias="CIDR6")
    vlan_range: Optional[List[int]] = Field(default=None, alias="VlanRange")
    mtu: Optional[int] = Field(default=None, alias="MTU")
    comment: Optional[str] = Field(default=None, alias="Comment")
    subnets: List[IPSubnet] = Field(default_factory=list, alias="Subnets")

    normalize_empty = field_validator("cidr6", mode="before")(_empty_to_none)

    @field_validator("subnets", mode="before")
    @classmethod
    def empty_subnets(cls, v):
        return v or []

    def lookup_subnet(self, name: str) -> Optional[IPSubnet]:
        for subnet in self.subnets:
            if subnet.name == name:
                return subnet
        return None


class Network(_WireModel):
    name: str = Field(alias="Name")
    full_name: Optional[str] = Field(default=None, alias="FullName")
    ip_ranges: Optional[List[str]] = Field(default=None, alias="IPRanges")
    type: Optional[str] = Field(default=None, alias="Type")
    last_updated: Optional[int] = Field(default=None, alias="LastUpdated")
    last_updated_time: Optional[str] = Field(default=None, alias="LastUpdatedTime")
    extra_properties: Optional[NetworkExtraProperties] = Field(default=None, alias="ExtraProperties")


class SLSState(_WireModel):
    hardware: Optional[Dict[str, Any]] = Field(default=None, alias="Hardware")
    networks: Dict[str, Network] = Field(default_factory=dict, alias="Networks")

    @field_validator("networks", mode="before")
    @classmethod
    def empty_networks(cls, v):
        return v or {}


## BSS


class IPAMEntry(_WireModel):
    """ Per-network IP configuration in a node's cloud-init meta-data """
    gateway: Optional[str] = None
    ip: Optional[str] = None
    parent_device: Optional[str] = None
    vlanid: Optional[int] = None
    ip6: Optional[str] = None
    gateway6: Optional[str] = None

    normalize_empty = field_validator("ip6", "gateway6", mode="before")(_empty_to_none)


class MetaData(_WireModel):
    ipam: Optional[Dict[str, IPAMEntry]] = None


class CloudInit(_WireModel):
    meta_data: Optional[MetaData] = Field(default=None, alias="meta-data")
    user_data: Optional[Dict[str, Any]] = Field(default=None, alias="user-data")
    phone_home: Optional[Dict[str, Any]] = Field(default=None, alias="phone-home")


class BootParams(_WireModel):
    hosts: List[str] = Field(default_factory=list)
    macs: Optional[List[str]] = None
    nids: Optional[List[int]] = None
    params: Optional[str] = None
    kernel: Optional[str] = None
    initrd: Optional[str] = None
    cloud_init: Optional[CloudInit] = Field(default=None, alias="cloud-init")

    @property
    def host(self) -> str:
        return self.hosts[0] if self.hosts else ""

    @property
    def ipam(self) -> Optional[Dict[str, IPAMEntry]]:
        if self.cloud_init is None or self.cloud_init.meta_data is None:
            return None
        return self.cloud_init.meta_data.ipam
