import copy
import logging
from typing import Dict, List, Optional, Set

import pytest

from csm_patch.common.config import load_config
from csm_patch.common.errors import ServiceError
from csm_patch.common.models import BootParams, Network, SLSState, wire_dump
from csm_patch.tools.backup import BackupWriter

logging.basicConfig()

logger = logging.getLogger(__name__)

NODE_A = "x3000c0s1b0n0"
NODE_B = "x3000c0s2b0n0"
SWITCH_A = "x3000c0w14"

CMN_CIDR6 = "2001:db8:1::/64"
CHN_CIDR6 = "2001:db8:2::/64"


def reservation(name: str, ip: str, comment: Optional[str] = None, ip6: Optional[str] = None) -> dict:
    r = {"Name": name, "IPAddress": ip}
    if comment is not None:
        r["Comment"] = comment
    if ip6 is not None:
        r["IPAddress6"] = ip6
    return r


def subnet(name: str, cidr: str, gateway: str, vlan: int, reservations: List[dict]) -> dict:
    return {
        "Name": name,
        "FullName": f"{name} subnet",
        "CIDR": cidr,
        "Gateway": gateway,
        "VlanID": vlan,
        "IPReservations": reservations,
    }


def network(name: str, cidr: str, subnets: List[dict]) -> dict:
    return {
        "Name": name,
        "FullName": f"{name} network",
        "IPRanges": [cidr],
        "Type": "ethernet",
        "ExtraProperties": {
            "CIDR": cidr,
            "VlanRange": [7],
            "MTU": 9000,
            "Subnets": subnets,
        },
    }


def cmn_network() -> dict:
    # listed out of IPv4 order on purpose
    return network("CMN", "10.0.0.0/24", [
        subnet("bootstrap_dhcp", "10.0.0.0/24", "10.0.0.254", 7, [
            reservation("node-b", "10.0.0.2", NODE_B),
            reservation("switch-a", "10.0.0.3", SWITCH_A),
            reservation("node-a", "10.0.0.1", NODE_A),
        ]),
    ])


def chn_network() -> dict:
    return network("CHN", "10.1.0.0/24", [
        subnet("bootstrap_dhcp", "10.1.0.0/25", "10.1.0.1", 5, [
            reservation("node-a", "10.1.0.10", NODE_A),
            reservation("node-b", "10.1.0.11", NODE_B),
        ]),
    ])


def boot_params(xname: str, ipam: Dict[str, dict]) -> dict:
    return {
        "hosts": [xname],
        "params": "console=ttyS0,115200",
        "kernel": "s3://boot-images/k8s/kernel",
        "initrd": "s3://boot-images/k8s/initrd",
        "cloud-init": {
            "meta-data": {
                "xname": xname,
                "ipam": ipam,
            },
            "user-data": {"hostname": xname},
        },
    }


def ipam_entry(ip: str, gateway: str, vlan: int) -> dict:
    return {"gateway": gateway, "ip": ip, "parent_device": "bond0", "vlanid": vlan}


class FakeSLSClient:

    def __init__(self, networks: List[dict], fail_on: Optional[Set[str]] = None, fail_fetch: bool = False):
        self.networks = {n["Name"]: copy.deepcopy(n) for n in networks}
        self.fail_on = fail_on or set()
        self.fail_fetch = fail_fetch
        self.puts: List[str] = []

    def fetch_all(self) -> SLSState:
        if self.fail_fetch:
            raise ServiceError("GET", "sls/dumpstate", 503, "unavailable")
        return SLSState.model_validate({"Networks": copy.deepcopy(self.networks)})

    def put(self, net: Network):
        if net.name in self.fail_on:
            raise ServiceError("PUT", f"sls/networks/{net.name}", 500, "boom")
        self.puts.append(net.name)
        self.networks[net.name] = wire_dump(net)


class FakeBSSClient:

    def __init__(self, records: List[dict], fail_on: Optional[Set[str]] = None):
        self.records = {r["hosts"][0]: copy.deepcopy(r) for r in records}
        self.fail_on = fail_on or set()
        self.fetches: List[str] = []
        self.puts: List[str] = []

    def fetch(self, host: str) -> Optional[BootParams]:
        self.fetches.append(host)
        record = self.records.get(host)
        if record is None:
            return None
        return BootParams.model_validate(copy.deepcopy(record))

    def put(self, record: BootParams, method: str = "PUT"):
        if record.host in self.fail_on:
            raise ServiceError(method, "bss/bootparameters", 500, f"boom {record.host}")
        self.puts.append(record.host)
        self.records[record.host] = wire_dump(record)


@pytest.fixture(autouse=True)
def log_file(tmp_path, monkeypatch):
    monkeypatch.setenv("CSM_PATCH_LOGFILE", str(tmp_path / "csm-patch.log"))


@pytest.fixture
def sls():
    return FakeSLSClient([cmn_network()])


@pytest.fixture
def bss():
    return FakeBSSClient([
        boot_params(NODE_A, {
            "cmn": ipam_entry("10.0.0.1/24", "10.0.0.254", 7),
            "nmn": ipam_entry("10.252.1.4/17", "10.252.0.1", 2),
        }),
        boot_params(NODE_B, {
            "cmn": ipam_entry("10.0.0.2/24", "10.0.0.254", 7),
            "nmn": ipam_entry("10.252.1.5/17", "10.252.0.1", 2),
        }),
    ])


@pytest.fixture
def backups(tmp_path):
    return BackupWriter(tmp_path / "backups", "20240101_000000")


@pytest.fixture
def make_config(tmp_path):
    def _make(**kwargs):
        kwargs.setdefault("networks", {"CMN": {"cidr6": CMN_CIDR6}})
        kwargs.setdefault("backup_dir", tmp_path / "backups")
        return load_config(None, **kwargs)
    return _make
