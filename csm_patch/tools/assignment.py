"""
Maps carved IPv6 blocks onto existing SLS reservations and BSS IPAM entries.

Reservations are ordered by their IPv4 address and handed IPv6 addresses in the same order so that repeated runs
over the same inputs produce the same mapping. The mapping carries no meaning beyond that determinism.
"""
import dataclasses
import ipaddress
import logging
from typing import Iterable, Iterator, List, Optional, Set

from csm_patch.common.errors import CapacityExceeded, UnparseableAddress
from csm_patch.common.models import IPAMEntry, IPReservation, IPSubnet, NetworkExtraProperties
from csm_patch.tools.ip6_allocator import SubnetCarve

logger = logging.getLogger(__name__)


@dataclasses.dataclass(frozen=True)
class FieldChange:
    entity: str
    field: str
    old: Optional[str]
    new: Optional[str]


@dataclasses.dataclass(frozen=True)
class Conflict:
    """ A field which already held a value and was left unchanged because force was not given """
    entity: str
    field: str
    existing: str
    proposed: Optional[str]


@dataclasses.dataclass
class Assignment:
    changes: List[FieldChange] = dataclasses.field(default_factory=list)
    conflicts: List[Conflict] = dataclasses.field(default_factory=list)

    def extend(self, other: 'Assignment'):
        self.changes.extend(other.changes)
        self.conflicts.extend(other.conflicts)

    def set_field(self, obj, attr: str, entity: str, field: str, proposed: Optional[str], force: bool) -> bool:
        """
        Apply the overwrite policy to a single field.

        Returns:
            True if the field holds the proposed value afterwards
        """
        existing = getattr(obj, attr)
        if existing is not None and not force:
            self.conflicts.append(Conflict(entity, field, existing, proposed))
            return False
        if existing != proposed:
            self.changes.append(FieldChange(entity, field, existing, proposed))
            setattr(obj, attr, proposed)
        return True

    def clear_field(self, obj, attr: str, entity: str, field: str):
        existing = getattr(obj, attr)
        if existing is not None:
            self.changes.append(FieldChange(entity, field, existing, None))
            setattr(obj, attr, None)


def sort_reservations(reservations: Iterable[IPReservation], entity: str) -> List[IPReservation]:
    """
    Sort reservations ascending by the numeric value of their IPv4 address. Python's sort is stable so
    reservations sharing an address keep their SLS order.

    Raises:
        UnparseableAddress: if any reservation has no parseable address
    """
    keyed = []
    for reservation in reservations:
        try:
            addr = ipaddress.ip_address((reservation.ip_address or "").strip())
        except ValueError:
            raise UnparseableAddress(
                f"failed to parse IPv4 address '{reservation.ip_address}' of reservation {reservation.name}",
                entity=entity,
            )
        keyed.append((int(addr), reservation))
    return [reservation for _, reservation in sorted(keyed, key=lambda kv: kv[0])]


class AddressPool:
    """ Hands out addresses of a block in ascending order, skipping addresses which are already taken """

    def __init__(self, block: ipaddress.IPv6Network, used: Set[ipaddress.IPv6Address], entity: str):
        self.block = block
        self.used = used
        self.entity = entity
        self._iter: Iterator[ipaddress.IPv6Address] = iter(block)

    def next_ip(self) -> ipaddress.IPv6Address:
        for addr in self._iter:
            if addr not in self.used:
                self.used.add(addr)
                return addr
        raise CapacityExceeded(f"{self.block} has exhausted its available IPv6 addresses", entity=self.entity)


def _used_addresses(props: NetworkExtraProperties, force: bool) -> Set[ipaddress.IPv6Address]:
    """ IPv6 addresses held by reservations anywhere in the network which this run will keep """
    used = set()
    if force:
        return used
    for subnet in props.subnets:
        for reservation in subnet.ip_reservations:
            if reservation.ip_address6:
                try:
                    used.add(ipaddress.IPv6Address(reservation.ip_address6))
                except ValueError:
                    logger.warning(f"{subnet.name}/{reservation.name}: ignoring unparseable IPv6 address "
                                   f"'{reservation.ip_address6}'")
    return used


def assign_subnet(
        subnet: IPSubnet,
        carve: SubnetCarve,
        network_name: str,
        network_gateway: ipaddress.IPv6Address,
        used: Set[ipaddress.IPv6Address],
        force: bool,
) -> Assignment:
    """ Set a subnet's CIDR6/Gateway6 and give each of its reservations an IPv6 address """
    entity = f"{network_name}/{subnet.name}"
    result = Assignment()
    result.set_field(subnet, "cidr6", entity, "CIDR6", str(carve.cidr6), force)
    result.set_field(subnet, "gateway6", entity, "Gateway6", str(carve.gateway6), force)

    used.update({carve.block.network_address, carve.block_gateway, network_gateway})
    pool = AddressPool(carve.block, used, entity)

    skipped = 0
    for reservation in sort_reservations(subnet.ip_reservations, entity):
        if reservation.ip_address6 is not None and not force:
            result.conflicts.append(
                Conflict(f"{entity}/{reservation.name}", "IPAddress6", reservation.ip_address6, None))
            skipped += 1
            continue
        result.set_field(reservation, "ip_address6", f"{entity}/{reservation.name}", "IPAddress6",
                         str(pool.next_ip()), force=True)

    logger.info(f"{entity}: {len(subnet.ip_reservations) - skipped} new reservations, {skipped} prior reservations")
    return result


def assign_network(
        props: NetworkExtraProperties,
        network_name: str,
        supernet: ipaddress.IPv6Network,
        gateway: ipaddress.IPv6Address,
        carves: List[SubnetCarve],
        force: bool,
) -> Assignment:
    """ Apply carved blocks to a copy of a network's extra properties """
    result = Assignment()
    result.set_field(props, "cidr6", network_name, "CIDR6", str(supernet), force)

    used = _used_addresses(props, force)
    for carve in carves:
        subnet = props.lookup_subnet(carve.name)
        if subnet is None:
            continue
        result.extend(assign_subnet(subnet, carve, network_name, gateway, used, force))
    return result


def remove_network(props: NetworkExtraProperties, network_name: str, subnet_names: List[str]) -> Assignment:
    """ Clear IPv6 data from a network and the named subnets, force has no bearing on removal """
    result = Assignment()
    result.clear_field(props, "cidr6", network_name, "CIDR6")
    for name in subnet_names:
        subnet = props.lookup_subnet(name)
        if subnet is None:
            continue
        entity = f"{network_name}/{name}"
        result.clear_field(subnet, "cidr6", entity, "CIDR6")
        result.clear_field(subnet, "gateway6", entity, "Gateway6")
        for reservation in subnet.ip_reservations:
            result.clear_field(reservation, "ip_address6", f"{entity}/{reservation.name}", "IPAddress6")
    return result


def find_ipam_entry(ipam: dict, network_name: str) -> Optional[str]:
    """ IPAM keys are lower case network names, match them case-insensitively """
    for key in ipam:
        if key.lower() == network_name.lower():
            return key
    return None


def assign_ipam(
        entry: IPAMEntry,
        entity: str,
        address: ipaddress.IPv6Address,
        prefixlen: int,
        gateway6: Optional[str],
        force: bool,
) -> Assignment:
    result = Assignment()
    result.set_field(entry, "ip6", entity, "ip6", f"{address}/{prefixlen}", force)
    if gateway6:
        result.set_field(entry, "gateway6", entity, "gateway6", gateway6, force)
    return result


def clear_ipam(entry: IPAMEntry, entity: str) -> Assignment:
    result = Assignment()
    result.clear_field(entry, "ip6", entity, "ip6")
    result.clear_field(entry, "gateway6", entity, "gateway6")
    return result
