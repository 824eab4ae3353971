import ipaddress
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from csm_patch.common.errors import CapacityExceeded, ConfigurationError, InvalidCIDR

logger = logging.getLogger(__name__)

IPV6_SIZE = 128

# Addresses of every carved block which are never handed to a reservation: the block root and its gateway
RESERVED_ADDRESSES = 2


@dataclass(frozen=True)
class PrefixSettings:
    prefix: int

    @property
    def usable(self) -> int:
        return 2 ** (IPV6_SIZE - self.prefix) - RESERVED_ADDRESSES


# Carved subnets are rounded up to nibble boundaries which keeps reverse DNS delegation and operator reading of
# the addresses simple. /64 is the largest block handed to a single subnet.
__PREFIX_SETTINGS = [PrefixSettings(prefix=prefix) for prefix in range(124, 63, -4)]
PREFIX_SETTINGS = {s.prefix: s for s in __PREFIX_SETTINGS}


def prefixlen_for(capacity: int, entity: Optional[str] = None) -> int:
    """
    Returns:
        the longest supported prefix length whose usable address count covers `capacity`
    Raises:
        CapacityExceeded: if even the largest supported block is too small
    """
    for prefix in sorted(PREFIX_SETTINGS.keys(), reverse=True):
        if PREFIX_SETTINGS[prefix].usable >= capacity:
            return prefix
    raise CapacityExceeded(
        f"{capacity} addresses required but the largest supported block "
        f"/{min(PREFIX_SETTINGS.keys())} only holds {PREFIX_SETTINGS[min(PREFIX_SETTINGS.keys())].usable}",
        entity=entity,
    )


def first_host(network: ipaddress.IPv6Network) -> ipaddress.IPv6Address:
    return network.network_address + 1


def parse_supernet(cidr: str, entity: Optional[str] = None) -> ipaddress.IPv6Network:
    """ Parse an operator or SLS supplied IPv6 CIDR, host bits are dropped """
    try:
        network = ipaddress.ip_network(cidr.strip(), strict=False)
    except (ValueError, AttributeError) as e:
        raise InvalidCIDR(f"'{cidr}' is not a valid CIDR: {e}", entity=entity)
    if network.version != 6:
        raise InvalidCIDR(f"'{cidr}' is not an IPv6 CIDR", entity=entity)
    if str(network) != cidr.strip():
        logger.warning(f"{entity or cidr}: CIDR {cidr} has host bits set, using {network}")
    return network


def require_gateway(
        supernet: ipaddress.IPv6Network,
        gateway: Optional[str] = None,
        entity: Optional[str] = None,
):
    """ Raises InvalidCIDR if no gateway was given and none can be derived from the supernet """
    if not gateway and supernet.network_address.is_unspecified:
        raise InvalidCIDR(f"cannot derive a gateway from unspecified CIDR {supernet}", entity=entity)


def resolve_gateway(
        supernet: ipaddress.IPv6Network,
        gateway: Optional[str] = None,
        entity: Optional[str] = None,
) -> ipaddress.IPv6Address:
    """
    Returns the network gateway. An explicit gateway is used as-is, otherwise the first host address of the
    supernet is used and the derivation is logged so that the operator can review it.
    """
    if gateway:
        try:
            addr = ipaddress.ip_address(gateway.strip())
        except ValueError as e:
            raise ConfigurationError(f"gateway '{gateway}' is not a valid address: {e}", entity=entity)
        if addr.version != 6:
            raise ConfigurationError(f"gateway '{gateway}' is not an IPv6 address", entity=entity)
        if addr not in supernet and not addr.is_link_local:
            logger.warning(f"{entity or supernet}: gateway {addr} is outside of {supernet}")
        return addr

    require_gateway(supernet, gateway, entity)
    addr = first_host(supernet)
    logger.warning(f"{entity or supernet} ({supernet}) gateway was not given, auto-resolved to [{addr}]")
    return addr


@dataclass
class SubnetDemand:
    """
    Attributes:
        name: subnet name
        capacity: number of reservations requiring an address
        supernetted: subnet shares the parent network's CIDR6 and gateway6
        existing: CIDR6 the subnet already holds and which will be kept
    """
    name: str
    capacity: int
    supernetted: bool = False
    existing: Optional[ipaddress.IPv6Network] = None


@dataclass(frozen=True)
class SubnetCarve:
    """
    Attributes:
        block: range reservation addresses are assigned from
        cidr6: CIDR6 published on the subnet
        gateway6: Gateway6 published on the subnet
    """
    name: str
    block: ipaddress.IPv6Network
    cidr6: ipaddress.IPv6Network
    gateway6: ipaddress.IPv6Address
    supernetted: bool = False

    @property
    def block_gateway(self) -> ipaddress.IPv6Address:
        return first_host(self.block)


class SupernetExtent:
    """ Free space of a network supernet, carved first-fit in ascending address order """

    def __init__(self, supernet: ipaddress.IPv6Network):
        self.supernet = supernet
        self.free_segments: List[ipaddress.IPv6Network] = [supernet]

    def __contains__(self, item):
        if isinstance(item, ipaddress.IPv6Network):
            return self.supernet.supernet_of(item)
        if isinstance(item, ipaddress.IPv6Address):
            return item in self.supernet
        return False

    def set_alloc(self, alloc: ipaddress.IPv6Network) -> bool:
        """ mark alloc as used, returning true if alloc was free space of this extent """
        for i, segment in enumerate(self.free_segments):
            if segment.supernet_of(alloc):
                remainder = sorted(segment.address_exclude(alloc))
                self.free_segments = self.free_segments[0:i] + remainder + self.free_segments[i + 1:]
                return True
        return False

    def peek_alloc(self, prefixlen: int) -> Optional[ipaddress.IPv6Network]:
        """ the block next_alloc would return, without marking it used """
        for segment in self.free_segments:
            if segment.prefixlen <= prefixlen:
                return next(segment.subnets(new_prefix=prefixlen))
        return None

    def next_alloc(self, prefixlen: int) -> Optional[ipaddress.IPv6Network]:
        """ find the lowest free block of length prefixlen or None if there is no space left """
        alloc = self.peek_alloc(prefixlen)
        if alloc is not None:
            self.set_alloc(alloc)
        return alloc


class IPv6Allocator:
    """
    Carves a network's IPv6 supernet into one block per subnet.

    Subnets keeping an existing CIDR6 are reserved first so that fresh carves never overlap them, the rest are
    carved in the order they were requested. Supernetted subnets still get a block for their reservations but
    publish the network's own CIDR6 and gateway.
    """

    def __init__(self, network_name: str, supernet: ipaddress.IPv6Network, gateway: ipaddress.IPv6Address):
        self.network_name = network_name
        self.supernet = supernet
        self.gateway = gateway

    def _gateway_takes_address(self, block: ipaddress.IPv6Network) -> bool:
        return self.gateway in block and self.gateway not in (block.network_address, first_host(block))

    def carve(self, demands: List[SubnetDemand]) -> List[SubnetCarve]:
        extent = SupernetExtent(self.supernet)
        carves: Dict[str, SubnetCarve] = {}

        fresh: List[SubnetDemand] = []
        for demand in demands:
            if demand.existing is None or demand.supernetted:
                fresh.append(demand)
                continue
            if not extent.set_alloc(demand.existing):
                logger.warning(f"{self.network_name}/{demand.name}: existing CIDR6 {demand.existing} is not free "
                               f"space of {self.supernet}, it will be kept as-is")
            carves[demand.name] = SubnetCarve(
                name=demand.name,
                block=demand.existing,
                cidr6=demand.existing,
                gateway6=first_host(demand.existing),
            )

        sized = [(demand, prefixlen_for(demand.capacity, f"{self.network_name}/{demand.name}")) for demand in fresh]
        required = sum(2 ** (IPV6_SIZE - prefixlen) for _, prefixlen in sized)
        available = sum(segment.num_addresses for segment in extent.free_segments)
        if required > available:
            raise CapacityExceeded(
                f"{self.supernet} has {available} free addresses but subnets "
                f"{', '.join(d.name for d, _ in sized)} require {required}",
                entity=self.network_name,
            )

        for demand, prefixlen in sized:
            block = extent.peek_alloc(prefixlen)
            if block is not None and self._gateway_takes_address(block) \
                    and PREFIX_SETTINGS[prefixlen].usable < demand.capacity + 1:
                # the network gateway is one more address of this block no reservation can use
                prefixlen = prefixlen_for(demand.capacity + 1, f"{self.network_name}/{demand.name}")
                block = extent.peek_alloc(prefixlen)
            if block is None:
                raise CapacityExceeded(
                    f"{self.supernet} is out of free space to allocate a /{prefixlen} for subnet {demand.name}",
                    entity=self.network_name,
                )
            extent.set_alloc(block)
            if demand.supernetted:
                carve = SubnetCarve(demand.name, block, self.supernet, self.gateway, supernetted=True)
            else:
                carve = SubnetCarve(demand.name, block, block, first_host(block))
            logger.debug(f"{self.network_name}/{demand.name}: carved {block} for {demand.capacity} reservations")
            carves[demand.name] = carve

        return [carves[demand.name] for demand in demands]
