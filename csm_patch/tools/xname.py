import logging
import re
from dataclasses import dataclass
from typing import List, Optional, Tuple

from csm_patch.common.errors import InvalidIdentifier

logger = logging.getLogger(__name__)

NODE = "Node"


@dataclass(frozen=True)
class XnameType:
    name: str
    regex: re.Pattern


# Hardware component naming of HPE Cray EX systems. Only the type name is used to tell nodes apart from
# everything else which may own a reservation (switches, BMCs, PDUs...).
__XNAME_TYPES = [
    XnameType("CDU", re.compile(r"^d([0-9]+)$")),
    XnameType("CDUMgmtSwitch", re.compile(r"^d([0-9]+)w([0-9]+)$")),
    XnameType("Cabinet", re.compile(r"^x([0-9]{1,4})$")),
    XnameType("CabinetBMC", re.compile(r"^x([0-9]{1,4})b([0])$")),
    XnameType("CabinetPDUController", re.compile(r"^x([0-9]{1,4})m([0-3])$")),
    XnameType("CabinetPDU", re.compile(r"^x([0-9]{1,4})m([0-3])p([0-7])$")),
    XnameType("CabinetPDUOutlet", re.compile(r"^x([0-9]{1,4})m([0-3])p([0-7])j([1-9][0-9]*)$")),
    XnameType("Chassis", re.compile(r"^x([0-9]{1,4})c([0-7])$")),
    XnameType("ChassisBMC", re.compile(r"^x([0-9]{1,4})c([0-7])b([0])$")),
    XnameType("ComputeModule", re.compile(r"^x([0-9]{1,4})c([0-7])s([0-9]+)$")),
    XnameType("NodeBMC", re.compile(r"^x([0-9]{1,4})c([0-7])s([0-9]+)b([0-9]+)$")),
    XnameType("NodeBMCNic", re.compile(r"^x([0-9]{1,4})c([0-7])s([0-9]+)b([0-9]+)i([0-3])$")),
    XnameType(NODE, re.compile(r"^x([0-9]{1,4})c([0-7])s([0-9]+)b([0-9]+)n([0-9]+)$")),
    XnameType("NodeNic", re.compile(r"^x([0-9]{1,4})c([0-7])s([0-9]+)b([0-9]+)n([0-9]+)i([0-3])$")),
    XnameType("NodeHsnNic", re.compile(r"^x([0-9]{1,4})c([0-7])s([0-9]+)b([0-9]+)n([0-9]+)h([0-3])$")),
    XnameType("MgmtSwitch", re.compile(r"^x([0-9]{1,4})c([0-7])w([1-9][0-9]*)$")),
    XnameType("MgmtHLSwitch", re.compile(r"^x([0-9]{1,4})c([0-7])h([1-9][0-9]*)s([1-9])$")),
    XnameType("MgmtSwitchConnector", re.compile(r"^x([0-9]{1,4})c([0-7])w([1-9][0-9]*)j([1-9][0-9]*)$")),
    XnameType("RouterModule", re.compile(r"^x([0-9]{1,4})c([0-7])r([0-9]+)$")),
    XnameType("RouterBMC", re.compile(r"^x([0-9]{1,4})c([0-7])r([0-9]+)b([0-9]+)$")),
    XnameType("RouterBMCNic", re.compile(r"^x([0-9]{1,4})c([0-7])r([0-9]+)b([0-9]+)i([0-3])$")),
]
XNAME_TYPES = {t.name: t for t in __XNAME_TYPES}

_NUMBER = re.compile(r"[0-9]+")
_TOKEN_SEP = re.compile(r"[\s,;]+")


def normalize(xname: str) -> str:
    """ lower case and strip leading zeros from every ordinal, x0001c0s01b0n0 -> x1c0s1b0n0 """
    return _NUMBER.sub(lambda m: str(int(m.group(0))), xname.strip().lower())


def xname_type(xname: str) -> Optional[str]:
    xname = normalize(xname)
    for t in __XNAME_TYPES:
        if t.regex.match(xname):
            return t.name
    return None


def _candidates(tag: str) -> List[str]:
    tag = tag.strip()
    return [tag] + [t for t in _TOKEN_SEP.split(tag) if t and t != tag]


def classify(tag: Optional[str]) -> Tuple[str, bool]:
    """
    Extract the hardware identifier from a reservation owner tag. The tag is usually the bare xname but free text
    surrounding it is tolerated, the first token that parses wins.

    Returns:
        (normalized xname, True if the xname names a node)
    Raises:
        InvalidIdentifier: if the tag is empty or holds no recognizable xname
    """
    if not tag or not tag.strip():
        raise InvalidIdentifier("owner tag is empty")
    for candidate in _candidates(tag):
        t = xname_type(candidate)
        if t is not None:
            return normalize(candidate), t == NODE
    raise InvalidIdentifier(f"'{tag}' is not a valid xname")
