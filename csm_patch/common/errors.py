from typing import Optional

from csm_patch.common.constants import (
    EXIT_COMMIT_FAILED,
    EXIT_DISCOVERY_FAILED,
    EXIT_INVALID_ARGS,
    EXIT_PLANNING_FAILED,
)


class RetrofitError(Exception):
    """ Base class of all errors raised while patching. `entity` names the network/subnet/node at fault """

    exit_code = EXIT_PLANNING_FAILED

    def __init__(self, message: str, entity: Optional[str] = None):
        self.entity = entity
        if entity:
            message = f"{entity}: {message}"
        super().__init__(message)


class ConfigurationError(RetrofitError):
    exit_code = EXIT_INVALID_ARGS


class InvalidCIDR(ConfigurationError):
    """ An IPv6 CIDR could not be parsed, was not IPv6, or was unspecified with no derivable gateway """


class InvalidIdentifier(RetrofitError):
    """ A reservation owner tag does not contain a recognizable hardware identifier """


class ServiceError(RetrofitError):
    """ A remote service call failed """

    def __init__(self, method: str, url: str, status_code: Optional[int] = None, detail: str = ""):
        self.method = method
        self.url = url
        self.status_code = status_code
        status = f" -> {status_code}" if status_code is not None else ""
        super().__init__(f"{method} {url}{status} {detail}".rstrip())


class DiscoveryError(RetrofitError):
    exit_code = EXIT_DISCOVERY_FAILED


class PlanningError(RetrofitError):
    exit_code = EXIT_PLANNING_FAILED


class CapacityExceeded(PlanningError):
    """ The network's IPv6 block cannot hold the subnets carved from it """


class UnparseableAddress(PlanningError):
    """ An existing reservation address could not be parsed, ordering cannot be guaranteed """


class CommitError(RetrofitError):
    exit_code = EXIT_COMMIT_FAILED
