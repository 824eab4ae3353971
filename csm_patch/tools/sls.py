import logging

import pydantic

from csm_patch.common.errors import InvalidIdentifier, ServiceError
from csm_patch.common.models import Network, SLSState, wire_dump
from csm_patch.tools.http import ServiceClient

logger = logging.getLogger(__name__)


class SLSClient(ServiceClient):
    """ System Layout Service, the owner of network, subnet and IP reservation records """

    def fetch_all(self) -> SLSState:
        response = self._request("GET", "dumpstate")
        try:
            return SLSState.model_validate(response.json())
        except (ValueError, pydantic.ValidationError) as e:
            raise ServiceError("GET", self._url("dumpstate"), response.status_code, f"unexpected response: {e}")

    def put(self, network: Network):
        name = network.name
        if not name or " " in name:
            raise InvalidIdentifier(f"'{name}' is not a valid SLS network name")
        self._request("PUT", f"networks/{name}", ok=(200, 201), json=wire_dump(network))
        logger.debug(f"updated SLS network {name}")
