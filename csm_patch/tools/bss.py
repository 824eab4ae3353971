import logging
from typing import Optional

import pydantic

from csm_patch.common.errors import ServiceError
from csm_patch.common.models import BootParams, wire_dump
from csm_patch.tools.http import ServiceClient

logger = logging.getLogger(__name__)


class BSSClient(ServiceClient):
    """ Boot Script Service, the owner of per-node boot parameters and cloud-init meta-data """

    def fetch(self, host: str) -> Optional[BootParams]:
        """
        Returns:
            the boot parameters of host or None if BSS has no record of it
        Raises:
            ServiceError: on transport failures or if BSS returns more than one record
        """
        response = self._request("GET", "bootparameters", allow_404=True, params={"name": host})
        if response is None:
            return None
        url = self._url("bootparameters")
        try:
            records = response.json()
        except ValueError as e:
            raise ServiceError("GET", url, response.status_code, f"unexpected response for {host}: {e}")
        if not records:
            return None
        if not isinstance(records, list) or len(records) != 1:
            raise ServiceError("GET", url, response.status_code,
                               f"expected exactly one bootparameters record for {host}, "
                               f"got {len(records) if isinstance(records, list) else type(records).__name__}")
        try:
            return BootParams.model_validate(records[0])
        except pydantic.ValidationError as e:
            raise ServiceError("GET", url, response.status_code, f"unexpected record for {host}: {e}")

    def put(self, record: BootParams, method: str = "PUT"):
        self._request(method, "bootparameters", json=wire_dump(record))
        logger.debug(f"updated BSS bootparameters of {record.host}")
