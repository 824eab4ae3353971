import logging
import os
import pathlib
from typing import Optional

import requests

from csm_patch.common.constants import DEFAULT_API_URL, DEFAULT_HTTP_TIMEOUT
from csm_patch.common.errors import DiscoveryError

logger = logging.getLogger(__name__)

TOKEN_PATH = "/keycloak/realms/shasta/protocol/openid-connect/token"
DEFAULT_CLIENT_ID = "admin-client"


class TokenProvider:
    """
    Resolves the bearer token for the API gateway. Lookup order: an explicit token, $CSM_API_TOKEN, the file
    named by $CSM_API_TOKEN_FILE, and finally an OAuth client-credentials grant using $CSM_CLIENT_ID /
    $CSM_CLIENT_SECRET against $CSM_TOKEN_ENDPOINT.
    """

    def __init__(self, api_url: str = DEFAULT_API_URL, token: Optional[str] = None, verify: bool = True,
                 timeout: int = DEFAULT_HTTP_TIMEOUT):
        self._api_url = api_url.rstrip('/')
        self._token = token
        self._verify = verify
        self._timeout = timeout

    def get_token(self) -> str:
        if self._token:
            return self._token

        token = os.getenv("CSM_API_TOKEN")
        if token:
            self._token = token
            return token

        token_file = os.getenv("CSM_API_TOKEN_FILE")
        if token_file:
            try:
                self._token = pathlib.Path(token_file).read_text().strip()
            except OSError as e:
                raise DiscoveryError(f"failed to read token file {token_file}: {e}")
            if not self._token:
                raise DiscoveryError(f"token file {token_file} is empty")
            return self._token

        self._token = self._client_credentials()
        return self._token

    def _client_credentials(self) -> str:
        secret = os.getenv("CSM_CLIENT_SECRET")
        if not secret:
            raise DiscoveryError("no API token available, pass --token or set CSM_API_TOKEN, CSM_API_TOKEN_FILE "
                                 "or CSM_CLIENT_SECRET")
        endpoint = os.getenv("CSM_TOKEN_ENDPOINT", f"{self._api_url}{TOKEN_PATH}")
        data = {
            "grant_type": "client_credentials",
            "client_id": os.getenv("CSM_CLIENT_ID", DEFAULT_CLIENT_ID),
            "client_secret": secret,
        }
        logger.debug(f"requesting token from {endpoint}")
        try:
            response = requests.post(endpoint, data=data, verify=self._verify, timeout=self._timeout)
            response.raise_for_status()
            token = response.json().get("access_token")
        except (requests.RequestException, ValueError) as e:
            raise DiscoveryError(f"failed to obtain an API token from {endpoint}: {e}")
        if not token:
            raise DiscoveryError(f"token endpoint {endpoint} returned no access_token")
        return token
