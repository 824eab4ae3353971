import logging
from typing import Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from csm_patch.common.constants import DEFAULT_HTTP_TIMEOUT
from csm_patch.common.errors import ServiceError

logger = logging.getLogger(__name__)

DEFAULT_RETRIES = 3
DEFAULT_BACKOFF = 0.5


def make_session(
        token: Optional[str] = None,
        verify: bool = True,
        retries: int = DEFAULT_RETRIES,
        backoff_factor: float = DEFAULT_BACKOFF,
) -> requests.Session:
    """
    Session shared by the service clients. Only GETs are retried, PUTs are attempted exactly once.
    """
    session = requests.Session()
    retry = Retry(
        total=retries,
        backoff_factor=backoff_factor,
        status_forcelist=(500, 502, 503, 504),
        allowed_methods=frozenset(["GET"]),
        raise_on_status=False,
    )
    adapter = HTTPAdapter(max_retries=retry)
    session.mount("https://", adapter)
    session.mount("http://", adapter)
    session.verify = verify
    if token:
        session.headers["Authorization"] = f"Bearer {token}"
    session.headers["Content-Type"] = "application/json"
    return session


class ServiceClient:
    """ Base of the SLS and BSS clients, turns transport and HTTP failures into ServiceError """

    def __init__(self, session: requests.Session, base_url: str, timeout: int = DEFAULT_HTTP_TIMEOUT):
        self._session = session
        self._base_url = base_url.rstrip('/')
        self._timeout = timeout

    def _url(self, path: str) -> str:
        return f"{self._base_url}/{path.lstrip('/')}"

    def _request(self, method: str, path: str, ok=(200,), allow_404=False, **kwargs) -> Optional[requests.Response]:
        url = self._url(path)
        logger.debug(f"{method} {url}")
        try:
            response = self._session.request(method, url, timeout=self._timeout, **kwargs)
        except requests.RequestException as e:
            raise ServiceError(method, url, detail=str(e))
        if allow_404 and response.status_code == 404:
            return None
        if response.status_code not in ok:
            raise ServiceError(method, url, response.status_code, response.text)
        return response
