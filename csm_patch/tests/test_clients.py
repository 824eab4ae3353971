from unittest import mock

import pytest
import requests

from csm_patch.common.errors import DiscoveryError, InvalidIdentifier, ServiceError
from csm_patch.common.models import BootParams, Network
from csm_patch.tests.conftest import NODE_A, boot_params, cmn_network, ipam_entry
from csm_patch.tools.auth import TokenProvider
from csm_patch.tools.bss import BSSClient
from csm_patch.tools.http import make_session
from csm_patch.tools.sls import SLSClient

SLS_URL = "https://api.local/apis/sls/v1"
BSS_URL = "https://api.local/apis/bss/boot/v1"


def _response(status_code=200, payload=None, text=""):
    response = mock.Mock(spec=requests.Response)
    response.status_code = status_code
    response.text = text
    if isinstance(payload, Exception):
        response.json.side_effect = payload
    else:
        response.json.return_value = payload
    return response


def _session(*responses):
    session = mock.Mock(spec=requests.Session)
    session.request.side_effect = list(responses)
    return session


def test_make_session():
    session = make_session("tok", verify=False)
    assert session.headers["Authorization"] == "Bearer tok"
    assert session.verify is False
    retry = session.get_adapter("https://api.local").max_retries
    assert "GET" in retry.allowed_methods
    assert "PUT" not in retry.allowed_methods


def test_sls_fetch_all():
    session = _session(_response(payload={"Networks": {"CMN": cmn_network()}}))
    state = SLSClient(session, SLS_URL, timeout=5).fetch_all()

    assert list(state.networks) == ["CMN"]
    assert state.networks["CMN"].extra_properties.subnets[0].name == "bootstrap_dhcp"
    session.request.assert_called_once_with("GET", f"{SLS_URL}/dumpstate", timeout=5)


def test_sls_fetch_all_errors():
    with pytest.raises(ServiceError) as e:
        SLSClient(_session(_response(503, text="unavailable")), SLS_URL).fetch_all()
    assert e.value.status_code == 503

    with pytest.raises(ServiceError):
        SLSClient(_session(requests.ConnectionError("refused")), SLS_URL).fetch_all()

    with pytest.raises(ServiceError):
        SLSClient(_session(_response(payload=ValueError("not json"))), SLS_URL).fetch_all()


def test_sls_put():
    network = Network.model_validate(cmn_network())
    session = _session(_response(201))
    SLSClient(session, SLS_URL).put(network)

    args, kwargs = session.request.call_args
    assert args == ("PUT", f"{SLS_URL}/networks/CMN")
    assert kwargs["json"]["ExtraProperties"]["Subnets"][0]["Name"] == "bootstrap_dhcp"

    with pytest.raises(ServiceError):
        SLSClient(_session(_response(400, text="bad")), SLS_URL).put(network)

    with pytest.raises(InvalidIdentifier):
        SLSClient(_session(), SLS_URL).put(Network(name="C MN"))


def test_bss_fetch():
    record = boot_params(NODE_A, {"cmn": ipam_entry("10.0.0.1/24", "10.0.0.254", 7)})
    session = _session(_response(payload=[record]))
    bp = BSSClient(session, BSS_URL).fetch(NODE_A)

    assert bp.host == NODE_A
    assert bp.ipam["cmn"].ip == "10.0.0.1/24"
    args, kwargs = session.request.call_args
    assert args == ("GET", f"{BSS_URL}/bootparameters")
    assert kwargs["params"] == {"name": NODE_A}


def test_bss_fetch_missing_or_ambiguous():
    assert BSSClient(_session(_response(404)), BSS_URL).fetch(NODE_A) is None
    assert BSSClient(_session(_response(payload=[])), BSS_URL).fetch(NODE_A) is None

    record = boot_params(NODE_A, {})
    with pytest.raises(ServiceError):
        BSSClient(_session(_response(payload=[record, record])), BSS_URL).fetch(NODE_A)


def test_bss_put_round_trips_unknown_fields():
    record = boot_params(NODE_A, {"cmn": ipam_entry("10.0.0.1/24", "10.0.0.254", 7)})
    record["cloud-init"]["meta-data"]["shasta-role"] = "ncn-worker"
    session = _session(_response(200))
    BSSClient(session, BSS_URL).put(BootParams.model_validate(record))

    _, kwargs = session.request.call_args
    assert kwargs["json"] == record


def test_token_provider(monkeypatch, tmp_path):
    for var in ("CSM_API_TOKEN", "CSM_API_TOKEN_FILE", "CSM_CLIENT_SECRET", "CSM_TOKEN_ENDPOINT"):
        monkeypatch.delenv(var, raising=False)

    assert TokenProvider(token="explicit").get_token() == "explicit"

    monkeypatch.setenv("CSM_API_TOKEN", "from-env")
    assert TokenProvider().get_token() == "from-env"
    monkeypatch.delenv("CSM_API_TOKEN")

    token_file = tmp_path / "token"
    token_file.write_text("from-file\n")
    monkeypatch.setenv("CSM_API_TOKEN_FILE", str(token_file))
    assert TokenProvider().get_token() == "from-file"
    monkeypatch.delenv("CSM_API_TOKEN_FILE")

    with pytest.raises(DiscoveryError):
        TokenProvider().get_token()


def test_token_provider_client_credentials(monkeypatch):
    for var in ("CSM_API_TOKEN", "CSM_API_TOKEN_FILE", "CSM_TOKEN_ENDPOINT"):
        monkeypatch.delenv(var, raising=False)
    monkeypatch.setenv("CSM_CLIENT_SECRET", "s3cret")

    with mock.patch("csm_patch.tools.auth.requests.post") as post:
        post.return_value = _response(payload={"access_token": "granted"})
        assert TokenProvider("https://api.local").get_token() == "granted"
        args, kwargs = post.call_args
        assert args[0] == "https://api.local/keycloak/realms/shasta/protocol/openid-connect/token"
        assert kwargs["data"]["grant_type"] == "client_credentials"
        assert kwargs["data"]["client_secret"] == "s3cret"

    with mock.patch("csm_patch.tools.auth.requests.post") as post:
        post.side_effect = requests.ConnectionError("refused")
        with pytest.raises(DiscoveryError):
            TokenProvider("https://api.local").get_token()
