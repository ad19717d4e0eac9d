"""Tests for the mirror registry checkin client."""

import xmlrpc.client
from unittest.mock import patch

import httpx
import pytest

from quickmirror.config import Module
from quickmirror.registry import (
    RegistryClient,
    build_checkin_payload,
    build_xmlrpc_request,
    decode_checkin_payload,
    encode_checkin_payload,
    registry_dir_path,
    response_indicates_success,
)

FEDORA = Module(
    name="fedora-enchilada",
    directory="fedora",
    registry_name="fedora linux",
    registry_dir="fedora/linux",
)

SUCCESS_BODY = (
    "<?xml version='1.0'?><methodResponse><params><param><value>"
    "<string>checked in successful</string></value></param></params>"
    "</methodResponse>"
)
FAILURE_BODY = (
    "<?xml version='1.0'?><methodResponse><params><param><value>"
    "<string>invalid password</string></value></param></params>"
    "</methodResponse>"
)


def _decode_request(body: bytes) -> dict:
    params, method = xmlrpc.client.loads(body.decode("utf-8"))
    assert method == "checkin"
    return decode_checkin_payload(params[0])


class TestRegistryDirPath:
    """Tests for registry prefix stripping."""

    def test_strip_prefix(self):
        """Test the registry dir prefix is removed."""
        assert registry_dir_path(FEDORA, "fedora/linux/releases/40") == "releases/40"

    def test_prefix_itself(self):
        """Test the registry dir maps to the top level."""
        assert registry_dir_path(FEDORA, "fedora/linux") == ""

    def test_outside_prefix(self):
        """Test paths outside the prefix are kept."""
        assert registry_dir_path(FEDORA, "fedora/extras") == "fedora/extras"

    def test_similar_prefix_not_stripped(self):
        """Test that only whole path components are stripped."""
        assert registry_dir_path(FEDORA, "fedora/linuxish") == "fedora/linuxish"


class TestCheckinPayload:
    """Tests for building and encoding the checkin document."""

    def test_payload(self, epel_module):
        """Test the payload layout."""
        payload = build_checkin_payload(
            epel_module,
            ["epel/9", "epel", "epel/8"],
            site="example",
            password="secret",
            host="mirror.example.org",
            server="https://registry.example.org/xmlrpc",
        )

        assert list(payload["fedora epel"]["dirtree"]) == ["", "8", "9"]
        assert payload["fedora epel"]["enabled"] == "1"
        assert payload["site"] == {
            "enabled": "1",
            "name": "example",
            "password": "secret",
        }
        assert payload["host"] == {"enabled": "1", "name": "mirror.example.org"}
        assert payload["global"]["server"] == "https://registry.example.org/xmlrpc"
        assert payload["stats"] == {}
        assert payload["version"] == 0

    def test_blank_directory_always_present(self, epel_module):
        """Test the top level key exists even for an empty tree."""
        payload = build_checkin_payload(epel_module, [], "s", "p", "h", "u")
        assert payload["fedora epel"]["dirtree"] == {"": {}}

    def test_encoding_is_reversible(self, epel_module):
        """Test bzip2 + base64 encoding decodes to the original payload."""
        payload = build_checkin_payload(epel_module, ["epel/9"], "s", "p", "h", "u")
        encoded = encode_checkin_payload(payload)
        assert "+" not in encoded
        assert "/" not in encoded
        assert decode_checkin_payload(encoded) == payload

    def test_xmlrpc_request(self):
        """Test the payload travels as the single checkin parameter."""
        params, method = xmlrpc.client.loads(build_xmlrpc_request("abc"))
        assert method == "checkin"
        assert params == ("abc",)

    @pytest.mark.parametrize(
        "body,expected",
        [
            (SUCCESS_BODY, True),
            ("<b>Checkin SUCCESSFUL</b>", True),
            (FAILURE_BODY, False),
            ("", False),
        ],
    )
    def test_response_indicates_success(self, body, expected):
        """Test success detection on tag-stripped responses."""
        assert response_indicates_success(body) == expected


class TestRegistryClient:
    """Tests for RegistryClient.checkin."""

    @pytest.fixture
    def client(self):
        """Create a registry client."""
        client = RegistryClient(
            url="https://registry.example.org/xmlrpc",
            site="example",
            password="secret",
            host="mirror.example.org",
            max_retries=3,
        )
        yield client
        client.close()

    def _mock_transport(self, client, responses):
        requests = []

        def handler(request):
            requests.append(request)
            response = responses.pop(0)
            if isinstance(response, Exception):
                raise response
            return response

        client._client = httpx.Client(transport=httpx.MockTransport(handler))
        return requests

    def test_checkin_success(self, client, epel_module):
        """Test a successful checkin posts the encoded tree."""
        requests = self._mock_transport(
            client, [httpx.Response(200, text=SUCCESS_BODY)]
        )

        assert client.checkin(epel_module, ["epel", "epel/9"]) is True

        assert len(requests) == 1
        assert requests[0].method == "POST"
        assert str(requests[0].url) == "https://registry.example.org/xmlrpc"
        payload = _decode_request(requests[0].content)
        assert set(payload["fedora epel"]["dirtree"]) == {"", "9"}
        assert payload["host"]["name"] == "mirror.example.org"

    @patch("quickmirror.registry.time.sleep")
    def test_retry_with_linear_backoff(self, mock_sleep, client, epel_module):
        """Test failed checkins are retried with a growing delay."""
        self._mock_transport(
            client,
            [
                httpx.Response(500),
                httpx.Response(200, text=FAILURE_BODY),
                httpx.Response(200, text=SUCCESS_BODY),
            ],
        )

        assert client.checkin(epel_module, ["epel"]) is True
        assert [c.args[0] for c in mock_sleep.call_args_list] == [2.0, 4.0]

    @patch("quickmirror.registry.time.sleep")
    def test_gives_up(self, mock_sleep, client, epel_module):
        """Test checkin returns False once retries are exhausted."""
        requests = self._mock_transport(
            client, [httpx.Response(200, text=FAILURE_BODY) for _ in range(3)]
        )

        assert client.checkin(epel_module, ["epel"]) is False
        assert len(requests) == 3
        assert mock_sleep.call_count == 2

    @patch("quickmirror.registry.time.sleep")
    def test_network_error_is_retried(self, mock_sleep, client, epel_module):
        """Test connection errors count as failed attempts."""
        self._mock_transport(
            client,
            [
                httpx.ConnectError("connection refused"),
                httpx.Response(200, text=SUCCESS_BODY),
            ],
        )

        assert client.checkin(epel_module, ["epel"]) is True
        assert mock_sleep.call_count == 1

    def test_module_host_override(self, client):
        """Test a per-module host replaces the default host name."""
        module = Module(
            name="fedora-epel",
            directory="epel",
            registry_name="fedora epel",
            registry_dir="epel",
            checkin_host="epel.example.org",
        )
        requests = self._mock_transport(
            client, [httpx.Response(200, text=SUCCESS_BODY)]
        )

        client.checkin(module, ["epel"])

        payload = _decode_request(requests[0].content)
        assert payload["host"]["name"] == "epel.example.org"

    def test_dump_instead_of_send(self, tmp_path, epel_module):
        """Test the request body is written to a file when dumping."""
        prefix = tmp_path / "checkin"
        client = RegistryClient(
            url="https://registry.example.org/xmlrpc",
            site="example",
            password="secret",
            host="mirror.example.org",
            dump_prefix=str(prefix),
        )

        assert client.checkin(epel_module, ["epel", "epel/9"]) is True

        dumped = tmp_path / "checkin-fedora-epel"
        payload = _decode_request(dumped.read_bytes())
        assert set(payload["fedora epel"]["dirtree"]) == {"", "9"}
        assert client._client is None

    def test_dump_write_failure(self, tmp_path, epel_module):
        """Test an unwritable dump location reports a failed checkin."""
        client = RegistryClient(
            url="https://registry.example.org/xmlrpc",
            site="example",
            password="secret",
            host="mirror.example.org",
            dump_prefix=str(tmp_path / "nodir" / "checkin"),
        )

        assert client.checkin(epel_module, ["epel"]) is False

    def test_from_config(self, make_config):
        """Test building a client from configuration."""
        config = make_config(checkin_site="example", checkin_password="pw")
        client = RegistryClient.from_config(config, dump_prefix="/tmp/x")
        assert client.site == "example"
        assert client.password == "pw"
        assert client.host == "mirror.example.org"
        assert client.url == config.registry_url
        assert client.dump_prefix == "/tmp/x"

    def test_close(self, client):
        """Test closing releases the httpx client."""
        client._get_client()
        client.close()
        assert client._client is None
