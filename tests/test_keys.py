import base64
import hashlib

import pytest

from conftest import FakeClient, PUBLIC_KEY, Reply
from shellpilot.errors import ConnectError
from shellpilot.keys import DEPLOY_MARKER, deploy_command, deploy_public_key, fingerprint, parse_public_key


class TestPublicKeys:
    def test_parse(self):
        key_type, fp = parse_public_key(PUBLIC_KEY)

        blob = base64.b64decode(PUBLIC_KEY.split()[1])
        expected = base64.b64encode(hashlib.sha256(blob).digest()).decode().rstrip("=")
        assert key_type == "ed25519"
        assert fp == "SHA256:" + expected
        assert "=" not in fp

    @pytest.mark.parametrize("line", ["", "ssh-rsa", "ssh-rsa not*base64", "garbage"])
    def test_parse_rejects_malformed(self, line):
        assert parse_public_key(line) is None

    def test_fingerprint_ignores_comment(self):
        bare = " ".join(PUBLIC_KEY.split()[:2])

        assert fingerprint(bare) == fingerprint(PUBLIC_KEY)

    def test_deploy_command_quotes_key(self):
        command = deploy_command(PUBLIC_KEY)

        assert f"'{PUBLIC_KEY}'" in command
        assert command.endswith(f"echo '{DEPLOY_MARKER}'")
        assert "chmod 600 ~/.ssh/authorized_keys" in command


class TestDeploy:
    def test_success_requires_marker(self, host, connection):
        host.responder = lambda cmd: Reply.text(out=DEPLOY_MARKER + "\n")

        assert deploy_public_key(connection, PUBLIC_KEY, "hunter2", client_factory=lambda: FakeClient(host)) is True

        kwargs = host.connect_kwargs[0]
        assert kwargs["password"] == "hunter2"
        assert kwargs["timeout"] == 15
        assert kwargs["look_for_keys"] is False
        assert host.clients[0].closed

    def test_failed_append_returns_false(self, host, connection):
        host.responder = lambda cmd: Reply.text(err="Permission denied\n", exit=1)

        assert deploy_public_key(connection, PUBLIC_KEY, "pw", client_factory=lambda: FakeClient(host)) is False

    def test_exit_zero_without_marker_is_failure(self, host, connection):
        host.responder = lambda cmd: Reply.text(out="")

        assert deploy_public_key(connection, PUBLIC_KEY, "pw", client_factory=lambda: FakeClient(host)) is False

    def test_wrong_password(self, host, connection):
        host.password = "right"

        with pytest.raises(ConnectError):
            deploy_public_key(connection, PUBLIC_KEY, "wrong", client_factory=lambda: FakeClient(host))
        assert host.clients[0].closed

    def test_invalid_key(self, host, connection):
        with pytest.raises(ValueError):
            deploy_public_key(connection, "nope", "pw", client_factory=lambda: FakeClient(host))
        assert host.connect_calls == 0
