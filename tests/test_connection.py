"""Tests for connection path selection and credential handling."""

import pytest

from apfleet.connection import ConnectionMode
from apfleet.errors import AuthenticationError, DeviceUnreachableError
from apfleet.models import ConnectionInfo, Device
from apfleet.secrets import SecretCodec


def make_device(codec, **connection) -> Device:
    connection.setdefault("secret", codec.encrypt("routerpass"))
    return Device(id="ap-01", connection=ConnectionInfo(**connection))


class TestConnectionResolver:
    """Local versus overlay address selection."""

    def test_default_uses_local_address(self, codec, resolver):
        device = make_device(codec, local_address="192.168.88.1", overlay_address="10.8.0.5", overlay_ready=True)
        target = resolver.resolve(device)
        assert target.host == "192.168.88.1"
        assert target.via_overlay is False

    def test_default_follows_overlay_preference(self, codec, resolver):
        device = make_device(
            codec, local_address="192.168.88.1", overlay_address="10.8.0.5",
            overlay_ready=True, prefer_overlay=True,
        )
        target = resolver.resolve(device)
        assert target.host == "10.8.0.5"
        assert target.via_overlay is True

    def test_overlay_not_ready_falls_back_to_local(self, codec, resolver):
        device = make_device(
            codec, local_address="192.168.88.1", overlay_address="10.8.0.5",
            overlay_ready=False, prefer_overlay=True,
        )
        assert resolver.resolve(device).host == "192.168.88.1"

    def test_prefer_local_falls_back_to_overlay(self, codec, resolver):
        device = make_device(codec, overlay_address="10.8.0.5", overlay_ready=True)
        target = resolver.resolve(device, ConnectionMode.PREFER_LOCAL)
        assert target.host == "10.8.0.5"

    def test_prefer_overlay_mode(self, codec, resolver):
        device = make_device(codec, local_address="192.168.88.1", overlay_address="10.8.0.5", overlay_ready=True)
        assert resolver.resolve(device, ConnectionMode.PREFER_OVERLAY).host == "10.8.0.5"

    def test_no_address_is_unreachable(self, codec, resolver):
        with pytest.raises(DeviceUnreachableError):
            resolver.resolve(make_device(codec))

    def test_credentials_are_decrypted(self, codec, resolver):
        device = make_device(codec, local_address="192.168.88.1", port=8080, scheme="https", username="ops")
        target = resolver.resolve(device)
        assert target.password == "routerpass"
        assert target.username == "ops"
        assert target.base_url == "https://192.168.88.1:8080"

    def test_repr_hides_password(self, codec, resolver):
        target = resolver.resolve(make_device(codec, local_address="192.168.88.1"))
        assert "routerpass" not in repr(target)


class TestSecretCodec:
    """Credential encryption at rest."""

    def test_round_trip(self, codec):
        token = codec.encrypt("routerpass")
        assert token != "routerpass"
        assert codec.decrypt(token) == "routerpass"

    def test_empty_token_is_empty_password(self, codec):
        assert codec.decrypt("") == ""

    def test_wrong_key_is_authentication_error(self, codec):
        token = SecretCodec("another-key").encrypt("routerpass")
        with pytest.raises(AuthenticationError):
            codec.decrypt(token)

    def test_master_key_required(self):
        with pytest.raises(ValueError):
            SecretCodec("")
