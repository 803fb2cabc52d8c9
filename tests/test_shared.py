"""
Tests for the shared building blocks: hooks, retry policy, wire models, credentials.
"""

import asyncio

import pytest

from npc_stream.client.credentials import CredentialSupplier, SessionCredentials
from npc_stream.shared.client_utils import ReconnectPolicy, mask_secret
from npc_stream.shared.config import Settings
from npc_stream.shared.events import EventHook
from npc_stream.shared.models import CommandCall, DeviceAuthSession, TokenResponse


class TestEventHook:

    def test_subscribe_emit_unsubscribe(self):
        hook = EventHook("test")
        seen = []
        hook.subscribe(seen.append)
        hook.subscribe(seen.append)
        assert len(hook) == 1
        hook.emit(1)
        hook.unsubscribe(seen.append)
        hook.emit(2)
        assert seen == [1]

    def test_failing_subscriber_does_not_stop_others(self):
        hook = EventHook("test")
        seen = []

        def broken(value):
            raise ValueError("nope")

        hook.subscribe(broken)
        hook.subscribe(seen.append)
        hook.emit("x")
        assert seen == ["x"]

    async def test_coroutine_subscriber_is_scheduled(self):
        hook = EventHook("test")
        seen = []

        async def subscriber(value):
            seen.append(value)

        hook.subscribe(subscriber)
        hook.emit("async")
        await asyncio.sleep(0)
        assert seen == ["async"]


class TestReconnectPolicy:

    def test_budget(self):
        policy = ReconnectPolicy(max_attempts=2, delay_s=0)
        assert policy.register_failure()
        assert policy.register_failure()
        assert not policy.register_failure()
        assert policy.exhausted

    def test_reset(self):
        policy = ReconnectPolicy(max_attempts=1)
        policy.register_failure()
        policy.reset()
        assert policy.attempts == 0
        assert policy.register_failure()


class TestModels:

    def test_token_response_accepts_both_spellings(self):
        assert TokenResponse.model_validate_json('{"p2Key": "a"}').p2_key == "a"
        assert TokenResponse.model_validate_json('{"p2_key": "b"}').p2_key == "b"
        assert TokenResponse.model_validate_json("{}").p2_key is None

    def test_device_session_ignores_unknown_fields(self):
        session = DeviceAuthSession.model_validate(
            {"device_code": "d", "verification_uri_complete": "u", "extra": 1}
        )
        assert session.interval == 5.0
        assert session.deadline == 300.0

    def test_blank_command_arguments(self):
        assert CommandCall(name="wave").parsed_arguments() == {}


class TestCredentials:

    def test_from_settings_regular(self):
        config = Settings(_env_file=None, BASE_URL="http://svc/v1/", API_KEY="k")
        creds = SessionCredentials.from_settings(config)
        assert isinstance(creds, CredentialSupplier)
        assert creds.get_base_url() == "http://svc/v1"
        assert creds.get_credential() == "k"
        assert not creds.is_bypass_active()

    def test_from_settings_hosted(self):
        config = Settings(_env_file=None, HOSTED_MODE=True, HOSTED_BASE_URL="http://hosted/_api/v1")
        creds = SessionCredentials.from_settings(config)
        assert creds.get_base_url() == "http://hosted/_api/v1"
        assert creds.is_bypass_active()

    @pytest.mark.parametrize("value,expected", [
        (None, "null"),
        ("", "empty"),
        ("abcdefghij", "abcdef... (length 10)"),
    ])
    def test_mask_secret(self, value, expected):
        assert mask_secret(value) == expected
