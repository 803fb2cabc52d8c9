"""
MODULE OVERVIEW:
Where the stream and auth clients get their credential, base URL and bypass flag.

WHAT IS HAPPENING HERE:
The clients only depend on the small `CredentialSupplier` protocol, so an embedding
application can answer these questions however it likes. `SessionCredentials` is the
ready-made implementation built from `Settings`: in hosted mode the service edge
authenticates with cookies, so no bearer key is needed and the hosted base URL is used.
"""
from typing import Protocol, runtime_checkable

from loguru import logger

from npc_stream.shared.client_utils import mask_secret
from npc_stream.shared.config import Settings, settings as default_settings


@runtime_checkable
class CredentialSupplier(Protocol):
    def get_credential(self) -> str | None: ...

    def is_bypass_active(self) -> bool: ...

    def get_base_url(self) -> str | None: ...


class SessionCredentials:
    def __init__(
        self,
        base_url: str | None,
        credential: str | None = None,
        bypass: bool = False,
    ):
        self.base_url = base_url.rstrip("/") if base_url else base_url
        self.credential = credential
        self.bypass = bypass

    @classmethod
    def from_settings(cls, config: Settings | None = None) -> "SessionCredentials":
        config = config or default_settings
        base_url = config.HOSTED_BASE_URL if config.HOSTED_MODE else config.BASE_URL
        return cls(base_url=base_url, credential=config.API_KEY or None, bypass=config.HOSTED_MODE)

    def get_credential(self) -> str | None:
        return self.credential

    def is_bypass_active(self) -> bool:
        return self.bypass

    def get_base_url(self) -> str | None:
        return self.base_url

    def set_credential(self, credential: str | None) -> None:
        logger.debug(f"Session credential updated: {mask_secret(credential)}")
        self.credential = credential
