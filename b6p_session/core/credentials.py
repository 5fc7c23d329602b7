"""Credential providers consumed by the session manager at login time."""

from __future__ import annotations

import base64
from dataclasses import dataclass
from typing import Protocol
from urllib.parse import urlencode

from b6p_session.config.schema import CredentialsConfig
from b6p_session.core.errors import CredentialsNotFoundError


LOGIN_FORM_CLASS = "myassn.user.UserLoginWebView"


class CredentialProvider(Protocol):
    async def auth_header_value(self, flag: str | None = None) -> str: ...

    async def auth_login_body_value(self, flag: str | None = None) -> str: ...


@dataclass(slots=True, frozen=True)
class BasicCredentials:
    username: str
    password: str

    @property
    def is_complete(self) -> bool:
        return bool(self.username and self.password)

    def to_base64(self) -> str:
        return base64.b64encode(f"{self.username}:{self.password}".encode("utf-8")).decode("ascii")


class BasicCredentialProvider:
    """Basic-auth credentials keyed by flag.

    Flags let one workspace hold several accounts; today callers only ever use
    the default flag, but the lookup is kept explicit.
    """

    def __init__(self, accounts: dict[str, BasicCredentials] | None = None, *, default_flag: str = "default") -> None:
        self._accounts: dict[str, BasicCredentials] = dict(accounts or {})
        self.default_flag = default_flag

    @classmethod
    def from_config(cls, config: CredentialsConfig) -> "BasicCredentialProvider":
        accounts = {
            flag: BasicCredentials(username=account.username, password=account.password)
            for flag, account in config.accounts.items()
        }
        return cls(accounts, default_flag=config.default_flag)

    def set_credentials(self, credentials: BasicCredentials, flag: str | None = None) -> None:
        self._accounts[flag or self.default_flag] = credentials

    def has_credentials(self, flag: str | None = None) -> bool:
        credentials = self._accounts.get(flag or self.default_flag)
        return bool(credentials and credentials.is_complete)

    def credentials_for(self, flag: str | None = None) -> BasicCredentials:
        resolved = flag or self.default_flag
        credentials = self._accounts.get(resolved)
        if credentials is None or not credentials.is_complete:
            raise CredentialsNotFoundError(resolved)
        return credentials

    async def auth_header_value(self, flag: str | None = None) -> str:
        return f"Basic {self.credentials_for(flag).to_base64()}"

    async def auth_login_body_value(self, flag: str | None = None) -> str:
        credentials = self.credentials_for(flag)
        return urlencode(
            {
                "_postEvent": "commit",
                "_postFormClass": LOGIN_FORM_CLASS,
                "rememberMe": "false",
                "myUserName": credentials.username,
                "myPassword": credentials.password,
            }
        )
