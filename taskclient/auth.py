from collections.abc import Generator
from dataclasses import dataclass

import httpx

from taskclient.config import settings


@dataclass(frozen=True)
class ClientCredentials:
    access_token: str
    client_id: str


class AccessTokenAuth(httpx.Auth):
    """Stamps the API credentials on every outgoing API request."""

    def __init__(self, credentials: ClientCredentials) -> None:
        self.credentials = credentials

    def auth_flow(self, request: httpx.Request) -> Generator[httpx.Request, httpx.Response, None]:
        request.headers["X-Access-Token"] = self.credentials.access_token
        request.headers["X-Client-ID"] = self.credentials.client_id
        yield request


def build_auth(access_token: str | None = None, client_id: str | None = None) -> AccessTokenAuth:
    token = (access_token if access_token is not None else settings.access_token).strip()
    client = (client_id if client_id is not None else settings.client_id).strip()
    if not token:
        raise ValueError("access_token must be set (TASKCLIENT_ACCESS_TOKEN)")
    if not client:
        raise ValueError("client_id must be set (TASKCLIENT_CLIENT_ID)")
    return AccessTokenAuth(ClientCredentials(access_token=token, client_id=client))
